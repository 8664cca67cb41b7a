from fastapi import APIRouter, Depends, Query

from labtrack.config import settings
from labtrack.routers.deps import get_store, ok
from labtrack.services.lifecycle import LifecycleStore
from labtrack.services.queries import dashboard_summary, worklist

router = APIRouter(prefix="/api", tags=["dashboard"])


@router.get("/dashboard")
def dashboard(store: LifecycleStore = Depends(get_store)):
    summary = dashboard_summary(store.list_patients(), store.list_orders(), settings.recent_orders_limit)
    summary["persistence_warning"] = store.persistence_warning
    return ok(summary)


@router.get("/worklists/{name}")
def get_worklist(name: str, q: str | None = Query(default=None), store: LifecycleStore = Depends(get_store)):
    orders = worklist(store.list_orders(), name, q)
    return ok({"name": name, "orders": orders, "total": len(orders)})
