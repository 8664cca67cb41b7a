from fastapi import APIRouter, Depends, Query

from labtrack.routers.deps import get_catalog, ok
from labtrack.services.catalog import TestCatalog

router = APIRouter(prefix="/api/catalog", tags=["catalog"])


@router.get("/tests")
def list_tests(category: str | None = Query(default=None), catalog: TestCatalog = Depends(get_catalog)):
    tests = catalog.all()
    if category:
        tests = [t for t in tests if t.category.lower() == category.strip().lower()]
    return ok(tests)


@router.get("/categories")
def categories(catalog: TestCatalog = Depends(get_catalog)):
    grouped = [
        {"category": category, "total": sum(1 for t in catalog.all() if t.category == category)}
        for category in catalog.categories()
    ]
    return ok(grouped)
