from collections import Counter
from collections.abc import Iterable, Sequence
from typing import Any

from labtrack.errors import InvalidTransitionError, NotFoundError, ValidationError
from labtrack.schemas.order import STATUS_FLOW, Order, OrderStatus
from labtrack.schemas.patient import Patient
from labtrack.services.workflow import parse_status


def _matches(term: str, *values: str | None) -> bool:
    needle = term.strip().lower()
    if not needle:
        return True
    return any(needle in value.lower() for value in values if value)


def search_patients(patients: Iterable[Patient], term: str | None) -> list[Patient]:
    """Case-insensitive substring match on name, phone and email."""
    return [p for p in patients if _matches(term or "", p.name, p.phone, p.email)]


def search_orders(orders: Iterable[Order], term: str | None) -> list[Order]:
    """Case-insensitive substring match on order id, barcode and patient name."""
    return [o for o in orders if _matches(term or "", o.order_id, o.barcode, o.patient.name)]


def filter_by_status(orders: Iterable[Order], *statuses: OrderStatus | str) -> list[Order]:
    try:
        wanted = {parse_status(s) for s in statuses}
    except InvalidTransitionError as exc:
        raise ValidationError(exc.message, detail=exc.detail) from exc
    return [o for o in orders if o.status in wanted]


def orders_for_patient(orders: Iterable[Order], patient_id: str) -> list[Order]:
    return [o for o in orders if o.patient.id == patient_id]


# Status-scoped views used by the bench screens. An empty tuple means every status.
WORKLISTS: dict[str, tuple[OrderStatus, ...]] = {
    "sample_tracking": (),
    "results_entry": (OrderStatus.WORK_IN_PROGRESS,),
    "report_editor": (OrderStatus.RESULT_SAVED, OrderStatus.REPORT_CREATED),
    "verification": (OrderStatus.REPORT_CREATED, OrderStatus.ON_HOLD, OrderStatus.VERIFIED),
}


def worklist(orders: Sequence[Order], name: str, term: str | None = None) -> list[Order]:
    if name not in WORKLISTS:
        raise NotFoundError(f"Unknown worklist: {name}", detail={"available": sorted(WORKLISTS)})
    statuses = WORKLISTS[name]
    scoped = filter_by_status(orders, *statuses) if statuses else list(orders)
    return search_orders(scoped, term)


def dashboard_summary(patients: Sequence[Patient], orders: Sequence[Order], recent_limit: int = 5) -> dict[str, Any]:
    counts = Counter(o.status for o in orders)
    recent = list(reversed(orders[-recent_limit:])) if recent_limit > 0 else []
    return {
        "total_orders": len(orders),
        "pending_samples": counts[OrderStatus.BOOKED],
        "awaiting_verification": counts[OrderStatus.REPORT_CREATED],
        "registered_patients": len(patients),
        "pipeline": [
            {"status": status.value, "label": status.label, "count": counts[status]}
            for status in STATUS_FLOW
        ],
        "recent_orders": recent,
    }
