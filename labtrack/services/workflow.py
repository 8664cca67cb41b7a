from __future__ import annotations

from collections.abc import Callable
from typing import Any

from labtrack.errors import InvalidTransitionError
from labtrack.schemas.order import Order, OrderStatus


# ===============================================================
# Order status machine
# ===============================================================

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.BOOKED: frozenset({OrderStatus.SAMPLE_RECEIVED}),
    OrderStatus.SAMPLE_RECEIVED: frozenset({OrderStatus.ACCEPTED, OrderStatus.REJECTED}),
    OrderStatus.ACCEPTED: frozenset({OrderStatus.WORK_IN_PROGRESS}),
    OrderStatus.REJECTED: frozenset(),
    OrderStatus.WORK_IN_PROGRESS: frozenset({OrderStatus.RESULT_SAVED}),
    OrderStatus.RESULT_SAVED: frozenset({OrderStatus.REPORT_CREATED}),
    OrderStatus.REPORT_CREATED: frozenset({OrderStatus.ON_HOLD, OrderStatus.VERIFIED}),
    OrderStatus.ON_HOLD: frozenset({OrderStatus.VERIFIED}),
    OrderStatus.VERIFIED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
}

TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset(
    status for status, targets in ORDER_TRANSITIONS.items() if not targets
)

# Timestamp field stamped when an order enters the status, unless the caller supplied one.
STATUS_TIMESTAMPS: dict[OrderStatus, str] = {
    OrderStatus.SAMPLE_RECEIVED: "sample_received_at",
    OrderStatus.ACCEPTED: "accepted_at",
    OrderStatus.REJECTED: "rejected_at",
    OrderStatus.VERIFIED: "verified_at",
    OrderStatus.DELIVERED: "delivered_at",
}


def parse_status(value: Any) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    raw = str(value or "").strip().lower()
    try:
        return OrderStatus(raw)
    except ValueError:
        raise InvalidTransitionError(
            f"Unknown order status: {value!r}",
            detail={"status": str(value)},
        ) from None


def allowed_targets(current: OrderStatus) -> frozenset[OrderStatus]:
    return ORDER_TRANSITIONS.get(current, frozenset())


def is_allowed(current: OrderStatus, target: OrderStatus) -> bool:
    return target in allowed_targets(current)


# ===============================================================
# Transition guards
# ===============================================================

def _blank(value: str | None) -> bool:
    return not (value or "").strip()


def _require_receiver(order: Order) -> list[str]:
    return ["sampleReceivedBy is required"] if _blank(order.sample_received_by) else []


def _require_rejection_reason(order: Order) -> list[str]:
    return ["rejectionReason is required"] if _blank(order.rejection_reason) else []


def _require_complete_results(order: Order) -> list[str]:
    if not order.results:
        return ["results are required for every ordered test"]

    problems: list[str] = []
    ordered_ids = [test.id for test in order.tests]
    seen: set[str] = set()
    for result in order.results:
        if result.test_id not in ordered_ids:
            problems.append(f"result for test {result.test_id} was not ordered")
        elif result.test_id in seen:
            problems.append(f"duplicate result for test {result.test_id}")
        seen.add(result.test_id)
        if _blank(result.value):
            problems.append(f"result value for test {result.test_id} is empty")
    for test_id in ordered_ids:
        if test_id not in seen:
            problems.append(f"missing result for test {test_id}")
    return problems


def _require_report(order: Order) -> list[str]:
    return ["reportContent is required"] if _blank(order.report_content) else []


def _require_verifier(order: Order) -> list[str]:
    return ["verifiedBy is required"] if _blank(order.verified_by) else []


TRANSITION_GUARDS: dict[OrderStatus, Callable[[Order], list[str]]] = {
    OrderStatus.SAMPLE_RECEIVED: _require_receiver,
    OrderStatus.REJECTED: _require_rejection_reason,
    OrderStatus.RESULT_SAVED: _require_complete_results,
    OrderStatus.REPORT_CREATED: _require_report,
    OrderStatus.VERIFIED: _require_verifier,
}


def ensure_allowed(current: OrderStatus, target: OrderStatus) -> None:
    if not is_allowed(current, target):
        raise InvalidTransitionError(
            f"Cannot move order from {current.value} to {target.value}",
            detail={
                "from": current.value,
                "to": target.value,
                "allowed": sorted(s.value for s in allowed_targets(current)),
            },
        )


def guard_problems(candidate: Order, target: OrderStatus) -> list[str]:
    guard = TRANSITION_GUARDS.get(target)
    return guard(candidate) if guard else []


def check_transition(candidate: Order, current: OrderStatus, target: OrderStatus) -> None:
    """Raise ``InvalidTransitionError`` unless ``candidate`` may move from ``current`` to ``target``.

    ``candidate`` is the order with the caller's extra fields already merged in,
    so payload attached earlier through a plain update also satisfies the guard.
    """
    ensure_allowed(current, target)
    problems = guard_problems(candidate, target)
    if problems:
        raise InvalidTransitionError(
            f"Transition to {target.value} is missing required data",
            detail={"from": current.value, "to": target.value, "problems": problems},
        )
