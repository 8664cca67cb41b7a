import random
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_order_id(now: datetime, rng: random.Random) -> str:
    """Human-readable order number, ``ORD-YYYYMMDD-NNNN``.

    The four-digit suffix is random and not checked against existing orders, so
    two orders booked on the same day can collide. Treat it as a display id;
    ``Order.id`` is the unique key.
    """
    return f"ORD-{now:%Y%m%d}-{rng.randint(0, 9999):04d}"


def generate_barcode(now: datetime, rng: random.Random) -> str:
    """Sample barcode, ``BC<epoch milliseconds><0-999>`` (suffix not padded)."""
    millis = int(now.timestamp() * 1000)
    return f"BC{millis}{rng.randint(0, 999)}"


class IdentifierGenerator:
    """Bundles the clock and random source used to stamp new entities."""

    def __init__(self, clock: Clock = utc_now, rng: random.Random | None = None):
        self.clock = clock
        self.rng = rng if rng is not None else random.Random()

    def now(self) -> datetime:
        return self.clock()

    def entity_id(self) -> str:
        return str(uuid.UUID(int=self.rng.getrandbits(128), version=4))

    def order_id(self, now: datetime) -> str:
        return generate_order_id(now, self.rng)

    def barcode(self, now: datetime) -> str:
        return generate_barcode(now, self.rng)
