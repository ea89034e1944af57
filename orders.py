"""Order numbers and the order status lifecycle."""

import secrets
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional

from errors import ValidationError

# pending -> processing -> shipped -> delivered, or cancelled from any
# non-terminal state.
TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"processing", "cancelled"}),
    "processing": frozenset({"shipped", "cancelled"}),
    "shipped": frozenset({"delivered", "cancelled"}),
    "delivered": frozenset(),
    "cancelled": frozenset(),
}


def generate_order_number(now: Optional[datetime] = None) -> str:
    """ORD-<UTC timestamp>-<random hex>, e.g. ORD-20240501123045-3FA9C1.

    Collisions are left to the unique index on orders.orderNumber.
    """
    now = now or datetime.now(timezone.utc)
    return f"ORD-{now:%Y%m%d%H%M%S}-{secrets.token_hex(3).upper()}"


def is_terminal(status: str) -> bool:
    return not TRANSITIONS.get(status)


def check_transition(current: str, new: str) -> None:
    if current not in TRANSITIONS:
        raise ValidationError(f"Unknown order status: {current}", field="status")
    if new not in TRANSITIONS[current]:
        raise ValidationError(f"Cannot change order status from {current} to {new}", field="status")
