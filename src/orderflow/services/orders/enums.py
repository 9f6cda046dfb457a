"""Order status enum and lifecycle transition rules.

This module defines the order status vocabulary and the table of allowed
status transitions that the lifecycle engine enforces.
"""

from enum import Enum
from typing import Dict, Set


class OrderStatus(str, Enum):
    """Order lifecycle status with state machine transitions.

    Valid transitions:
    - NEW -> CONFIRMED, CANCELLED, ON_HOLD
    - CONFIRMED -> PAID, CANCELLED, ON_HOLD, FAILED
    - PAID -> FULFILLED, CANCELLED, ON_HOLD, FAILED
    - FULFILLED -> COMPLETED, FAILED
    - ON_HOLD -> CONFIRMED, PAID, CANCELLED
    - COMPLETED, CANCELLED, FAILED -> (terminal states)
    """

    NEW = "new"
    CONFIRMED = "confirmed"
    PAID = "paid"
    FULFILLED = "fulfilled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ON_HOLD = "on_hold"
    FAILED = "failed"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """Convert string to OrderStatus enum.

        Args:
            value: String representation of status

        Returns:
            OrderStatus enum value

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join([s.value for s in cls])
            raise ValueError(
                f"Invalid order status: {value}. "
                f"Valid values are: {valid_values}"
            )

    def is_terminal(self) -> bool:
        """Check if status is a terminal state.

        Returns:
            True if no transition leaves this status
        """
        return not ORDER_STATUS_TRANSITIONS.get(self)

    @property
    def display_name(self) -> str:
        """Get human-readable display name for status."""
        return self.value.replace("_", " ").title()


ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.NEW: {
        OrderStatus.CONFIRMED,
        OrderStatus.CANCELLED,
        OrderStatus.ON_HOLD,
    },
    OrderStatus.CONFIRMED: {
        OrderStatus.PAID,
        OrderStatus.CANCELLED,
        OrderStatus.ON_HOLD,
        OrderStatus.FAILED,
    },
    OrderStatus.PAID: {
        OrderStatus.FULFILLED,
        OrderStatus.CANCELLED,
        OrderStatus.ON_HOLD,
        OrderStatus.FAILED,
    },
    OrderStatus.FULFILLED: {
        OrderStatus.COMPLETED,
        OrderStatus.FAILED,
    },
    OrderStatus.ON_HOLD: {
        OrderStatus.CONFIRMED,
        OrderStatus.PAID,
        OrderStatus.CANCELLED,
    },
    OrderStatus.COMPLETED: set(),  # Terminal
    OrderStatus.CANCELLED: set(),  # Terminal
    OrderStatus.FAILED: set(),  # Terminal
}

# Statuses whose entry is announced to the customer
NOTIFIABLE_STATUSES: Set[OrderStatus] = {
    OrderStatus.CONFIRMED,
    OrderStatus.PAID,
    OrderStatus.FULFILLED,
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
    OrderStatus.FAILED,
}


def validate_order_status_transition(
    current: OrderStatus,
    new: OrderStatus
) -> bool:
    """Validate if order status transition is allowed.

    Args:
        current: Current order status
        new: Desired new status

    Returns:
        True if transition is valid
    """
    return new in ORDER_STATUS_TRANSITIONS.get(current, set())


def get_allowed_order_transitions(current: OrderStatus) -> Set[OrderStatus]:
    """Get the statuses reachable from the current one."""
    return ORDER_STATUS_TRANSITIONS.get(current, set()).copy()
