"""
Consultation order lifecycle.

    INITIATED -> CONNECTED -> COMPLETED
    any non-terminal state -> CANCELLED

COMPLETED and CANCELLED are terminal. Settlement only commits while the order,
re-read inside the settling transaction, is still CONNECTED.
"""
from django.db import models


class OrderStatus(models.TextChoices):
    INITIATED = "INITIATED", "Initiated"
    CONNECTED = "CONNECTED", "Connected"
    COMPLETED = "COMPLETED", "Completed"
    CANCELLED = "CANCELLED", "Cancelled"


class InvalidTransition(Exception):
    """Raised when an order is moved along an edge the lifecycle does not allow."""

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move order from {current} to {target}")


ALLOWED_TRANSITIONS = {
    OrderStatus.INITIATED: frozenset({OrderStatus.CONNECTED, OrderStatus.CANCELLED}),
    OrderStatus.CONNECTED: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})


def can_transition(current, target) -> bool:
    allowed = ALLOWED_TRANSITIONS.get(current)
    if allowed is None:
        return False
    return target in allowed


def ensure_transition(current, target) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current, target)


def is_settleable(status) -> bool:
    return status == OrderStatus.CONNECTED


def is_terminal(status) -> bool:
    return status in TERMINAL_STATUSES
