"""
Type definitions for the IR.
"""

from enum import Enum, auto


class QuantityKind(Enum):
    """Kind of named quantity."""

    VARIABLE = auto()  # Mutated only by assignments
    CONSTANT = auto()  # Fixed for the lifetime of a model


class AssignmentKind(Enum):
    """How an assignment binds its target."""

    ALGEBRAIC = auto()  # q = f(...) while the location is active
    DIFFERENTIAL = auto()  # dq/dt = f(...) while the location is active
    RESET = auto()  # q' = f(...) at the instant a transition fires


class EventKind(Enum):
    """Urgency of a discrete transition."""

    URGENT = auto()  # Fires the instant its guard becomes true
    PERMISSIVE = auto()  # May fire while enabled, flowing on is also valid
