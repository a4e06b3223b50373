from __future__ import annotations

from enum import Enum
from typing import Mapping, TypeVar

from .errors import InvalidStateError, ValidationError


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    OPEN = "open"
    ACTIVE = "active"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class TicketType(str, Enum):
    """Fare families that drive the refund policy."""

    CHARTER = "charter"
    SYSTEMATIC = "systematic"


class TicketPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RefundStatus(str, Enum):
    """Resolution states of a refund request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSED = "processed"


class HistoryAction(str, Enum):
    """Labels recorded in the ticket history log."""

    CREATED = "created"
    IMPORTED = "imported"
    STATUS_UPDATED = "status_updated"
    CANCELLED = "cancelled"
    REFUND_STATUS_UPDATED = "refund_status_updated"


_EnumT = TypeVar("_EnumT", bound=Enum)


def parse_enum(enum_cls: type[_EnumT], value: object, field_name: str) -> _EnumT:
    """Coerce ``value`` into ``enum_cls`` or raise :class:`ValidationError`."""

    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise ValidationError(f"invalid {field_name}: {value}") from exc


SUPPORT_FLOW_STATUSES: frozenset[TicketStatus] = frozenset(
    {TicketStatus.OPEN, TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED, TicketStatus.CLOSED}
)


class TicketStateMachine:
    """Validate ticket lifecycle transitions.

    Support statuses can be set freely between each other through an explicit
    status update. ``active -> cancelled`` is reserved for the cancel operation
    and ``closed`` and ``cancelled`` have no outgoing edges.
    """

    _TRANSITIONS: Mapping[TicketStatus, frozenset[TicketStatus]] = {
        TicketStatus.OPEN: SUPPORT_FLOW_STATUSES,
        TicketStatus.IN_PROGRESS: SUPPORT_FLOW_STATUSES,
        TicketStatus.RESOLVED: SUPPORT_FLOW_STATUSES,
        TicketStatus.CLOSED: frozenset(),
        TicketStatus.ACTIVE: SUPPORT_FLOW_STATUSES | {TicketStatus.CANCELLED},
        TicketStatus.CANCELLED: frozenset(),
    }

    @classmethod
    def initial_state(cls, *, imported: bool = False) -> TicketStatus:
        return TicketStatus.ACTIVE if imported else TicketStatus.OPEN

    @classmethod
    def can_transition(cls, current: TicketStatus, new: TicketStatus) -> bool:
        return new in cls._TRANSITIONS.get(current, frozenset())

    @classmethod
    def assert_status_update(cls, current: TicketStatus, requested: object) -> TicketStatus:
        """Validate an explicit status update and return the parsed target status."""

        target = parse_enum(TicketStatus, requested, "status")
        if target not in SUPPORT_FLOW_STATUSES:
            raise ValidationError(f"invalid status: {target.value}")
        if not cls.can_transition(current, target):
            raise InvalidStateError(f"ticket status cannot change from {current.value} to {target.value}")
        return target

    @classmethod
    def assert_cancellable(cls, current: TicketStatus) -> None:
        if not cls.can_transition(current, TicketStatus.CANCELLED):
            raise InvalidStateError(f"ticket cannot be cancelled: current status is {current.value}")
