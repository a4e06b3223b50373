from __future__ import annotations

from typing import Mapping

from .errors import ValidationError
from .state import TicketType

# Flat rate per fare family. Time to departure and airline rules are not modelled.
REFUND_RATES: Mapping[TicketType, float] = {
    TicketType.CHARTER: 0.5,
    TicketType.SYSTEMATIC: 0.8,
}


def calculate_refund_amount(price: float, ticket_type: TicketType | str | None) -> float:
    """Return the refundable share of ``price`` for the given ticket type."""

    try:
        rate = REFUND_RATES[TicketType(ticket_type)]
    except ValueError as exc:
        raise ValidationError(f"invalid ticket type: {ticket_type}") from exc
    return round(float(price) * rate, 2)
