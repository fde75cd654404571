"""
Auto-expiration rules.

Pure predicates only. Read paths use effective_status() to report a quote
as expired without writing; the sweeper commits the change through the
state machine.
"""

from datetime import datetime
from typing import Optional

from quotebroker.models import (
    CLOSED_REQUEST_STATUSES,
    Quote,
    QuoteStatus,
    ServiceRequest,
)


def should_auto_expire(quote: Quote, request: Optional[ServiceRequest], now: datetime) -> bool:
    """Whether a quote has gone stale.

    A quote goes stale when any of these holds:
    1. Its validity date has passed
    2. Its request is completed or cancelled
    3. Its request's own expiry date has passed
    4. Another quote on the same request has been accepted
    """
    if quote.is_past_validity(now):
        return True

    if request is None:
        return False

    if request.status in CLOSED_REQUEST_STATUSES:
        return True

    if request.is_past_expiry(now):
        return True

    for other in request.siblings_of(quote.id):
        if other.status is QuoteStatus.ACCEPTED:
            return True

    return False


def effective_status(quote: Quote, request: Optional[ServiceRequest], now: datetime) -> QuoteStatus:
    """Status as a reader should see it right now.

    A pending quote that should auto-expire reads as expired even before
    the sweeper has committed it. Terminal states are reported as stored.
    """
    if quote.status is QuoteStatus.PENDING and should_auto_expire(quote, request, now):
        return QuoteStatus.EXPIRED
    return quote.status
