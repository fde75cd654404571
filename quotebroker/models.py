"""
Entity snapshots consumed by the quote broker.

These are read/write views of records owned by the persistence layer.
The engine mutates status and timestamp fields on them and hands them back
to the store to save; it never creates a ServiceRequest.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from quotebroker.lib.clock import as_utc
from quotebroker.lib.errors import NotFound


class QuoteStatus(Enum):
    """All valid quote states.

    Values match FSM state strings.
    """

    PENDING = "pending"

    # Terminal states
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not QuoteStatus.PENDING


class RequestStatus(Enum):
    """Service request states. Only OPEN accepts quotes and decisions."""

    OPEN = "open"
    IN_NEGOTIATION = "in_negotiation"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Request states that make every remaining pending quote stale
CLOSED_REQUEST_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED})


class Role(Enum):
    """Actor roles. Policy rules switch on this tag."""

    CLIENT = "client"
    PROVIDER = "provider"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass
class Actor:
    """Someone (or something) asking to act on a quote."""
    id: str
    role: Role
    active: bool = True
    approved: bool = True
    service_categories: frozenset[str] = field(default_factory=frozenset)

    def is_same(self, actor_id: Optional[str]) -> bool:
        """Ownership is identity equality on ids, never object identity."""
        return actor_id is not None and self.id == actor_id


SYSTEM_ACTOR = Actor(id="system", role=Role.SYSTEM)


@dataclass
class NegotiationOffer:
    """One message in a quote's negotiation thread."""
    actor_id: str
    role: Role
    message: str
    created_at: datetime
    amount: Optional[Decimal] = None  # Counter-proposal, if any


@dataclass
class Quote:
    """A provider's priced offer against a request."""
    id: str
    request_id: str
    provider_id: str
    amount: Decimal
    status: QuoteStatus = QuoteStatus.PENDING
    valid_until: Optional[datetime] = None
    booking_id: Optional[str] = None
    description: str = ""
    conditions: str = ""
    proposed_date: Optional[datetime] = None  # When the provider would do the work
    proposed_duration: Optional[int] = None  # Minutes
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    withdrawn_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    withdrawal_reason: Optional[str] = None
    negotiation: list[NegotiationOffer] = field(default_factory=list)
    version: int = 0

    def is_past_validity(self, now: datetime) -> bool:
        return self.valid_until is not None and as_utc(self.valid_until) < as_utc(now)


@dataclass
class ServiceRequest:
    """A client's posted need. Owns its quotes in submission order."""
    id: str
    client_id: str
    status: RequestStatus = RequestStatus.OPEN
    category: Optional[str] = None
    budget: Optional[Decimal] = None
    expires_at: Optional[datetime] = None
    quotes: list[Quote] = field(default_factory=list)
    version: int = 0

    def is_past_expiry(self, now: datetime) -> bool:
        return self.expires_at is not None and as_utc(self.expires_at) < as_utc(now)

    def accepted_quote(self) -> Optional[Quote]:
        for quote in self.quotes:
            if quote.status is QuoteStatus.ACCEPTED:
                return quote
        return None

    def siblings_of(self, quote_id: str) -> list[Quote]:
        return [q for q in self.quotes if q.id != quote_id]

    def require_quote(self, quote_id: str) -> Quote:
        """The quote with this id, or NotFound if it left the request."""
        for quote in self.quotes:
            if quote.id == quote_id:
                return quote
        raise NotFound("quote", quote_id)

    def quote_by_provider(self, provider_id: str) -> Optional[Quote]:
        for quote in self.quotes:
            if quote.provider_id == provider_id:
                return quote
        return None


@dataclass(frozen=True)
class SubjectRef:
    """Reference to the entity a decision is about."""
    kind: str  # "quote" or "request"
    id: str
