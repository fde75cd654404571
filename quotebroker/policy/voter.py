"""
Quote eligibility policy.

Answers "can actor A perform action X on quote Q (in context of request R)?"
Pure computation: no side effects, no lookups. The service layer resolves
ids into snapshots; the state machine calls back in here before every
transition.

Evaluation order:
1. Unknown action or wrong subject type -> ABSTAIN (policy does not apply)
2. No actor -> DENIED
3. Admin -> GRANTED (single short-circuit, no rule is consulted)
4. Role lacks the capability -> DENIED
5. Per-action rule -> GRANTED or DENIED with the first failed precondition
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from quotebroker.lib.clock import as_utc, utcnow
from quotebroker.lib.errors import PolicyDenied
from quotebroker.models import (
    Actor,
    Quote,
    QuoteStatus,
    RequestStatus,
    Role,
    ServiceRequest,
)

logger = logging.getLogger(__name__)


class Action(Enum):
    VIEW = "view"
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"
    ACCEPT = "accept"
    REJECT = "reject"
    WITHDRAW = "withdraw"
    VIEW_LIST = "view_list"
    COMPARE = "compare"
    NEGOTIATE = "negotiate"


class Vote(Enum):
    GRANTED = "granted"
    DENIED = "denied"
    ABSTAIN = "abstain"


# Denial reasons
NOT_AUTHENTICATED = "not authenticated"
ROLE_NOT_PERMITTED = "role not permitted"
NOT_OWNER = "not owner"
PROVIDER_INACTIVE = "provider inactive"
PROVIDER_NOT_APPROVED = "provider not approved"
REQUEST_NOT_OPEN = "request not open"
REQUEST_EXPIRED = "request expired"
ALREADY_QUOTED = "already quoted"
CATEGORY_NOT_OFFERED = "category not offered"
BUDGET_EXCEEDED = "budget exceeded"
QUOTE_NOT_PENDING = "quote not pending"
QUOTE_EXPIRED = "expired"
QUOTE_NOT_DELETABLE = "quote not deletable in this status"
HAS_BOOKING = "quote has a booking"
SIBLING_ACCEPTED = "another quote already accepted"
NOT_ENOUGH_QUOTES = "fewer than two quotes"
NO_PARENT_REQUEST = "quote has no parent request"

DEFAULT_BUDGET_TOLERANCE = 1.5

DELETABLE_STATUSES = frozenset({QuoteStatus.PENDING, QuoteStatus.REJECTED, QuoteStatus.EXPIRED})

# Which actions a role may attempt at all. Ownership and state are checked
# by the per-action rules afterwards. ADMIN never reaches this table.
ROLE_CAPABILITIES: dict[Role, frozenset[Action]] = {
    Role.CLIENT: frozenset({
        Action.VIEW,
        Action.ACCEPT,
        Action.REJECT,
        Action.VIEW_LIST,
        Action.COMPARE,
        Action.NEGOTIATE,
    }),
    Role.PROVIDER: frozenset({
        Action.VIEW,
        Action.CREATE,
        Action.EDIT,
        Action.DELETE,
        Action.WITHDRAW,
        Action.VIEW_LIST,
        Action.NEGOTIATE,
    }),
    Role.ADMIN: frozenset(Action),
    Role.SYSTEM: frozenset(),
}

REQUEST_SUBJECT_ACTIONS = frozenset({Action.VIEW_LIST, Action.COMPARE})


@dataclass(frozen=True)
class Decision:
    """Outcome of a policy evaluation."""
    vote: Vote
    action: str
    reason: str = ""

    @property
    def allowed(self) -> bool:
        return self.vote is Vote.GRANTED

    @property
    def applicable(self) -> bool:
        return self.vote is not Vote.ABSTAIN

    def raise_for_denial(self) -> None:
        """Raise PolicyDenied unless the decision granted the action."""
        if not self.allowed:
            raise PolicyDenied(self.action, self.reason, applicable=self.applicable)


def parse_action(action) -> Optional[Action]:
    """Parse an Action or its string value. Returns None if unknown."""
    if isinstance(action, Action):
        return action
    for candidate in Action:
        if candidate.value == action:
            return candidate
    return None


def supports(action: Optional[Action], quote: Optional[Quote], request: Optional[ServiceRequest]) -> bool:
    """Whether the policy covers this action/subject combination."""
    if action is None:
        return False
    if action is Action.CREATE:
        return quote is None
    if action in REQUEST_SUBJECT_ACTIONS:
        return request is not None and quote is None
    return quote is not None


def decide(
    action,
    actor: Optional[Actor],
    quote: Optional[Quote] = None,
    request: Optional[ServiceRequest] = None,
    now: Optional[datetime] = None,
    amount: Optional[Decimal] = None,
    budget_tolerance: float = DEFAULT_BUDGET_TOLERANCE,
) -> Decision:
    """Decide whether actor may perform action on the subject.

    Args:
        action: Action (or its string value)
        actor: Acting user; None means unauthenticated
        quote: Subject quote for quote-level actions
        request: Parent request (quote-level actions) or the subject itself
            (CREATE, VIEW_LIST, COMPARE). For CREATE it may be None, in which
            case only the provider's own standing is checked.
        now: Current instant for validity checks (defaults to UTC now; naive is taken as UTC)
        amount: Proposed amount for CREATE, checked against the budget cap
        budget_tolerance: Multiple of the budget a CREATE may reach
    """
    parsed = parse_action(action)
    label = parsed.value if parsed else str(action)

    if not supports(parsed, quote, request):
        return Decision(Vote.ABSTAIN, label, "unsupported action or subject")

    if actor is None:
        return Decision(Vote.DENIED, label, NOT_AUTHENTICATED)

    if actor.role is Role.ADMIN:
        return Decision(Vote.GRANTED, label)

    if parsed not in ROLE_CAPABILITIES.get(actor.role, frozenset()):
        return _deny(label, actor, ROLE_NOT_PERMITTED)

    now = as_utc(now) or utcnow()

    if parsed is Action.CREATE:
        reason = _create_denial(actor, request, now, amount, budget_tolerance)
    elif parsed is Action.VIEW_LIST:
        reason = _view_list_denial(actor, request)
    elif parsed is Action.COMPARE:
        reason = _compare_denial(actor, request)
    else:
        reason = _QUOTE_RULES[parsed](actor, quote, request, now)

    if reason:
        return _deny(label, actor, reason)
    return Decision(Vote.GRANTED, label)


def _deny(label: str, actor: Actor, reason: str) -> Decision:
    logger.info(f"[POLICY] {label} denied for {actor.role.value} {actor.id}: {reason}")
    return Decision(Vote.DENIED, label, reason)


def _owns_request(actor: Actor, request: Optional[ServiceRequest]) -> bool:
    return request is not None and actor.is_same(request.client_id)


def _view_denial(actor, quote, request, now):
    if actor.is_same(quote.provider_id) or _owns_request(actor, request):
        return None
    return NOT_OWNER


def _create_denial(actor, request, now, amount, budget_tolerance):
    if actor.role is not Role.PROVIDER:
        return ROLE_NOT_PERMITTED
    if not actor.active:
        return PROVIDER_INACTIVE
    if not actor.approved:
        return PROVIDER_NOT_APPROVED
    if request is None:
        return None

    if request.status is not RequestStatus.OPEN:
        return REQUEST_NOT_OPEN
    if request.quote_by_provider(actor.id) is not None:
        return ALREADY_QUOTED
    if request.category and request.category not in actor.service_categories:
        return CATEGORY_NOT_OFFERED
    if request.is_past_expiry(now):
        return REQUEST_EXPIRED
    if amount is not None and request.budget:
        cap = Decimal(str(request.budget)) * Decimal(str(budget_tolerance))
        if Decimal(str(amount)) > cap:
            return BUDGET_EXCEEDED
    return None


def _edit_denial(actor, quote, request, now):
    if not actor.is_same(quote.provider_id):
        return NOT_OWNER
    if quote.status is not QuoteStatus.PENDING:
        return QUOTE_NOT_PENDING
    if quote.is_past_validity(now):
        return QUOTE_EXPIRED
    if request is not None and request.status is not RequestStatus.OPEN:
        return REQUEST_NOT_OPEN
    return None


def _delete_denial(actor, quote, request, now):
    if not actor.is_same(quote.provider_id):
        return NOT_OWNER
    if quote.status not in DELETABLE_STATUSES:
        return QUOTE_NOT_DELETABLE
    if quote.booking_id:
        return HAS_BOOKING
    return None


def _accept_denial(actor, quote, request, now):
    if request is None:
        return NO_PARENT_REQUEST
    if not _owns_request(actor, request):
        return NOT_OWNER
    if quote.status is not QuoteStatus.PENDING:
        return QUOTE_NOT_PENDING
    if quote.is_past_validity(now):
        return QUOTE_EXPIRED
    if request.status is not RequestStatus.OPEN:
        return REQUEST_NOT_OPEN
    if request.accepted_quote() is not None:
        return SIBLING_ACCEPTED
    return None


def _reject_denial(actor, quote, request, now):
    if request is None:
        return NO_PARENT_REQUEST
    if not _owns_request(actor, request):
        return NOT_OWNER
    if quote.status is not QuoteStatus.PENDING:
        return QUOTE_NOT_PENDING
    if request.status is not RequestStatus.OPEN:
        return REQUEST_NOT_OPEN
    return None


def _withdraw_denial(actor, quote, request, now):
    if not actor.is_same(quote.provider_id):
        return NOT_OWNER
    if quote.status is not QuoteStatus.PENDING:
        return QUOTE_NOT_PENDING
    return None


def _view_list_denial(actor, request):
    if _owns_request(actor, request):
        return None
    if actor.role is Role.PROVIDER and request.quote_by_provider(actor.id) is not None:
        return None
    return NOT_OWNER


def _compare_denial(actor, request):
    if not _owns_request(actor, request):
        return NOT_OWNER
    if len(request.quotes) < 2:
        return NOT_ENOUGH_QUOTES
    return None


def _negotiate_denial(actor, quote, request, now):
    if actor.role is Role.CLIENT:
        if request is None:
            return NO_PARENT_REQUEST
        if not _owns_request(actor, request):
            return NOT_OWNER
        if request.status is not RequestStatus.OPEN:
            return REQUEST_NOT_OPEN
        if quote.status is not QuoteStatus.PENDING:
            return QUOTE_NOT_PENDING
        if quote.is_past_validity(now):
            return QUOTE_EXPIRED
        return None

    if not actor.is_same(quote.provider_id):
        return NOT_OWNER
    if quote.status is not QuoteStatus.PENDING:
        return QUOTE_NOT_PENDING
    return None


_QUOTE_RULES = {
    Action.VIEW: _view_denial,
    Action.EDIT: _edit_denial,
    Action.DELETE: _delete_denial,
    Action.ACCEPT: _accept_denial,
    Action.REJECT: _reject_denial,
    Action.WITHDRAW: _withdraw_denial,
    Action.NEGOTIATE: _negotiate_denial,
}
