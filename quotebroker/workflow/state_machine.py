"""Quote lifecycle transitions with policy re-validation and cascades.

Wraps the FSM in fsm.py with the rules that span more than one quote:
- transition() re-checks policy for the action the target implies
- accepting a quote closes its request and rejects every pending sibling
- expiring a quote requires the auto-expiration predicate to hold

Usage:
    from quotebroker.workflow.state_machine import transition

    result = transition(quote, QuoteStatus.ACCEPTED, client, now, request)
    store.save_all(result.mutated_quotes, result.request)
    result.notify(on_transition)

The caller must hold the request's lock (see lib/locking.py) for the whole
read-transition-save sequence.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from transitions import MachineError

from quotebroker.lib.constants import REASON_SIBLING_ACCEPTED
from quotebroker.lib.clock import as_utc
from quotebroker.lib.errors import BrokerError, NotFound
from quotebroker.lib.validate import ValidationError
from quotebroker.models import (
    Actor,
    Quote,
    QuoteStatus,
    RequestStatus,
    ServiceRequest,
)
from quotebroker.policy.voter import Action, decide
from quotebroker.workflow.expiry import should_auto_expire
from quotebroker.workflow.fsm import QuoteFSM, TRIGGER_FOR

logger = logging.getLogger(__name__)


# Policy action implied by each user-reachable target state.
# EXPIRED is absent: it is system-driven and guarded by the expiry predicate.
ACTION_FOR = {
    QuoteStatus.ACCEPTED: Action.ACCEPT,
    QuoteStatus.REJECTED: Action.REJECT,
    QuoteStatus.WITHDRAWN: Action.WITHDRAW,
}

# Statuses a request may move to when one of its quotes is accepted
ACCEPT_REQUEST_STATUSES = (RequestStatus.IN_NEGOTIATION, RequestStatus.COMPLETED)


class InvalidTransition(BrokerError):
    """Raised when attempting an invalid state transition."""

    kind = "invalid_transition"

    def __init__(self, from_state: str, to_state: str, quote_id: str = "", reason: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        self.quote_id = quote_id
        self.reason = reason
        super().__init__(
            f"Invalid transition: {from_state} -> {to_state}"
            + (f" (quote: {quote_id})" if quote_id else "")
            + (f": {reason}" if reason else "")
        )


@dataclass
class TransitionResult:
    """Every entity one transition call mutated.

    Callers persist all of them together: the quote, each cascaded
    sibling, and the request when its status changed. Status changes are
    recorded in `events` and only reported through notify() once saved.
    """
    quote: Quote
    request: ServiceRequest
    from_status: QuoteStatus
    cascaded: list[Quote] = field(default_factory=list)
    request_changed: bool = False
    events: list[tuple[str, str, str]] = field(default_factory=list)  # (from, to, quote_id)

    @property
    def mutated_quotes(self) -> list[Quote]:
        return [self.quote, *self.cascaded]

    def notify(self, callback: Callable[[str, str, str], None] | None) -> None:
        """Report each recorded status change to callback.

        Call only after every mutated entity is saved. A failing callback is
        logged and the remaining events are still delivered.
        """
        if callback is None:
            return
        for from_state, to_state, quote_id in self.events:
            try:
                callback(from_state, to_state, quote_id)
            except Exception as e:
                logger.warning(f"[QUOTE] on_transition failed for {quote_id} ({from_state} -> {to_state}): {e}")


def parse_status(status_str) -> QuoteStatus | None:
    """Parse a status string (or QuoteStatus) into QuoteStatus.

    Returns None if status is unknown.
    """
    if isinstance(status_str, QuoteStatus):
        return status_str
    if status_str is None:
        return None
    for status in QuoteStatus:
        if status.value == status_str:
            return status
    return None


def can_transition(quote: Quote, to_state: QuoteStatus) -> bool:
    """Structural check only: is there an FSM edge from the quote's state?

    Does not consult policy or the expiry predicate.
    """
    return (quote.status.value, to_state.value) in TRIGGER_FOR


def _attach(quote: Quote, request: ServiceRequest) -> Quote:
    """Make the request's quote list hold this exact quote object.

    Callers may pass a quote loaded separately from its request; cascades
    and exclusivity checks must see one consistent set of snapshots.
    """
    if quote.request_id != request.id:
        raise ValidationError(
            "transition", f"Quote {quote.id} belongs to request {quote.request_id}, not {request.id}", "request"
        )
    for i, existing in enumerate(request.quotes):
        if existing.id == quote.id:
            request.quotes[i] = quote
            return quote
    raise NotFound("quote", quote.id)


def _parse_accept_request_status(request_status) -> RequestStatus:
    value = request_status.value if isinstance(request_status, RequestStatus) else request_status
    for status in ACCEPT_REQUEST_STATUSES:
        if status.value == value:
            return status
    raise ValidationError(
        "transition",
        f"Request cannot move to {value!r} on accept; expected one of "
        + ", ".join(s.value for s in ACCEPT_REQUEST_STATUSES),
        "request_status",
    )


def transition(
    quote: Quote,
    to_state,
    actor: Optional[Actor],
    now: datetime,
    request: ServiceRequest,
    request_status=RequestStatus.IN_NEGOTIATION,
    reason: str | None = None,
) -> TransitionResult:
    """Move a quote to a terminal state, applying side effects.

    Args:
        quote: Quote to transition (mutated in place)
        to_state: Target QuoteStatus (or its string value)
        actor: Acting user; ignored for the expired target
        now: Current instant, stamped on every mutated quote (naive is taken as UTC)
        request: Parent request with its full quote list (mutated in place)
        request_status: Request status to set on accept (in_negotiation or completed)
        reason: Optional rejection/withdrawal reason

    Returns:
        TransitionResult listing the quote, cascaded siblings, request and
        the status changes to report once they are saved

    Raises:
        InvalidTransition: Unknown target, self-transition, terminal source,
            a second accept on the request, or an expire on a fresh quote
        PolicyDenied: The actor may not perform the implied action
        ValidationError: request_status is not a status a request may take on accept
        ValidationError: The quote belongs to another request
        NotFound: The quote is not in the request's quote list
    """
    now = as_utc(now)
    target = parse_status(to_state)
    current = quote.status.value
    if target is None:
        raise InvalidTransition(current, str(to_state), quote.id, "unknown status")

    if current == target.value:
        raise InvalidTransition(current, target.value, quote.id, "already in this state")

    trigger = TRIGGER_FOR.get((current, target.value))
    if trigger is None:
        raise InvalidTransition(current, target.value, quote.id, "no transition from this state")

    quote = _attach(quote, request)

    if target is QuoteStatus.EXPIRED:
        if not should_auto_expire(quote, request, now):
            raise InvalidTransition(current, target.value, quote.id, "quote is not stale")
    else:
        decide(ACTION_FOR[target], actor, quote=quote, request=request, now=now).raise_for_denial()

    new_request_status = None
    if target is QuoteStatus.ACCEPTED:
        new_request_status = _parse_accept_request_status(request_status)
        # Holds even when policy was bypassed by an admin
        already = request.accepted_quote()
        if already is not None:
            raise InvalidTransition(
                current, target.value, quote.id,
                f"request {request.id} already accepted quote {already.id}",
            )

    events: list[tuple[str, str, str]] = []

    def record(from_state, to_state, quote_id):
        events.append((from_state, to_state, quote_id))

    fsm = QuoteFSM(quote, on_transition=record)
    try:
        getattr(fsm, trigger)(now=now, reason=reason)
    except MachineError as e:
        raise InvalidTransition(current, target.value, quote.id) from e

    result = TransitionResult(quote=quote, request=request, from_status=QuoteStatus(current), events=events)

    if new_request_status is not None:
        request.status = new_request_status
        result.request_changed = True
        for sibling in request.siblings_of(quote.id):
            if sibling.status is QuoteStatus.PENDING:
                QuoteFSM(sibling, on_transition=record).reject(
                    now=now, reason=REASON_SIBLING_ACCEPTED
                )
                result.cascaded.append(sibling)
        logger.info(
            f"[QUOTE] {quote.id} accepted; request {request.id} -> {new_request_status.value}, "
            f"{len(result.cascaded)} sibling(s) rejected"
        )

    return result
