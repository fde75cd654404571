"""Quote state machine using transitions library.

Every quote starts pending and ends in exactly one terminal state:

    pending -> accepted | rejected | withdrawn | expired

There are no transitions out of a terminal state and no self-transitions.
This module knows nothing about actors or policy; state_machine.py decides
whether a trigger may fire, this module fires it and stamps the quote.

Usage:
    from quotebroker.workflow.fsm import QuoteFSM

    fsm = QuoteFSM(quote)
    fsm.accept(now=now)
"""

import logging
from typing import Callable

from transitions import Machine

from quotebroker.models import Quote, QuoteStatus

logger = logging.getLogger(__name__)


# State values must match QuoteStatus enum
STATES = [status.value for status in QuoteStatus]

TRANSITIONS = [
    {"trigger": "accept", "source": "pending", "dest": "accepted"},
    {"trigger": "reject", "source": "pending", "dest": "rejected"},
    {"trigger": "withdraw", "source": "pending", "dest": "withdrawn"},
    {"trigger": "expire", "source": "pending", "dest": "expired"},
]

# Timestamp stamped on entry to each terminal state
TIMESTAMP_FIELDS = {
    "accepted": "accepted_at",
    "rejected": "rejected_at",
    "withdrawn": "withdrawn_at",
    "expired": "expired_at",
}

# Free-text reason recorded alongside some terminal states
REASON_FIELDS = {
    "rejected": "rejection_reason",
    "withdrawn": "withdrawal_reason",
}


# Callers name the target status; the machine wants a trigger
TRIGGER_FOR: dict[tuple[str, str], str] = {
    (t["source"], t["dest"]): t["trigger"] for t in TRANSITIONS
}


class QuoteFSM:
    """State machine for one quote's status.

    Wraps the transitions library with quote-specific logic:
    - Takes its initial state from the quote snapshot
    - Writes status, timestamp and reason back onto the quote
    - Logs all transitions
    """

    def __init__(self, quote: Quote, on_transition: Callable[[str, str, str], None] | None = None):
        """Initialize FSM for a quote.

        Args:
            quote: Quote snapshot; mutated in place on every transition
            on_transition: Optional callback(from_state, to_state, quote_id) called after transitions
        """
        self.quote = quote
        self.on_transition = on_transition

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=quote.status.value,
            auto_transitions=False,  # Only explicit transitions
            send_event=True,  # Pass EventData to callbacks
            after_state_change="on_state_change",  # Callback after any transition
        )

    def on_state_change(self, event) -> None:
        """Callback after any state transition.

        Expects `now` (and optionally `reason`) as trigger kwargs.
        Timestamps and reasons are only written when still empty, so
        replaying a transition never moves an existing timestamp.
        """
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name
        now = event.kwargs.get("now")
        reason = event.kwargs.get("reason")

        self.quote.status = QuoteStatus(to_state)

        ts_field = TIMESTAMP_FIELDS.get(to_state)
        if ts_field and now is not None and getattr(self.quote, ts_field) is None:
            setattr(self.quote, ts_field, now)

        reason_field = REASON_FIELDS.get(to_state)
        if reason_field and reason and getattr(self.quote, reason_field) is None:
            setattr(self.quote, reason_field, reason)

        logger.info(f"[FSM] {self.quote.id}: {from_state} -> {to_state} ({trigger})")

        if self.on_transition:
            self.on_transition(from_state, to_state, self.quote.id)
