"""
Quote broker service.

The in-process API the service layer calls. Resolves ids through the store,
serializes work per request, consults the eligibility policy and drives the
lifecycle state machine. Storage, identity and notification delivery stay
with the caller; notifications hook in through on_transition.

All failures surface as BrokerError subclasses (see lib/errors.py).
"""

import logging
import uuid
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Callable, Optional

from quotebroker.lib import validate
from quotebroker.lib.clock import SystemClock
from quotebroker.lib.config import BrokerConfig, load_broker_config
from quotebroker.lib.errors import PolicyDenied, StaleState
from quotebroker.lib.locking import request_lock
from quotebroker.models import (
    SYSTEM_ACTOR,
    Actor,
    NegotiationOffer,
    Quote,
    QuoteStatus,
    Role,
    SubjectRef,
)
from quotebroker.policy.voter import Action, Decision, Vote, decide
from quotebroker.workflow.expiry import effective_status
from quotebroker.workflow.state_machine import (
    InvalidTransition,
    TransitionResult,
    parse_status,
    transition,
)
from quotebroker.workflow.sweeper import ExpirationSweeper, SweepReport

logger = logging.getLogger(__name__)


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
TOO_MANY_PENDING = "too many pending quotes"
EXPIRE_IS_SYSTEM_ONLY = "expiration is system-only"


@dataclass
class QuoteView:
    """A quote as a reader sees it, with lazily computed expiry."""
    quote: Quote
    effective_status: QuoteStatus


class QuoteBroker:
    """Decides and applies quote lifecycle changes."""

    def __init__(
        self,
        store,
        config: BrokerConfig | None = None,
        clock=None,
        on_transition: Callable[[str, str, str], None] | None = None,
    ):
        """
        Args:
            store: Persistence collaborator (see store.MemoryStore for the contract)
            config: Engine configuration; defaults if omitted
            clock: Object with now() -> aware datetime; UTC wall clock if omitted
            on_transition: Optional callback(from_status, to_status, quote_id),
                called once per quote status change, cascades included
        """
        self.store = store
        self.config = config or BrokerConfig()
        self.clock = clock or SystemClock()
        self.on_transition = on_transition
        self.sweeper = ExpirationSweeper(store, self.config, on_transition=on_transition)

    @classmethod
    def from_config_dir(cls, store, config_dir: Optional[Path], **kwargs) -> "QuoteBroker":
        """Build a broker from broker.yaml in config_dir."""
        return cls(store, config=load_broker_config(config_dir), **kwargs)

    # ─────────────────────────────────────────────────────────────────────
    # Core operations
    # ─────────────────────────────────────────────────────────────────────

    def decide(self, action, actor_id: Optional[str], subject_ref: Optional[SubjectRef] = None,
               amount=None) -> Decision:
        """UI-level permission check. Read-only.

        Raises:
            NotFound: Unknown actor or subject
        """
        actor = self._actor(actor_id)
        quote = request = None

        if subject_ref is not None:
            if subject_ref.kind == "quote":
                quote = self.store.get_quote(subject_ref.id)
                request = self.store.get_request(quote.request_id)
                quote = request.require_quote(quote.id)
            elif subject_ref.kind == "request":
                request = self.store.get_request(subject_ref.id)
            else:
                return Decision(Vote.ABSTAIN, str(getattr(action, "value", action)),
                                f"unsupported subject kind: {subject_ref.kind}")

        return decide(
            action, actor, quote=quote, request=request, now=self.clock.now(),
            amount=amount, budget_tolerance=self.config.budget_tolerance,
        )

    def request_transition(
        self,
        quote_id: str,
        target,
        actor_id: Optional[str],
        request_status=None,
        reason: str | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        """Move a quote to a terminal state and persist every mutated entity.

        Args:
            quote_id: Quote to transition
            target: Target QuoteStatus or its string value
            actor_id: Acting user; "system" for the sweeper identity
            request_status: Request status on accept; config default if omitted
            reason: Optional rejection/withdrawal reason
            expected_version: Quote version the caller read; StaleState on mismatch

        A quote that was pending when looked up but already decided once the
        request lock is held (the sweeper or another user got there first)
        raises StaleState. on_transition runs only after the save succeeds.

        Raises:
            NotFound, PolicyDenied, InvalidTransition, StaleState, ValidationError, LockTimeout
        """
        to_state = parse_status(target)
        if to_state is None:
            raise InvalidTransition("?", str(target), quote_id, "unknown status")

        actor = self._actor(actor_id)
        if to_state is QuoteStatus.EXPIRED and (actor is None or actor.role not in (Role.SYSTEM, Role.ADMIN)):
            raise PolicyDenied("expire", EXPIRE_IS_SYSTEM_ONLY)

        unlocked = self.store.get_quote(quote_id)
        request_id = unlocked.request_id
        with self._lock(request_id):
            request = self.store.get_request(request_id)
            quote = request.require_quote(quote_id)
            if expected_version is not None and quote.version != expected_version:
                raise StaleState("quote", quote_id, expected_version, quote.version)
            # Pending when read, decided by someone else before the lock was ours
            if unlocked.status is QuoteStatus.PENDING and quote.status is not QuoteStatus.PENDING:
                raise StaleState("quote", quote_id, unlocked.version, quote.version)

            result = transition(
                quote,
                to_state,
                actor,
                self.clock.now(),
                request,
                request_status=request_status or self.config.accept_request_status,
                reason=reason,
            )
            self.store.save_all(result.mutated_quotes, request if result.request_changed else None)

        result.notify(self.on_transition)

        logger.info(
            f"[QUOTE] {quote_id}: {result.from_status.value} -> {to_state.value} by {actor.id if actor else '-'}"
        )
        return result

    def sweep_expirations(self, now: datetime | None = None) -> int:
        """Expire every stale pending quote. Returns how many were expired."""
        return self.sweep(now).count

    def sweep(self, now: datetime | None = None) -> SweepReport:
        """Like sweep_expirations() but returns the full report."""
        return self.sweeper.run(now or self.clock.now())

    # ─────────────────────────────────────────────────────────────────────
    # Quote authoring
    # ─────────────────────────────────────────────────────────────────────

    def submit_quote(self, actor_id: str, request_id: str, payload: dict) -> Quote:
        """Create a pending quote on an open request.

        Payload: amount (required), valid_until, proposed_date,
        proposed_duration (minutes), description, conditions.
        valid_until defaults to now + quote_validity_days.
        """
        validate.validate(payload, "quote_submission")
        amount = validate.parse_amount(
            payload["amount"], "quote_submission",
            self.config.min_amount, self.config.max_amount,
        )
        now = self.clock.now()
        valid_until = self._parse_valid_until(payload, "quote_submission", now)
        proposed_date, proposed_duration = self._parse_schedule(payload, "quote_submission", now)

        actor = self._actor(actor_id)
        with self._lock(request_id):
            request = self.store.get_request(request_id)
            decide(
                Action.CREATE, actor, request=request, now=now, amount=amount,
                budget_tolerance=self.config.budget_tolerance,
            ).raise_for_denial()

            if actor.role is Role.PROVIDER:
                pending = [
                    q for q in self.store.list_quotes_by_provider(actor.id)
                    if q.status is QuoteStatus.PENDING
                ]
                if len(pending) >= self.config.max_pending_quotes_per_provider:
                    raise PolicyDenied(Action.CREATE.value, TOO_MANY_PENDING)

            quote = Quote(
                id=f"q-{uuid.uuid4().hex[:12]}",
                request_id=request.id,
                provider_id=actor.id,
                amount=amount,
                valid_until=valid_until or now + timedelta(days=self.config.quote_validity_days),
                description=payload.get("description", ""),
                conditions=payload.get("conditions", ""),
                proposed_date=proposed_date,
                proposed_duration=proposed_duration,
                created_at=now,
            )
            self.store.add_quote(quote)

        logger.info(f"[QUOTE] {quote.id} submitted by {actor.id} on request {request_id} ({amount})")
        return quote

    def edit_quote(self, quote_id: str, actor_id: str, payload: dict) -> Quote:
        """Update a pending quote's terms. The budget cap is not re-checked."""
        validate.validate(payload, "quote_edit")
        now = self.clock.now()
        amount = None
        if "amount" in payload:
            amount = validate.parse_amount(
                payload["amount"], "quote_edit",
                self.config.min_amount, self.config.max_amount,
            )
        valid_until = self._parse_valid_until(payload, "quote_edit", now)
        proposed_date, proposed_duration = self._parse_schedule(payload, "quote_edit", now)

        actor = self._actor(actor_id)
        with self._locked_quote(quote_id) as (quote, request):
            decide(Action.EDIT, actor, quote=quote, request=request, now=now).raise_for_denial()
            if amount is not None:
                quote.amount = amount
            if valid_until is not None:
                quote.valid_until = valid_until
            if proposed_date is not None:
                quote.proposed_date = proposed_date
            if proposed_duration is not None:
                quote.proposed_duration = proposed_duration
            if "description" in payload:
                quote.description = payload["description"]
            if "conditions" in payload:
                quote.conditions = payload["conditions"]
            self.store.save_quote(quote)

        logger.info(f"[QUOTE] {quote_id} edited by {actor.id}")
        return quote

    def delete_quote(self, quote_id: str, actor_id: str) -> None:
        """Remove a quote that never led to a booking."""
        actor = self._actor(actor_id)
        with self._locked_quote(quote_id) as (quote, request):
            decide(Action.DELETE, actor, quote=quote, request=request, now=self.clock.now()).raise_for_denial()
            self.store.delete_quote(quote_id, expected_version=quote.version)

        logger.info(f"[QUOTE] {quote_id} deleted by {actor.id}")

    def negotiate(self, quote_id: str, actor_id: str, payload: dict) -> NegotiationOffer:
        """Append a message (and optional counter-amount) to a quote's thread.

        Never changes the quote's status or amount; the provider edits the
        quote to adopt a counter-offer.
        """
        validate.validate(payload, "negotiation")
        amount = None
        if "amount" in payload:
            amount = validate.parse_amount(payload["amount"], "negotiation")

        now = self.clock.now()
        actor = self._actor(actor_id)
        with self._locked_quote(quote_id) as (quote, request):
            decide(Action.NEGOTIATE, actor, quote=quote, request=request, now=now).raise_for_denial()
            offer = NegotiationOffer(
                actor_id=actor.id,
                role=actor.role,
                message=payload["message"],
                created_at=now,
                amount=amount,
            )
            quote.negotiation.append(offer)
            self.store.save_quote(quote)

        return offer

    # ─────────────────────────────────────────────────────────────────────
    # Read paths
    # ─────────────────────────────────────────────────────────────────────

    def get_quote(self, quote_id: str, actor_id: str) -> QuoteView:
        now = self.clock.now()
        actor = self._actor(actor_id)
        quote = self.store.get_quote(quote_id)
        request = self.store.get_request(quote.request_id)
        quote = request.require_quote(quote_id)
        decide(Action.VIEW, actor, quote=quote, request=request, now=now).raise_for_denial()
        return QuoteView(quote, effective_status(quote, request, now))

    def list_quotes(self, request_id: str, actor_id: str) -> list[QuoteView]:
        """All quotes on a request in submission order."""
        now = self.clock.now()
        actor = self._actor(actor_id)
        request = self.store.get_request(request_id)
        decide(Action.VIEW_LIST, actor, request=request, now=now).raise_for_denial()
        return [QuoteView(q, effective_status(q, request, now)) for q in request.quotes]

    def compare_quotes(self, request_id: str, actor_id: str) -> list[dict]:
        """Side-by-side summary of a request's quotes, cheapest first."""
        now = self.clock.now()
        actor = self._actor(actor_id)
        request = self.store.get_request(request_id)
        decide(Action.COMPARE, actor, request=request, now=now).raise_for_denial()

        comparison = [
            {
                "quote_id": q.id,
                "provider_id": q.provider_id,
                "amount": q.amount,
                "status": effective_status(q, request, now).value,
                "valid_until": q.valid_until.isoformat() if q.valid_until else None,
                "proposed_date": q.proposed_date.isoformat() if q.proposed_date else None,
                "proposed_duration": q.proposed_duration,
                "created_at": q.created_at.isoformat() if q.created_at else None,
                "description": q.description,
                "conditions": q.conditions,
            }
            for q in request.quotes
        ]
        # Stable sort: equal amounts keep submission order
        comparison.sort(key=lambda row: row["amount"])
        return comparison

    def list_provider_quotes(self, provider_id: str, status: Optional[str] = None) -> list[Quote]:
        """A provider's stored quotes across all requests, newest first.

        status filters on the stored status (not the lazily expired one).
        Raises NotFound for an unknown provider and ValidationError for an
        unknown status.
        """
        self.store.get_actor(provider_id)
        wanted = None
        if status is not None:
            wanted = parse_status(status)
            if wanted is None:
                raise validate.ValidationError("list_provider_quotes", f"Unknown quote status: {status!r}", "status")

        quotes = self.store.list_quotes_by_provider(provider_id)
        if wanted is not None:
            quotes = [q for q in quotes if q.status is wanted]
        quotes.sort(key=lambda q: q.created_at or EPOCH, reverse=True)
        return quotes

    def provider_statistics(self, provider_id: str) -> dict:
        """Quote counts, acceptance rate and average accepted amount."""
        quotes = self.store.list_quotes_by_provider(provider_id)
        counts = Counter(q.status for q in quotes)
        total = len(quotes)
        accepted = [q.amount for q in quotes if q.status is QuoteStatus.ACCEPTED]

        return {
            "total": total,
            "by_status": {status.value: counts.get(status, 0) for status in QuoteStatus},
            "acceptance_rate": round(len(accepted) / total * 100, 2) if total else 0,
            "average_accepted_amount": sum(accepted, Decimal(0)) / len(accepted) if accepted else Decimal(0),
        }

    # ─────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────

    def _actor(self, actor_id: Optional[str]) -> Optional[Actor]:
        if actor_id is None:
            return None
        if actor_id == SYSTEM_ACTOR.id:
            return SYSTEM_ACTOR
        return self.store.get_actor(actor_id)

    def _lock(self, request_id: str):
        return request_lock(
            self.config.lock_dir,
            request_id,
            timeout=self.config.lock_timeout,
            poll_interval=self.config.lock_poll_interval,
        )

    @contextmanager
    def _locked_quote(self, quote_id: str):
        """Yield (quote, request) re-read under the request's lock."""
        request_id = self.store.get_quote(quote_id).request_id
        with self._lock(request_id):
            request = self.store.get_request(request_id)
            yield request.require_quote(quote_id), request

    def _parse_valid_until(self, payload: dict, schema_name: str, now: datetime) -> Optional[datetime]:
        if "valid_until" not in payload:
            return None
        valid_until = validate.parse_instant(payload["valid_until"], schema_name, "valid_until")
        if valid_until <= now:
            raise validate.ValidationError(schema_name, "valid_until must be in the future", "valid_until")
        return valid_until

    def _parse_schedule(self, payload: dict, schema_name: str, now: datetime):
        proposed_date = proposed_duration = None
        if "proposed_date" in payload:
            proposed_date = validate.parse_proposed_date(payload["proposed_date"], schema_name, now)
        if "proposed_duration" in payload:
            proposed_duration = validate.check_duration(payload["proposed_duration"], schema_name)
        return proposed_date, proposed_duration
