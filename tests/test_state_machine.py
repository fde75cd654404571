"""Tests for quotebroker.workflow.state_machine module."""

from datetime import timedelta

import pytest
from conftest import NOW

from quotebroker.lib.constants import REASON_SIBLING_ACCEPTED
from quotebroker.lib.errors import PolicyDenied
from quotebroker.lib.validate import ValidationError
from quotebroker.models import SYSTEM_ACTOR, QuoteStatus, RequestStatus
from quotebroker.workflow.state_machine import (
    InvalidTransition,
    can_transition,
    parse_status,
    transition,
)


@pytest.fixture
def request_(make_request, make_quote):
    """Open request with three pending quotes."""
    return make_request(quotes=[
        make_quote("q1", provider_id="prov-1"),
        make_quote("q2", provider_id="prov-2"),
        make_quote("q3", provider_id="prov-3"),
    ])


class TestParseStatus:
    """Tests for parse_status function."""

    def test_parse_valid_status(self):
        assert parse_status("pending") is QuoteStatus.PENDING
        assert parse_status(QuoteStatus.EXPIRED) is QuoteStatus.EXPIRED

    def test_parse_invalid_status(self):
        assert parse_status("bogus") is None
        assert parse_status(None) is None


class TestCanTransition:
    """Structural checks only."""

    def test_pending_to_any_terminal(self, make_quote):
        quote = make_quote("q1")
        for target in (QuoteStatus.ACCEPTED, QuoteStatus.REJECTED, QuoteStatus.WITHDRAWN, QuoteStatus.EXPIRED):
            assert can_transition(quote, target)

    def test_no_self_transition(self, make_quote):
        assert not can_transition(make_quote("q1"), QuoteStatus.PENDING)


class TestAccept:
    """Accepting a quote and its cascade."""

    def test_accept_cascades(self, client, request_):
        quote = request_.quotes[0]
        result = transition(quote, QuoteStatus.ACCEPTED, client, NOW, request_)

        assert quote.status is QuoteStatus.ACCEPTED
        assert quote.accepted_at == NOW
        assert request_.status is RequestStatus.IN_NEGOTIATION
        assert result.request_changed
        assert [q.id for q in result.cascaded] == ["q2", "q3"]
        for sibling in result.cascaded:
            assert sibling.status is QuoteStatus.REJECTED
            assert sibling.rejected_at == NOW
            assert sibling.rejection_reason == REASON_SIBLING_ACCEPTED
        assert [q.id for q in result.mutated_quotes] == ["q1", "q2", "q3"]
        assert result.from_status is QuoteStatus.PENDING

    def test_cascade_skips_terminal_siblings(self, client, request_):
        request_.quotes[1].status = QuoteStatus.WITHDRAWN
        result = transition(request_.quotes[0], QuoteStatus.ACCEPTED, client, NOW, request_)
        assert [q.id for q in result.cascaded] == ["q3"]
        assert request_.quotes[1].status is QuoteStatus.WITHDRAWN
        assert request_.quotes[1].rejected_at is None

    def test_accept_to_completed(self, client, request_):
        transition(request_.quotes[0], "accepted", client, NOW, request_, request_status="completed")
        assert request_.status is RequestStatus.COMPLETED

    @pytest.mark.parametrize("request_status", [RequestStatus.CANCELLED, "open", "bogus"])
    def test_accept_with_invalid_request_status(self, client, request_, request_status):
        with pytest.raises(ValidationError) as exc_info:
            transition(request_.quotes[0], QuoteStatus.ACCEPTED, client, NOW, request_,
                       request_status=request_status)
        assert exc_info.value.path == "request_status"
        assert exc_info.value.kind == "validation_error"
        assert request_.quotes[0].status is QuoteStatus.PENDING
        assert request_.status is RequestStatus.OPEN

    def test_provider_cannot_accept(self, provider, request_):
        with pytest.raises(PolicyDenied) as exc_info:
            transition(request_.quotes[0], QuoteStatus.ACCEPTED, provider, NOW, request_)
        assert exc_info.value.reason == "role not permitted"

    def test_expired_validity_denied(self, client, request_):
        quote = request_.quotes[0]
        quote.valid_until = NOW - timedelta(seconds=1)
        with pytest.raises(PolicyDenied) as exc_info:
            transition(quote, QuoteStatus.ACCEPTED, client, NOW, request_)
        assert exc_info.value.reason == "expired"
        assert quote.status is QuoteStatus.PENDING

    def test_admin_cannot_break_exclusivity(self, admin, request_):
        """Admin bypasses policy but never gets a second accepted quote."""
        request_.quotes[1].status = QuoteStatus.ACCEPTED
        with pytest.raises(InvalidTransition) as exc_info:
            transition(request_.quotes[0], QuoteStatus.ACCEPTED, admin, NOW, request_)
        assert "already accepted quote q2" in str(exc_info.value)
        assert request_.quotes[0].status is QuoteStatus.PENDING

    def test_admin_accepts_on_closed_request(self, admin, request_):
        request_.status = RequestStatus.CANCELLED
        transition(request_.quotes[0], QuoteStatus.ACCEPTED, admin, NOW, request_)
        assert request_.quotes[0].status is QuoteStatus.ACCEPTED

    def test_separately_loaded_quote_is_attached(self, client, request_, make_quote):
        detached = make_quote("q1", provider_id="prov-1")
        transition(detached, QuoteStatus.ACCEPTED, client, NOW, request_)
        assert request_.quotes[0] is detached

    def test_quote_from_other_request(self, client, request_, make_quote):
        with pytest.raises(ValidationError):
            transition(make_quote("q1", request_id="req-9"), QuoteStatus.ACCEPTED, client, NOW, request_)

    def test_events_per_quote(self, client, request_):
        result = transition(request_.quotes[0], QuoteStatus.ACCEPTED, client, NOW, request_)
        assert result.events == [
            ("pending", "accepted", "q1"),
            ("pending", "rejected", "q2"),
            ("pending", "rejected", "q3"),
        ]

    def test_notify_delivers_in_order(self, client, request_):
        calls = []
        result = transition(request_.quotes[0], QuoteStatus.ACCEPTED, client, NOW, request_)
        result.notify(lambda f, t, qid: calls.append((qid, t)))
        assert calls == [("q1", "accepted"), ("q2", "rejected"), ("q3", "rejected")]

    def test_failing_callback_is_logged_not_raised(self, client, request_, caplog):
        def explode(from_state, to_state, quote_id):
            raise RuntimeError("listener down")

        result = transition(request_.quotes[0], QuoteStatus.ACCEPTED, client, NOW, request_)
        with caplog.at_level("WARNING", logger="quotebroker.workflow.state_machine"):
            result.notify(explode)
        assert "on_transition failed for q1" in caplog.text
        assert "listener down" in caplog.text

    def test_naive_now_taken_as_utc(self, client, request_):
        result = transition(request_.quotes[0], QuoteStatus.ACCEPTED, client, NOW.replace(tzinfo=None), request_)
        assert result.quote.accepted_at == NOW
        assert result.quote.accepted_at.tzinfo is not None


class TestRejectWithdraw:
    """Single-quote transitions."""

    def test_reject_with_reason(self, client, request_):
        result = transition(request_.quotes[1], QuoteStatus.REJECTED, client, NOW, request_, reason="too slow")
        assert result.quote.rejection_reason == "too slow"
        assert result.cascaded == []
        assert not result.request_changed
        assert request_.status is RequestStatus.OPEN

    def test_withdraw_by_owner(self, provider, request_):
        transition(request_.quotes[0], QuoteStatus.WITHDRAWN, provider, NOW, request_)
        assert request_.quotes[0].withdrawn_at == NOW

    def test_withdraw_by_other_provider(self, other_provider, request_):
        with pytest.raises(PolicyDenied) as exc_info:
            transition(request_.quotes[0], QuoteStatus.WITHDRAWN, other_provider, NOW, request_)
        assert exc_info.value.reason == "not owner"

    def test_unauthenticated(self, request_):
        with pytest.raises(PolicyDenied):
            transition(request_.quotes[0], QuoteStatus.REJECTED, None, NOW, request_)


class TestExpire:
    """System-driven expiration."""

    def test_expire_stale_quote(self, request_):
        quote = request_.quotes[0]
        quote.valid_until = NOW - timedelta(days=1)
        transition(quote, QuoteStatus.EXPIRED, SYSTEM_ACTOR, NOW, request_)
        assert quote.status is QuoteStatus.EXPIRED
        assert quote.expired_at == NOW

    def test_expire_fresh_quote_rejected(self, request_):
        with pytest.raises(InvalidTransition) as exc_info:
            transition(request_.quotes[0], QuoteStatus.EXPIRED, SYSTEM_ACTOR, NOW, request_)
        assert exc_info.value.reason == "quote is not stale"

    def test_expire_on_cancelled_request(self, request_):
        request_.status = RequestStatus.CANCELLED
        transition(request_.quotes[2], QuoteStatus.EXPIRED, SYSTEM_ACTOR, NOW, request_)
        assert request_.quotes[2].status is QuoteStatus.EXPIRED


class TestNoResurrection:
    """Terminal quotes stay terminal whoever asks."""

    @pytest.mark.parametrize("status", [
        QuoteStatus.ACCEPTED, QuoteStatus.REJECTED, QuoteStatus.WITHDRAWN, QuoteStatus.EXPIRED,
    ])
    @pytest.mark.parametrize("target", list(QuoteStatus))
    def test_terminal_source(self, admin, request_, status, target):
        quote = request_.quotes[0]
        quote.status = status
        with pytest.raises(InvalidTransition):
            transition(quote, target, admin, NOW, request_)
        assert quote.status is status

    def test_self_transition(self, admin, request_):
        with pytest.raises(InvalidTransition) as exc_info:
            transition(request_.quotes[0], QuoteStatus.PENDING, admin, NOW, request_)
        assert exc_info.value.reason == "already in this state"

    def test_unknown_target(self, admin, request_):
        with pytest.raises(InvalidTransition) as exc_info:
            transition(request_.quotes[0], "approved", admin, NOW, request_)
        assert exc_info.value.reason == "unknown status"

    def test_retry_after_accept_keeps_timestamp(self, client, request_):
        quote = request_.quotes[0]
        transition(quote, QuoteStatus.ACCEPTED, client, NOW, request_)
        with pytest.raises(InvalidTransition):
            transition(quote, QuoteStatus.ACCEPTED, client, NOW + timedelta(minutes=5), request_)
        assert quote.accepted_at == NOW
