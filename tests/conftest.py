"""Shared fixtures for quote broker tests."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from quotebroker.lib.clock import FixedClock
from quotebroker.lib.config import BrokerConfig
from quotebroker.models import (
    Actor,
    Quote,
    QuoteStatus,
    RequestStatus,
    Role,
    ServiceRequest,
)
from quotebroker.service import QuoteBroker
from quotebroker.store import MemoryStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def client():
    return Actor(id="client-1", role=Role.CLIENT)


@pytest.fixture
def other_client():
    return Actor(id="client-2", role=Role.CLIENT)


@pytest.fixture
def provider():
    return Actor(id="prov-1", role=Role.PROVIDER, service_categories=frozenset({"plumbing"}))


@pytest.fixture
def other_provider():
    return Actor(id="prov-2", role=Role.PROVIDER, service_categories=frozenset({"plumbing", "painting"}))


@pytest.fixture
def third_provider():
    return Actor(id="prov-3", role=Role.PROVIDER, service_categories=frozenset({"plumbing"}))


@pytest.fixture
def admin():
    return Actor(id="admin-1", role=Role.ADMIN)


@pytest.fixture
def make_quote():
    """Factory for pending quotes valid for a week."""
    def _make(quote_id, provider_id="prov-1", request_id="req-1", amount="100", **kwargs):
        kwargs.setdefault("valid_until", NOW + timedelta(days=7))
        kwargs.setdefault("created_at", NOW - timedelta(hours=1))
        return Quote(
            id=quote_id,
            request_id=request_id,
            provider_id=provider_id,
            amount=Decimal(amount),
            **kwargs,
        )
    return _make


@pytest.fixture
def make_request():
    """Factory for open requests owned by client-1."""
    def _make(request_id="req-1", client_id="client-1", quotes=(), **kwargs):
        kwargs.setdefault("category", "plumbing")
        return ServiceRequest(id=request_id, client_id=client_id, quotes=list(quotes), **kwargs)
    return _make


@pytest.fixture
def store(client, other_client, provider, other_provider, third_provider, admin):
    store = MemoryStore()
    for actor in (client, other_client, provider, other_provider, third_provider, admin):
        store.add_actor(actor)
    return store


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def config(tmp_path):
    return BrokerConfig(lock_dir=tmp_path / "locks", lock_timeout=2, lock_poll_interval=0.01)


@pytest.fixture
def broker(store, config, clock):
    return QuoteBroker(store, config=config, clock=clock)


@pytest.fixture
def open_request(store, make_request, make_quote):
    """req-1 (budget 100) with pending quotes q1 (prov-1) and q2 (prov-2)."""
    request = make_request(
        budget=Decimal("100"),
        quotes=[
            make_quote("q1", provider_id="prov-1", amount="120"),
            make_quote("q2", provider_id="prov-2", amount="90"),
        ],
    )
    store.add_request(request)
    return request

