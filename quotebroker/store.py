"""
In-memory entity store.

Reference implementation of the persistence contract the broker consumes.
A real deployment passes any object with the same methods (a database-backed
repository, for example); the broker never touches storage directly.

Contract:
- Reads return copies. Two reads of the same record give equal but
  distinct objects, and mutating a copy changes nothing until it is saved.
- Every record has a version. A save must carry the version it was read at;
  anything else raises StaleState. A successful save bumps the version on
  both the stored record and the caller's object.
- save_all() checks every version before writing anything.
- get_request() returns the request with its quotes in submission order.
"""

import copy
import logging
import threading
from typing import Optional

from quotebroker.lib.errors import NotFound, StaleState
from quotebroker.models import Actor, Quote, QuoteStatus, ServiceRequest

logger = logging.getLogger(__name__)


class MemoryStore:
    """Thread-safe dict-backed store for actors, requests and quotes."""

    def __init__(self):
        self._actors: dict[str, Actor] = {}
        self._requests: dict[str, ServiceRequest] = {}
        self._quotes: dict[str, Quote] = {}
        self._quote_order: dict[str, list[str]] = {}  # request_id -> quote ids
        self._mutex = threading.RLock()

    # Seeding (done by the excluded identity/request services in production)

    def add_actor(self, actor: Actor) -> None:
        with self._mutex:
            self._actors[actor.id] = copy.deepcopy(actor)

    def add_request(self, request: ServiceRequest) -> None:
        """Store a request. Quotes listed on it are added in order."""
        with self._mutex:
            if request.id in self._requests:
                raise ValueError(f"Request already exists: {request.id}")
            stored = copy.deepcopy(request)
            stored.quotes = []
            stored.version = max(request.version, 1)
            self._requests[request.id] = stored
            self._quote_order[request.id] = []
            request.version = stored.version
            for quote in request.quotes:
                self.add_quote(quote)

    # Reads

    def get_actor(self, actor_id: str) -> Actor:
        with self._mutex:
            actor = self._actors.get(actor_id)
            if actor is None:
                raise NotFound("actor", actor_id)
            return copy.deepcopy(actor)

    def get_request(self, request_id: str) -> ServiceRequest:
        with self._mutex:
            stored = self._requests.get(request_id)
            if stored is None:
                raise NotFound("request", request_id)
            request = copy.deepcopy(stored)
            request.quotes = [
                copy.deepcopy(self._quotes[quote_id])
                for quote_id in self._quote_order[request_id]
            ]
            return request

    def get_quote(self, quote_id: str) -> Quote:
        with self._mutex:
            quote = self._quotes.get(quote_id)
            if quote is None:
                raise NotFound("quote", quote_id)
            return copy.deepcopy(quote)

    def list_pending_quotes(self) -> list[Quote]:
        """All pending quotes, grouped by request in submission order."""
        with self._mutex:
            return [
                copy.deepcopy(self._quotes[quote_id])
                for request_id in self._quote_order
                for quote_id in self._quote_order[request_id]
                if self._quotes[quote_id].status is QuoteStatus.PENDING
            ]

    def list_quotes_by_provider(self, provider_id: str) -> list[Quote]:
        with self._mutex:
            return [
                copy.deepcopy(quote)
                for quote in self._quotes.values()
                if quote.provider_id == provider_id
            ]

    # Writes

    def add_quote(self, quote: Quote) -> None:
        with self._mutex:
            if quote.request_id not in self._requests:
                raise NotFound("request", quote.request_id)
            if quote.id in self._quotes:
                raise ValueError(f"Quote already exists: {quote.id}")
            quote.version = max(quote.version, 1)
            self._quotes[quote.id] = copy.deepcopy(quote)
            self._quote_order[quote.request_id].append(quote.id)
            logger.debug(f"[STORE] added quote {quote.id} to request {quote.request_id}")

    def save_quote(self, quote: Quote) -> None:
        self.save_all([quote])

    def save_request(self, request: ServiceRequest) -> None:
        self.save_all([], request)

    def save_all(self, quotes: list[Quote], request: Optional[ServiceRequest] = None) -> None:
        """Save quotes (and optionally their request) atomically."""
        with self._mutex:
            for quote in quotes:
                self._check_version("quote", quote.id, self._quotes.get(quote.id), quote.version)
            if request is not None:
                self._check_version("request", request.id, self._requests.get(request.id), request.version)

            for quote in quotes:
                quote.version += 1
                self._quotes[quote.id] = copy.deepcopy(quote)
            if request is not None:
                request.version += 1
                stored = copy.deepcopy(request)
                stored.quotes = []
                self._requests[request.id] = stored

    def delete_quote(self, quote_id: str, expected_version: Optional[int] = None) -> None:
        with self._mutex:
            stored = self._quotes.get(quote_id)
            if stored is None:
                raise NotFound("quote", quote_id)
            if expected_version is not None:
                self._check_version("quote", quote_id, stored, expected_version)
            del self._quotes[quote_id]
            self._quote_order[stored.request_id].remove(quote_id)
            logger.debug(f"[STORE] deleted quote {quote_id}")

    @staticmethod
    def _check_version(entity: str, entity_id: str, stored, expected: int) -> None:
        if stored is None:
            raise NotFound(entity, entity_id)
        if stored.version != expected:
            raise StaleState(entity, entity_id, expected, stored.version)
