"""
Expiration sweeper.

Finds pending quotes that have gone stale (see expiry.py) and expires them
through the regular state machine with the system actor. Meant to run
periodically or on demand; safe to run alongside user transitions because
it takes the same per-request lock and re-reads under it.

One bad record never aborts the batch: each failure, whatever its type,
is logged, recorded in the report and the sweep moves on. on_transition is
called only for expirations that were saved.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from quotebroker.lib.config import BrokerConfig
from quotebroker.lib.errors import BrokerError, StaleState
from quotebroker.lib.locking import request_lock
from quotebroker.models import SYSTEM_ACTOR, Quote, QuoteStatus, ServiceRequest
from quotebroker.workflow.expiry import should_auto_expire
from quotebroker.workflow.state_machine import transition

logger = logging.getLogger(__name__)


@dataclass
class SweepFailure:
    """A quote the sweeper could not process."""
    quote_id: str
    request_id: str
    kind: str  # BrokerError.kind, or "error" for anything else
    message: str


@dataclass
class SweepReport:
    """Outcome of one sweep."""
    scanned: int = 0
    expired: list[str] = field(default_factory=list)  # Quote ids
    failures: list[SweepFailure] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.expired)


def _group_by_request(quotes: list[Quote]) -> dict[str, list[Quote]]:
    grouped: dict[str, list[Quote]] = {}
    for quote in quotes:
        grouped.setdefault(quote.request_id, []).append(quote)
    return grouped


class ExpirationSweeper:
    """Expires stale pending quotes across all requests."""

    def __init__(self, store, config: BrokerConfig, on_transition: Callable[[str, str, str], None] | None = None):
        self.store = store
        self.config = config
        self.on_transition = on_transition

    def run(self, now: datetime) -> SweepReport:
        """Sweep every pending quote once.

        Quotes are enumerated without a lock, then re-read per request under
        the request lock. A quote whose version moved in between (a user
        accepted or withdrew it first) is reported as stale, not overwritten.
        """
        report = SweepReport()
        candidates = self.store.list_pending_quotes()
        report.scanned = len(candidates)

        for request_id, snapshots in _group_by_request(candidates).items():
            try:
                with request_lock(
                    self.config.lock_dir,
                    request_id,
                    timeout=self.config.lock_timeout,
                    poll_interval=self.config.lock_poll_interval,
                ):
                    request = self.store.get_request(request_id)
                    for snapshot in snapshots:
                        self._sweep_quote(request, snapshot, now, report)
            except BrokerError as e:
                logger.warning(f"[SWEEP] request {request_id} skipped: {e}")
                self._fail_unprocessed(report, request_id, snapshots, e.kind, str(e))
            except Exception as e:
                logger.exception(f"[SWEEP] request {request_id} skipped: {e}")
                self._fail_unprocessed(report, request_id, snapshots, "error", str(e))

        logger.info(
            f"[SWEEP] expired {report.count} of {report.scanned} pending quote(s), "
            f"{len(report.failures)} failure(s)"
        )
        return report

    def _sweep_quote(self, request: ServiceRequest, snapshot: Quote, now: datetime, report: SweepReport) -> None:
        try:
            quote = request.require_quote(snapshot.id)
            if quote.version != snapshot.version:
                raise StaleState("quote", quote.id, snapshot.version, quote.version)
            if quote.status is not QuoteStatus.PENDING or not should_auto_expire(quote, request, now):
                return

            result = transition(quote, QuoteStatus.EXPIRED, SYSTEM_ACTOR, now, request)
            self.store.save_all(result.mutated_quotes)
            report.expired.append(quote.id)
        except BrokerError as e:
            logger.warning(f"[SWEEP] {snapshot.id}: {e}")
            report.failures.append(SweepFailure(snapshot.id, request.id, e.kind, str(e)))
            return
        except Exception as e:
            logger.exception(f"[SWEEP] {snapshot.id}: {e}")
            report.failures.append(SweepFailure(snapshot.id, request.id, "error", str(e)))
            return

        result.notify(self.on_transition)

    @staticmethod
    def _fail_unprocessed(report: SweepReport, request_id: str, snapshots: list[Quote], kind: str, message: str) -> None:
        done = {f.quote_id for f in report.failures}
        for snapshot in snapshots:
            if snapshot.id not in report.expired and snapshot.id not in done:
                report.failures.append(SweepFailure(snapshot.id, request_id, kind, message))
