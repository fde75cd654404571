"""
Lock management for the quote broker.

Uses flock for per-request locking. Every transition on a request's quotes
runs under that request's lock because an accept reads then writes every
sibling quote. Different requests never contend.

flock locks belong to the open file description, so two threads of the same
process that open the lock file separately exclude each other just like two
processes do.
"""

import fcntl
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path

from quotebroker.lib.constants import ENTITY_ID_PATTERN, MAX_ENTITY_ID_LEN
from quotebroker.lib.errors import BrokerError
from quotebroker.lib.validate import ValidationError

logger = logging.getLogger(__name__)


class LockTimeout(BrokerError):
    """Lock acquisition timed out."""

    kind = "lock_timeout"


def count_locked_requests(lock_dir: Path) -> int:
    """Count how many requests currently have a transition in flight."""
    request_dir = lock_dir / "requests"
    if not request_dir.exists():
        return 0

    count = 0
    for lock_file in request_dir.glob("*.lock"):
        try:
            fd = open(lock_file, 'r')
            try:
                # Try non-blocking exclusive lock
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                # Got lock - means no one else has it, release immediately
                fcntl.flock(fd, fcntl.LOCK_UN)
            except BlockingIOError:
                count += 1
            finally:
                fd.close()
        except OSError:
            pass
    return count


@contextmanager
def _acquire_lock(lock_file: Path, timeout: float, poll_interval: float, lock_name: str):
    """
    Internal helper to acquire a file lock.

    Args:
        lock_file: Path to the lock file
        timeout: Seconds to wait for lock
        poll_interval: Seconds between attempts
        lock_name: Human-readable name for error messages
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = open(lock_file, 'w')
    start = time.monotonic()

    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except BlockingIOError:
            if time.monotonic() - start > timeout:
                fd.close()
                raise LockTimeout(f"Could not acquire {lock_name} within {timeout}s")
            time.sleep(poll_interval)

    try:
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        fd.close()


@contextmanager
def request_lock(lock_dir: Path, request_id: str, timeout: float = 30.0, poll_interval: float = 0.05):
    """
    Acquire per-request lock, yield, release on exit.

    Transitions on different requests run in parallel.
    """
    if not ENTITY_ID_PATTERN.match(request_id) or len(request_id) > MAX_ENTITY_ID_LEN:
        raise ValidationError("request_lock", f"Request id not usable as a lock name: {request_id!r}")

    lock_file = lock_dir / "requests" / f"{request_id}.lock"
    with _acquire_lock(lock_file, timeout, poll_interval, f"lock for request {request_id}"):
        logger.debug(f"[LOCK] acquired {request_id}")
        yield
