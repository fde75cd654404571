"""
Error taxonomy for the quote broker.

Every failure the engine reports is a BrokerError subclass with a `kind`
the service layer can map to a response. The engine never retries; callers
re-read and retry on StaleState.

ValidationError lives in validate.py, InvalidTransition in
workflow/state_machine.py and LockTimeout in locking.py. All of them derive
from BrokerError so callers can catch the whole family.
"""

from dataclasses import dataclass


class BrokerError(Exception):
    """Base class for structured engine failures."""
    kind = "error"


@dataclass
class NotFound(BrokerError):
    """A referenced actor, quote or request does not exist."""
    entity: str  # "actor", "quote", "request"
    entity_id: str

    kind = "not_found"

    def __str__(self):
        return f"{self.entity} not found: {self.entity_id}"


@dataclass
class PolicyDenied(BrokerError):
    """Action not permitted for this actor/state combination.

    applicable=False means the policy does not cover the action/subject
    pair at all (as opposed to covering it and saying no).
    """
    action: str
    reason: str
    applicable: bool = True

    kind = "policy_denied"

    def __str__(self):
        if not self.applicable:
            return f"[{self.action}] not applicable: {self.reason}"
        return f"[{self.action}] denied: {self.reason}"


@dataclass
class StaleState(BrokerError):
    """Concurrent modification detected by an optimistic version check."""
    entity: str
    entity_id: str
    expected_version: int
    actual_version: int

    kind = "stale_state"

    def __str__(self):
        return (
            f"Stale {self.entity} {self.entity_id}: expected version "
            f"{self.expected_version}, found {self.actual_version}"
        )
