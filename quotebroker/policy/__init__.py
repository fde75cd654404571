"""Quote eligibility policy.

Callers normally need only decide() and the Action/Decision types:

    from quotebroker.policy import Action, decide

    decision = decide(Action.ACCEPT, client, quote=quote, request=request, now=now)
    if not decision.allowed:
        ...
"""

from quotebroker.policy.voter import (
    Action,
    Decision,
    Vote,
    ROLE_CAPABILITIES,
    decide,
    parse_action,
    supports,
)

__all__ = [
    "Action",
    "Decision",
    "Vote",
    "ROLE_CAPABILITIES",
    "decide",
    "parse_action",
    "supports",
]
