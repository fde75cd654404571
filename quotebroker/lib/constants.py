"""Shared constants for the quote broker."""

import re

# Entity IDs double as lock file names
ENTITY_ID_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$')
MAX_ENTITY_ID_LEN = 64

# Reasons attached to system-driven transitions
REASON_SIBLING_ACCEPTED = "sibling accepted"

# Proposed intervention window
MIN_PROPOSED_LEAD_HOURS = 24
MAX_PROPOSED_HORIZON_DAYS = 90
MIN_PROPOSED_DURATION = 30  # Minutes
MAX_PROPOSED_DURATION = 480
