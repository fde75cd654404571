"""
Schema validation for quote broker inputs.

Enforces JSON Schema validation at every data boundary: quote payloads
coming from the service layer and the broker.yaml configuration.
Fails hard with clear errors when data doesn't match schema.
"""

import json
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path

import jsonschema

from quotebroker.lib.clock import as_utc
from quotebroker.lib.constants import (
    MAX_PROPOSED_DURATION,
    MAX_PROPOSED_HORIZON_DAYS,
    MIN_PROPOSED_DURATION,
    MIN_PROPOSED_LEAD_HOURS,
)
from quotebroker.lib.errors import BrokerError


class ValidationError(BrokerError):
    """Schema validation failed."""

    kind = "validation_error"

    def __init__(self, schema_name: str, message: str, path: str = None):
        self.schema_name = schema_name
        self.message = message
        self.path = path
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


# Cache loaded schemas
_schema_cache: dict[str, dict] = {}


def _get_schemas_dir() -> Path:
    """Get path to schemas directory."""
    return Path(__file__).parent / "schemas"


def _load_schema(schema_name: str) -> dict:
    """Load schema by name, with caching."""
    if schema_name not in _schema_cache:
        schema_path = _get_schemas_dir() / f"{schema_name}.schema.json"
        if not schema_path.exists():
            raise ValidationError(schema_name, f"Schema file not found: {schema_path}")
        _schema_cache[schema_name] = json.loads(schema_path.read_text())
    return _schema_cache[schema_name]


def validate(data: dict, schema_name: str) -> None:
    """
    Validate data against named schema.

    Args:
        data: Dictionary to validate
        schema_name: Schema name (e.g., "quote_submission", "broker_config")

    Raises:
        ValidationError: If validation fails
    """
    schema = _load_schema(schema_name)

    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as e:
        path = ".".join(str(p) for p in e.absolute_path) if e.absolute_path else "(root)"
        raise ValidationError(schema_name, e.message, path) from None


def parse_amount(value, schema_name: str, min_amount=None, max_amount=None) -> Decimal:
    """Convert a payload amount to Decimal and enforce bounds.

    Non-positive amounts are always rejected; min/max come from config.
    """
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(schema_name, f"Invalid amount: {value!r}", "amount") from None

    if not amount.is_finite() or amount <= 0:
        raise ValidationError(schema_name, "Amount must be positive", "amount")
    if min_amount is not None and amount < Decimal(str(min_amount)):
        raise ValidationError(schema_name, f"Amount must be at least {min_amount}", "amount")
    if max_amount is not None and amount > Decimal(str(max_amount)):
        raise ValidationError(schema_name, f"Amount cannot exceed {max_amount}", "amount")
    return amount


def parse_instant(value, schema_name: str, field_name: str) -> datetime:
    """Parse an ISO 8601 timestamp. Naive values are taken as UTC."""
    if isinstance(value, datetime):
        instant = value
    else:
        try:
            instant = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(
                schema_name, f"Invalid timestamp: {value!r}", field_name
            ) from None
    return as_utc(instant)


def parse_proposed_date(value, schema_name: str, now: datetime) -> datetime:
    """Parse the proposed intervention date.

    Must fall between MIN_PROPOSED_LEAD_HOURS and MAX_PROPOSED_HORIZON_DAYS
    from now.
    """
    proposed = parse_instant(value, schema_name, "proposed_date")
    if proposed < now + timedelta(hours=MIN_PROPOSED_LEAD_HOURS):
        raise ValidationError(
            schema_name,
            f"Proposed date must be at least {MIN_PROPOSED_LEAD_HOURS} hours ahead",
            "proposed_date",
        )
    if proposed > now + timedelta(days=MAX_PROPOSED_HORIZON_DAYS):
        raise ValidationError(
            schema_name,
            f"Proposed date cannot be more than {MAX_PROPOSED_HORIZON_DAYS} days ahead",
            "proposed_date",
        )
    return proposed


def check_duration(value, schema_name: str) -> int:
    """Validate a proposed duration in minutes."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(schema_name, f"Invalid duration: {value!r}", "proposed_duration")
    if value < MIN_PROPOSED_DURATION:
        raise ValidationError(
            schema_name, f"Duration must be at least {MIN_PROPOSED_DURATION} minutes", "proposed_duration"
        )
    if value > MAX_PROPOSED_DURATION:
        raise ValidationError(
            schema_name, f"Duration cannot exceed {MAX_PROPOSED_DURATION} minutes", "proposed_duration"
        )
    return value
