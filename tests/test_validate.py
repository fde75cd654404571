"""Tests for quotebroker.lib.validate module."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from conftest import NOW

from quotebroker.lib.validate import (
    ValidationError,
    check_duration,
    parse_amount,
    parse_instant,
    parse_proposed_date,
    validate,
)


class TestValidate:
    """Schema validation at the payload boundary."""

    def test_valid_submission(self):
        validate({"amount": 120, "description": "Fix the sink"}, "quote_submission")

    def test_missing_amount(self):
        with pytest.raises(ValidationError) as exc_info:
            validate({"description": "No price"}, "quote_submission")
        assert exc_info.value.path == "(root)"
        assert "amount" in exc_info.value.message

    def test_extra_field(self):
        with pytest.raises(ValidationError):
            validate({"amount": 10, "status": "accepted"}, "quote_submission")

    def test_wrong_type_reports_path(self):
        with pytest.raises(ValidationError) as exc_info:
            validate({"amount": 10, "description": 42}, "quote_submission")
        assert exc_info.value.path == "description"
        assert str(exc_info.value).startswith("[quote_submission]")

    def test_empty_edit_rejected(self):
        with pytest.raises(ValidationError):
            validate({}, "quote_edit")

    def test_empty_negotiation_message(self):
        with pytest.raises(ValidationError):
            validate({"message": ""}, "negotiation")

    def test_unknown_schema(self):
        with pytest.raises(ValidationError) as exc_info:
            validate({}, "nonexistent")
        assert "Schema file not found" in str(exc_info.value)


class TestParseAmount:
    """Money parsing and bounds."""

    def test_number_and_string(self):
        assert parse_amount(120, "quote_submission") == Decimal("120")
        assert parse_amount("99.95", "quote_submission") == Decimal("99.95")

    @pytest.mark.parametrize("value", [0, -5, "0.00"])
    def test_non_positive(self, value):
        with pytest.raises(ValidationError) as exc_info:
            parse_amount(value, "quote_submission")
        assert exc_info.value.message == "Amount must be positive"

    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity"])
    def test_not_a_finite_number(self, value):
        with pytest.raises(ValidationError):
            parse_amount(value, "quote_submission")

    def test_bounds(self):
        assert parse_amount(10, "quote_submission", 10, 10000) == Decimal("10")
        with pytest.raises(ValidationError):
            parse_amount("9.99", "quote_submission", 10, 10000)
        with pytest.raises(ValidationError):
            parse_amount(10000.01, "quote_submission", 10, 10000)


class TestParseInstant:
    """Timestamp parsing."""

    def test_zulu_suffix(self):
        assert parse_instant("2026-03-08T12:00:00Z", "quote_submission", "valid_until") == \
            datetime(2026, 3, 8, 12, 0, tzinfo=timezone.utc)

    def test_naive_taken_as_utc(self):
        instant = parse_instant("2026-03-08T12:00:00", "quote_submission", "valid_until")
        assert instant.tzinfo is timezone.utc

    def test_invalid(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_instant("next tuesday", "quote_edit", "valid_until")
        assert exc_info.value.path == "valid_until"


class TestProposedSchedule:
    """Intervention date window and duration bounds."""

    def test_date_at_window_edges(self):
        assert parse_proposed_date("2026-03-02T12:00:00Z", "quote_submission", NOW) == NOW + timedelta(hours=24)
        assert parse_proposed_date("2026-05-30T12:00:00Z", "quote_submission", NOW) == NOW + timedelta(days=90)

    @pytest.mark.parametrize("value,message", [
        ("2026-03-02T11:59:59Z", "at least 24 hours"),
        ("2026-05-30T12:00:01Z", "more than 90 days"),
    ])
    def test_date_outside_window(self, value, message):
        with pytest.raises(ValidationError) as exc_info:
            parse_proposed_date(value, "quote_edit", NOW)
        assert exc_info.value.path == "proposed_date"
        assert message in exc_info.value.message

    def test_unparsable_date(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_proposed_date("soon", "quote_submission", NOW)
        assert exc_info.value.path == "proposed_date"

    def test_duration_bounds(self):
        assert check_duration(30, "quote_submission") == 30
        assert check_duration(480, "quote_submission") == 480

    @pytest.mark.parametrize("value", [29, 481, 0, True, 60.0, "60"])
    def test_duration_rejected(self, value):
        with pytest.raises(ValidationError) as exc_info:
            check_duration(value, "quote_submission")
        assert exc_info.value.path == "proposed_duration"
