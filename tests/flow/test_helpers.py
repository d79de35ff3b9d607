"""Tests for the queue/date/now/today helper namespaces."""

from __future__ import annotations

import datetime

import pytest

from ruleflow.flow.expressions import ExpressionTypeError
from ruleflow.flow.helpers import (
    QUEUE_METRIC_DEFAULTS,
    DateHelper,
    NowHelper,
    QueueHelper,
    TodayHelper,
    build_helpers,
    normalize_weekday,
    parse_date,
    parse_time,
)

REFERENCE = datetime.datetime(2024, 3, 15, 10, 30)


class TestQueueHelper:
    def test_defaults(self):
        helper = QueueHelper({})
        for metric, value in QUEUE_METRIC_DEFAULTS.items():
            assert helper.call(metric, ["AnyQueue"]) == value

    def test_queue_specific_key_wins(self):
        helper = QueueHelper({"queue.QueueDepth(Sales)": "12", "queue.QueueDepth": "3"})
        assert helper.call("QueueDepth", ["Sales"]) == 12
        assert helper.call("QueueDepth", ["Support"]) == 3

    def test_non_numeric_configuration(self):
        helper = QueueHelper({"queue.AgentStaffed": "lots"})
        with pytest.raises(ExpressionTypeError, match="not a number"):
            helper.call("AgentStaffed", [])

    def test_unknown_metric(self):
        with pytest.raises(ExpressionTypeError, match="available: AgentStaffed"):
            QueueHelper({}).call("Abandoned", [])


class TestDateTimeHelpers:
    def test_date_comparisons(self):
        helper = DateHelper(datetime.date(2024, 3, 15))
        assert helper.call("After", ["2024-03-01"]) is True
        assert helper.call("Before", ["2024-03-01"]) is False
        assert helper.call("Equals", ["2024-03-15T08:00:00"]) is True

    def test_now_comparisons(self):
        helper = NowHelper(datetime.time(10, 30))
        assert helper.call("After", ["9:00"]) is True
        assert helper.call("Before", ["17"]) is True

    def test_today_equals_any(self):
        helper = TodayHelper("friday")
        assert helper.call("Equals", ["MON", "Fri"]) is True
        assert helper.call("Equals", ["SAT"]) is False

    def test_today_requires_argument(self):
        with pytest.raises(ExpressionTypeError):
            TodayHelper("MON").call("Equals", [])


class TestParsers:
    def test_parse_date(self):
        assert parse_date(" 2024-01-02 ") == datetime.date(2024, 1, 2)
        with pytest.raises(ExpressionTypeError, match="expected YYYY-MM-DD"):
            parse_date("02/01/2024")

    def test_parse_time(self):
        assert parse_time("9:05") == datetime.time(9, 5)
        assert parse_time("23:59:59") == datetime.time(23, 59, 59)
        with pytest.raises(ExpressionTypeError):
            parse_time("noon")

    def test_normalize_weekday(self):
        assert normalize_weekday("tuesday") == "TUE"
        with pytest.raises(ExpressionTypeError):
            normalize_weekday("Funday")


class TestBuildHelpers:
    def test_reference_fallback(self):
        helpers = build_helpers({}, REFERENCE)
        assert set(helpers) == {"queue", "date", "now", "today"}
        assert helpers["date"].reference == datetime.date(2024, 3, 15)
        assert helpers["now"].reference == datetime.time(10, 30)
        assert helpers["today"].reference == "FRI"

    def test_configuration_pins_values(self):
        helpers = build_helpers(
            {"date": "2025-12-25", "now": "18:00", "today": "SUN"}, REFERENCE
        )
        assert helpers["date"].reference == datetime.date(2025, 12, 25)
        assert helpers["now"].reference == datetime.time(18, 0)
        assert helpers["today"].reference == "SUN"

    def test_configured_date_drives_weekday(self):
        helpers = build_helpers({"date": "2024-03-16"}, REFERENCE)
        assert helpers["today"].reference == "SAT"
