"""Helper namespaces pre-bound into condition expressions.

Four namespaces are available to every condition: ``queue``, ``date``,
``now`` and ``today``.  None of them touch live service state or read
the system clock while an expression is evaluated.  Queue metrics come
from the caller's configuration map (falling back to fixed defaults) and
the date/time helpers compare against a reference instant that is either
configured explicitly or captured once before the run starts.

Configuration keys:

- ``queue.<Metric>(<queue id>)`` or ``queue.<Metric>``: queue metrics
- ``date``: reference date, ISO ``YYYY-MM-DD``
- ``now``: reference time of day, ``HH:MM`` or ``HH:MM:SS``
- ``today``: reference weekday (``MON``, ``Tuesday``, ...)
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Callable, Mapping
from typing import Any

from ruleflow.flow.expressions import ExpressionTypeError
from ruleflow.flow.models import parse_literal

logger = logging.getLogger(__name__)

HELPER_NAMESPACES = ("queue", "date", "now", "today")

QUEUE_METRIC_DEFAULTS: dict[str, float] = {
    "AgentStaffed": 2,
    "QueueDepth": 5,
    "LongestWaitTime": 15,
}

_WEEKDAYS = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")


class HelperNamespace:
    """A fixed set of named methods callable from expressions."""

    name = ""

    def __init__(self) -> None:
        self._methods: dict[str, Callable[..., Any]] = {}

    @property
    def method_names(self) -> list[str]:
        return sorted(self._methods)

    def call(self, method: str, args: list[Any]) -> Any:
        """Invoke *method* with *args*.

        Raises:
            ExpressionTypeError: If the namespace has no such method or the
                arguments are unusable.
        """
        fn = self._methods.get(method)
        if fn is None:
            raise ExpressionTypeError(
                f"{self.name}.{method} is not a function; "
                f"available: {', '.join(self.method_names)}"
            )
        try:
            return fn(*args)
        except (TypeError, ValueError, ArithmeticError) as exc:
            raise ExpressionTypeError(f"{self.name}.{method}() failed: {exc}") from exc

    def __repr__(self) -> str:
        return f"<helper {self.name}>"


class QueueHelper(HelperNamespace):
    """Queue metrics resolved from configuration, never from a live queue."""

    name = "queue"

    def __init__(self, configuration: Mapping[str, Any]) -> None:
        super().__init__()
        self._configuration = configuration
        for metric in QUEUE_METRIC_DEFAULTS:
            self._methods[metric] = self._metric_reader(metric)

    def _metric_reader(self, metric: str) -> Callable[..., float]:
        def read(queue_id: Any = None) -> float:
            return self.metric(metric, queue_id)

        return read

    def metric(self, metric: str, queue_id: Any = None) -> float:
        keys = [f"queue.{metric}"]
        if queue_id is not None:
            keys.insert(0, f"queue.{metric}({queue_id})")
        for key in keys:
            if key in self._configuration:
                raw = self._configuration[key]
                value = parse_literal(raw) if isinstance(raw, str) else raw
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise ExpressionTypeError(
                        f"Configured value for {key!r} is not a number: {raw!r}"
                    )
                return value
        logger.debug("No configuration for queue.%s(%s); using default", metric, queue_id)
        return QUEUE_METRIC_DEFAULTS[metric]


class DateHelper(HelperNamespace):
    name = "date"

    def __init__(self, reference: datetime.date) -> None:
        super().__init__()
        self.reference = reference
        self._methods.update(
            After=lambda value: self.reference > parse_date(value),
            Before=lambda value: self.reference < parse_date(value),
            Equals=lambda value: self.reference == parse_date(value),
        )


class NowHelper(HelperNamespace):
    name = "now"

    def __init__(self, reference: datetime.time) -> None:
        super().__init__()
        self.reference = reference
        self._methods.update(
            After=lambda value: self.reference > parse_time(value),
            Before=lambda value: self.reference < parse_time(value),
        )


class TodayHelper(HelperNamespace):
    name = "today"

    def __init__(self, reference: str) -> None:
        super().__init__()
        self.reference = normalize_weekday(reference)
        self._methods["Equals"] = self._equals

    def _equals(self, *days: Any) -> bool:
        if not days:
            raise ExpressionTypeError("today.Equals expects at least one day")
        return any(normalize_weekday(day) == self.reference for day in days)


def parse_date(value: Any) -> datetime.date:
    """Parse an ISO date (or the date part of an ISO datetime)."""
    text = str(value).strip()
    try:
        return datetime.date.fromisoformat(text[:10])
    except ValueError as exc:
        raise ExpressionTypeError(f"Invalid date {value!r}; expected YYYY-MM-DD") from exc


def parse_time(value: Any) -> datetime.time:
    """Parse ``HH:MM`` or ``HH:MM:SS``."""
    text = str(value).strip()
    if ":" not in text:
        text = f"{text}:00"
    if text.index(":") == 1:
        text = f"0{text}"
    try:
        return datetime.time.fromisoformat(text)
    except ValueError as exc:
        raise ExpressionTypeError(f"Invalid time {value!r}; expected HH:MM") from exc


def normalize_weekday(value: Any) -> str:
    """Normalize ``"monday"``, ``"Mon"`` or ``"MON"`` to ``"MON"``."""
    text = str(value).strip().upper()[:3]
    if text not in _WEEKDAYS:
        raise ExpressionTypeError(f"Invalid weekday {value!r}")
    return text


def build_helpers(
    configuration: Mapping[str, Any],
    reference: datetime.datetime,
) -> dict[str, HelperNamespace]:
    """Create the four helper namespaces for one evaluation scope.

    Args:
        configuration: Caller-supplied configuration map.
        reference: Fallback instant for date/time helpers when the
            configuration does not pin ``date``, ``now`` or ``today``.

    Returns:
        Mapping of namespace name to helper instance.
    """
    ref_date = (
        parse_date(configuration["date"]) if "date" in configuration else reference.date()
    )
    ref_time = (
        parse_time(configuration["now"]) if "now" in configuration else reference.time()
    )
    ref_day = (
        str(configuration["today"])
        if "today" in configuration
        else _WEEKDAYS[ref_date.weekday()]
    )
    return {
        "queue": QueueHelper(configuration),
        "date": DateHelper(ref_date),
        "now": NowHelper(ref_time),
        "today": TodayHelper(ref_day),
    }


HELPER_METHOD_NAMES = frozenset(
    {*QUEUE_METRIC_DEFAULTS, "After", "Before", "Equals"}
)
