"""Engine settings read from the process environment.

The CLI loads ``.env`` and ``.env.local`` with python-dotenv before
calling :meth:`EngineSettings.from_env`, so either source works.

Variables:

- ``RULEFLOW_MAX_STEPS``: global step limit per simulation (default 1000)
- ``RULEFLOW_REFERENCE_TIME``: ISO datetime pinning the date/time helpers
- ``RULEFLOW_LOG_LEVEL``: log level name used by the CLI (default WARNING)
"""

from __future__ import annotations

import datetime
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 1000


class SettingsError(Exception):
    """Raised when an environment variable holds an unusable value."""


@dataclass(frozen=True)
class EngineSettings:
    max_steps: int = DEFAULT_MAX_STEPS
    reference_time: datetime.datetime | None = None
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EngineSettings:
        """Build settings from *environ* (defaults to ``os.environ``).

        Raises:
            SettingsError: If a variable is set but cannot be parsed.
        """
        env = os.environ if environ is None else environ

        raw_steps = env.get("RULEFLOW_MAX_STEPS", "").strip()
        max_steps = DEFAULT_MAX_STEPS
        if raw_steps:
            try:
                max_steps = int(raw_steps)
            except ValueError as exc:
                raise SettingsError(
                    f"RULEFLOW_MAX_STEPS must be an integer, got {raw_steps!r}"
                ) from exc
            if max_steps < 1:
                raise SettingsError("RULEFLOW_MAX_STEPS must be at least 1")

        raw_time = env.get("RULEFLOW_REFERENCE_TIME", "").strip()
        reference_time = None
        if raw_time:
            try:
                reference_time = datetime.datetime.fromisoformat(raw_time)
            except ValueError as exc:
                raise SettingsError(
                    f"RULEFLOW_REFERENCE_TIME must be an ISO datetime, got {raw_time!r}"
                ) from exc

        log_level = env.get("RULEFLOW_LOG_LEVEL", "WARNING").strip().upper() or "WARNING"
        if not isinstance(logging.getLevelName(log_level), int):
            raise SettingsError(f"Unknown RULEFLOW_LOG_LEVEL {log_level!r}")

        settings = cls(max_steps=max_steps, reference_time=reference_time, log_level=log_level)
        logger.debug("Loaded engine settings: %s", settings)
        return settings
