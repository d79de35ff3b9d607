"""Tests for environment-driven engine settings."""

from __future__ import annotations

import datetime

import pytest

from ruleflow.settings import DEFAULT_MAX_STEPS, EngineSettings, SettingsError


class TestFromEnv:
    def test_defaults(self):
        settings = EngineSettings.from_env({})
        assert settings == EngineSettings()
        assert settings.max_steps == DEFAULT_MAX_STEPS
        assert settings.reference_time is None
        assert settings.log_level == "WARNING"

    def test_values(self):
        settings = EngineSettings.from_env(
            {
                "RULEFLOW_MAX_STEPS": "50",
                "RULEFLOW_REFERENCE_TIME": "2024-03-15T10:30:00",
                "RULEFLOW_LOG_LEVEL": "debug",
            }
        )
        assert settings.max_steps == 50
        assert settings.reference_time == datetime.datetime(2024, 3, 15, 10, 30)
        assert settings.log_level == "DEBUG"

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("RULEFLOW_MAX_STEPS", "7")
        assert EngineSettings.from_env().max_steps == 7

    @pytest.mark.parametrize(
        "env",
        [
            {"RULEFLOW_MAX_STEPS": "many"},
            {"RULEFLOW_MAX_STEPS": "0"},
            {"RULEFLOW_REFERENCE_TIME": "yesterday"},
            {"RULEFLOW_LOG_LEVEL": "LOUD"},
        ],
    )
    def test_invalid(self, env):
        with pytest.raises(SettingsError):
            EngineSettings.from_env(env)
