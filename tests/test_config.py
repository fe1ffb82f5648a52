"""Tests for configuration loading."""

import json

import pytest
from pydantic import ValidationError

from stagegate.config import StagegateSettings, get_settings
from stagegate.events.emitter import EventSinkType


@pytest.fixture
def base_env(monkeypatch):
    """Only the required variable set."""
    monkeypatch.setenv("STAGEGATE_LLM_URL", "http://vllm:8000/v1")
    for name in (
        "STAGEGATE_DATABASE_URL",
        "STAGEGATE_QUALITY_GATE_CHECKS",
        "STAGEGATE_MAX_STAGE_RETRIES",
        "STAGEGATE_MAX_REGENERATIONS",
        "STAGEGATE_LOG_LEVEL",
        "STAGEGATE_EVENT_SINKS",
        "STAGEGATE_PORT",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestStagegateSettings:
    def test_defaults(self, base_env):
        settings = get_settings()

        assert settings.llm_url == "http://vllm:8000/v1"
        assert settings.max_stage_retries == 2
        assert settings.max_regenerations == 3
        assert [c.name for c in settings.quality_gate_checks] == [
            "format",
            "lint",
            "design",
            "analysis",
        ]
        assert settings.database_url is None
        assert settings.event_sinks == [EventSinkType.LOGGING, EventSinkType.METRICS]
        assert settings.port == 8080

    def test_llm_url_required(self, monkeypatch):
        monkeypatch.delenv("STAGEGATE_LLM_URL", raising=False)
        with pytest.raises(ValidationError):
            StagegateSettings()

    def test_llm_url_must_be_http(self, base_env):
        base_env.setenv("STAGEGATE_LLM_URL", "vllm:8000")
        with pytest.raises(ValidationError, match="http"):
            StagegateSettings()

    def test_budgets_from_env(self, base_env):
        base_env.setenv("STAGEGATE_MAX_STAGE_RETRIES", "0")
        base_env.setenv("STAGEGATE_MAX_REGENERATIONS", "5")

        settings = StagegateSettings()

        assert settings.max_stage_retries == 0
        assert settings.max_regenerations == 5

    def test_negative_budget_rejected(self, base_env):
        base_env.setenv("STAGEGATE_MAX_STAGE_RETRIES", "-1")
        with pytest.raises(ValidationError, match="negative"):
            StagegateSettings()

    def test_quality_gate_checks_from_json(self, base_env):
        checks = [
            {"name": "lint", "command": "ruff check {files}"},
            {"name": "tests", "command": "pytest -q"},
        ]
        base_env.setenv("STAGEGATE_QUALITY_GATE_CHECKS", json.dumps(checks))

        settings = StagegateSettings()

        assert [c.name for c in settings.quality_gate_checks] == ["lint", "tests"]
        assert settings.quality_gate_checks[0].render(["a.py"]) == ["ruff", "check", "a.py"]

    def test_duplicate_check_names_rejected(self, base_env):
        checks = [
            {"name": "lint", "command": "ruff check {files}"},
            {"name": "lint", "command": "flake8 {files}"},
        ]
        base_env.setenv("STAGEGATE_QUALITY_GATE_CHECKS", json.dumps(checks))
        with pytest.raises(ValidationError, match="unique"):
            StagegateSettings()

    def test_empty_check_list_rejected(self, base_env):
        base_env.setenv("STAGEGATE_QUALITY_GATE_CHECKS", "[]")
        with pytest.raises(ValidationError):
            StagegateSettings()

    def test_blank_database_url_means_in_memory(self, base_env):
        base_env.setenv("STAGEGATE_DATABASE_URL", "  ")
        assert StagegateSettings().database_url is None

    def test_database_url_scheme(self, base_env):
        base_env.setenv("STAGEGATE_DATABASE_URL", "mysql://db/stagegate")
        with pytest.raises(ValidationError, match="postgresql"):
            StagegateSettings()

        base_env.setenv("STAGEGATE_DATABASE_URL", "postgresql://stagegate@db/stagegate")
        assert StagegateSettings().database_url == "postgresql://stagegate@db/stagegate"

    def test_relative_workspace_rejected(self, base_env):
        base_env.setenv("STAGEGATE_WORKSPACE_PATH", "workspace")
        with pytest.raises(ValidationError, match="absolute"):
            StagegateSettings()

    def test_log_level_normalized(self, base_env):
        base_env.setenv("STAGEGATE_LOG_LEVEL", "debug")
        assert StagegateSettings().log_level == "DEBUG"

        base_env.setenv("STAGEGATE_LOG_LEVEL", "loud")
        with pytest.raises(ValidationError):
            StagegateSettings()

    def test_event_sinks_from_json(self, base_env):
        base_env.setenv("STAGEGATE_EVENT_SINKS", '["logging"]')
        assert StagegateSettings().event_sinks == [EventSinkType.LOGGING]

    def test_port_range(self, base_env):
        base_env.setenv("STAGEGATE_PORT", "70000")
        with pytest.raises(ValidationError):
            StagegateSettings()
