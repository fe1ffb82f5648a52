"""Stagegate configuration using pydantic-settings.

StagegateSettings reads configuration from environment variables with the
STAGEGATE_ prefix. Only the LLM endpoint is required; everything else has
a default suitable for a single-process deployment with an in-memory run
repository.

The quality-gate checks are an ordered JSON list, e.g.::

    STAGEGATE_QUALITY_GATE_CHECKS='[{"name": "lint", "command": "ruff check {files}"}]'
"""

from pathlib import Path
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from stagegate.events.emitter import EventSinkType
from stagegate.quality.models import DEFAULT_CHECKS, QualityGateCheck


class StagegateSettings(BaseSettings):
    """Pipeline engine configuration from environment variables.

    All environment variables are prefixed with STAGEGATE_ (e.g., STAGEGATE_LLM_URL).

    Required fields (must be set via environment variables):
    - llm_url: URL of the OpenAI-compatible endpoint drafting stage content
    """

    model_config = SettingsConfigDict(
        env_prefix="STAGEGATE_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Budgets
    # -------------------------------------------------------------------------
    # Retries per work stage before the run aborts
    max_stage_retries: int = 2

    # Regenerations per approval stage before the run aborts
    max_regenerations: int = 3

    # -------------------------------------------------------------------------
    # Quality Gate
    # -------------------------------------------------------------------------
    # Ordered checks; the {files} token expands to the task's files
    quality_gate_checks: List[QualityGateCheck] = list(DEFAULT_CHECKS)

    # Timeout in seconds for a single check
    check_timeout_seconds: int = 600

    # -------------------------------------------------------------------------
    # Workspace and Implementation Agent
    # -------------------------------------------------------------------------
    # Git worktree the agent changes and the tasks are committed in
    workspace_path: str = "/var/lib/stagegate/workspace"

    # Task descriptions are written here, outside the worktree
    state_dir: str = "/var/lib/stagegate/state"

    # Path to the implementation agent CLI
    agent_cli_path: str = "/usr/local/bin/agent-cli"

    # Timeout in seconds for one task implementation
    agent_timeout_seconds: int = 3600

    # Recorded as toolName in the commit metadata
    agent_tool_name: str = "agent-cli"

    # -------------------------------------------------------------------------
    # LLM Configuration
    # -------------------------------------------------------------------------
    # URL of the OpenAI-compatible endpoint drafting stage content
    llm_url: str

    # Model name for LLM inference
    llm_model: str = "Qwen/Qwen2.5-Coder-14B-Instruct-GPTQ-Int4"

    # Timeout in seconds for one LLM request
    llm_timeout: float = 120.0

    # -------------------------------------------------------------------------
    # Database Configuration
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; runs are kept in memory when unset
    database_url: Optional[str] = None

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------
    event_sinks: List[EventSinkType] = [EventSinkType.LOGGING, EventSinkType.METRICS]

    log_level: str = "INFO"

    # JSON log lines when true, console rendering otherwise
    log_json: bool = True

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    # Host address to bind the server to
    host: str = "0.0.0.0"

    # Port number for the server
    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("max_stage_retries", "max_regenerations")
    @classmethod
    def validate_budget(cls, v: int) -> int:
        """Validate that budgets are not negative."""
        if v < 0:
            raise ValueError("budgets cannot be negative")
        return v

    @field_validator("quality_gate_checks")
    @classmethod
    def validate_checks(cls, v: List[QualityGateCheck]) -> List[QualityGateCheck]:
        """Validate that at least one check is configured and names are unique."""
        if not v:
            raise ValueError("quality_gate_checks cannot be empty")
        names = [check.name for check in v]
        if len(set(names)) != len(names):
            raise ValueError("quality_gate_checks names must be unique")
        return v

    @field_validator("check_timeout_seconds", "agent_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        """Validate that timeouts are positive."""
        if v < 1:
            raise ValueError("timeouts must be at least 1 second")
        return v

    @field_validator("workspace_path", "state_dir")
    @classmethod
    def validate_absolute_path(cls, v: str) -> str:
        """Validate that filesystem paths are absolute."""
        if not Path(v).is_absolute():
            raise ValueError("path must be absolute")
        return v

    @field_validator("llm_url")
    @classmethod
    def validate_llm_url(cls, v: str) -> str:
        """Validate that LLM URL is a valid URL format."""
        if not v or not v.strip():
            raise ValueError("llm_url cannot be empty")
        if not v.startswith(("http://", "https://")):
            raise ValueError("llm_url must start with http:// or https://")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate the PostgreSQL URL format when one is given."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return level

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v


def get_settings() -> StagegateSettings:
    """Create and return a StagegateSettings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return StagegateSettings()
