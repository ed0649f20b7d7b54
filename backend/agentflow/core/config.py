"""
Agentflow - Configuration
=========================

Two layers of configuration:

- ``Settings``: process-level settings loaded from environment variables
  (pydantic-settings), cached for the lifetime of the process.
- ``PipelineConfig``: orchestration policy loaded once from
  ``<project>/.pipeline/config.yaml``. ``${VAR}`` references are resolved
  from the environment before validation; invalid values fail at startup.
"""

import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Optional

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger()


class ConfigError(Exception):
    """Raised when the pipeline configuration cannot be loaded or validated."""


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Agentflow"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "info"

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (session persistence)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./agentflow.db"
    DATABASE_ECHO: bool = False
    PERSIST_SESSIONS: bool = True

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Project
    # ==========================================================================
    PROJECT_PATH: str = "."

    # ==========================================================================
    # External Services
    # ==========================================================================
    WORKFLOW_RUNNER_URL: str | None = None
    WORKFLOW_RUNNER_TOKEN: str | None = None
    AGENT_RUNNER_URL: str | None = None
    AGENT_RUNNER_TOKEN: str | None = None
    NOTIFY_WEBHOOK_URL: str | None = None

    # ==========================================================================
    # Watchdog
    # ==========================================================================
    WATCHDOG_INTERVAL_SECONDS: float = 60.0

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# ==========================================================================
# Pipeline Config
# ==========================================================================

class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class BranchConfig(_Section):
    main: str = "main"
    integration_prefix: str = "integration/"
    pipeline_prefix: str = "pipeline/"


class ProviderConfig(_Section):
    api_key_env: str = ""
    base_url: str = ""


class LLMProvidersConfig(_Section):
    anthropic: ProviderConfig = ProviderConfig(api_key_env="ANTHROPIC_API_KEY")
    openai: ProviderConfig = ProviderConfig(api_key_env="OPENAI_API_KEY")
    ollama: ProviderConfig = ProviderConfig(base_url="http://localhost:11434")
    default_provider: str = "anthropic"
    fallback_provider: Optional[str] = None


class EventsConfig(_Section):
    path: Optional[str] = None


class LoggingConfig(_Section):
    level: Literal["debug", "info", "warning", "error"] = "info"


class TrackerConfig(_Section):
    type: Literal["github", "linear"] = "github"
    repo: Optional[str] = None
    labels: list[str] = []
    exclude_labels: list[str] = ["wontfix", "blocked"]
    max_parallel: int = Field(5, ge=1)


class OrchestratorConfig(_Section):
    model: str = "claude-sonnet-4-5-20250929"
    provider: str = "anthropic"
    plan_approval: bool = False


class SessionsConfig(_Section):
    max_retries_ci: int = Field(3, ge=0)
    max_retries_review: int = Field(2, ge=0)
    escalate_after_min: int = Field(30, ge=0)
    auto_merge: bool = False


class RetryReactionConfig(_Section):
    action: Literal["respawn_agent", "notify", "escalate"] = "respawn_agent"
    prompt: str = ""
    # Falls back to the matching sessions.max_retries_* value when unset
    max_retries: Optional[int] = Field(None, ge=0)


class ApprovedReactionConfig(_Section):
    action: Literal["notify", "auto_merge"] = "notify"
    message: str = "PR approved and CI green - ready to merge"


class StuckReactionConfig(_Section):
    action: Literal["escalate", "notify"] = "escalate"
    message: str = "Session stuck - needs human review"


class ReactionsConfig(_Section):
    ci_failed: RetryReactionConfig = RetryReactionConfig(
        prompt="CI failed on this PR. Read the failure logs and fix the issues.",
    )
    changes_requested: RetryReactionConfig = RetryReactionConfig(
        prompt="Review comments have been posted. Address each comment and push fixes.",
    )
    approved_and_green: ApprovedReactionConfig = ApprovedReactionConfig()
    agent_stuck: StuckReactionConfig = StuckReactionConfig()


class AutoCorrectionConfig(_Section):
    max_attempts: int = Field(2, ge=0)
    agent_timeout_seconds: Optional[float] = Field(None, gt=0)


class TierThreshold(_Section):
    max_files: int = Field(ge=0)
    max_lines: int = Field(ge=0)


class TiersConfig(_Section):
    small: TierThreshold = TierThreshold(max_files=3, max_lines=50)
    medium: TierThreshold = TierThreshold(max_files=10, max_lines=300)
    small_agents: list[str] = ["tests", "style"]
    medium_agents: list[str] = ["tests", "security", "architecture", "style", "types"]
    large_agents: list[str] = [
        "tests", "security", "architecture", "performance", "style", "types", "docs", "integration",
    ]


class AgentOverride(_Section):
    model: Optional[str] = None
    provider: Optional[str] = None
    max_turns: Optional[int] = Field(None, ge=1)


class MergeConfig(_Section):
    max_conflict_requeues: int = Field(1, ge=0)


class WorkflowsConfig(_Section):
    implement: str = "implement-issue"
    review_loop: str = "pr-review-loop"
    ci_fix: str = "ci-fix-loop"
    merge: str = "merge-integration"


class PipelineConfig(_Section):
    """Validated orchestration policy. Immutable for the duration of a run."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    branch: BranchConfig = BranchConfig()
    llm_providers: LLMProvidersConfig = LLMProvidersConfig()
    webhook_secret: Optional[str] = None
    events: EventsConfig = EventsConfig()
    logging: LoggingConfig = LoggingConfig()
    tracker: TrackerConfig = TrackerConfig()
    orchestrator: OrchestratorConfig = OrchestratorConfig()
    sessions: SessionsConfig = SessionsConfig()
    reactions: ReactionsConfig = ReactionsConfig()
    auto_correction: AutoCorrectionConfig = AutoCorrectionConfig()
    tiers: TiersConfig = TiersConfig()
    agents: dict[str, AgentOverride] = {}
    merge: MergeConfig = MergeConfig()
    workflows: WorkflowsConfig = WorkflowsConfig()

    @property
    def effective_webhook_secret(self) -> Optional[str]:
        """Secret to verify webhooks with; an empty interpolated value disables it."""
        return self.webhook_secret or None


_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def resolve_env_vars(value: Any) -> Any:
    """Recursively replace ``${VAR}`` references with environment values."""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, list):
        return [resolve_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}
    return value


def parse_pipeline_config(raw: Optional[dict[str, Any]]) -> PipelineConfig:
    """
    Validate a raw config mapping.

    Raises:
        ConfigError: if any value is invalid
    """
    try:
        return PipelineConfig.model_validate(resolve_env_vars(raw or {}))
    except ValidationError as e:
        raise ConfigError(f"Invalid pipeline config: {e}") from e


def load_pipeline_config(project_path: str | Path) -> PipelineConfig:
    """
    Load ``.pipeline/config.yaml`` from a project, or defaults if absent.

    Args:
        project_path: Root of the project being orchestrated

    Returns:
        Validated PipelineConfig

    Raises:
        ConfigError: if the file is unreadable, not a mapping, or invalid
    """
    config_path = Path(project_path) / ".pipeline" / "config.yaml"

    if not config_path.exists():
        logger.info("pipeline_config_defaults", config_path=str(config_path))
        return PipelineConfig()

    try:
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read {config_path}: {e}") from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")

    config = parse_pipeline_config(raw)
    logger.info("pipeline_config_loaded", config_path=str(config_path))
    return config


settings = get_settings()
