"""Pydantic models for configuration schema."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..models.session import ProcessingOptions
from ..models.view import GroupBy, SearchScope, SortDirection, SortField


class SourceConfig(BaseModel):
    """Where issues come from."""

    kind: Literal["command", "http", "file"] = "command"
    command: list[str] = ["bash", "meta-ralph.sh", "--dry-run", "--json"]
    url: str | None = None
    path: Path | None = None
    token: str | None = None
    timeout: float = Field(120.0, gt=0, le=900)
    working_dir: Path | None = None


class AgentRunnerConfig(BaseModel):
    """How the external fix agent is launched."""

    command: list[str] = ["bash", "meta-ralph.sh"]
    working_dir: Path | None = None
    target_repo: Path | None = None
    providers: list[str] = ["zeropath", "sentry", "codecov"]
    terminate_grace: float = Field(5.0, ge=0, le=60, description="Seconds between SIGTERM and kill")

    @model_validator(mode="after")
    def check_command(self) -> "AgentRunnerConfig":
        """Reject an empty launch command."""
        if not self.command:
            raise ValueError("agent.command must not be empty")
        return self


class StreamConfig(BaseModel):
    """Activity retention and live-stream timing."""

    max_activities: int = Field(500, ge=1, le=10000)
    truncate_length: int = Field(200, ge=20, le=10000)
    heartbeat_interval: float = Field(15.0, gt=0, le=300)
    idle_timeout: float = Field(45.0, gt=0, le=900)
    reconnect_delay: float = Field(3.0, ge=0, le=120)
    max_reconnect_attempts: int = Field(5, ge=0, le=50)

    @model_validator(mode="after")
    def check_timing(self) -> "StreamConfig":
        """The idle timeout must leave room for at least one heartbeat."""
        if self.idle_timeout <= self.heartbeat_interval:
            raise ValueError("stream.idle_timeout must be greater than stream.heartbeat_interval")
        return self


class ZeropathPriority(BaseModel):
    """Score thresholds and priorities for vulnerability scanner findings."""

    critical_score: float = 9.0
    high_score: float = 7.0
    medium_score: float = 4.0
    critical: int = Field(100, ge=0, le=100)
    high: int = Field(90, ge=0, le=100)
    medium: int = Field(70, ge=0, le=100)
    low: int = Field(20, ge=0, le=100)


class SentryPriority(BaseModel):
    """Level priorities for error-tracker events."""

    fatal: int = Field(85, ge=0, le=100)
    error_high_volume: int = Field(65, ge=0, le=100)
    error: int = Field(50, ge=0, le=100)
    warning: int = Field(30, ge=0, le=100)
    other: int = Field(10, ge=0, le=100)
    high_volume_count: int = Field(100, ge=0)


class CodecovThresholds(BaseModel):
    """Coverage percentages at or below which a file gets each severity."""

    critical: float = 20.0
    high: float = 40.0
    medium: float = 60.0
    low: float = 80.0


class LinearPriority(BaseModel):
    """Priorities for tracker priority levels 1 (urgent) to 3 (medium)."""

    urgent: int = Field(95, ge=0, le=100)
    high: int = Field(75, ge=0, le=100)
    medium: int = Field(50, ge=0, le=100)
    other: int = Field(25, ge=0, le=100)


class PriorityRules(BaseModel):
    """Provider-specific weights used when converting raw payloads."""

    zeropath: ZeropathPriority = ZeropathPriority()
    sentry: SentryPriority = SentryPriority()
    codecov: CodecovThresholds = CodecovThresholds()
    github_labels: dict[str, int] = {
        "security": 95,
        "critical": 90,
        "high": 70,
        "bug": 60,
        "medium": 50,
        "low": 30,
        "enhancement": 20,
    }
    github_default: int = Field(25, ge=0, le=100)
    linear: LinearPriority = LinearPriority()


class ViewConfig(BaseModel):
    """Initial view state."""

    sort_field: SortField = SortField.PRIORITY
    sort_direction: SortDirection = SortDirection.DESC
    group_by: GroupBy | None = None
    search_scope: SearchScope = SearchScope.ALL


class HistoryConfig(BaseModel):
    """Processing history retention."""

    max_entries: int = Field(500, ge=1, le=100000)


class FileLoggingConfig(BaseModel):
    """File logging configuration."""

    enabled: bool = False
    path: Path = Path("logs/triage-engine.log")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["json", "console"] = "json"
    file: FileLoggingConfig = FileLoggingConfig()


class RetryConfig(BaseModel):
    """Retry configuration for transient issue-source failures."""

    max_attempts: int = Field(3, ge=1, le=10)
    initial_delay: float = Field(1.0, ge=0.1, le=10.0)
    max_delay: float = Field(30.0, ge=1.0, le=300.0)


class TriageConfig(BaseSettings):
    """Root configuration for the triage engine."""

    source: SourceConfig = SourceConfig()
    agent: AgentRunnerConfig = AgentRunnerConfig()
    processing: ProcessingOptions = ProcessingOptions()
    stream: StreamConfig = StreamConfig()
    priority: PriorityRules = PriorityRules()
    view: ViewConfig = ViewConfig()
    history: HistoryConfig = HistoryConfig()
    logging: LoggingConfig = LoggingConfig()
    retry: RetryConfig = RetryConfig()

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="TRIAGE_",
        env_nested_delimiter="__",
    )
