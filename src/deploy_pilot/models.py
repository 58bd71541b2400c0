# models.py
# Data contracts for the deployment engine.
# No business logic lives here: pure schema and validation.

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Provider configuration
# ---------------------------------------------------------------------------


class ProviderConfig(BaseModel):
    """Decrypted credentials and tuning knobs handed to a provider."""

    type: str = Field(..., description="Registry key, e.g. 'openrouter' or 'ollama'.")
    model: str = ""
    api_key: str | None = None
    base_url: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    max_steps: int = Field(default=50, ge=1)
    max_retries: int = Field(default=5, ge=0)
    max_backoff: float = Field(default=120.0, gt=0)
    chat_timeout: float = Field(default=30.0, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    loop_timeout: float = Field(default=1800.0, gt=0)


# ---------------------------------------------------------------------------
# Tool loop
# ---------------------------------------------------------------------------


class ToolCall(BaseModel):
    """A structured request from the model to invoke a named tool."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    input: dict = Field(default_factory=dict)


class ToolResult(BaseModel):
    """Outcome of one tool call. Exactly one of output / error is meaningful."""

    tool_call_index: int = Field(..., ge=0)
    output: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class AgentTurn(BaseModel):
    """One model turn: optional text, the calls it made, and their results."""

    assistant_text: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)

    @model_validator(mode="after")
    def _results_pair_with_calls(self) -> "AgentTurn":
        seen: set[int] = set()
        for result in self.tool_results:
            index = result.tool_call_index
            if index >= len(self.tool_calls):
                raise ValueError(f"Tool result points at missing call index {index}.")
            if index in seen:
                raise ValueError(f"Tool call index {index} has more than one result.")
            seen.add(index)
        return self


# ---------------------------------------------------------------------------
# Deployment errors and fixes
# ---------------------------------------------------------------------------


class DeploymentErrorType(str, Enum):
    BUILD_FAILED = "build_failed"
    COMPOSE_INVALID = "compose_invalid"
    DOCKERFILE_INVALID = "dockerfile_invalid"
    DEPENDENCY_MISSING = "dependency_missing"
    DEPENDENCY_CONFLICT = "dependency_conflict"
    PORT_CONFLICT = "port_conflict"
    IMAGE_NOT_FOUND = "image_not_found"
    IMAGE_PULL_FAILED = "image_pull_failed"
    MEMORY_EXCEEDED = "memory_exceeded"
    DISK_FULL = "disk_full"
    TIMEOUT = "timeout"
    PERMISSION_DENIED = "permission_denied"
    NETWORK_ERROR = "network_error"
    ENV_VAR_MISSING = "env_var_missing"
    ENV_VAR_INVALID = "env_var_invalid"
    HEALTHCHECK_FAILED = "healthcheck_failed"
    STARTUP_FAILED = "startup_failed"
    UNKNOWN = "unknown"


class DeploymentErrorStage(str, Enum):
    PRE_FLIGHT = "pre_flight"
    BUILD = "build"
    DEPLOY = "deploy"
    RUNTIME = "runtime"


class ErrorLocation(BaseModel):
    file: str
    line: int | None = None
    column: int | None = None


class DeploymentError(BaseModel):
    """A classified deployment failure. Built by the classifier only."""

    id: str = Field(default_factory=_new_id)
    type: DeploymentErrorType
    stage: DeploymentErrorStage
    message: str
    raw_error: str = ""
    context: list[str] = Field(default_factory=list)
    location: ErrorLocation | None = None
    exit_code: int | None = None
    timestamp: datetime = Field(default_factory=_utcnow)


class FixSuggestion(BaseModel):
    id: str = Field(default_factory=_new_id)
    description: str
    confidence: Literal["high", "medium", "low"] = "medium"
    type: Literal["file_edit", "env_var", "command", "config_change", "manual"] = "manual"
    details: dict = Field(default_factory=dict)


class ErrorAnalysis(BaseModel):
    """A classified error with its likely causes and deterministic fixes."""

    error: DeploymentError
    possible_causes: list[str] = Field(default_factory=list)
    suggested_fixes: list[FixSuggestion] = Field(default_factory=list)


class FixResult(BaseModel):
    """A change the recovery agent applied to the deployment files."""

    fix_id: str = Field(default_factory=_new_id)
    success: bool
    message: str
    file: str | None = None
    before: str | None = None
    after: str | None = None
    reason: str | None = None


# ---------------------------------------------------------------------------
# Deployment
# ---------------------------------------------------------------------------


class PreFlightCheck(BaseModel):
    name: str
    status: Literal["passed", "failed", "warning", "pending"]
    message: str
    fix: str | None = None


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    PRE_FLIGHT = "pre_flight"
    BUILDING = "building"
    DEPLOYING = "deploying"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"
    TERMINATED = "terminated"


class PortMapping(BaseModel):
    host: int = Field(..., ge=1, le=65535)
    container: int = Field(..., ge=1, le=65535)
    protocol: Literal["tcp", "udp"] = "tcp"


class DeploymentPlan(BaseModel):
    """What to build and run. Paths are relative to config_path."""

    config_path: str = Field(..., description="Directory holding the build context and config files.")
    image_tag: str
    container_name: str
    dockerfile_path: str = "Dockerfile"
    ports: list[PortMapping] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    build_args: dict[str, str] = Field(default_factory=dict)
    health_path: str = "/"
    compose_file: str | None = Field(
        default=None, description="Compose file in config_path. When set the plan deploys as a compose project."
    )


class DeploymentOutcome(BaseModel):
    """Result value of one state machine run."""

    status: DeploymentStatus = DeploymentStatus.PENDING
    container_id: str | None = None
    image_id: str | None = None
    deploy_url: str | None = None
    checks: list[PreFlightCheck] = Field(default_factory=list)
    error: DeploymentError | None = None
    build_logs: list[str] = Field(default_factory=list)
    runtime_logs: list[str] = Field(default_factory=list)
    history: list[DeploymentStatus] = Field(default_factory=list)
    compose_file: str | None = Field(default=None, description="Absolute compose file path of a compose deployment.")
    compose_project: str | None = None
    service_urls: dict[str, str] = Field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == DeploymentStatus.RUNNING


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


class RecoverySessionStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    FIXING = "fixing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_SESSION_STATUSES = frozenset(
    {
        RecoverySessionStatus.COMPLETED,
        RecoverySessionStatus.FAILED,
        RecoverySessionStatus.CANCELLED,
    }
)


class RecoverySession(BaseModel):
    """One bounded attempt sequence to fix a failed deployment."""

    id: str = Field(default_factory=_new_id)
    status: RecoverySessionStatus = RecoverySessionStatus.PENDING
    attempt_number: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1, le=5)
    fixes_applied: list[FixResult] = Field(default_factory=list)
    transcript: list[AgentTurn] = Field(default_factory=list)
    suggestions: list[FixSuggestion] = Field(default_factory=list)
    summary: str | None = None
    last_error: DeploymentError | None = None
    deploy_url: str | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES
