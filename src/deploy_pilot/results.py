# results.py
# Provider-facing request and result contracts.
#
# Models speak camelCase JSON; Python code uses snake_case attributes.
# Only the fields an analysis or config must carry are required; anything
# extra the model adds is kept.

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class IncompleteResultError(Exception):
    """Raised when model JSON parses but lacks fields the result must carry."""

    def __init__(self, message: str, missing: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing = missing or []


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


class ChatMessage(CamelModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(CamelModel):
    messages: list[ChatMessage] = Field(..., min_length=1)
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None


class TokenUsage(CamelModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatResponse(CamelModel):
    content: str
    finish_reason: Literal["stop", "length", "content_filter", "error"] = "stop"
    model: str
    usage: TokenUsage | None = None


# ---------------------------------------------------------------------------
# Project analysis
# ---------------------------------------------------------------------------


class ProjectContext(CamelModel):
    """What a provider needs to analyze a project on disk."""

    project_path: str
    project_name: str | None = None
    files: list[str] = Field(default_factory=list)
    readme: str | None = None


class AnalysisSummary(CamelModel):
    overview: str
    purpose: str
    deployable: StrictBool
    deployment_notes: str


class FrameworkDetection(CamelModel):
    name: str
    confidence: float
    version: str | None = None
    type: str | None = None
    evidence: list[str] = Field(default_factory=list)


class LanguageInfo(CamelModel):
    primary: str
    breakdown: dict[str, float] = Field(default_factory=dict)


class ProjectStructure(CamelModel):
    root_directory: str
    config_files: list[str]
    entry_points: list[str]
    has_tests: bool | None = None
    has_documentation: bool | None = None


class DependencyAnalysis(CamelModel):
    production: list[dict[str, Any]]
    development: list[dict[str, Any]] = Field(default_factory=list)
    total_count: int


class BuildConfiguration(CamelModel):
    ports: list[int]
    build_command: str | None = None
    start_command: str | None = None
    runtime: str | None = None
    package_manager: str | None = None


class SecurityAnalysis(CamelModel):
    has_env_example: StrictBool
    exposed_secrets: list[str]
    has_dotenv_file: bool | None = None
    security_issues: list[str] = Field(default_factory=list)


class ProjectAnalysisResult(CamelModel):
    summary: AnalysisSummary
    frameworks: list[FrameworkDetection] = Field(..., min_length=1)
    language: LanguageInfo
    project_type: str
    project_structure: ProjectStructure
    dependencies: DependencyAnalysis
    integrations: list[dict[str, Any]]
    environment_variables: list[dict[str, Any]]
    build_config: BuildConfiguration
    security: SecurityAnalysis
    recommendations: list[str]
    built_in_capabilities: list[dict[str, Any]] | None = None
    warnings: list[str] | None = None


# ---------------------------------------------------------------------------
# Config generation
# ---------------------------------------------------------------------------

ConfigType = Literal["docker", "docker-compose", "kubernetes", "bash"]


class DeploymentConfigRequest(CamelModel):
    analysis: ProjectAnalysisResult
    project_path: str
    output_path: str
    config_type: ConfigType = "docker-compose"
    optimize_for: Literal["speed", "size", "security", "cost"] | None = None


class GeneratedConfigFile(CamelModel):
    file_name: str
    content: str | None = None
    description: str | None = None


class DeploymentConfigResult(CamelModel):
    config_type: str
    files: list[GeneratedConfigFile]
    project_summary: dict[str, Any] | None = None
    integrations: dict[str, Any] | None = None
    environment_variables: dict[str, Any] | None = None
    deployment: dict[str, Any] | None = None
    recommendations: list[str] | None = None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _missing_fields(exc: ValidationError) -> list[str]:
    return [".".join(str(part) for part in err["loc"]) for err in exc.errors()]


def validate_analysis(data: dict) -> ProjectAnalysisResult:
    """Structural check of an analysis object. Raises IncompleteResultError."""
    try:
        return ProjectAnalysisResult.model_validate(data)
    except ValidationError as exc:
        missing = _missing_fields(exc)
        raise IncompleteResultError(
            f"Analysis result is incomplete or malformed: {', '.join(missing)}", missing
        ) from exc


def validate_config(data: dict) -> DeploymentConfigResult:
    try:
        return DeploymentConfigResult.model_validate(data)
    except ValidationError as exc:
        missing = _missing_fields(exc)
        raise IncompleteResultError(
            f"Config result is incomplete or malformed: {', '.join(missing)}", missing
        ) from exc
