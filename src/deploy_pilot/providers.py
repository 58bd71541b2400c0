# providers.py
# AI provider abstraction
#
# AIProvider is the capability interface the rest of the engine sees.
# ToolCallingProvider drives any OpenAI-compatible chat-completions endpoint
# through the shared ToolLoop; ClaudeAgentProvider hands the whole agent
# loop to the Claude Agent SDK and its native file tools. Presets below
# differ only in defaults: base URL and whether a key is required.
#
# Retry policy lives in timing.py. This module only classifies SDK errors
# and translates the ones that survive retries into ProviderError types.

import abc
import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import httpx
import openai
from openai import AsyncOpenAI

from deploy_pilot.events import ProgressChannel
from deploy_pilot.extraction import ANALYSIS_KEYS, CONFIG_KEYS, ParseFailure, extract_json
from deploy_pilot.harness import INVALID_ARGUMENTS_KEY, LoopResult, ModelTurn, ToolLoop, ToolLoopTimeout
from deploy_pilot.models import ProviderConfig, ToolCall
from deploy_pilot.results import (
    ChatRequest,
    ChatResponse,
    DeploymentConfigRequest,
    DeploymentConfigResult,
    GeneratedConfigFile,
    IncompleteResultError,
    ProjectAnalysisResult,
    ProjectContext,
    TokenUsage,
    validate_analysis,
    validate_config,
)
from deploy_pilot.timing import (
    OperationTimeout,
    RetriesExhausted,
    RetryDecision,
    parse_reset_hint,
    race_with_timeout,
    with_retry,
)
from deploy_pilot.tools import PathTraversalError, create_config_generation_tools, create_project_analysis_tools, resolve_inside

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ProviderError(Exception):
    """Base class for provider failures the caller cannot continue from."""

    def __init__(self, message: str, *, retry_in: float | None = None) -> None:
        super().__init__(message)
        self.retry_in = retry_in


class ProviderConfigError(ProviderError):
    """Raised when a ProviderConfig is missing something the provider needs."""


class ProviderNotReadyError(ProviderError):
    """Raised when an operation is called before a successful initialize()."""


class UnauthorizedError(ProviderError):
    """Raised on 401/403: the key is wrong or lacks access to the model."""


class RateLimitedError(ProviderError):
    """Raised when retries ran out while the provider kept answering 429."""


class ToolsUnsupportedError(ProviderError):
    """Raised when the selected model or endpoint cannot do tool calling."""


class MaxRetriesExceededError(ProviderError):
    """Raised when transient failures outlasted the retry budget."""


class EmptyResponseError(ProviderError):
    """Raised when the model answered with nothing."""


class ProviderTimeoutError(ProviderError):
    """Raised when a chat or connection test exceeds its timeout."""


# ---------------------------------------------------------------------------
# System Prompts
# ---------------------------------------------------------------------------

ANALYSIS_SYSTEM_PROMPT = """\
You are a deployment engineer analyzing a software project so it can be containerized.

Use the tools to explore the project: list directories, read manifests \
(package.json, requirements.txt, pyproject.toml, go.mod, Cargo.toml...), \
search for ports, environment variables and third-party services.

When you are done, answer with ONE JSON object and nothing else:
{
  "summary": {"overview": str, "purpose": str, "deployable": bool, "deploymentNotes": str},
  "frameworks": [{"name": str, "version": str, "type": str, "confidence": 0-100, "evidence": [str]}],
  "language": {"primary": str, "breakdown": {str: number}},
  "projectType": "monorepo" | "single-app" | "library" | "cli-tool" | "microservices",
  "projectStructure": {"rootDirectory": str, "configFiles": [str], "entryPoints": [str]},
  "dependencies": {"production": [{"name": str, "version": str}], "development": [...], "totalCount": int},
  "integrations": [{"name": str, "service": str, "type": str, "requiredKeys": [str]}],
  "environmentVariables": [{"name": str, "required": bool, "detectedIn": [str]}],
  "buildConfig": {"buildCommand": str, "startCommand": str, "ports": [int], "runtime": str},
  "security": {"hasEnvExample": bool, "exposedSecrets": [str]},
  "recommendations": [str]
}\
"""

CONFIG_SYSTEM_PROMPT = """\
You are a deployment engineer writing production-ready deployment configuration.

Read whatever project files you need, then create every required file with \
the writeFile tool. Paths are relative to the output directory.

When all files are written, answer with ONE JSON object and nothing else:
{
  "configType": str,
  "projectSummary": {"overview": str, "framework": str, "runtime": str, "mainPort": int},
  "files": [{"fileName": str, "description": str}],
  "deployment": {"instructions": str, "buildCommand": str, "runCommand": str},
  "recommendations": [str]
}\
"""

REQUIRED_FILES: dict[str, list[str]] = {
    "docker": ["Dockerfile", ".dockerignore"],
    "docker-compose": ["Dockerfile", "docker-compose.yml", ".dockerignore", ".env.example"],
    "kubernetes": ["Dockerfile", "k8s/deployment.yaml", "k8s/service.yaml"],
    "bash": ["deploy.sh"],
}


def analysis_prompt(context: ProjectContext) -> str:
    lines = [f"Analyze the project at {context.project_path}."]
    if context.project_name:
        lines.append(f"Project name: {context.project_name}")
    if context.files:
        listing = "\n".join(f"- {name}" for name in context.files[:200])
        more = f"\n... and {len(context.files) - 200} more" if len(context.files) > 200 else ""
        lines.append(f"Known files:\n{listing}{more}")
    if context.readme:
        lines.append(f"README excerpt:\n{context.readme[:2000]}")
    return "\n\n".join(lines)


def config_prompt(request: DeploymentConfigRequest) -> str:
    required = ", ".join(REQUIRED_FILES.get(request.config_type, []))
    parts = [
        f"Generate a {request.config_type} deployment configuration.",
        f"Required files: {required}." if required else "",
        f"Optimize for: {request.optimize_for}." if request.optimize_for else "",
        "Project analysis:",
        json.dumps(request.analysis.to_wire(), indent=2),
    ]
    return "\n\n".join(part for part in parts if part)


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def classify_openai_error(exc: BaseException) -> RetryDecision | None:
    """Retry decision for an openai SDK error. None means do not retry."""
    if isinstance(exc, openai.RateLimitError):
        headers = exc.response.headers
        hint = parse_reset_hint(headers.get("x-ratelimit-reset"))
        if hint is None:
            hint = parse_reset_hint(headers.get("retry-after"))
        return RetryDecision("rate_limit", hint)
    if isinstance(exc, openai.APIConnectionError):
        return RetryDecision("transient")
    if isinstance(exc, openai.APIStatusError) and exc.status_code >= 500:
        return RetryDecision("transient")
    return None


def translate_openai_error(exc: BaseException, provider: str) -> ProviderError:
    if isinstance(exc, RetriesExhausted):
        if exc.rate_limited:
            return RateLimitedError(
                f"{provider} is rate limiting requests; gave up after {exc.attempts} attempts. "
                f"Try again in {exc.retry_in:.0f}s.",
                retry_in=exc.retry_in,
            )
        return MaxRetriesExceededError(
            f"{provider} request failed after {exc.attempts} attempts: {exc.last_error}",
            retry_in=exc.retry_in,
        )
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return UnauthorizedError(f"{provider} rejected the credentials ({exc.status_code}). Check the API key.")
    if isinstance(exc, openai.APIStatusError):
        text = str(exc).lower()
        if "support tool use" in text or "does not support tools" in text:
            return ToolsUnsupportedError(
                f"The selected {provider} model does not support tool calling. Choose a model with tool support."
            )
        return ProviderError(f"{provider} request failed ({exc.status_code}): {exc.message}")
    return ProviderError(f"{provider} request failed: {exc}")


def parse_tool_arguments(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {INVALID_ARGUMENTS_KEY: raw}
    return value if isinstance(value, dict) else {INVALID_ARGUMENTS_KEY: raw}


def normalize_config_files(data: dict) -> dict:
    files = data.get("files") or []
    data["files"] = [{"fileName": item} if isinstance(item, str) else item for item in files]
    return data


def collect_generated_files(
    listed: list[GeneratedConfigFile],
    output_root: Path | str,
    written: list[str],
) -> list[GeneratedConfigFile]:
    """
    Reconcile the files a model claims with what is on disk.

    Listed files are read back from the output directory; files written
    but not listed are appended. Listed files that do not exist, or that
    point outside the output directory, are dropped.
    """
    collected: list[GeneratedConfigFile] = []
    seen: set[str] = set()
    for entry in [*listed, *(GeneratedConfigFile(file_name=name) for name in written)]:
        name = entry.file_name[2:] if entry.file_name.startswith("./") else entry.file_name
        if name in seen:
            continue
        try:
            path = resolve_inside(output_root, name)
        except PathTraversalError:
            LOGGER.warning("generated_file_outside_output", extra={"file": name})
            continue
        if not path.is_file():
            LOGGER.warning("generated_file_missing", extra={"file": name})
            continue
        seen.add(name)
        collected.append(
            GeneratedConfigFile(
                file_name=name,
                content=path.read_text(encoding="utf-8", errors="replace"),
                description=entry.description,
            )
        )
    return collected


def _finish_config(data: dict, request: DeploymentConfigRequest, written: list[str]) -> DeploymentConfigResult:
    data = normalize_config_files(data)
    data.setdefault("configType", request.config_type)
    config = validate_config(data)
    config.files = collect_generated_files(config.files, request.output_path, written)
    if not config.files:
        raise IncompleteResultError("Config generation produced no files.", ["files"])
    return config


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class AIProvider(abc.ABC):
    """Capability interface every model backend implements."""

    name = "base"

    def __init__(self, *, channel: ProgressChannel | None = None) -> None:
        self._channel = channel
        self._config: ProviderConfig | None = None
        self._ready = False

    @property
    def config(self) -> ProviderConfig:
        if self._config is None:
            raise ProviderNotReadyError(f"{self.name} provider has no configuration; call initialize() first.")
        return self._config

    def is_ready(self) -> bool:
        return self._ready

    def _ensure_ready(self) -> None:
        if not self._ready:
            raise ProviderNotReadyError(f"{self.name} provider is not initialized; call initialize() first.")

    def _emit(self, type: str, message: str, **details: Any) -> None:
        if self._channel is not None:
            self._channel.emit(type, message, **details)

    @abc.abstractmethod
    async def initialize(self, config: ProviderConfig) -> None: ...

    @abc.abstractmethod
    async def test_connection(self) -> bool: ...

    @abc.abstractmethod
    async def available_models(self) -> list[str]: ...

    @abc.abstractmethod
    async def chat(self, request: ChatRequest) -> ChatResponse: ...

    @abc.abstractmethod
    async def analyze_project(self, context: ProjectContext) -> ProjectAnalysisResult: ...

    @abc.abstractmethod
    async def generate_deployment_config(self, request: DeploymentConfigRequest) -> DeploymentConfigResult: ...


# ---------------------------------------------------------------------------
# OpenAI-compatible tool-calling providers
# ---------------------------------------------------------------------------


class ToolCallingProvider(AIProvider):
    """
    Any backend that speaks the OpenAI chat-completions protocol with tools.

    The same instance is the ChatModel of every ToolLoop it starts, so all
    turns share one client, one retry policy and one progress channel.
    Pass `client=` to inject a fake in tests.
    """

    name = "openai-compatible"
    default_base_url: str | None = None
    requires_api_key = False

    def __init__(
        self,
        *,
        client: Any = None,
        channel: ProgressChannel | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        super().__init__(channel=channel)
        self._client = client
        self._sleep = sleep
        self._connection_error: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _validate(self, config: ProviderConfig) -> ProviderConfig:
        base_url = config.base_url or self.default_base_url
        if not base_url:
            raise ProviderConfigError(f"{self.name} provider requires a base URL.")
        if not config.model:
            raise ProviderConfigError(f"{self.name} provider requires a model name.")
        if self.requires_api_key and not config.api_key:
            raise ProviderConfigError(f"{self.name} provider requires an API key.")
        return config.model_copy(update={"base_url": base_url})

    async def initialize(self, config: ProviderConfig) -> None:
        self._ready = False
        self._config = self._validate(config)
        if self._client is None:
            self._client = AsyncOpenAI(
                base_url=self._config.base_url,
                api_key=self._config.api_key or "not-needed",
                max_retries=0,
                timeout=httpx.Timeout(300.0, connect=self._config.connect_timeout),
            )
        if not await self.test_connection():
            raise ProviderError(
                f"Could not connect to {self.name} at {self._config.base_url} "
                f"with model '{self._config.model}': {self._connection_error or 'no response'}"
            )
        self._ready = True
        LOGGER.info("provider_ready", extra={"provider": self.name, "model": self._config.model})

    async def test_connection(self) -> bool:
        config = self.config
        try:
            response = await race_with_timeout(
                self._client.chat.completions.create(
                    model=config.model,
                    messages=[{"role": "user", "content": "Reply with OK."}],
                    max_tokens=5,
                ),
                config.connect_timeout,
                f"{self.name} did not answer within {config.connect_timeout:.0f}s",
            )
        except (openai.APIError, OperationTimeout) as exc:
            self._connection_error = str(exc)
            LOGGER.warning("provider_connection_failed", extra={"provider": self.name, "error": str(exc)})
            return False
        if not getattr(response, "choices", None):
            self._connection_error = "empty response"
            return False
        self._connection_error = None
        return True

    async def available_models(self) -> list[str]:
        if self._client is None:
            raise ProviderNotReadyError(f"{self.name} provider is not initialized; call initialize() first.")
        try:
            page = await self._client.models.list()
        except openai.APIError as exc:
            raise translate_openai_error(exc, self.name) from exc
        return sorted(model.id for model in page.data)

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    def _announce_retry(self, attempt: int, delay: float, exc: BaseException) -> None:
        reason = "Rate limited" if isinstance(exc, openai.RateLimitError) else "Provider unavailable"
        self._emit(
            "status",
            f"{reason}, retrying in {delay:.0f}s (attempt {attempt}/{self.config.max_retries})",
            retry_in=round(delay, 1),
            attempt=attempt,
        )

    async def _create(self, *, attempt_timeout: float | None = None, **kwargs: Any) -> Any:
        """
        Chat completion with retries. `attempt_timeout` bounds each request on
        its own, so backoff sleeps never count against it.
        """
        config = self.config

        async def attempt() -> Any:
            return await race_with_timeout(
                self._client.chat.completions.create(**kwargs),
                attempt_timeout,
                f"{self.name} chat did not finish within {attempt_timeout:.0f}s" if attempt_timeout else "",
            )

        try:
            return await with_retry(
                attempt,
                classify=classify_openai_error,
                max_retries=config.max_retries,
                max_backoff=config.max_backoff,
                on_retry=self._announce_retry,
                sleep=self._sleep,
            )
        except (RetriesExhausted, openai.APIError) as exc:
            raise translate_openai_error(exc, self.name) from exc

    def _request_options(self) -> dict:
        config = self.config
        options: dict[str, Any] = {"model": config.model}
        if config.temperature is not None:
            options["temperature"] = config.temperature
        if config.max_tokens is not None:
            options["max_tokens"] = config.max_tokens
        return options

    async def complete(self, messages: list[dict], tools: list[dict]) -> ModelTurn:
        """One model turn for the ToolLoop."""
        options = self._request_options()
        if tools:
            options["tools"] = tools
            options["tool_choice"] = "auto"
        response = await self._create(messages=messages, **options)
        if not response.choices:
            raise EmptyResponseError(f"{self.name} returned no choices.")
        message = response.choices[0].message
        calls = [
            ToolCall(
                id=call.id or f"call_{uuid.uuid4().hex[:8]}",
                name=call.function.name,
                input=parse_tool_arguments(call.function.arguments),
            )
            for call in (message.tool_calls or [])
        ]
        return ModelTurn(text=message.content, tool_calls=calls)

    async def chat(self, request: ChatRequest) -> ChatResponse:
        self._ensure_ready()
        options = self._request_options()
        if request.model:
            options["model"] = request.model
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.max_tokens is not None:
            options["max_tokens"] = request.max_tokens
        messages = [message.model_dump() for message in request.messages]

        try:
            response = await self._create(messages=messages, attempt_timeout=self.config.chat_timeout, **options)
        except OperationTimeout as exc:
            raise ProviderTimeoutError(str(exc)) from exc
        if not response.choices or not (response.choices[0].message.content or "").strip():
            raise EmptyResponseError(f"{self.name} returned an empty response.")

        choice = response.choices[0]
        usage = None
        if getattr(response, "usage", None) is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
                total_tokens=response.usage.total_tokens or 0,
            )
        finish = choice.finish_reason if choice.finish_reason in ("stop", "length", "content_filter") else "stop"
        return ChatResponse(
            content=choice.message.content.strip(),
            finish_reason=finish,
            model=getattr(response, "model", None) or options["model"],
            usage=usage,
        )

    # ------------------------------------------------------------------
    # Agent operations
    # ------------------------------------------------------------------

    def _loop(self, toolbox) -> ToolLoop:
        config = self.config
        return ToolLoop(
            self,
            toolbox,
            max_steps=config.max_steps,
            timeout=config.loop_timeout,
            channel=self._channel,
        )

    @staticmethod
    def _log_loop(operation: str, result: LoopResult) -> None:
        level = logging.WARNING if result.exhausted else logging.INFO
        LOGGER.log(level, f"{operation}_finished", extra={"steps": result.steps, "exhausted": result.exhausted})

    async def analyze_project(self, context: ProjectContext) -> ProjectAnalysisResult:
        self._ensure_ready()
        self._emit("status", f"Analyzing project with {self.name} ({self.config.model})")
        result = await self._loop(create_project_analysis_tools(context.project_path)).run(
            ANALYSIS_SYSTEM_PROMPT, analysis_prompt(context)
        )
        self._log_loop("analysis", result)
        return validate_analysis(extract_json(result.text, ANALYSIS_KEYS))

    async def generate_deployment_config(self, request: DeploymentConfigRequest) -> DeploymentConfigResult:
        self._ensure_ready()
        self._emit("status", f"Generating {request.config_type} configuration with {self.name}")
        written: list[str] = []
        toolbox = create_config_generation_tools(request.project_path, request.output_path, on_write=written.append)
        result = await self._loop(toolbox).run(CONFIG_SYSTEM_PROMPT, config_prompt(request))
        self._log_loop("config_generation", result)
        try:
            data = extract_json(result.text, CONFIG_KEYS)
        except ParseFailure:
            if not written:
                raise
            LOGGER.warning("config_summary_unparseable", extra={"written": written})
            data = {}
        return _finish_config(data, request, written)


class OpenAICompatibleProvider(ToolCallingProvider):
    name = "openai-compatible"


class OpenAIProvider(ToolCallingProvider):
    name = "openai"
    default_base_url = "https://api.openai.com/v1"
    requires_api_key = True


class OpenRouterProvider(ToolCallingProvider):
    name = "openrouter"
    default_base_url = "https://openrouter.ai/api/v1"
    requires_api_key = True


class GroqProvider(ToolCallingProvider):
    name = "groq"
    default_base_url = "https://api.groq.com/openai/v1"
    requires_api_key = True


class OllamaProvider(ToolCallingProvider):
    name = "ollama"
    default_base_url = "http://localhost:11434/v1"


class LMStudioProvider(ToolCallingProvider):
    name = "lmstudio"
    default_base_url = "http://localhost:1234/v1"


# ---------------------------------------------------------------------------
# Claude Agent SDK provider
# ---------------------------------------------------------------------------


class ClaudeAgentProvider(AIProvider):
    """
    Fully agentic backend: the Claude Agent SDK runs its own loop with its
    native Read/Grep/Glob/Write tools. Installed with the `agent` extra and
    imported on first use. Pass `sdk=` to inject a fake module in tests.
    """

    name = "claude-agent-sdk"
    models = ("sonnet", "opus", "haiku")

    def __init__(self, *, sdk: Any = None, channel: ProgressChannel | None = None) -> None:
        super().__init__(channel=channel)
        self._sdk = sdk

    def _load_sdk(self) -> Any:
        if self._sdk is None:
            try:
                import claude_agent_sdk
            except ImportError as exc:
                raise ProviderConfigError(
                    "claude-agent-sdk is not installed. Install it with: pip install 'deploy-pilot[agent]'"
                ) from exc
            self._sdk = claude_agent_sdk
        return self._sdk

    async def _query(
        self,
        prompt: str,
        *,
        system_prompt: str | None,
        allowed_tools: list[str],
        max_turns: int,
        cwd: str | None = None,
        add_dirs: list[str] | None = None,
        permission_mode: str = "default",
    ) -> str:
        sdk = self._load_sdk()
        config = self.config
        options = sdk.ClaudeAgentOptions(
            model=config.model or None,
            max_turns=max_turns,
            allowed_tools=allowed_tools,
            permission_mode=permission_mode,
            cwd=cwd,
            system_prompt=system_prompt,
            add_dirs=add_dirs or [],
            env={"ANTHROPIC_API_KEY": config.api_key} if config.api_key else {},
        )
        texts: list[str] = []
        final: str | None = None
        async for message in sdk.query(prompt=prompt, options=options):
            if isinstance(message, sdk.AssistantMessage):
                for block in message.content:
                    if isinstance(block, sdk.TextBlock):
                        texts.append(block.text)
                        self._emit("thinking", block.text.strip()[:150])
                    elif isinstance(block, sdk.ToolUseBlock):
                        self._emit("tool_use", f"Using {block.name}", tool=block.name)
            elif isinstance(message, sdk.ResultMessage):
                if message.is_error:
                    raise ProviderError(f"Claude agent run failed ({message.subtype}).")
                final = message.result
                LOGGER.debug("claude_agent_finished", extra={"turns": message.num_turns})
        return (final or "\n\n".join(texts)).strip()

    async def _timed_query(self, prompt: str, **kwargs: Any) -> str:
        timeout = self.config.loop_timeout
        return await race_with_timeout(
            self._query(prompt, **kwargs),
            timeout,
            f"Claude agent did not finish within {timeout:.0f}s.",
            error=ToolLoopTimeout,
        )

    async def initialize(self, config: ProviderConfig) -> None:
        self._ready = False
        self._config = config
        self._load_sdk()
        if not await self.test_connection():
            raise ProviderError("Could not reach Claude through the Agent SDK. Check the API key or CLI login.")
        self._ready = True
        LOGGER.info("provider_ready", extra={"provider": self.name, "model": config.model})

    async def test_connection(self) -> bool:
        try:
            text = await race_with_timeout(
                self._query("Reply with OK.", system_prompt=None, allowed_tools=[], max_turns=1),
                self.config.chat_timeout,
                "Claude agent connection test timed out",
            )
        except (ProviderError, OperationTimeout) as exc:
            LOGGER.warning("provider_connection_failed", extra={"provider": self.name, "error": str(exc)})
            return False
        return bool(text)

    async def available_models(self) -> list[str]:
        return list(self.models)

    async def chat(self, request: ChatRequest) -> ChatResponse:
        self._ensure_ready()
        system = "\n\n".join(m.content for m in request.messages if m.role == "system") or None
        prompt = "\n\n".join(f"{m.role}: {m.content}" for m in request.messages if m.role != "system")
        try:
            text = await race_with_timeout(
                self._query(prompt, system_prompt=system, allowed_tools=[], max_turns=1),
                self.config.chat_timeout,
                f"Claude chat did not finish within {self.config.chat_timeout:.0f}s",
            )
        except OperationTimeout as exc:
            raise ProviderTimeoutError(str(exc)) from exc
        if not text:
            raise EmptyResponseError("Claude returned an empty response.")
        return ChatResponse(content=text, model=request.model or self.config.model or "claude")

    async def analyze_project(self, context: ProjectContext) -> ProjectAnalysisResult:
        self._ensure_ready()
        self._emit("status", "Analyzing project with the Claude agent")
        text = await self._timed_query(
            analysis_prompt(context),
            system_prompt=ANALYSIS_SYSTEM_PROMPT,
            allowed_tools=["Read", "Grep", "Glob"],
            max_turns=50,
            cwd=context.project_path,
        )
        return validate_analysis(extract_json(text, ANALYSIS_KEYS))

    async def generate_deployment_config(self, request: DeploymentConfigRequest) -> DeploymentConfigResult:
        self._ensure_ready()
        self._emit("status", f"Generating {request.config_type} configuration with the Claude agent")
        output = Path(request.output_path)
        output.mkdir(parents=True, exist_ok=True)
        before = {p for p in output.rglob("*") if p.is_file()}
        text = await self._timed_query(
            config_prompt(request) + f"\n\nWrite the files into {output.resolve()}.",
            system_prompt=CONFIG_SYSTEM_PROMPT.replace("the writeFile tool", "the Write tool"),
            allowed_tools=["Write", "Read", "Glob"],
            max_turns=20,
            cwd=request.project_path,
            add_dirs=[str(output.resolve())],
            permission_mode="acceptEdits",
        )
        written = sorted(p.relative_to(output).as_posix() for p in output.rglob("*") if p.is_file() and p not in before)
        try:
            data = extract_json(text, CONFIG_KEYS)
        except ParseFailure:
            if not written:
                raise
            data = {}
        return _finish_config(data, request, written)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

PROVIDERS: dict[str, type[AIProvider]] = {
    "openai-compatible": OpenAICompatibleProvider,
    "openai": OpenAIProvider,
    "openrouter": OpenRouterProvider,
    "groq": GroqProvider,
    "ollama": OllamaProvider,
    "lmstudio": LMStudioProvider,
    "claude-agent-sdk": ClaudeAgentProvider,
    "claude-code": ClaudeAgentProvider,
}


def create_provider(name: str, **kwargs: Any) -> AIProvider:
    """Instantiate a provider by registry key. Unknown names are a programming error."""
    try:
        cls = PROVIDERS[name]
    except KeyError as exc:
        raise ValueError(f"Unknown provider '{name}'. Known providers: {', '.join(PROVIDERS)}") from exc
    return cls(**kwargs)
