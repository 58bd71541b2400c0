import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from conftest import no_sleep
from deploy_pilot.harness import INVALID_ARGUMENTS_KEY
from deploy_pilot.models import ProviderConfig
from deploy_pilot.providers import (
    ClaudeAgentProvider,
    EmptyResponseError,
    OllamaProvider,
    OpenAICompatibleProvider,
    OpenRouterProvider,
    ProviderConfigError,
    ProviderError,
    ProviderNotReadyError,
    RateLimitedError,
    ToolsUnsupportedError,
    UnauthorizedError,
    create_provider,
    parse_tool_arguments,
    translate_openai_error,
)
from deploy_pilot.results import ChatMessage, ChatRequest, DeploymentConfigRequest, ProjectContext

URL = "http://llm.test/v1/chat/completions"

ANALYSIS = {
    "summary": {"overview": "Express API", "purpose": "demo", "deployable": True, "deploymentNotes": "none"},
    "frameworks": [{"name": "express", "confidence": 0.95}],
    "language": {"primary": "javascript"},
    "projectType": "api",
    "projectStructure": {"rootDirectory": ".", "configFiles": ["package.json"], "entryPoints": ["server.js"]},
    "dependencies": {"production": [{"name": "express"}], "totalCount": 1},
    "integrations": [],
    "environmentVariables": [],
    "buildConfig": {"ports": [3000], "startCommand": "node server.js"},
    "security": {"hasEnvExample": False, "exposedSecrets": []},
    "recommendations": [],
}

# ---------------------------------------------------------------------------
# Fake openai client
# ---------------------------------------------------------------------------


def completion(content=None, tool_calls=None, finish_reason="stop"):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason=finish_reason)],
        model="test-model",
        usage=SimpleNamespace(prompt_tokens=3, completion_tokens=2, total_tokens=5),
    )


def tool_call(call_id, name, arguments):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=json.dumps(arguments)))


def fake_client(*responses):
    return SimpleNamespace(
        chat=SimpleNamespace(completions=SimpleNamespace(create=AsyncMock(side_effect=list(responses)))),
        models=SimpleNamespace(list=AsyncMock(return_value=SimpleNamespace(data=[SimpleNamespace(id="b"), SimpleNamespace(id="a")]))),
    )


def status_error(cls, status, headers=None, message="error"):
    response = httpx.Response(status, headers=headers or {}, request=httpx.Request("POST", URL))
    return cls(message, response=response, body=None)


def config(**overrides):
    values = {"type": "openai-compatible", "model": "test-model", "base_url": "http://llm.test/v1", "max_retries": 2}
    values.update(overrides)
    return ProviderConfig(**values)


def ready_provider(*responses, channel=None, sleep=no_sleep, **overrides):
    provider = OpenAICompatibleProvider(client=fake_client(completion("OK"), *responses), channel=channel, sleep=sleep)
    asyncio.run(provider.initialize(config(**overrides)))
    return provider


def chat_request(text="hello"):
    return ChatRequest(messages=[ChatMessage(role="user", content=text)])


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def test_key_required_for_hosted_presets():
    provider = OpenRouterProvider(client=fake_client(completion("OK")))
    with pytest.raises(ProviderConfigError, match="API key"):
        asyncio.run(provider.initialize(config(type="openrouter", base_url=None)))


def test_model_is_required():
    provider = OpenAICompatibleProvider(client=fake_client(completion("OK")))
    with pytest.raises(ProviderConfigError, match="model"):
        asyncio.run(provider.initialize(config(model="")))


def test_local_preset_fills_base_url():
    provider = OllamaProvider(client=fake_client(completion("OK")))
    asyncio.run(provider.initialize(config(type="ollama", base_url=None)))
    assert provider.config.base_url == "http://localhost:11434/v1"
    assert provider.is_ready()


def test_initialize_fails_when_connection_test_fails():
    error = openai.APIConnectionError(request=httpx.Request("POST", URL))
    provider = OpenAICompatibleProvider(client=fake_client(error))
    with pytest.raises(ProviderError, match="Could not connect"):
        asyncio.run(provider.initialize(config()))
    assert not provider.is_ready()


def test_chat_before_initialize():
    provider = OpenAICompatibleProvider(client=fake_client())
    with pytest.raises(ProviderNotReadyError):
        asyncio.run(provider.chat(chat_request()))


def test_available_models_sorted():
    provider = ready_provider()
    assert asyncio.run(provider.available_models()) == ["a", "b"]


# ---------------------------------------------------------------------------
# Chat and retries
# ---------------------------------------------------------------------------


def test_chat_returns_stripped_content_and_usage():
    provider = ready_provider(completion("  hi there \n"))
    response = asyncio.run(provider.chat(chat_request()))
    assert response.content == "hi there"
    assert response.usage.total_tokens == 5
    assert response.model == "test-model"


def test_chat_empty_content_is_an_error():
    provider = ready_provider(completion("   "))
    with pytest.raises(EmptyResponseError):
        asyncio.run(provider.chat(chat_request()))


def test_rate_limit_is_retried_after_reset_hint(channel):
    slept = []

    async def sleep(seconds):
        slept.append(seconds)

    limited = status_error(openai.RateLimitError, 429, headers={"retry-after": "3"})
    provider = ready_provider(limited, completion("done"), channel=channel, sleep=sleep)
    response = asyncio.run(provider.chat(chat_request()))

    assert response.content == "done"
    assert len(slept) == 1
    assert 5.0 <= slept[0] <= 7.0
    assert "Rate limited, retrying in" in channel.of_type("status")[-1].message


def test_rate_limit_exhaustion_reports_retry_in():
    limited = status_error(openai.RateLimitError, 429)
    provider = ready_provider(limited, limited, max_retries=1)
    with pytest.raises(RateLimitedError) as info:
        asyncio.run(provider.chat(chat_request()))
    assert info.value.retry_in > 0


def test_chat_timeout_bounds_each_attempt_not_the_backoff():
    async def sleep(seconds):
        await asyncio.sleep(0.03)

    limited = status_error(openai.RateLimitError, 429, headers={"retry-after": "60"})
    provider = ready_provider(limited, limited, limited, limited, sleep=sleep, max_retries=3, chat_timeout=0.05)
    with pytest.raises(RateLimitedError) as info:
        asyncio.run(provider.chat(chat_request()))
    assert info.value.retry_in >= 61
    assert "Try again in" in str(info.value)


def test_unauthorized_is_not_retried():
    async def sleep(seconds):
        raise AssertionError("should not retry")

    denied = status_error(openai.AuthenticationError, 401)
    provider = ready_provider(denied, sleep=sleep)
    with pytest.raises(UnauthorizedError):
        asyncio.run(provider.chat(chat_request()))


def test_server_errors_are_retried():
    broken = status_error(openai.InternalServerError, 503)
    provider = ready_provider(broken, completion("back"))
    assert asyncio.run(provider.chat(chat_request())).content == "back"


def test_tools_unsupported_translation():
    error = status_error(openai.BadRequestError, 400, message="This model does not support tools")
    assert isinstance(translate_openai_error(error, "ollama"), ToolsUnsupportedError)


def test_parse_tool_arguments():
    assert parse_tool_arguments('{"filePath": "a"}') == {"filePath": "a"}
    assert parse_tool_arguments("") == {}
    assert parse_tool_arguments("{oops") == {INVALID_ARGUMENTS_KEY: "{oops"}
    assert parse_tool_arguments("[1]") == {INVALID_ARGUMENTS_KEY: "[1]"}


# ---------------------------------------------------------------------------
# Agent operations
# ---------------------------------------------------------------------------


def test_analyze_project_runs_tools_then_extracts(project, channel):
    provider = ready_provider(
        completion(tool_calls=[tool_call("t1", "readFile", {"filePath": "package.json"})]),
        completion("Here is the analysis:\n```json\n" + json.dumps(ANALYSIS) + "\n```"),
        channel=channel,
    )
    result = asyncio.run(provider.analyze_project(ProjectContext(project_path=str(project), project_name="demo")))

    assert result.frameworks[0].name == "express"
    assert result.build_config.ports == [3000]
    assert channel.of_type("tool_use")[0].message == "Reading package.json"


def test_generate_config_reads_back_written_files(project, tmp_path_factory):
    output = tmp_path_factory.mktemp("out")
    provider = ready_provider(
        completion(
            tool_calls=[tool_call("t1", "writeFile", {"filePath": "Dockerfile", "content": "FROM node:20\n"})]
        ),
        completion(json.dumps({"configType": "docker", "files": [{"fileName": "./Dockerfile", "description": "image"}]})),
    )
    request = DeploymentConfigRequest(
        analysis=ANALYSIS, project_path=str(project), output_path=str(output), config_type="docker"
    )
    result = asyncio.run(provider.generate_deployment_config(request))

    assert [f.file_name for f in result.files] == ["Dockerfile"]
    assert result.files[0].content == "FROM node:20\n"
    assert result.files[0].description == "image"


def test_generate_config_keeps_written_files_when_summary_is_prose(project, tmp_path_factory):
    output = tmp_path_factory.mktemp("out")
    provider = ready_provider(
        completion(tool_calls=[tool_call("t1", "writeFile", {"filePath": "deploy.sh", "content": "#!/bin/sh\n"})]),
        completion("All files are written."),
    )
    request = DeploymentConfigRequest(
        analysis=ANALYSIS, project_path=str(project), output_path=str(output), config_type="bash"
    )
    result = asyncio.run(provider.generate_deployment_config(request))
    assert result.config_type == "bash"
    assert [f.file_name for f in result.files] == ["deploy.sh"]


# ---------------------------------------------------------------------------
# Registry and Claude agent
# ---------------------------------------------------------------------------


def test_create_provider():
    assert isinstance(create_provider("ollama"), OllamaProvider)
    assert isinstance(create_provider("claude-code"), ClaudeAgentProvider)
    with pytest.raises(ValueError, match="Unknown provider"):
        create_provider("nope")


def fake_sdk(result_text, is_error=False):
    class AssistantMessage:
        def __init__(self, content):
            self.content = content

    class TextBlock:
        def __init__(self, text):
            self.text = text

    class ToolUseBlock:
        def __init__(self, name):
            self.name = name

    class ResultMessage:
        def __init__(self):
            self.is_error = is_error
            self.subtype = "error_max_turns" if is_error else "success"
            self.result = result_text
            self.num_turns = 2

    async def query(prompt, options):
        yield AssistantMessage([TextBlock("Looking around"), ToolUseBlock("Read")])
        yield ResultMessage()

    return SimpleNamespace(
        ClaudeAgentOptions=lambda **kwargs: SimpleNamespace(**kwargs),
        AssistantMessage=AssistantMessage,
        TextBlock=TextBlock,
        ToolUseBlock=ToolUseBlock,
        ResultMessage=ResultMessage,
        query=query,
    )


def test_claude_agent_analyze(project, channel):
    provider = ClaudeAgentProvider(sdk=fake_sdk(json.dumps(ANALYSIS)), channel=channel)
    asyncio.run(provider.initialize(ProviderConfig(type="claude-agent-sdk", model="sonnet")))
    result = asyncio.run(provider.analyze_project(ProjectContext(project_path=str(project))))
    assert result.project_type == "api"
    assert channel.of_type("tool_use")[0].message == "Using Read"


def test_claude_agent_error_result_fails_initialize():
    provider = ClaudeAgentProvider(sdk=fake_sdk("", is_error=True))
    with pytest.raises(ProviderError):
        asyncio.run(provider.initialize(ProviderConfig(type="claude-agent-sdk")))
