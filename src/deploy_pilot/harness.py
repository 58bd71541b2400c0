# harness.py
# Tool-calling loop
#
# The loop owns all control flow. The model is a passive responder: each
# step sends the conversation, receives one turn, runs the requested tools
# in order and appends their results before asking again.
#
# A run ends when:
#   the model answers without calling tools     → final answer
#   stop_when() turns true after a turn         → stopped (e.g. completeSession)
#   the step budget is spent                    → exhausted, accumulated text
#   the wall-clock budget is spent              → ToolLoopTimeout
#
# Progress goes to the ProgressChannel; structured logs go to logging.

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from deploy_pilot.events import ProgressChannel
from deploy_pilot.models import AgentTurn, ToolCall, ToolResult
from deploy_pilot.timing import OperationTimeout, race_with_timeout
from deploy_pilot.tools import Toolbox

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 50
DEFAULT_LOOP_TIMEOUT = 30 * 60.0
THINKING_PREVIEW_CHARS = 150
MAX_TOOL_OUTPUT_CHARS = 20_000

# Providers put the raw argument string under this key when it is not JSON.
INVALID_ARGUMENTS_KEY = "__invalid_arguments__"

_SECRET_KEY_RE = re.compile(r"secret|token|password|passwd|api_?key|credential", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ToolLoopTimeout(OperationTimeout):
    """Raised when a whole tool loop run exceeds its wall-clock budget."""


# ---------------------------------------------------------------------------
# Model seam
# ---------------------------------------------------------------------------


@dataclass
class ModelTurn:
    text: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)


class ChatModel(Protocol):
    async def complete(self, messages: list[dict], tools: list[dict]) -> ModelTurn: ...


@dataclass
class LoopResult:
    text: str
    transcript: list[AgentTurn]
    steps: int
    exhausted: bool = False
    stopped: bool = False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _assistant_message(turn: ModelTurn) -> dict:
    return {
        "role": "assistant",
        "content": turn.text or None,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.input)},
            }
            for call in turn.tool_calls
        ],
    }


def _tool_content(result: ToolResult) -> str:
    payload = {"error": result.error} if result.error is not None else result.output
    text = json.dumps(payload, default=str)
    if len(text) > MAX_TOOL_OUTPUT_CHARS:
        text = text[:MAX_TOOL_OUTPUT_CHARS] + "…[truncated]"
    return text


def redact(value: Any, key: str = "") -> Any:
    """Copy of a tool input safe to show: secrets masked, long strings shortened."""
    if key and _SECRET_KEY_RE.search(key):
        return "***"
    if isinstance(value, dict):
        return {k: redact(v, str(k)) for k, v in value.items()}
    if isinstance(value, list):
        return [redact(item) for item in value]
    if isinstance(value, str) and len(value) > 200:
        return f"<{len(value)} chars>"
    return value


def summarize_output(result: ToolResult) -> str:
    if result.error is not None:
        return f"error: {result.error[:THINKING_PREVIEW_CHARS]}"
    output = result.output
    if isinstance(output, dict):
        if "count" in output:
            return f"{output['count']} result(s)"
        if "success" in output:
            return "ok" if output["success"] else "failed"
    text = json.dumps(output, default=str)
    return text[:THINKING_PREVIEW_CHARS]


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


class ToolLoop:
    """
    Bounded multi-step tool-calling conversation with one model.

    Example:
        loop = ToolLoop(model, create_project_analysis_tools("./app"), max_steps=30)
        result = await loop.run(SYSTEM_PROMPT, "Analyze this project.")
    """

    def __init__(
        self,
        model: ChatModel,
        toolbox: Toolbox,
        *,
        max_steps: int = DEFAULT_MAX_STEPS,
        timeout: float | None = DEFAULT_LOOP_TIMEOUT,
        channel: ProgressChannel | None = None,
        stop_when: Callable[[], bool] | None = None,
    ) -> None:
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self._model = model
        self._toolbox = toolbox
        self._max_steps = max_steps
        self._timeout = timeout
        self._channel = channel
        self._stop_when = stop_when

    async def run(self, system_prompt: str, prompt: str) -> LoopResult:
        return await race_with_timeout(
            self._run(system_prompt, prompt),
            self._timeout,
            f"Tool loop did not finish within {self._timeout:.0f}s." if self._timeout else "",
            error=ToolLoopTimeout,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, system_prompt: str, prompt: str) -> LoopResult:
        messages: list[dict] = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": prompt},
        ]
        schemas = self._toolbox.schemas()
        transcript: list[AgentTurn] = []
        texts: list[str] = []

        for step in range(1, self._max_steps + 1):
            turn = await self._model.complete(messages, schemas)
            if turn.text and turn.text.strip():
                texts.append(turn.text.strip())
            self._emit_thinking(turn.text, step)

            if not turn.tool_calls:
                transcript.append(AgentTurn(assistant_text=turn.text))
                final = (turn.text or "").strip() or "\n\n".join(texts)
                LOGGER.debug("tool_loop_finished", extra={"steps": step})
                return LoopResult(text=final, transcript=transcript, steps=step)

            messages.append(_assistant_message(turn))
            results = [await self._execute(call, index, messages) for index, call in enumerate(turn.tool_calls)]
            transcript.append(
                AgentTurn(assistant_text=turn.text, tool_calls=turn.tool_calls, tool_results=results)
            )
            LOGGER.debug(
                "tool_loop_step",
                extra={"step": step, "tools": [call.name for call in turn.tool_calls]},
            )

            if self._stop_when is not None and self._stop_when():
                LOGGER.debug("tool_loop_stopped", extra={"steps": step})
                return LoopResult(text="\n\n".join(texts), transcript=transcript, steps=step, stopped=True)

        LOGGER.warning("tool_loop_exhausted", extra={"max_steps": self._max_steps})
        return LoopResult(
            text="\n\n".join(texts),
            transcript=transcript,
            steps=self._max_steps,
            exhausted=True,
        )

    async def _execute(self, call: ToolCall, index: int, messages: list[dict]) -> ToolResult:
        if INVALID_ARGUMENTS_KEY in call.input:
            result = ToolResult(
                tool_call_index=index,
                error=f"Arguments for {call.name} were not valid JSON. Send a JSON object.",
            )
        else:
            result = await self._toolbox.execute(call, index)
        messages.append({"role": "tool", "tool_call_id": call.id, "content": _tool_content(result)})
        self._emit_tool_use(call, result)
        return result

    def _emit_tool_use(self, call: ToolCall, result: ToolResult) -> None:
        if self._channel is None:
            return
        self._channel.emit(
            "tool_use",
            self._toolbox.describe(call),
            tool=call.name,
            input=redact(call.input),
            success=result.ok,
            output=summarize_output(result),
        )

    def _emit_thinking(self, text: str | None, step: int) -> None:
        if self._channel is None or not text or not text.strip():
            return
        text = text.strip()
        preview = text[:THINKING_PREVIEW_CHARS] + ("…" if len(text) > THINKING_PREVIEW_CHARS else "")
        self._channel.emit("thinking", preview, step=step)
