# =============================================================================
# Agent Loop — streaming tool-calling driver around the Anthropic Messages API
# =============================================================================
#
# One run = one conversation. Each turn streams the model's reply (text deltas
# are forwarded to `on_event`), records the assistant turn, executes every
# tool_use block and feeds all tool results back as the next user turn.
#
# Stop conditions:
#   - a tool handler returns ToolResult(completes_run=True)   → "completed"
#   - history or progress-tool calls exceed their limits      → "limit"
#   - too many consecutive turns without a tool call          → MalformedResponseError
#
# The client is injected (AsyncAnthropic in production, a scripted fake in tests).
# =============================================================================

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import anthropic
from pydantic import BaseModel, ValidationError

logger = logging.getLogger("agent-loop")

EventSink = Callable[[dict], None]

DEFAULT_CORRECTIVE_MESSAGE = (
    "SYSTEM NOTICE: You replied with plain text. This is an automated workflow and "
    "plain-text replies are discarded. Respond ONLY by calling one of the available "
    "tools. Continue from where you stopped. Do not ask for permission or confirmation."
)


class AgentLoopError(RuntimeError):
    """The agent run could not continue."""


class MalformedResponseError(AgentLoopError):
    """The model kept answering in plain text instead of calling tools."""


class ToolExecutionError(Exception):
    """A tool call the model can correct (bad section title, missing parse, ...).

    Reported back to the model as an error tool result instead of aborting the run.
    """


@dataclass
class ToolResult:
    output: str
    completes_run: bool = False
    is_error: bool = False


@dataclass
class AgentTool:
    name: str
    description: str
    args_model: type[BaseModel]
    handler: Callable[[Any], Awaitable[ToolResult]]
    counts_progress: bool = False   # section tools count toward the safety limit

    def to_api(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.args_model.model_json_schema(),
        }


@dataclass
class AgentRunResult:
    completed: bool
    stop_reason: str                  # "completed" | "limit"
    turns: int
    messages: list = field(default_factory=list)
    tool_calls: Counter = field(default_factory=Counter)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _block_to_param(block) -> Optional[dict]:
    """Turn a response content block back into a request content block."""
    if block.type == "text":
        # The API rejects empty text blocks
        return {"type": "text", "text": block.text} if block.text else None
    if block.type == "tool_use":
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input or {}}
    if hasattr(block, "model_dump"):
        return block.model_dump(exclude_none=True)
    return None


def assistant_sent_plain_text(message) -> bool:
    """True when a model turn contains no tool call at all."""
    return not any(block.type == "tool_use" for block in message.content)


def _message_text(message) -> str:
    return "".join(b.text for b in message.content if b.type == "text").strip()


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, (anthropic.APIConnectionError, anthropic.RateLimitError)):
        return True
    return isinstance(exc, anthropic.APIStatusError) and exc.status_code >= 500


async def _stream_turn(
    client,
    params: dict,
    on_event: EventSink,
    *,
    retries: int,
    retry_delay: float,
    log_prefix: str,
):
    """
    Stream one model turn and return the final Message.
    Retries transient failures with backoff; on rate-limit (429) errors waits 30 s.
    """
    last_error: Optional[Exception] = None
    for attempt in range(1, retries + 1):
        streamed_text = False
        try:
            async with client.messages.stream(**params) as stream:
                async for event in stream:
                    if event.type == "text" and event.text:
                        on_event({"type": "text", "content": event.text})
                        streamed_text = True
                return await stream.get_final_message()
        except anthropic.APIError as e:
            if not _is_transient(e):
                raise
            last_error = e
            is_rate_limit = isinstance(e, anthropic.RateLimitError)
            wait = 30 if is_rate_limit else retry_delay * attempt
            logger.warning(
                f"{log_prefix}Model turn attempt {attempt}/{retries} failed "
                f"({'rate limit — waiting 30 s' if is_rate_limit else f'retrying in {wait} s'}): {e}"
            )
            if attempt < retries:
                if streamed_text:
                    # Clients drop the partial text of this turn; the retry streams it again
                    on_event({
                        "type": "status",
                        "status": "retrying",
                        "discard_partial_text": True,
                        "message": f"Model stream interrupted, retrying (attempt {attempt + 1}/{retries})",
                    })
                await asyncio.sleep(wait)

    raise AgentLoopError(f"Model call failed after {retries} attempts: {last_error}") from last_error


async def _execute_tool(tool: AgentTool, tool_input: Any) -> ToolResult:
    try:
        args = tool.args_model.model_validate(tool_input or {})
    except ValidationError as e:
        return ToolResult(f"Invalid arguments for {tool.name}: {e}", is_error=True)
    try:
        return await tool.handler(args)
    except ToolExecutionError as e:
        return ToolResult(str(e), is_error=True)


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------

async def run_agent_loop(
    *,
    client,
    model: str,
    system: str,
    initial_prompt: str,
    tools: list[AgentTool],
    on_event: EventSink,
    corrective_message: str = DEFAULT_CORRECTIVE_MESSAGE,
    max_tokens: int = 8000,
    max_malformed_retries: int = 3,
    max_messages: int = 100,
    max_progress_calls: int = 20,
    api_retries: int = 3,
    retry_delay: float = 2.0,
    turn_delay: float = 0.2,
    log_prefix: str = "",
) -> AgentRunResult:
    """Drive the conversation until a tool completes the run or a safety limit trips."""
    tool_map = {t.name: t for t in tools}
    base_params = {
        "model": model,
        "max_tokens": max_tokens,
        "system": system,
        "tools": [t.to_api() for t in tools],
    }
    messages: list[dict] = [{"role": "user", "content": initial_prompt}]
    tool_calls: Counter = Counter()
    progress_calls = 0
    malformed = 0
    turns = 0

    while True:
        turns += 1
        logger.info(
            f"{log_prefix}Turn {turns}: {len(messages)} messages, {progress_calls} progress calls"
        )
        message = await _stream_turn(
            client,
            {**base_params, "messages": messages},
            on_event,
            retries=api_retries,
            retry_delay=retry_delay,
            log_prefix=log_prefix,
        )

        content = [p for p in (_block_to_param(b) for b in message.content) if p]
        if content:
            messages.append({"role": "assistant", "content": content})

        if assistant_sent_plain_text(message):
            on_event({"type": "assistant", "content": _message_text(message)})
            malformed += 1
            if malformed > max_malformed_retries:
                raise MalformedResponseError(
                    f"Model did not call a tool after {max_malformed_retries} corrective retries"
                )
            logger.warning(
                f"{log_prefix}Plain-text reply (stop_reason={getattr(message, 'stop_reason', None)}) — "
                f"corrective retry {malformed}/{max_malformed_retries}"
            )
            on_event({
                "type": "warning",
                "message": f"Model replied without calling a tool — retry {malformed}/{max_malformed_retries}",
            })
            messages.append({"role": "user", "content": corrective_message})
        else:
            malformed = 0
            finished = False
            results = []
            for block in (b for b in message.content if b.type == "tool_use"):
                tool_calls[block.name] += 1
                call_event = {"type": "tool_call", "name": block.name}
                if isinstance(block.input, dict) and "query" in block.input:
                    call_event["query"] = block.input["query"]
                on_event(call_event)

                tool = tool_map.get(block.name)
                if finished:
                    result = ToolResult("The run is already complete; this call was ignored.")
                elif tool is None:
                    result = ToolResult(
                        f"Unknown tool '{block.name}'. Available tools: {', '.join(tool_map)}",
                        is_error=True,
                    )
                else:
                    if tool.counts_progress:
                        progress_calls += 1
                    result = await _execute_tool(tool, block.input)

                logger.info(
                    f"{log_prefix}Tool {block.name} → {'error' if result.is_error else 'ok'}"
                    f"{' (run complete)' if result.completes_run else ''}"
                )
                on_event({
                    "type": "tool_output",
                    "name": block.name,
                    "content": result.output,
                    "is_error": result.is_error,
                })
                tool_result = {"type": "tool_result", "tool_use_id": block.id, "content": result.output}
                if result.is_error:
                    tool_result["is_error"] = True
                results.append(tool_result)
                finished = finished or result.completes_run

            messages.append({"role": "user", "content": results})
            if finished:
                return AgentRunResult(True, "completed", turns, messages, tool_calls)

        if len(messages) > max_messages or progress_calls > max_progress_calls:
            logger.warning(
                f"{log_prefix}Safety limit reached ({len(messages)} messages, {progress_calls} progress calls)"
            )
            return AgentRunResult(False, "limit", turns, messages, tool_calls)

        if turn_delay:
            await asyncio.sleep(turn_delay)
