"""Streaming orchestration of a single assistant turn.

A turn is a bounded loop of model steps. Each step streams deltas and tool
calls onto the live output channel; tool calls are executed in order and
their results fed to the next step. When the loop ends the produced parts
are persisted as exactly one assistant message. Any failure before that
append emits one terminal error event and persists nothing.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union
from uuid import UUID, uuid4

import structlog
from opentelemetry.trace import Span

from ..domain.models import (
    Chat,
    Message,
    MessagePart,
    ReasoningPart,
    Role,
    Session,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from ..repositories.base import DocumentRepository, Repository
from ..streams import events
from ..streams.channel import OutputChannel
from ..streams.tasks import BackgroundTasks
from ..telemetry import CHAT_TURNS, record_error
from . import prompts
from .llm import (
    ModelInvocationError,
    ModelProvider,
    ReasoningDelta,
    StepFinish,
    TextDelta,
    ToolCallRequest,
    Usage,
)
from .tools import Tool, ToolContext, ToolExecutionError

logger = structlog.get_logger()

ERROR_MESSAGE = "Oops, an error occurred!"


class TurnCancelled(Exception):
    """The client went away before the turn reached persistence."""


class TurnTimeoutError(Exception):
    """The turn exceeded its wall-clock ceiling."""


class PersistenceError(Exception):
    """The assistant message could not be stored."""


@dataclass
class TurnContext:
    """Everything one turn needs, resolved before the model is called."""

    chat: Chat
    session: Session
    messages: List[Message]
    selected_chat_model: str
    request_hints: prompts.RequestHints
    stream_id: UUID
    span: Optional[Span] = None


@dataclass(frozen=True)
class Completed:
    message: Message
    usage: Usage
    steps: int


@dataclass(frozen=True)
class Failed:
    error: BaseException


TurnResult = Union[Completed, Failed]


@dataclass
class _TurnState:
    """Accumulator shared with the running pipeline so it survives a timeout."""

    parts: List[MessagePart] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    steps: int = 0
    finish_reason: str = "stop"
    tools_called: List[str] = field(default_factory=list)
    persisted: Optional[Message] = None


class StreamingOrchestrator:
    """Runs turns against the model with a step budget and a timeout."""

    def __init__(
        self,
        repository: Repository,
        documents: DocumentRepository,
        provider: ModelProvider,
        tools: Dict[str, Tool],
        max_steps: int = 5,
        timeout_seconds: float = 60.0,
    ) -> None:
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self.repository = repository
        self.documents = documents
        self.provider = provider
        self.tools = tools
        self.max_steps = max_steps
        self.timeout_seconds = timeout_seconds

    def launch(self, turn: TurnContext, tasks: BackgroundTasks) -> OutputChannel:
        """Start the turn in the background and return its live channel."""
        channel = OutputChannel(str(turn.stream_id))
        tasks.spawn(self.execute(turn, channel), name=f"turn:{turn.stream_id}")
        return channel

    async def execute(self, turn: TurnContext, channel: OutputChannel) -> TurnResult:
        """Run one turn to completion; never raises for pipeline failures."""
        state = _TurnState()
        log = logger.bind(chat_id=str(turn.chat.id), stream_id=str(turn.stream_id))
        try:
            message = await asyncio.wait_for(
                self._run(turn, channel, state), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            result = self._fail(
                turn, channel, state, TurnTimeoutError(f"Turn exceeded {self.timeout_seconds}s")
            )
        except asyncio.CancelledError:
            channel.error(ERROR_MESSAGE)
            channel.close()
            CHAT_TURNS.labels(outcome="cancelled").inc()
            self._end_span(turn, "cancelled")
            raise
        except Exception as e:
            result = self._fail(turn, channel, state, e)
        else:
            result = Completed(message=message, usage=state.usage, steps=state.steps)
            log.info(
                "turn_completed",
                message_id=str(message.id),
                steps=state.steps,
                tools_called=state.tools_called,
                total_tokens=state.usage.total_tokens,
            )
        finally:
            channel.close()

        outcome = "completed" if isinstance(result, Completed) else "failed"
        CHAT_TURNS.labels(outcome=outcome).inc()
        self._record(turn, state, result)
        return result

    def _fail(
        self, turn: TurnContext, channel: OutputChannel, state: _TurnState, error: Exception
    ) -> TurnResult:
        if state.persisted is not None:
            # The failure came after the append; the turn stands.
            logger.warning(
                "turn_failed_after_persistence",
                chat_id=str(turn.chat.id),
                message_id=str(state.persisted.id),
                error=str(error),
            )
            return Completed(message=state.persisted, usage=state.usage, steps=state.steps)

        if isinstance(error, TurnCancelled):
            logger.info("turn_cancelled", chat_id=str(turn.chat.id), steps=state.steps)
        else:
            logger.error(
                "turn_failed",
                chat_id=str(turn.chat.id),
                stream_id=str(turn.stream_id),
                steps=state.steps,
                error_type=type(error).__name__,
                error=str(error),
            )
        channel.error(ERROR_MESSAGE)
        return Failed(error=error)

    async def _run(self, turn: TurnContext, channel: OutputChannel, state: _TurnState) -> Message:
        model = self.provider.language_model(turn.selected_chat_model)
        system = prompts.system_prompt(turn.selected_chat_model, turn.request_hints)
        tool_specs = [tool.spec() for tool in self.tools.values()]
        tool_context = ToolContext(
            session=turn.session,
            channel=channel,
            documents=self.documents,
            provider=self.provider,
            chat_id=turn.chat.id,
        )
        working = list(turn.messages)

        for step in range(1, self.max_steps + 1):
            self._check_cancelled(channel)
            state.steps = step
            channel.write(events.start_step(step))

            text: List[str] = []
            reasoning: List[str] = []
            calls: List[ToolCallRequest] = []
            finish = StepFinish()
            async for event in model.stream(working, system=system, tools=tool_specs):
                if isinstance(event, TextDelta):
                    text.append(event.text)
                    channel.write(events.text_delta(event.text))
                elif isinstance(event, ReasoningDelta):
                    reasoning.append(event.text)
                    channel.write(events.reasoning_delta(event.text))
                elif isinstance(event, ToolCallRequest):
                    calls.append(event)
                    channel.write(events.tool_call(event.tool_call_id, event.tool_name, event.args))
                elif isinstance(event, StepFinish):
                    finish = event

            state.usage.add(finish.usage)
            channel.write(events.finish_step(step, finish.finish_reason, finish.usage.as_dict()))

            step_parts: List[MessagePart] = []
            if reasoning:
                step_parts.append(ReasoningPart(text="".join(reasoning)))
            if text:
                step_parts.append(TextPart(text="".join(text)))
            for call in calls:
                step_parts.append(
                    ToolCallPart(tool_call_id=call.tool_call_id, tool_name=call.tool_name, args=call.args)
                )

            for call in calls:
                self._check_cancelled(channel)
                tool = self.tools.get(call.tool_name)
                if tool is None:
                    raise ToolExecutionError(f"Model called an inactive tool: {call.tool_name}")
                result = await tool.execute(call.args, tool_context)
                state.tools_called.append(call.tool_name)
                step_parts.append(
                    ToolResultPart(tool_call_id=call.tool_call_id, tool_name=call.tool_name, result=result)
                )
                channel.write(events.tool_result(call.tool_call_id, call.tool_name, result))

            state.parts.extend(step_parts)
            state.finish_reason = finish.finish_reason
            if not calls:
                break
            working.append(Message(chat_id=turn.chat.id, role=Role.ASSISTANT, parts=step_parts))
        else:
            logger.info("step_budget_exhausted", chat_id=str(turn.chat.id), max_steps=self.max_steps)

        if not state.parts:
            raise ModelInvocationError("Model returned an empty response")

        message = Message(id=uuid4(), chat_id=turn.chat.id, role=Role.ASSISTANT, parts=state.parts)
        try:
            await self.repository.append_messages([message])
        except Exception as e:
            logger.error(
                "assistant_message_save_failed",
                chat_id=str(turn.chat.id),
                message_id=str(message.id),
                error=str(e),
            )
            raise PersistenceError(str(e)) from e
        state.persisted = message

        channel.write(events.finish(str(message.id), state.finish_reason, state.usage.as_dict()))
        return message

    @staticmethod
    def _check_cancelled(channel: OutputChannel) -> None:
        if channel.cancelled:
            raise TurnCancelled()

    def _record(self, turn: TurnContext, state: _TurnState, result: TurnResult) -> None:
        span = turn.span
        if span is None:
            return
        span.set_attributes(
            {
                "app.ai.response.finish_reason": state.finish_reason,
                "app.ai.response.tokens.total": state.usage.total_tokens,
                "app.ai.response.tokens.prompt": state.usage.prompt_tokens,
                "app.ai.response.tokens.completion": state.usage.completion_tokens,
                "app.ai.tools.called": state.tools_called,
                "app.ai.tools.called_count": len(state.tools_called),
                "app.ai.steps": state.steps,
            }
        )
        if isinstance(result, Completed):
            span.set_attributes({"app.message.id": str(result.message.id), "app.message.role": "assistant"})
        else:
            record_error(span, result.error, {"app.error.context": "ai_streaming"})
        span.end()

    @staticmethod
    def _end_span(turn: TurnContext, reason: str) -> None:
        if turn.span is not None:
            turn.span.set_attribute("app.turn.ended", reason)
            turn.span.end()
