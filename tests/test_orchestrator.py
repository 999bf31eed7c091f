"""Tests for the streaming orchestrator."""

import asyncio
from typing import Any, Dict, List
from uuid import uuid4

import pytest

from conftest import ScriptedChatModel, make_provider
from resumable_chat.domain.models import Message, Role, TextPart, ToolCallPart, ToolResultPart
from resumable_chat.services.orchestrator import (
    Completed,
    Failed,
    PersistenceError,
    StreamingOrchestrator,
    TurnContext,
    TurnTimeoutError,
)
from resumable_chat.services.prompts import RequestHints
from resumable_chat.services.tools import Tool, ToolContext
from resumable_chat.streams.channel import OutputChannel
from resumable_chat.telemetry import CUSTOM_REGISTRY
from resumable_chat.services.llm import ReasoningDelta, TextDelta, ToolCallRequest


class EchoTool(Tool):
    name = "getWeather"
    description = "Echo the arguments"
    parameters = {"type": "OBJECT", "properties": {}}

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []

    async def execute(self, args: Dict[str, Any], context: ToolContext) -> Any:
        self.calls.append(args)
        context.channel.write_data({"type": "weather", "content": "sunny"})
        return {"temperature": 21}


class BrokenTool(EchoTool):
    async def execute(self, args: Dict[str, Any], context: ToolContext) -> Any:
        raise RuntimeError("tool exploded")


class FailingAppendRepository:
    """Wraps a repository and fails every assistant append."""

    def __init__(self, inner) -> None:
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def append_messages(self, messages):
        if any(m.role == Role.ASSISTANT for m in messages):
            raise RuntimeError("disk full")
        await self.inner.append_messages(messages)


async def start_turn(repository, session, text: str = "Hi") -> TurnContext:
    chat_id = uuid4()
    chat = await repository.create_chat(chat_id, session.user_id, "Test", "private")
    user_message = Message(chat_id=chat_id, role=Role.USER, parts=[TextPart(text=text)])
    await repository.append_messages([user_message])
    return TurnContext(
        chat=chat,
        session=session,
        messages=[user_message],
        selected_chat_model="chat-model",
        request_hints=RequestHints(city="Amsterdam"),
        stream_id=uuid4(),
    )


async def collect(channel: OutputChannel) -> List[dict]:
    return [event async for event in channel]


def orchestrator_for(repository, model, tools=None, **kwargs) -> StreamingOrchestrator:
    return StreamingOrchestrator(
        repository,
        repository,
        make_provider(chat=model),
        tools if tools is not None else {},
        **kwargs,
    )


@pytest.mark.asyncio
async def test_single_step_persists_one_assistant_message(repository, session):
    turn = await start_turn(repository, session)
    orchestrator = orchestrator_for(repository, ScriptedChatModel([[TextDelta("Hi "), TextDelta("back")]]))
    channel = OutputChannel()

    result, streamed = await asyncio.gather(orchestrator.execute(turn, channel), collect(channel))

    assert isinstance(result, Completed)
    assert result.message.text == "Hi back"
    assert [e["type"] for e in streamed] == [
        "start-step",
        "text-delta",
        "text-delta",
        "finish-step",
        "finish",
    ]
    assert streamed[-1]["messageId"] == str(result.message.id)

    messages = await repository.list_messages(turn.chat.id)
    assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT]


@pytest.mark.asyncio
async def test_tool_steps_still_persist_exactly_one_message(repository, session):
    turn = await start_turn(repository, session, "weather?")
    model = ScriptedChatModel(
        [
            [TextDelta("Checking. "), ToolCallRequest("call-1", "getWeather", {"latitude": 1, "longitude": 2})],
            [TextDelta("It is 21 degrees.")],
        ]
    )
    tool = EchoTool()
    orchestrator = orchestrator_for(repository, model, {"getWeather": tool})
    channel = OutputChannel()

    result, streamed = await asyncio.gather(orchestrator.execute(turn, channel), collect(channel))

    assert isinstance(result, Completed)
    assert result.steps == 2
    assert tool.calls == [{"latitude": 1, "longitude": 2}]
    assert result.message.text == "Checking. It is 21 degrees."
    assert any(isinstance(p, ToolCallPart) for p in result.message.parts)
    assert any(isinstance(p, ToolResultPart) and p.result == {"temperature": 21} for p in result.message.parts)

    types = [e["type"] for e in streamed]
    assert types.index("tool-call") < types.index("data") < types.index("tool-result")
    assert types.count("finish") == 1

    # The second step saw the tool result.
    second_input = model.calls[1]
    assert second_input[-1].role == Role.ASSISTANT
    assert isinstance(second_input[-1].parts[-1], ToolResultPart)

    assistant = [m for m in await repository.list_messages(turn.chat.id) if m.role == Role.ASSISTANT]
    assert len(assistant) == 1


@pytest.mark.asyncio
async def test_step_budget_bounds_tool_loop(repository, session):
    turn = await start_turn(repository, session)
    looping = ScriptedChatModel([[ToolCallRequest("c", "getWeather", {})]])
    orchestrator = orchestrator_for(repository, looping, {"getWeather": EchoTool()}, max_steps=3)
    channel = OutputChannel()

    result, _ = await asyncio.gather(orchestrator.execute(turn, channel), collect(channel))

    assert isinstance(result, Completed)
    assert len(looping.calls) == 3
    assert result.steps == 3


@pytest.mark.asyncio
async def test_model_failure_emits_one_error_and_persists_nothing(repository, session):
    turn = await start_turn(repository, session)
    model = ScriptedChatModel([[TextDelta("partial"), RuntimeError("boom")]])
    orchestrator = orchestrator_for(repository, model)
    channel = OutputChannel()

    result, streamed = await asyncio.gather(orchestrator.execute(turn, channel), collect(channel))

    assert isinstance(result, Failed)
    assert [e["type"] for e in streamed].count("error") == 1
    assert streamed[-1]["type"] == "error"
    assert streamed[1] == {"type": "text-delta", "textDelta": "partial"}
    assert [m.role for m in await repository.list_messages(turn.chat.id)] == [Role.USER]


@pytest.mark.asyncio
async def test_tool_failure_is_a_failed_turn(repository, session):
    turn = await start_turn(repository, session)
    model = ScriptedChatModel([[ToolCallRequest("c", "getWeather", {})]])
    orchestrator = orchestrator_for(repository, model, {"getWeather": BrokenTool()})
    channel = OutputChannel()

    result, streamed = await asyncio.gather(orchestrator.execute(turn, channel), collect(channel))

    assert isinstance(result, Failed)
    assert streamed[-1]["type"] == "error"
    assert len(await repository.list_messages(turn.chat.id)) == 1


@pytest.mark.asyncio
async def test_inactive_tool_call_fails_turn(repository, session):
    turn = await start_turn(repository, session)
    model = ScriptedChatModel([[ToolCallRequest("c", "createDocument", {"title": "x"})]])
    orchestrator = orchestrator_for(repository, model, {"getWeather": EchoTool()})
    channel = OutputChannel()

    result, _ = await asyncio.gather(orchestrator.execute(turn, channel), collect(channel))

    assert isinstance(result, Failed)


@pytest.mark.asyncio
async def test_persistence_failure_keeps_streamed_content(repository, session):
    turn = await start_turn(repository, session)
    orchestrator = orchestrator_for(
        FailingAppendRepository(repository), ScriptedChatModel([[TextDelta("answer")]])
    )
    channel = OutputChannel()

    result, streamed = await asyncio.gather(orchestrator.execute(turn, channel), collect(channel))

    assert isinstance(result, Failed)
    assert isinstance(result.error, PersistenceError)
    assert {"type": "text-delta", "textDelta": "answer"} in streamed
    assert streamed[-1]["type"] == "error"
    assert len(await repository.list_messages(turn.chat.id)) == 1


@pytest.mark.asyncio
async def test_timeout_ends_stream_with_error(repository, session):
    turn = await start_turn(repository, session)
    never = asyncio.Event()
    orchestrator = orchestrator_for(
        repository, ScriptedChatModel([[TextDelta("slow"), never]]), timeout_seconds=0.05
    )
    channel = OutputChannel()

    result, streamed = await asyncio.gather(orchestrator.execute(turn, channel), collect(channel))

    assert isinstance(result, Failed)
    assert isinstance(result.error, TurnTimeoutError)
    assert streamed[-1]["type"] == "error"
    assert len(await repository.list_messages(turn.chat.id)) == 1


@pytest.mark.asyncio
async def test_cancelled_channel_stops_before_tools(repository, session):
    turn = await start_turn(repository, session)
    tool = EchoTool()
    gate = asyncio.Event()
    model = ScriptedChatModel([[gate, ToolCallRequest("c", "getWeather", {})]])
    orchestrator = orchestrator_for(repository, model, {"getWeather": tool})
    channel = OutputChannel()

    task = asyncio.create_task(orchestrator.execute(turn, channel))
    await asyncio.sleep(0)
    channel.cancel()
    gate.set()
    result = await task

    assert isinstance(result, Failed)
    assert tool.calls == []
    assert len(await repository.list_messages(turn.chat.id)) == 1


@pytest.mark.asyncio
async def test_reasoning_is_stored_but_not_in_text(repository, session):
    turn = await start_turn(repository, session)
    model = ScriptedChatModel([[ReasoningDelta("thinking"), TextDelta("answer")]])
    orchestrator = orchestrator_for(repository, model)
    channel = OutputChannel()

    result, streamed = await asyncio.gather(orchestrator.execute(turn, channel), collect(channel))

    assert isinstance(result, Completed)
    assert result.message.text == "answer"
    assert result.message.parts[0].type == "reasoning"
    assert {"type": "reasoning", "textDelta": "thinking"} in streamed


@pytest.mark.asyncio
async def test_system_prompt_carries_request_hints(repository, session):
    turn = await start_turn(repository, session)
    model = ScriptedChatModel()
    orchestrator = orchestrator_for(repository, model)
    channel = OutputChannel()

    await asyncio.gather(orchestrator.execute(turn, channel), collect(channel))

    assert "city: Amsterdam" in model.systems[0]


def turns_counted(outcome: str) -> float:
    return CUSTOM_REGISTRY.get_sample_value("chat_turns_total", {"outcome": outcome}) or 0.0


@pytest.mark.asyncio
async def test_completed_result_is_the_persisted_message(repository, session):
    turn = await start_turn(repository, session)
    orchestrator = orchestrator_for(repository, ScriptedChatModel([[TextDelta("done")]]))
    channel = OutputChannel()
    before = turns_counted("completed")

    result, _ = await asyncio.gather(orchestrator.execute(turn, channel), collect(channel))

    stored = (await repository.list_messages(turn.chat.id))[-1]
    assert isinstance(result, Completed)
    assert result.message.id == stored.id
    assert turns_counted("completed") == before + 1


@pytest.mark.asyncio
async def test_shutdown_cancellation_is_counted_and_ends_stream(repository, session):
    turn = await start_turn(repository, session)
    gate = asyncio.Event()
    model = ScriptedChatModel([[gate]])
    orchestrator = orchestrator_for(repository, model)
    channel = OutputChannel()
    before = turns_counted("cancelled")

    task = asyncio.create_task(orchestrator.execute(turn, channel))
    while not model.calls:
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    streamed = await collect(channel)
    assert streamed[-1]["type"] == "error"
    assert turns_counted("cancelled") == before + 1
    assert len(await repository.list_messages(turn.chat.id)) == 1
