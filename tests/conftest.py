"""Shared fixtures: scripted models, in-memory stores and an app factory."""

import asyncio
import json
from typing import AsyncIterator, List, Optional, Sequence

import pytest

from resumable_chat.config import Settings
from resumable_chat.domain.models import Message, Session
from resumable_chat.repositories.memory import InMemoryRepository
from resumable_chat.services.llm import (
    ChatModel,
    ModelEvent,
    ModelProvider,
    StepFinish,
    TextDelta,
    ToolSpec,
    Usage,
)
from resumable_chat.streams.registry import (
    Available,
    InMemoryStreamTransport,
    ResumableStreamRegistry,
)
from resumable_chat.streams.tasks import BackgroundTasks


class ScriptedChatModel(ChatModel):
    """Replays one scripted list of events per call.

    A step entry may be an Exception (raised at that point) or an
    ``asyncio.Event`` (awaited before continuing).
    """

    def __init__(self, steps: Optional[List[list]] = None, model_id: str = "chat-model") -> None:
        self.steps = steps or [[TextDelta("Hello"), TextDelta(" there")]]
        self.model_id = model_id
        self.calls: List[List[Message]] = []
        self.systems: List[Optional[str]] = []

    async def stream(
        self,
        messages: Sequence[Message],
        system: Optional[str] = None,
        tools: Sequence[ToolSpec] = (),
    ) -> AsyncIterator[ModelEvent]:
        index = min(len(self.calls), len(self.steps) - 1)
        self.calls.append(list(messages))
        self.systems.append(system)
        finished = False
        for item in self.steps[index]:
            if isinstance(item, Exception):
                raise item
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            if isinstance(item, StepFinish):
                finished = True
            yield item
        if not finished:
            yield StepFinish(usage=Usage(prompt_tokens=3, completion_tokens=2, total_tokens=5))


def make_provider(
    chat: Optional[ChatModel] = None,
    title: Optional[ChatModel] = None,
    artifact: Optional[ChatModel] = None,
) -> ModelProvider:
    chat = chat or ScriptedChatModel()
    return ModelProvider(
        {
            "chat-model": chat,
            "chat-model-reasoning": chat,
            "title-model": title or ScriptedChatModel([[TextDelta("Greeting")]], model_id="title-model"),
            "artifact-model": artifact
            or ScriptedChatModel([[TextDelta("# Draft")]], model_id="artifact-model"),
        }
    )


def make_settings(**overrides) -> Settings:
    values = {"turn_timeout_seconds": 5.0, "stream_transport": "memory"}
    values.update(overrides)
    return Settings(**values)


def parse_sse(body: str) -> List[dict]:
    """Decode a server-sent-event body into event dicts."""
    parsed = []
    for frame in body.split("\n\n"):
        frame = frame.strip()
        if frame.startswith("data: "):
            parsed.append(json.loads(frame[len("data: "):]))
    return parsed


def turn_payload(chat_id: str, text: str = "Hi", model: str = "chat-model", visibility: str = "private") -> dict:
    return {
        "id": chat_id,
        "message": {"parts": [{"type": "text", "text": text}]},
        "selectedChatModel": model,
        "selectedVisibilityType": visibility,
    }


def auth(user_id: str) -> dict:
    return {"x-user-id": user_id}


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def tasks() -> BackgroundTasks:
    return BackgroundTasks()


@pytest.fixture
def transport() -> InMemoryStreamTransport:
    return InMemoryStreamTransport()


@pytest.fixture
def registry(transport, tasks) -> ResumableStreamRegistry:
    return ResumableStreamRegistry(transport, tasks)


@pytest.fixture
def available(registry) -> Available:
    return Available(registry)


@pytest.fixture
def session() -> Session:
    return Session(user_id="user-1")
