"""Model invocation layer backed by Google's Gemini models."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union
from uuid import uuid4

import google.generativeai as genai
import structlog
from google.api_core import exceptions

from ..config import Settings
from ..domain.models import Message, Role, TextPart, ToolCallPart, ToolResultPart

logger = structlog.get_logger()


class ModelInvocationError(Exception):
    """Raised when the model service rejects or fails a call."""


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: "Usage") -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens

    def as_dict(self) -> Dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass
class TextDelta:
    text: str


@dataclass
class ReasoningDelta:
    text: str


@dataclass
class ToolCallRequest:
    tool_call_id: str
    tool_name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StepFinish:
    finish_reason: str = "stop"
    usage: Usage = field(default_factory=Usage)


ModelEvent = Union[TextDelta, ReasoningDelta, ToolCallRequest, StepFinish]


@dataclass(frozen=True)
class ToolSpec:
    """What the model is told about a callable tool."""

    name: str
    description: str
    parameters: Dict[str, Any]


class ChatModel(ABC):
    """One streamed model step: messages in, events out."""

    model_id: str = "chat-model"

    @abstractmethod
    def stream(
        self,
        messages: Sequence[Message],
        system: Optional[str] = None,
        tools: Sequence[ToolSpec] = (),
    ) -> AsyncIterator[ModelEvent]:
        """Yield deltas and tool calls, ending with a StepFinish."""

    async def generate_text(
        self, messages: Sequence[Message], system: Optional[str] = None
    ) -> str:
        chunks: List[str] = []
        async for event in self.stream(messages, system=system):
            if isinstance(event, TextDelta):
                chunks.append(event.text)
        return "".join(chunks)


def _function_response(result: Any) -> Dict[str, Any]:
    if isinstance(result, dict):
        return result
    return {"result": result}


def to_gemini_contents(messages: Sequence[Message]) -> List[Dict[str, Any]]:
    """Convert stored messages into Gemini ``contents``.

    Tool results become ``function_response`` parts on a user turn placed
    right after the model turn that issued the call.
    """
    contents: List[Dict[str, Any]] = []
    for message in messages:
        if message.role == Role.SYSTEM:
            continue

        if message.role == Role.USER:
            parts: List[Dict[str, Any]] = [
                {"text": part.text} for part in message.parts if isinstance(part, TextPart)
            ]
            parts.extend(
                {"text": f"[attachment {a.name} ({a.content_type}): {a.url}]"}
                for a in message.attachments
            )
            if parts:
                contents.append({"role": "user", "parts": parts})
            continue

        model_parts: List[Dict[str, Any]] = []
        responses: List[Dict[str, Any]] = []
        for part in message.parts:
            if isinstance(part, ToolResultPart):
                if model_parts:
                    contents.append({"role": "model", "parts": model_parts})
                    model_parts = []
                responses.append(
                    {
                        "function_response": {
                            "name": part.tool_name,
                            "response": _function_response(part.result),
                        }
                    }
                )
                continue

            if responses:
                contents.append({"role": "user", "parts": responses})
                responses = []
            if isinstance(part, TextPart) and part.text:
                model_parts.append({"text": part.text})
            elif isinstance(part, ToolCallPart):
                model_parts.append({"function_call": {"name": part.tool_name, "args": part.args}})

        if model_parts:
            contents.append({"role": "model", "parts": model_parts})
        if responses:
            contents.append({"role": "user", "parts": responses})
    return contents


class GeminiChatModel(ChatModel):
    """Streaming Gemini model with function calling."""

    def __init__(self, model_name: str, model_id: str = "chat-model") -> None:
        self.model_name = model_name
        self.model_id = model_id

    def _tools(self, tools: Sequence[ToolSpec]) -> Optional[List[Dict[str, Any]]]:
        if not tools:
            return None
        return [
            {
                "function_declarations": [
                    {"name": t.name, "description": t.description, "parameters": t.parameters}
                    for t in tools
                ]
            }
        ]

    async def stream(
        self,
        messages: Sequence[Message],
        system: Optional[str] = None,
        tools: Sequence[ToolSpec] = (),
    ) -> AsyncIterator[ModelEvent]:
        model = genai.GenerativeModel(
            self.model_name,
            system_instruction=system or None,
            tools=self._tools(tools),
        )
        usage = Usage()
        finish_reason = "stop"
        called_tool = False

        try:
            response = await model.generate_content_async(to_gemini_contents(messages), stream=True)
            async for chunk in response:
                if chunk.usage_metadata:
                    usage = Usage(
                        prompt_tokens=chunk.usage_metadata.prompt_token_count,
                        completion_tokens=chunk.usage_metadata.candidates_token_count,
                        total_tokens=chunk.usage_metadata.total_token_count,
                    )
                if not chunk.candidates:
                    continue
                candidate = chunk.candidates[0]
                if candidate.finish_reason:
                    finish_reason = candidate.finish_reason.name.lower()
                for part in candidate.content.parts:
                    function_call = part.function_call
                    if function_call and function_call.name:
                        called_tool = True
                        yield ToolCallRequest(
                            tool_call_id=uuid4().hex,
                            tool_name=function_call.name,
                            args=dict(function_call.args),
                        )
                    elif part.text:
                        yield TextDelta(part.text)
        except exceptions.ResourceExhausted as e:
            logger.warning("gemini_quota_exhausted", model=self.model_name)
            raise ModelInvocationError("Model quota exhausted") from e
        except exceptions.GoogleAPIError as e:
            logger.error("gemini_call_failed", model=self.model_name, error=str(e))
            raise ModelInvocationError(str(e)) from e

        yield StepFinish(finish_reason="tool-calls" if called_tool else finish_reason, usage=usage)


class _TagSplitter:
    """Splits a text stream on ``<tag>…</tag>`` boundaries across chunks."""

    def __init__(self, tag: str) -> None:
        self.open_marker = f"<{tag}>"
        self.close_marker = f"</{tag}>"
        self.inside = False
        self.buffer = ""

    def _event(self, text: str) -> ModelEvent:
        return ReasoningDelta(text) if self.inside else TextDelta(text)

    @staticmethod
    def _partial_suffix(text: str, marker: str) -> int:
        for size in range(min(len(text), len(marker) - 1), 0, -1):
            if text.endswith(marker[:size]):
                return size
        return 0

    def feed(self, text: str) -> List[ModelEvent]:
        self.buffer += text
        out: List[ModelEvent] = []
        while True:
            marker = self.close_marker if self.inside else self.open_marker
            index = self.buffer.find(marker)
            if index == -1:
                keep = self._partial_suffix(self.buffer, marker)
                ready = self.buffer[: len(self.buffer) - keep]
                if ready:
                    out.append(self._event(ready))
                self.buffer = self.buffer[len(self.buffer) - keep:]
                return out
            if index:
                out.append(self._event(self.buffer[:index]))
            self.buffer = self.buffer[index + len(marker):]
            self.inside = not self.inside

    def flush(self) -> List[ModelEvent]:
        if not self.buffer:
            return []
        out = [self._event(self.buffer)]
        self.buffer = ""
        return out


class ReasoningChatModel(ChatModel):
    """Moves ``<think>`` segments of the wrapped model's text into reasoning events."""

    def __init__(self, inner: ChatModel, tag: str = "think", model_id: str = "chat-model-reasoning") -> None:
        self.inner = inner
        self.tag = tag
        self.model_id = model_id

    async def stream(
        self,
        messages: Sequence[Message],
        system: Optional[str] = None,
        tools: Sequence[ToolSpec] = (),
    ) -> AsyncIterator[ModelEvent]:
        splitter = _TagSplitter(self.tag)
        async for event in self.inner.stream(messages, system=system, tools=tools):
            if isinstance(event, TextDelta):
                for split in splitter.feed(event.text):
                    yield split
                continue
            if isinstance(event, StepFinish):
                for split in splitter.flush():
                    yield split
            yield event


class ModelProvider:
    """Maps public model ids to model implementations."""

    def __init__(self, language_models: Dict[str, ChatModel]) -> None:
        self._language_models = dict(language_models)

    @property
    def model_ids(self) -> List[str]:
        return list(self._language_models)

    def language_model(self, model_id: str) -> ChatModel:
        try:
            return self._language_models[model_id]
        except KeyError:
            raise ValueError(f"Unknown model id: {model_id}") from None


def build_provider(settings: Settings) -> ModelProvider:
    """Wire the Gemini-backed models."""
    if settings.gemini_api_key:
        genai.configure(api_key=settings.gemini_api_key)
    chat_model = GeminiChatModel(settings.chat_model_name, model_id="chat-model")
    reasoning = ReasoningChatModel(
        GeminiChatModel(settings.reasoning_model_name, model_id="chat-model-reasoning")
    )
    logger.info(
        "model_provider_init",
        chat_model=settings.chat_model_name,
        reasoning_model=settings.reasoning_model_name,
        api_key_configured=bool(settings.gemini_api_key),
    )
    return ModelProvider(
        {
            "chat-model": chat_model,
            "chat-model-reasoning": reasoning,
            "title-model": GeminiChatModel(settings.chat_model_name, model_id="title-model"),
            "artifact-model": GeminiChatModel(settings.chat_model_name, model_id="artifact-model"),
        }
    )
