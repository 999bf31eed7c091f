"""Tools the model may call during a turn.

Every tool runs with the caller's session and the live output channel, so
it can push intermediate UI events (document deltas, suggestions) while the
turn is still streaming.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import UUID, uuid4

import httpx
import structlog

from ..domain.models import Document, DocumentKind, Message, Role, Session, Suggestion, TextPart
from ..repositories.base import DocumentRepository
from ..streams.channel import OutputChannel
from . import prompts
from .llm import ModelProvider, TextDelta, ToolSpec

logger = structlog.get_logger()

OPEN_METEO_URL = "https://api.open-meteo.com/v1/forecast"


class ToolExecutionError(Exception):
    """Raised when a tool cannot complete."""


@dataclass
class ToolContext:
    session: Session
    channel: OutputChannel
    documents: DocumentRepository
    provider: ModelProvider
    chat_id: UUID


class Tool(ABC):
    name: str
    description: str
    parameters: Dict[str, Any]

    def spec(self) -> ToolSpec:
        return ToolSpec(name=self.name, description=self.description, parameters=self.parameters)

    @abstractmethod
    async def execute(self, args: Dict[str, Any], context: ToolContext) -> Any:
        """Run the tool and return its JSON-serialisable result."""


class GetWeather(Tool):
    name = "getWeather"
    description = "Get the current weather at a location"
    parameters = {
        "type": "OBJECT",
        "properties": {
            "latitude": {"type": "NUMBER"},
            "longitude": {"type": "NUMBER"},
        },
        "required": ["latitude", "longitude"],
    }

    def __init__(self, client_factory: Optional[Callable[[], httpx.AsyncClient]] = None) -> None:
        self._client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=10.0))

    async def execute(self, args: Dict[str, Any], context: ToolContext) -> Any:
        try:
            params = {
                "latitude": float(args["latitude"]),
                "longitude": float(args["longitude"]),
                "current": "temperature_2m",
                "hourly": "temperature_2m",
                "daily": "sunrise,sunset",
                "timezone": "auto",
            }
        except (KeyError, TypeError, ValueError) as e:
            raise ToolExecutionError(f"Invalid coordinates: {args}") from e

        async with self._client_factory() as client:
            try:
                response = await client.get(OPEN_METEO_URL, params=params)
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.error("weather_lookup_failed", error=str(e))
                raise ToolExecutionError("Weather lookup failed") from e
        return response.json()


def _delta_type(kind: DocumentKind) -> str:
    return {
        DocumentKind.TEXT: "text-delta",
        DocumentKind.CODE: "code-delta",
        DocumentKind.SHEET: "sheet-delta",
    }[kind]


async def _stream_document_content(
    context: ToolContext, kind: DocumentKind, system: str, prompt: str
) -> str:
    """Generate document content with the artifact model, forwarding deltas."""
    model = context.provider.language_model("artifact-model")
    request = Message(chat_id=context.chat_id, role=Role.USER, parts=[TextPart(text=prompt)])
    chunks: List[str] = []
    async for event in model.stream([request], system=system):
        if isinstance(event, TextDelta) and event.text:
            chunks.append(event.text)
            context.channel.write_data({"type": _delta_type(kind), "content": event.text})
    return "".join(chunks)


class CreateDocument(Tool):
    name = "createDocument"
    description = (
        "Create a document for a writing or content creation activities. This tool will call "
        "other functions that will generate the contents of the document based on the title and kind."
    )
    parameters = {
        "type": "OBJECT",
        "properties": {
            "title": {"type": "STRING"},
            "kind": {"type": "STRING", "enum": [k.value for k in DocumentKind]},
        },
        "required": ["title", "kind"],
    }

    async def execute(self, args: Dict[str, Any], context: ToolContext) -> Any:
        title = str(args.get("title") or "").strip()
        if not title:
            raise ToolExecutionError("A document title is required")
        try:
            kind = DocumentKind(args.get("kind", DocumentKind.TEXT.value))
        except ValueError as e:
            raise ToolExecutionError(f"Unsupported document kind: {args.get('kind')}") from e

        document_id = uuid4()
        channel = context.channel
        channel.write_data({"type": "kind", "content": kind.value})
        channel.write_data({"type": "id", "content": str(document_id)})
        channel.write_data({"type": "title", "content": title})
        channel.write_data({"type": "clear", "content": ""})

        content = await _stream_document_content(
            context, kind, prompts.create_document_prompt(kind), title
        )
        await context.documents.save_document(
            Document(
                id=document_id,
                user_id=context.session.user_id,
                title=title,
                kind=kind,
                content=content,
            )
        )
        channel.write_data({"type": "finish", "content": ""})

        return {
            "id": str(document_id),
            "title": title,
            "kind": kind.value,
            "content": "A document was created and is now visible to the user.",
        }


async def _load_own_document(context: ToolContext, raw_id: Any) -> Document:
    try:
        document_id = UUID(str(raw_id))
    except ValueError as e:
        raise ToolExecutionError(f"Invalid document id: {raw_id}") from e

    versions = await context.documents.get_documents_by_id(document_id)
    if not versions:
        raise ToolExecutionError("Document not found")
    document = versions[-1]
    if document.user_id != context.session.user_id:
        raise ToolExecutionError("Document not found")
    return document


class UpdateDocument(Tool):
    name = "updateDocument"
    description = "Update a document with the given description."
    parameters = {
        "type": "OBJECT",
        "properties": {
            "id": {"type": "STRING", "description": "The ID of the document to update"},
            "description": {"type": "STRING", "description": "The description of changes that need to be made"},
        },
        "required": ["id", "description"],
    }

    async def execute(self, args: Dict[str, Any], context: ToolContext) -> Any:
        try:
            document = await _load_own_document(context, args.get("id"))
        except ToolExecutionError as e:
            return {"error": str(e)}

        context.channel.write_data({"type": "clear", "content": document.title})
        content = await _stream_document_content(
            context,
            document.kind,
            prompts.update_document_prompt(document.content, document.kind),
            str(args.get("description") or ""),
        )
        await context.documents.save_document(
            Document(
                id=document.id,
                user_id=document.user_id,
                title=document.title,
                kind=document.kind,
                content=content,
            )
        )
        context.channel.write_data({"type": "finish", "content": ""})

        return {
            "id": str(document.id),
            "title": document.title,
            "kind": document.kind.value,
            "content": "The document has been updated successfully.",
        }


def parse_suggestions(raw: str) -> List[Dict[str, str]]:
    """Parse ``original ||| suggested ||| description`` lines."""
    parsed = []
    for line in raw.splitlines():
        fields = [f.strip() for f in line.split("|||")]
        if len(fields) < 2 or not fields[0] or not fields[1]:
            continue
        parsed.append(
            {
                "originalSentence": fields[0],
                "suggestedSentence": fields[1],
                "description": fields[2] if len(fields) > 2 else "",
            }
        )
    return parsed[:5]


class RequestSuggestions(Tool):
    name = "requestSuggestions"
    description = "Request suggestions for a document"
    parameters = {
        "type": "OBJECT",
        "properties": {
            "documentId": {"type": "STRING", "description": "The ID of the document to request edits"},
        },
        "required": ["documentId"],
    }

    async def execute(self, args: Dict[str, Any], context: ToolContext) -> Any:
        try:
            document = await _load_own_document(context, args.get("documentId"))
        except ToolExecutionError as e:
            return {"error": str(e)}

        model = context.provider.language_model("artifact-model")
        request = Message(
            chat_id=context.chat_id, role=Role.USER, parts=[TextPart(text=document.content)]
        )
        raw = await model.generate_text([request], system=prompts.SUGGESTIONS_PROMPT)

        suggestions = []
        for item in parse_suggestions(raw):
            suggestion = Suggestion(
                document_id=document.id,
                document_created_at=document.created_at,
                user_id=context.session.user_id,
                original_text=item["originalSentence"],
                suggested_text=item["suggestedSentence"],
                description=item["description"],
            )
            suggestions.append(suggestion)
            context.channel.write_data(
                {"type": "suggestion", "content": suggestion.model_dump(mode="json", by_alias=True)}
            )

        if suggestions:
            await context.documents.save_suggestions(suggestions)

        return {
            "id": str(document.id),
            "title": document.title,
            "kind": document.kind.value,
            "message": "Suggestions have been added to the document",
        }


def build_tools(active: Sequence[str]) -> Dict[str, Tool]:
    """Instantiate the allowlisted tools, keyed by name."""
    available: Dict[str, Tool] = {
        tool.name: tool
        for tool in (GetWeather(), CreateDocument(), UpdateDocument(), RequestSuggestions())
    }
    unknown = [name for name in active if name not in available]
    if unknown:
        raise ValueError(f"Unknown tools: {', '.join(unknown)}")
    return {name: available[name] for name in active}
