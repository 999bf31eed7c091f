"""
FastAPI Application Module

Chat API serving resumable, streamed model responses.

Key Features:
- One streamed assistant turn per submitted message, persisted once
- Resumable streams keyed by a durable stream id, with backfill on reconnect
- Per-user daily entitlement and chat ownership checks
- Structured logging, Prometheus metrics and OpenTelemetry tracing

Collaborators are built in ``create_app`` and can be replaced there, which
is how the tests run the app against scripted models and in-memory stores.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Union
from uuid import UUID, uuid4

from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import generate_latest
from structlog import get_logger

from ..config import Settings, get_settings
from ..domain.errors import ChatError
from ..domain.models import utcnow
from ..logging_config import configure_logging
from ..repositories.base import Repository
from ..repositories.memory import InMemoryRepository
from ..services.llm import ModelProvider, build_provider
from ..services.orchestrator import StreamingOrchestrator, TurnContext
from ..services.tools import build_tools
from ..streams import events
from ..streams.channel import OutputChannel
from ..streams.registry import (
    Available,
    RegistryStatus,
    StreamTransportError,
    Subscription,
    build_stream_registry,
    verify_stream_registry,
)
from ..streams.tasks import BackgroundTasks
from ..telemetry import CUSTOM_REGISTRY, ERRORS, REQUESTS, record_error, start_chat_span
from .access import AccessGate
from .geolocation import geolocation
from .resume import ResumeService, ResumeState
from .session import HeaderSessionResolver, SessionResolver
from .validation import parse_post_request

logger = get_logger()

SSE_MEDIA_TYPE = "text/event-stream"


def create_app(
    settings: Optional[Settings] = None,
    repository: Optional[InMemoryRepository] = None,
    provider: Optional[ModelProvider] = None,
    registry_status: Optional[RegistryStatus] = None,
    session_resolver: Optional[SessionResolver] = None,
) -> FastAPI:
    """Build the application and its collaborators."""
    settings = settings or get_settings()
    repository = repository or InMemoryRepository()
    provider = provider or build_provider(settings)
    tasks = BackgroundTasks()
    if registry_status is None:
        registry_status = build_stream_registry(settings, tasks)

    gate = AccessGate(repository, provider, max_messages_per_day=settings.max_messages_per_day)
    orchestrator = StreamingOrchestrator(
        repository,
        repository,
        provider,
        build_tools(settings.active_tools),
        max_steps=settings.max_steps,
        timeout_seconds=settings.turn_timeout_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles app startup/shutdown and resource management"""
        configure_logging(settings.log_level, settings.log_json)
        status = await verify_stream_registry(app.state.registry_status)
        app.state.registry_status = status
        app.state.resume_service.registry_status = status
        logger.info("application_startup_complete", resumable=isinstance(status, Available))

        yield

        await app.state.tasks.cleanup()
        if isinstance(status, Available):
            await status.registry.transport.close()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="Resumable Chat API",
        description="Streaming chat API with resumable responses",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.repository = repository
    app.state.provider = provider
    app.state.tasks = tasks
    app.state.registry_status = registry_status
    app.state.gate = gate
    app.state.orchestrator = orchestrator
    app.state.resume_service = ResumeService(
        repository, gate, registry_status, settings.backfill_window_seconds
    )
    app.state.session_resolver = session_resolver or HeaderSessionResolver(settings.session_header)

    FastAPIInstrumentor.instrument_app(app)
    _register_handlers(app)
    _register_routes(app)
    return app


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_repository(request: Request) -> Repository:
    """Returns the chat store"""
    return request.app.state.repository


def get_gate(request: Request) -> AccessGate:
    return request.app.state.gate


def get_resume_service(request: Request) -> ResumeService:
    return request.app.state.resume_service


def get_session_resolver(request: Request) -> SessionResolver:
    return request.app.state.session_resolver


def _register_handlers(app: FastAPI) -> None:
    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        logger.info("chat_error", path=request.url.path, code=exc.code, cause=exc.cause)
        return exc.to_response()

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return ChatError("bad_request:api", cause=str(exc.errors()[:1])).to_response()

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Tracks requests and counts unhandled failures"""
        path = request.url.path
        REQUESTS.labels(path=path).inc()
        logger.info("request_started", method=request.method, path=path)
        try:
            return await call_next(request)
        except Exception as e:
            ERRORS.labels(path=path).inc()
            logger.error("request_failed", path=path, error=str(e))
            raise


async def _sse_body(
    stream: Union[Subscription, OutputChannel],
) -> AsyncIterator[str]:
    try:
        async for event in stream:
            yield events.encode_sse(event)
    finally:
        if isinstance(stream, OutputChannel):
            # Without a registry nobody else can consume the turn.
            if not stream.closed:
                stream.cancel()
        else:
            await stream.aclose()


async def _single_event(event: dict) -> AsyncIterator[str]:
    yield events.encode_sse(event)


async def _no_events() -> AsyncIterator[str]:
    return
    yield  # pragma: no cover


def _register_routes(app: FastAPI) -> None:
    @app.get("/ping")
    async def ping() -> Response:
        return Response("pong", media_type="text/plain")

    @app.post("/chat")
    async def post_chat(
        request: Request,
        settings: Settings = Depends(get_settings_dep),
        repository: Repository = Depends(get_repository),
        gate: AccessGate = Depends(get_gate),
        resolver: SessionResolver = Depends(get_session_resolver),
    ) -> StreamingResponse:
        """
        Accepts one user message and streams the assistant's reply.
        The turn keeps running after a disconnect when it is resumable.
        """
        span = start_chat_span("app.ChatRequest")
        try:
            try:
                payload = await request.json()
            except ValueError as e:
                raise ChatError("bad_request:api", cause="Body is not valid JSON") from e
            body = parse_post_request(payload, settings.available_chat_models)
        except ChatError as e:
            record_error(span, e)
            span.end()
            raise

        span.set_attributes(
            {
                "app.chat.id": str(body.id),
                "app.chat.model": body.selected_chat_model,
                "app.chat.visibility": body.selected_visibility_type.value,
            }
        )

        try:
            user_message = body.to_user_message()
            session, chat, is_new_chat, message_count = await gate.authorize_turn(
                await resolver.resolve(request),
                body.id,
                body.selected_visibility_type,
                user_message,
            )
            span.set_attributes(
                {
                    "app.user.id": session.user_id,
                    "app.user.message_count_24h": message_count,
                    "app.user.entitlement_limit": settings.max_messages_per_day,
                    "app.chat.is_new_chat": is_new_chat,
                }
            )

            previous_messages = await repository.list_messages(chat.id)
            hints = geolocation(request)
            await repository.append_messages([user_message])

            stream_id = uuid4()
            await repository.create_stream_handle(stream_id, chat.id)

            turn = TurnContext(
                chat=chat,
                session=session,
                messages=previous_messages + [user_message],
                selected_chat_model=body.selected_chat_model,
                request_hints=hints,
                stream_id=stream_id,
                span=span,
            )
            span.set_attributes(
                {
                    "app.stream.id": str(stream_id),
                    "app.ai.model.input.messages_count": len(turn.messages),
                    "app.ai.tools.active": settings.active_tools,
                }
            )
            stream = await _open_turn_stream(request.app, turn, span)
        except ChatError as e:
            record_error(span, e)
            span.end()
            raise
        except Exception as e:
            logger.error("chat_request_failed", chat_id=str(body.id), error=str(e))
            record_error(span, e, {"app.error.context": "chat_request"})
            span.end()
            raise ChatError("internal:chat") from e

        return StreamingResponse(
            _sse_body(stream),
            media_type=SSE_MEDIA_TYPE,
            headers={"x-stream-id": str(stream_id)},
        )

    @app.get("/chat")
    async def resume_chat(
        request: Request,
        chatId: Optional[str] = None,
        resume_service: ResumeService = Depends(get_resume_service),
        resolver: SessionResolver = Depends(get_session_resolver),
    ) -> Response:
        """Re-attaches to the chat's current stream or backfills its last reply."""
        requested_at = utcnow()
        session = await resolver.resolve(request) if resume_service.available else None
        outcome = await resume_service.resume(session, chatId, requested_at)

        if outcome.state == ResumeState.NO_STREAM_REGISTRY:
            return Response(status_code=204)
        if outcome.state == ResumeState.ATTACH_LIVE:
            return StreamingResponse(_sse_body(outcome.stream), media_type=SSE_MEDIA_TYPE)
        if outcome.state == ResumeState.BACKFILL:
            event = events.append_message(outcome.message.model_dump(mode="json", by_alias=True))
            return StreamingResponse(_single_event(event), media_type=SSE_MEDIA_TYPE)
        return StreamingResponse(_no_events(), media_type=SSE_MEDIA_TYPE)

    @app.delete("/chat")
    async def delete_chat(
        request: Request,
        id: Optional[str] = None,
        repository: Repository = Depends(get_repository),
        gate: AccessGate = Depends(get_gate),
        resolver: SessionResolver = Depends(get_session_resolver),
    ) -> JSONResponse:
        """Owner-only hard delete of a chat and its dependents"""
        if not id:
            raise ChatError("bad_request:api", cause="Parameter id is required.")
        try:
            chat_id = UUID(id)
        except ValueError as e:
            raise ChatError("bad_request:api", cause="Parameter id must be a UUID.") from e

        chat = await gate.authorize_delete(await resolver.resolve(request), chat_id)
        deleted = await repository.delete_chat(chat.id)
        return JSONResponse(deleted.model_dump(mode="json", by_alias=True))

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")


async def _open_turn_stream(app: FastAPI, turn: TurnContext, span) -> Union[Subscription, OutputChannel]:
    """Launch the turn behind the registry, or directly when it is unavailable."""
    orchestrator: StreamingOrchestrator = app.state.orchestrator
    tasks: BackgroundTasks = app.state.tasks
    status: RegistryStatus = app.state.registry_status

    if isinstance(status, Available):
        try:
            subscription = await status.registry.produce(
                str(turn.stream_id), lambda: orchestrator.launch(turn, tasks)
            )
            span.set_attribute("stream.resumable", True)
            return subscription
        except StreamTransportError as e:
            logger.warning("stream_registry_unreachable", stream_id=str(turn.stream_id), error=str(e))

    span.set_attribute("stream.resumable", False)
    return orchestrator.launch(turn, tasks)


app = create_app()
