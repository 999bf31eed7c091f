"""Reconnect path for an interrupted turn.

States are evaluated in order and the first terminal one wins:

* no registry -> nothing to resume (204)
* no stream handle for the chat -> ``not_found:stream``
* live stream attached -> forward it
* otherwise backfill the last assistant message when it is fresh, or
  answer with an empty stream
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from structlog import get_logger

from ..domain.errors import ChatError
from ..domain.models import Message, Role, Session
from ..repositories.base import Repository
from ..streams.registry import Available, RegistryStatus, Subscription
from ..telemetry import RESUME_REQUESTS
from .access import AccessGate

logger = get_logger()


class ResumeState(str, Enum):
    NO_STREAM_REGISTRY = "no_stream_registry"
    ATTACH_LIVE = "attach_live"
    BACKFILL = "backfill"
    EMPTY = "empty"


@dataclass
class ResumeOutcome:
    state: ResumeState
    stream: Optional[Subscription] = None
    message: Optional[Message] = None


class ResumeService:
    def __init__(
        self,
        repository: Repository,
        gate: AccessGate,
        registry_status: RegistryStatus,
        backfill_window_seconds: int = 15,
    ) -> None:
        self.repository = repository
        self.gate = gate
        self.registry_status = registry_status
        self.backfill_window_seconds = backfill_window_seconds

    @property
    def available(self) -> bool:
        return isinstance(self.registry_status, Available)

    async def resume(
        self, session: Optional[Session], raw_chat_id: Optional[str], requested_at: datetime
    ) -> ResumeOutcome:
        outcome = await self._resume(session, raw_chat_id, requested_at)
        RESUME_REQUESTS.labels(outcome=outcome.state.value).inc()
        logger.info("resume_resolved", chat_id=raw_chat_id, state=outcome.state.value)
        return outcome

    async def _resume(
        self, session: Optional[Session], raw_chat_id: Optional[str], requested_at: datetime
    ) -> ResumeOutcome:
        status = self.registry_status
        if not isinstance(status, Available):
            return ResumeOutcome(ResumeState.NO_STREAM_REGISTRY)

        chat_id = _parse_chat_id(raw_chat_id)
        chat = await self.gate.authorize_read(session, chat_id)

        handles = await self.repository.list_stream_handles(chat.id)
        if not handles:
            raise ChatError("not_found:stream")

        # Only the most recent handle is current.
        stream = await status.registry.attach(str(handles[-1].id))
        if stream is not None:
            return ResumeOutcome(ResumeState.ATTACH_LIVE, stream=stream)

        messages = await self.repository.list_messages(chat.id)
        if not messages:
            return ResumeOutcome(ResumeState.EMPTY)

        most_recent = messages[-1]
        if most_recent.role != Role.ASSISTANT:
            return ResumeOutcome(ResumeState.EMPTY)

        # Whole seconds, so 15.9s still counts as within a 15s window.
        age = int((requested_at - most_recent.created_at).total_seconds())
        if age > self.backfill_window_seconds:
            return ResumeOutcome(ResumeState.EMPTY)

        return ResumeOutcome(ResumeState.BACKFILL, message=most_recent)


def _parse_chat_id(raw_chat_id: Optional[str]) -> UUID:
    if not raw_chat_id:
        raise ChatError("bad_request:api", cause="Parameter chatId is required.")
    try:
        return UUID(raw_chat_id)
    except ValueError as e:
        raise ChatError("bad_request:api", cause="Parameter chatId must be a UUID.") from e
