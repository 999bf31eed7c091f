"""Authentication, daily entitlement and chat ownership checks."""

from typing import Optional, Tuple
from uuid import UUID

from structlog import get_logger

from ..domain.errors import ChatError
from ..domain.models import Chat, Message, Session, Visibility
from ..repositories.base import ChatAlreadyExistsError, Repository
from ..services.llm import ModelProvider
from ..services.prompts import generate_title_from_user_message
from ..telemetry import RATE_LIMITED

logger = get_logger()

ENTITLEMENT_WINDOW_HOURS = 24


class AccessGate:
    """Runs the per-request checks in order: identity, quota, ownership."""

    def __init__(
        self,
        repository: Repository,
        provider: ModelProvider,
        max_messages_per_day: int = 100_000,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.max_messages_per_day = max_messages_per_day

    @staticmethod
    def authenticate(session: Optional[Session]) -> Session:
        if session is None:
            raise ChatError("unauthorized:chat")
        return session

    async def check_entitlement(self, session: Session) -> int:
        """Reject when the trailing 24h count exceeds the ceiling; equal is allowed."""
        count = await self.repository.count_messages_by_user(
            session.user_id, ENTITLEMENT_WINDOW_HOURS
        )
        if count > self.max_messages_per_day:
            RATE_LIMITED.inc()
            logger.warning(
                "rate_limit_exceeded",
                user_id=session.user_id,
                message_count=count,
                limit=self.max_messages_per_day,
            )
            raise ChatError("rate_limit:chat")
        return count

    async def authorize_turn(
        self,
        session: Optional[Session],
        chat_id: UUID,
        visibility: Visibility,
        user_message: Message,
    ) -> Tuple[Session, Chat, bool, int]:
        """Returns the session, the target chat, whether it was created, and the 24h count."""
        session = self.authenticate(session)
        count = await self.check_entitlement(session)

        chat = await self.repository.get_chat(chat_id)
        if chat is not None:
            self._require_owner(session, chat)
            return session, chat, False, count

        title = await generate_title_from_user_message(
            self.provider.language_model("title-model"), user_message
        )
        try:
            chat = await self.repository.create_chat(chat_id, session.user_id, title, visibility)
        except ChatAlreadyExistsError:
            # A concurrent first turn won the create; its owner decides.
            chat = await self.repository.get_chat(chat_id)
            if chat is None:
                raise ChatError("internal:chat", cause="Chat vanished during creation")
            self._require_owner(session, chat)
            return session, chat, False, count
        return session, chat, True, count

    async def authorize_read(self, session: Optional[Session], chat_id: UUID) -> Chat:
        """Owners read anything; others only public chats."""
        session = self.authenticate(session)
        chat = await self._load(chat_id)
        if chat.visibility == Visibility.PRIVATE:
            self._require_owner(session, chat)
        return chat

    async def authorize_delete(self, session: Optional[Session], chat_id: UUID) -> Chat:
        session = self.authenticate(session)
        chat = await self._load(chat_id)
        self._require_owner(session, chat)
        return chat

    async def _load(self, chat_id: UUID) -> Chat:
        chat = await self.repository.get_chat(chat_id)
        if chat is None:
            raise ChatError("not_found:chat")
        return chat

    @staticmethod
    def _require_owner(session: Session, chat: Chat) -> None:
        if chat.user_id != session.user_id:
            logger.warning("chat_access_forbidden", chat_id=str(chat.id), user_id=session.user_id)
            raise ChatError("forbidden:chat")
