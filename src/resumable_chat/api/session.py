"""Caller identity resolution."""

from abc import ABC, abstractmethod
from typing import Optional

from fastapi import Request

from ..domain.models import Session


class SessionResolver(ABC):
    @abstractmethod
    async def resolve(self, request: Request) -> Optional[Session]:
        """Return the caller's session, or None when unauthenticated."""


class HeaderSessionResolver(SessionResolver):
    """Trusts identity headers set by the authenticating proxy in front of the app."""

    def __init__(self, user_header: str = "x-user-id", email_header: str = "x-user-email") -> None:
        self.user_header = user_header
        self.email_header = email_header

    async def resolve(self, request: Request) -> Optional[Session]:
        user_id = (request.headers.get(self.user_header) or "").strip()
        if not user_id:
            return None
        email = request.headers.get(self.email_header) or None
        return Session(user_id=user_id, email=email)
