"""Classified errors surfaced to API clients.

Every client-visible failure is a ``ChatError`` whose code has the form
``"<type>:<surface>"``, e.g. ``"forbidden:chat"``. The type decides the
HTTP status, the surface picks the user-facing message.
"""

from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse
from structlog import get_logger

logger = get_logger()

ERROR_TYPES = {
    "bad_request": 400,
    "unauthorized": 401,
    "forbidden": 403,
    "not_found": 404,
    "rate_limit": 429,
    "offline": 503,
    "internal": 500,
}

SURFACES = {"api", "chat", "stream", "document", "database", "vote"}

_MESSAGES = {
    "bad_request:api": "The request couldn't be processed. Please check your input and try again.",
    "unauthorized:chat": "You need to sign in to view this chat. Please sign in and try again.",
    "forbidden:chat": "This chat belongs to another user. Please check the chat ID and try again.",
    "not_found:chat": "The requested chat was not found. Please check the chat ID and try again.",
    "not_found:stream": "No resumable stream exists for this chat.",
    "rate_limit:chat": "You have exceeded your maximum number of messages for the day. Please try again later.",
    "offline:chat": "We're having trouble sending your message. Please check your internet connection and try again.",
    "internal:chat": "Something went wrong while processing your message. Please try again later.",
    "unauthorized:document": "You need to sign in to view this document. Please sign in and try again.",
    "forbidden:document": "This document belongs to another user. Please check the document ID and try again.",
    "not_found:document": "The requested document was not found. Please check the document ID and try again.",
}


class ChatError(Exception):
    """Error carrying a ``type:surface`` classification."""

    def __init__(self, code: str, cause: Optional[str] = None) -> None:
        error_type, _, surface = code.partition(":")
        if error_type not in ERROR_TYPES or surface not in SURFACES:
            raise ValueError(f"Unknown error code: {code}")

        self.code = code
        self.type = error_type
        self.surface = surface
        self.cause = cause
        self.status_code = ERROR_TYPES[error_type]
        self.message = get_message_by_error_code(code)
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "cause": self.cause}

    def to_response(self) -> JSONResponse:
        if self.surface == "database":
            # Storage details stay in the logs.
            logger.error("database_error", code=self.code, cause=self.cause)
            return JSONResponse(
                status_code=self.status_code,
                content={"code": "", "message": "Something went wrong. Please try again later."},
            )
        return JSONResponse(status_code=self.status_code, content=self.to_payload())


def get_message_by_error_code(code: str) -> str:
    if code in _MESSAGES:
        return _MESSAGES[code]
    if code.endswith(":database"):
        return "An error occurred while executing a database query."
    return "Something went wrong. Please try again later."
