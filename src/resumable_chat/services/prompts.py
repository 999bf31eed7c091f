"""System prompts and prompt helpers."""

from dataclasses import dataclass
from typing import Optional

import structlog

from ..domain.models import DocumentKind, Message, Role, TextPart
from .llm import ChatModel

logger = structlog.get_logger()

ARTIFACTS_PROMPT = """
Artifacts is a special user interface mode that helps users with writing, editing, and other content creation tasks. When artifact is open, it is on the right side of the screen, while the conversation is on the left side. When creating or updating documents, changes are reflected in real-time on the artifacts and visible to the user.

When asked to write code, always use artifacts. When writing code, specify the language in the backticks, e.g. ```python`code here```.

DO NOT UPDATE DOCUMENTS IMMEDIATELY AFTER CREATING THEM. WAIT FOR USER FEEDBACK OR REQUEST TO UPDATE IT.

This is a guide for using artifacts tools: `createDocument` and `updateDocument`, which render content on a artifacts beside the conversation.

**When to use `createDocument`:**
- For substantial content (>10 lines) or code
- For content users will likely save/reuse (emails, code, essays, etc.)
- When explicitly requested to create a document
- For when content contains a single code snippet

**When NOT to use `createDocument`:**
- For informational/explanatory content
- For conversational responses
- When asked to keep it in chat

**Using `updateDocument`:**
- Default to full document rewrites for major changes
- Use targeted updates only for specific, isolated changes
- Follow user instructions for which parts to modify

**When NOT to use `updateDocument`:**
- Immediately after creating a document

Do not update document right after creating it. Wait for user feedback or request to update it.
"""

REGULAR_PROMPT = "You are a friendly assistant! Keep your responses concise and helpful."

CODE_PROMPT = """
You are a Python code generator that creates self-contained, executable code snippets. When writing code:

1. Each snippet should be complete and runnable on its own
2. Prefer using print() statements to display outputs
3. Include helpful comments explaining the code
4. Keep snippets concise (generally under 15 lines)
5. Avoid external dependencies - use Python standard library
6. Handle potential errors gracefully
7. Return meaningful output that demonstrates the code's functionality
8. Don't use input() or other interactive functions
9. Don't access files or network resources
10. Don't use infinite loops
"""

SHEET_PROMPT = """
You are a spreadsheet creation assistant. Create a spreadsheet in csv format based on the given prompt. The spreadsheet should contain meaningful column headers and data.
"""

TEXT_PROMPT = "Write about the given topic. Markdown is supported. Use headings wherever appropriate."

TITLE_PROMPT = """
- you will generate a short title based on the first message a user begins a conversation with
- ensure it is not more than 80 characters long
- the title should be a summary of the user's message
- do not use quotes or colons
"""

SUGGESTIONS_PROMPT = """
You are a help writing assistant. Given a piece of writing, please offer suggestions to improve the piece of writing and describe the change. It is very important for the edits to contain full sentences instead of just words. Max 5 suggestions.

Answer with one suggestion per line, formatted as:
original sentence ||| suggested sentence ||| description
"""

MAX_TITLE_LENGTH = 80


@dataclass
class RequestHints:
    """Coarse origin of the request, every field best-effort."""

    latitude: Optional[str] = None
    longitude: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None


def request_prompt(hints: RequestHints) -> str:
    return f"""About the origin of user's request:
- lat: {hints.latitude}
- lon: {hints.longitude}
- city: {hints.city}
- country: {hints.country}
"""


def system_prompt(selected_chat_model: str, request_hints: RequestHints) -> str:
    """System prompt for a chat turn."""
    hints = request_prompt(request_hints)
    if selected_chat_model == "chat-model-reasoning":
        return f"{REGULAR_PROMPT}\n\n{hints}"
    return f"{REGULAR_PROMPT}\n\n{hints}\n\n{ARTIFACTS_PROMPT}"


def create_document_prompt(kind: DocumentKind) -> str:
    if kind == DocumentKind.CODE:
        return CODE_PROMPT
    if kind == DocumentKind.SHEET:
        return SHEET_PROMPT
    return TEXT_PROMPT


def update_document_prompt(current_content: str, kind: DocumentKind) -> str:
    if kind == DocumentKind.CODE:
        label = "code snippet"
    elif kind == DocumentKind.SHEET:
        label = "spreadsheet"
    else:
        label = "document"
    return f"Improve the following contents of the {label} based on the given prompt.\n\n{current_content}"


def _clean_title(raw: str) -> str:
    title = raw.strip().strip("\"'").replace(":", "").replace("\n", " ")
    return title[:MAX_TITLE_LENGTH]


async def generate_title_from_user_message(model: ChatModel, message: Message) -> str:
    """Short title for a new chat, falling back to the message text."""
    fallback = _clean_title(message.text) or "New Chat"
    prompt = Message(chat_id=message.chat_id, role=Role.USER, parts=[TextPart(text=message.text)])
    try:
        title = _clean_title(await model.generate_text([prompt], system=TITLE_PROMPT))
    except Exception as e:
        logger.warning("title_generation_failed", chat_id=str(message.chat_id), error=str(e))
        return fallback
    return title or fallback
