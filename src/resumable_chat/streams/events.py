"""Stream event constructors and server-sent-event framing.

Events are plain JSON-serialisable dicts with a ``type`` key so they can
cross a process boundary unchanged.
"""

import json
from typing import Any, Dict, Optional

StreamEvent = Dict[str, Any]


def start_step(step: int) -> StreamEvent:
    return {"type": "start-step", "step": step}


def text_delta(text: str) -> StreamEvent:
    return {"type": "text-delta", "textDelta": text}


def reasoning_delta(text: str) -> StreamEvent:
    return {"type": "reasoning", "textDelta": text}


def tool_call(tool_call_id: str, tool_name: str, args: Dict[str, Any]) -> StreamEvent:
    return {"type": "tool-call", "toolCallId": tool_call_id, "toolName": tool_name, "args": args}


def tool_result(tool_call_id: str, tool_name: str, result: Any) -> StreamEvent:
    return {"type": "tool-result", "toolCallId": tool_call_id, "toolName": tool_name, "result": result}


def data(payload: Dict[str, Any]) -> StreamEvent:
    """Intermediate UI event written by a tool."""
    return {"type": "data", "data": payload}


def finish_step(step: int, finish_reason: str, usage: Optional[Dict[str, int]] = None) -> StreamEvent:
    return {"type": "finish-step", "step": step, "finishReason": finish_reason, "usage": usage or {}}


def finish(message_id: str, finish_reason: str, usage: Optional[Dict[str, int]] = None) -> StreamEvent:
    return {"type": "finish", "messageId": message_id, "finishReason": finish_reason, "usage": usage or {}}


def error(message: str) -> StreamEvent:
    return {"type": "error", "error": message}


def append_message(message: Dict[str, Any]) -> StreamEvent:
    """Backfill event carrying a persisted message."""
    return {"type": "append-message", "message": message}


def encode_sse(event: StreamEvent) -> str:
    """Frame one event as a server-sent event."""
    return f"data: {json.dumps(event, default=str)}\n\n"
