"""Conversation entries and the oracle response variant.

History entries are plain OpenAI-style message dicts so an invocation's state stays
JSON-serialisable and can be handed to the chat API unchanged:

  system      {"role": "system", "content": ...}        first, exactly once
  user        {"role": "user", "content": ...}          the topic request
  assistant   {"role": "assistant", "content": ..., "tool_calls": [...]}
  tool-result {"role": "tool", "tool_call_id": ..., "content": ...}
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from deepdive.utils.json_extract import JSONExtractionError, extract_json_object

from .errors import OracleFailure


@dataclass(frozen=True)
class DecompositionRequest:
    request_id: str
    subtopic: str


@dataclass(frozen=True)
class TerminalAnswer:
    text: str


@dataclass(frozen=True)
class Decomposition:
    requests: tuple[DecompositionRequest, ...]
    # Oracles may add prose next to tool calls; only used when decomposition is refused.
    text: str = ""


OracleResponse = TerminalAnswer | Decomposition


def system_message(content: str) -> dict[str, Any]:
    return {"role": "system", "content": content}


def user_message(content: str) -> dict[str, Any]:
    return {"role": "user", "content": content}


def assistant_message(content: str | None, tool_calls: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    msg: dict[str, Any] = {"role": "assistant", "content": content or None}
    if tool_calls:
        msg["tool_calls"] = tool_calls
    return msg


def tool_call(request_id: str, name: str, arguments: str) -> dict[str, Any]:
    return {
        "id": request_id,
        "type": "function",
        "function": {"name": name, "arguments": arguments},
    }


def tool_result_message(request_id: str, content: str) -> dict[str, Any]:
    return {"role": "tool", "tool_call_id": request_id, "content": content}


def parse_oracle_message(message: Any, *, tool_name: str) -> OracleResponse:
    """Classify an assistant message as a terminal answer or a decomposition.

    Anything that cannot be read unambiguously raises OracleFailure; a malformed
    decomposition is never downgraded to an answer.
    """
    if not isinstance(message, dict):
        raise OracleFailure(f"Oracle returned {type(message).__name__}, expected a message object.")
    role = str(message.get("role") or "")
    if role != "assistant":
        raise OracleFailure(f"Oracle returned role={role!r}, expected 'assistant'.")

    text = str(message.get("content") or "").strip()
    raw_calls = message.get("tool_calls") or []
    if not isinstance(raw_calls, list):
        raise OracleFailure("Oracle tool_calls must be a list.")

    if not raw_calls:
        if not text:
            raise OracleFailure("Oracle returned neither an answer nor decomposition requests.")
        return TerminalAnswer(text=text)

    requests: list[DecompositionRequest] = []
    seen: set[str] = set()
    for call in raw_calls:
        if not isinstance(call, dict):
            raise OracleFailure(f"Invalid tool call: expected object, got {type(call).__name__}")
        request_id = str(call.get("id") or "").strip()
        if not request_id:
            raise OracleFailure("Invalid tool call: missing id.")
        if request_id in seen:
            raise OracleFailure(f"Invalid tool call: duplicate id {request_id!r}.")
        seen.add(request_id)

        fn = call.get("function") or {}
        name = str(fn.get("name") or "").strip() if isinstance(fn, dict) else ""
        if name != tool_name:
            raise OracleFailure(f"Invalid tool call {request_id!r}: unknown tool {name!r}.")
        try:
            args = extract_json_object(fn.get("arguments"))
        except JSONExtractionError as e:
            raise OracleFailure(f"Invalid tool call {request_id!r}: {e}") from e
        subtopic = str(args.get("topic") or "").strip()
        if not subtopic:
            raise OracleFailure(f"Invalid tool call {request_id!r}: missing non-empty 'topic'.")
        requests.append(DecompositionRequest(request_id=request_id, subtopic=subtopic))

    return Decomposition(requests=tuple(requests), text=text)
