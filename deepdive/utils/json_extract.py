from __future__ import annotations

import json
from typing import Any


class JSONExtractionError(ValueError):
    pass


def extract_json_object(text: Any) -> dict[str, Any]:
    """Parse tool-call arguments emitted by the oracle.

    Arguments normally arrive as a JSON string; some gateways wrap them in prose or
    code fences, so we fall back to the outermost `{...}` span.
    """
    if isinstance(text, dict):
        return text
    s = str(text or "").strip()
    if not s:
        raise JSONExtractionError("Empty tool arguments.")

    try:
        obj = json.loads(s)
    except json.JSONDecodeError:
        start = s.find("{")
        end = s.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise JSONExtractionError("No JSON object found in tool arguments.") from None
        try:
            obj = json.loads(s[start : end + 1])
        except json.JSONDecodeError as e:
            raise JSONExtractionError(f"Invalid JSON: {e}") from e

    if not isinstance(obj, dict):
        raise JSONExtractionError(f"Expected a JSON object, got {type(obj).__name__}")
    return obj
