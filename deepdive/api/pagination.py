from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any


class CursorError(ValueError):
    pass


@dataclass(frozen=True)
class Cursor:
    """Opaque page position: (created_at, id) of the last item returned.

    `kind` names the listing the cursor came from ("tasks", "events") so a cursor
    cannot silently be replayed against a different ordering.
    """

    kind: str
    created_at: float
    item_id: str

    def as_tuple(self) -> tuple[float, str]:
        return (self.created_at, self.item_id)


def encode_cursor(cursor: Cursor) -> str:
    raw = json.dumps({"k": cursor.kind, "t": cursor.created_at, "id": cursor.item_id}, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(value: str, *, kind: str) -> Cursor:
    s = (value or "").strip()
    if not s:
        raise CursorError("Empty cursor")

    pad = "=" * (-len(s) % 4)
    try:
        obj = json.loads(base64.urlsafe_b64decode(s + pad).decode("utf-8"))
        cursor = Cursor(kind=str(obj["k"]), created_at=float(obj["t"]), item_id=str(obj["id"]))
    except (ValueError, KeyError, TypeError) as e:
        raise CursorError("Invalid cursor") from e
    if cursor.kind != kind:
        raise CursorError(f"Cursor belongs to {cursor.kind!r} listing, not {kind!r}")
    return cursor


def parse_cursor_param(value: str | None, *, kind: str) -> tuple[float, str] | None:
    if not value:
        return None
    return decode_cursor(value, kind=kind).as_tuple()


def encode_next_cursor(page: dict[str, Any], *, kind: str) -> dict[str, Any]:
    """Replace a store page's `(created_at, id)` next_cursor with its encoded form."""
    if page.get("next_cursor") is not None:
        created_at, item_id = page["next_cursor"]
        page["next_cursor"] = encode_cursor(Cursor(kind=kind, created_at=float(created_at), item_id=str(item_id)))
    return page
