from __future__ import annotations

import re
from typing import Any


_VAR_RE = re.compile(r"\{\{\s*(?P<key>[a-zA-Z0-9_]+)\s*\}\}")

# Variables available to every prompt template.
PROMPT_VARIABLES = frozenset({"topic", "depth", "tool_name"})


class TemplateError(ValueError):
    pass


def template_variables(template: str) -> set[str]:
    return {m.group("key") for m in _VAR_RE.finditer(template or "")}


def render_template(template: str, variables: dict[str, Any], *, strict: bool = False) -> str:
    """Render `{{name}}` placeholders.

    Unknown names render as empty strings, or raise TemplateError when `strict`.
    """
    if strict:
        missing = template_variables(template) - set(variables)
        if missing:
            raise TemplateError(f"Template references undefined variables: {sorted(missing)}")
    return _VAR_RE.sub(lambda m: str(variables.get(m.group("key"), "")), template)


def template_pattern(template: str, *, capture: str) -> re.Pattern[str]:
    """Regex that fully matches text rendered from `template`.

    The first `{{capture}}` placeholder becomes a named group of the same name; later
    occurrences must repeat it and other placeholders match anything.
    """
    template = (template or "").strip()
    parts: list[str] = []
    pos = 0
    seen = False
    for m in _VAR_RE.finditer(template):
        parts.append(re.escape(template[pos : m.start()]))
        if m.group("key") != capture:
            parts.append(".*?")
        elif seen:
            parts.append(f"(?P={capture})")
        else:
            parts.append(f"(?P<{capture}>.+?)")
            seen = True
        pos = m.end()
    parts.append(re.escape(template[pos:]))
    return re.compile("".join(parts), re.DOTALL)
