from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any


class LLMConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class ChatCompletionResult:
    content: str
    raw: dict[str, Any]
    tool_calls: list[dict[str, Any]]
    reasoning_content: str | None = None


class OpenAICompatibleChatClient:
    """Thin wrapper over the OpenAI SDK for any OpenAI-compatible gateway.

    Only what the research oracle needs: chat completions with optional function
    tools, returning content and tool calls as plain dicts so they can be recorded
    as a durable step.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self.base_url = (
            base_url
            or os.getenv("OPENAI_API_BASE")
            or os.getenv("OPENAI_BASE_URL")
            or "https://api.openai.com/v1"
        )
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model or os.getenv("LLM_MODEL") or os.getenv("OPENAI_MODEL") or "gpt-4o-mini"
        self.timeout_s = timeout_s

        if not self.api_key:
            raise LLMConfigError("Missing OPENAI_API_KEY (or provide api_key explicitly).")

        try:
            from openai import OpenAI  # type: ignore
        except Exception as e:
            raise LLMConfigError("Missing dependency: openai. Install it in the runtime environment.") from e

        self._client = OpenAI(base_url=self.base_url, api_key=self.api_key, timeout=self.timeout_s)

    def chat_messages(
        self,
        *,
        messages: list[dict[str, Any]],
        temperature: float,
        tools: list[dict[str, Any]] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> ChatCompletionResult:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": float(temperature),
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        if extra:
            payload.update(extra)

        resp = self._client.chat.completions.create(**payload)
        raw = resp.model_dump()
        msg = resp.choices[0].message
        content = (msg.content or "").strip()

        # Some gateways surface hidden reasoning as a non-standard field.
        reasoning_content: str | None = None
        rc = getattr(msg, "reasoning_content", None)
        if rc is None and isinstance(getattr(msg, "model_extra", None), dict):
            rc = msg.model_extra.get("reasoning_content")
        if isinstance(rc, str) and rc.strip():
            reasoning_content = rc.strip()

        tool_calls: list[dict[str, Any]] = []
        for tc in msg.tool_calls or []:
            tool_calls.append(
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.function.name, "arguments": tc.function.arguments or ""},
                }
            )

        return ChatCompletionResult(
            content=content,
            raw=raw,
            tool_calls=tool_calls,
            reasoning_content=reasoning_content,
        )
