from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from deepdive.config.load_config import OracleConfig, PromptConfig
from deepdive.llm.openai_compat import OpenAICompatibleChatClient
from deepdive.utils.template import template_pattern

from .errors import OracleFailure
from .messages import assistant_message, tool_call


logger = logging.getLogger(__name__)


class Oracle(Protocol):
    tool_name: str

    def consult(self, history: list[dict[str, Any]], *, allow_decomposition: bool) -> dict[str, Any]:
        """Return the next assistant message for `history`."""
        ...


def research_tool(*, name: str, description: str) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": {
                    "topic": {"type": "string", "description": "The subtopic to research."},
                },
                "required": ["topic"],
                "additionalProperties": False,
            },
        },
    }


class ChatOracle:
    """Oracle backed by an OpenAI-compatible chat model.

    The decomposition tool is only offered while the caller still has depth left.
    """

    def __init__(
        self,
        client: OpenAICompatibleChatClient,
        *,
        prompts: PromptConfig,
        config: OracleConfig,
    ) -> None:
        self._client = client
        self._config = config
        self.tool_name = config.tool_name
        self._tool = research_tool(name=config.tool_name, description=prompts.tool_description)

    @property
    def model(self) -> str:
        return self._client.model

    def consult(self, history: list[dict[str, Any]], *, allow_decomposition: bool) -> dict[str, Any]:
        tools = [self._tool] if allow_decomposition else None
        try:
            result = self._client.chat_messages(
                messages=history,
                temperature=self._config.temperature,
                tools=tools,
            )
        except Exception as e:
            logger.warning("Oracle call failed (%s): %s", type(e).__name__, e)
            raise OracleFailure(f"Oracle call failed: {type(e).__name__}: {e}") from e
        return assistant_message(result.content, result.tool_calls)


class DryRunOracle:
    """Deterministic offline oracle for exercising the pipeline without an LLM.

    While decomposition is allowed it splits a topic into `fanout` numbered aspects;
    once tool results are present (or at depth 0) it answers.
    """

    def __init__(
        self, *, fanout: int = 2, tool_name: str = "research", user_template: str = "Research {{topic}}"
    ) -> None:
        if fanout < 1:
            raise ValueError(f"fanout must be >= 1, got {fanout}")
        self.fanout = fanout
        self.tool_name = tool_name
        self._topic_re = template_pattern(user_template, capture="topic")

    def topic_of(self, history: list[dict[str, Any]]) -> str:
        """Recover the topic from the first user message rendered by the user template."""
        request = next((str(m.get("content") or "") for m in history if m.get("role") == "user"), "")
        m = self._topic_re.fullmatch(request)
        if m is None or "topic" not in m.groupdict():
            return request
        return m.group("topic")

    def consult(self, history: list[dict[str, Any]], *, allow_decomposition: bool) -> dict[str, Any]:
        topic = self.topic_of(history)
        child_results = [str(m.get("content") or "") for m in history if m.get("role") == "tool"]

        if child_results:
            lines = [f"Synthesis for {topic}:"]
            lines.extend(f"- {r}" for r in child_results)
            return assistant_message("\n".join(lines))

        if not allow_decomposition:
            return assistant_message(f"Findings for {topic}.")

        calls = [
            tool_call(
                f"call_{i}",
                self.tool_name,
                json.dumps({"topic": f"{topic} / aspect {i}"}, ensure_ascii=False),
            )
            for i in range(1, self.fanout + 1)
        ]
        return assistant_message(None, calls)
