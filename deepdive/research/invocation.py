from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from .state import Phase


@dataclass
class PendingChild:
    request_id: str
    subtopic: str
    # Set once the child has been spawned.
    task_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"request_id": self.request_id, "subtopic": self.subtopic, "task_id": self.task_id}

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "PendingChild":
        task_id = obj.get("task_id")
        return cls(
            request_id=str(obj["request_id"]),
            subtopic=str(obj["subtopic"]),
            task_id=str(task_id) if task_id else None,
        )


@dataclass
class TaskInvocation:
    """Everything needed to resume one research invocation in another process."""

    task_id: str
    topic: str
    depth: int
    history: list[dict[str, Any]]
    phase: Phase = Phase.CONSULT
    iteration: int = 0
    pending: list[PendingChild] = field(default_factory=list)

    def child_task_id(self, index: int) -> str:
        return f"{self.task_id}.{self.iteration}.{index}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "topic": self.topic,
            "depth": self.depth,
            "history": self.history,
            "phase": self.phase.value,
            "iteration": self.iteration,
            "pending": [p.to_dict() for p in self.pending],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "TaskInvocation":
        return cls(
            task_id=str(obj["task_id"]),
            topic=str(obj["topic"]),
            depth=int(obj["depth"]),
            history=list(obj.get("history") or []),
            phase=Phase(str(obj.get("phase") or Phase.CONSULT.value)),
            iteration=int(obj.get("iteration") or 0),
            pending=[PendingChild.from_dict(p) for p in (obj.get("pending") or [])],
        )

    @classmethod
    def from_json(cls, raw: str) -> "TaskInvocation":
        return cls.from_dict(json.loads(raw))
