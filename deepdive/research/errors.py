from __future__ import annotations


class ResearchError(RuntimeError):
    """Base class for failures that end a research task."""

    kind = "research_error"


class InvalidInput(ResearchError):
    """Rejected before any oracle call (negative depth, empty topic, ...)."""

    kind = "invalid_input"


class OracleFailure(ResearchError):
    """The reasoning service failed or returned an unusable response."""

    kind = "oracle_failure"


class SubstrateFailure(ResearchError):
    """The task store or scheduling layer failed (including timeouts)."""

    kind = "substrate_failure"


class ChildFailure(ResearchError):
    """A spawned child task failed or was cancelled."""

    kind = "child_failure"

    def __init__(
        self,
        message: str,
        *,
        subtopic: str = "",
        depth: int | None = None,
        child_task_id: str = "",
    ) -> None:
        super().__init__(message)
        self.subtopic = subtopic
        self.depth = depth
        self.child_task_id = child_task_id

    @classmethod
    def from_child(
        cls,
        *,
        subtopic: str,
        depth: int,
        child_task_id: str,
        status: str,
        error: str | None,
    ) -> "ChildFailure":
        reason = (error or "").strip() or status
        return cls(
            f"Subtopic {subtopic!r} (depth={depth}, task={child_task_id}) {status}: {reason}",
            subtopic=subtopic,
            depth=depth,
            child_task_id=child_task_id,
        )


_KINDS: dict[str, type[ResearchError]] = {
    cls.kind: cls for cls in (ResearchError, InvalidInput, OracleFailure, SubstrateFailure, ChildFailure)
}


def error_from_kind(kind: str | None, message: str) -> ResearchError:
    """Rebuild an exception from a stored task row (`error_kind`, `error`)."""
    cls = _KINDS.get(str(kind or ""), ResearchError)
    return cls(message)
