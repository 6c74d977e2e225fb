from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from deepdive.config.load_config import PromptConfig
from deepdive.utils.template import render_template

from .errors import ChildFailure, InvalidInput
from .invocation import PendingChild, TaskInvocation
from .messages import Decomposition, parse_oracle_message, system_message, tool_result_message, user_message
from .oracle import Oracle
from .state import Phase, TaskStatus


logger = logging.getLogger(__name__)

# Fed back when a depth-0 invocation asks for subtopics without answering.
DEPTH_EXHAUSTED_RESULT = "Not researched: no depth remains for subtopics."
ANSWER_DIRECTLY_PROMPT = "Subtopics cannot be researched at this depth. Answer directly now from what you know."


def _now_ts() -> float:
    return time.time()


@dataclass(frozen=True)
class TaskHandle:
    task_id: str
    request_id: str
    subtopic: str
    depth: int


@dataclass(frozen=True)
class HandleState:
    status: str
    result: str | None = None
    error: str | None = None

    @property
    def resolved(self) -> bool:
        return self.status in TaskStatus.TERMINAL

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.COMPLETED


@dataclass(frozen=True)
class Completed:
    result: str


@dataclass(frozen=True)
class Suspended:
    waiting_on: tuple[str, ...]


StepOutcome = Completed | Suspended


class TaskContext(Protocol):
    """Substrate primitives an invocation runs against."""

    task_id: str

    def durable_step(self, key: str, fn: Callable[[], Any]) -> Any: ...

    def spawn(self, *, child_id: str, request_id: str, topic: str, depth: int) -> TaskHandle: ...

    def poll(self, handle: TaskHandle) -> HandleState: ...

    def save(self, inv: TaskInvocation) -> None: ...

    def check_cancelled(self) -> None: ...

    def trace(self, event_type: str, payload: dict[str, Any]) -> None: ...


def validate_request(topic: Any, depth: Any, *, max_topic_chars: int | None = None) -> tuple[str, int]:
    if isinstance(depth, bool) or not isinstance(depth, int):
        raise InvalidInput(f"depth must be an integer, got {type(depth).__name__}")
    if depth < 0:
        raise InvalidInput(f"depth must be >= 0, got {depth}")
    t = str(topic or "").strip()
    if not t:
        raise InvalidInput("topic must be a non-empty string")
    if max_topic_chars is not None and len(t) > max_topic_chars:
        raise InvalidInput(f"topic exceeds {max_topic_chars} characters")
    return t, depth


class ResearchEngine:
    """Recursive consult / fan-out / fan-in loop as a resumable state machine.

    Each call to `advance` runs until the invocation either produces its answer or
    has to wait for children. All progress is written through `ctx.save`, so a
    crashed worker can pick the invocation up from the last saved phase; oracle
    calls and spawns are idempotent under replay.
    """

    def __init__(self, oracle: Oracle, *, prompts: PromptConfig) -> None:
        self.oracle = oracle
        self._prompts = prompts

    @property
    def tool_name(self) -> str:
        return self.oracle.tool_name

    def initial_history(self, *, topic: str, depth: int) -> list[dict[str, Any]]:
        variables = {"topic": topic, "depth": depth, "tool_name": self.tool_name}
        template = self._prompts.system_template if depth > 0 else self._prompts.system_leaf_template
        return [
            system_message(render_template(template, variables, strict=True).strip()),
            user_message(render_template(self._prompts.user_template, variables, strict=True).strip()),
        ]

    def start(
        self,
        *,
        task_id: str,
        topic: str,
        depth: int,
        history: list[dict[str, Any]] | None = None,
    ) -> TaskInvocation:
        topic, depth = validate_request(topic, depth)
        if history is None:
            history = self.initial_history(topic=topic, depth=depth)
        return TaskInvocation(task_id=task_id, topic=topic, depth=depth, history=list(history))

    def advance(self, ctx: TaskContext, inv: TaskInvocation) -> StepOutcome:
        while True:
            ctx.check_cancelled()

            if inv.phase == Phase.CONSULT:
                outcome = self._consult(ctx, inv)
                if outcome is not None:
                    return outcome
            elif inv.phase == Phase.FAN_OUT:
                self._fan_out(ctx, inv)
            elif inv.phase == Phase.AWAIT:
                outcome = self._fan_in(ctx, inv)
                if outcome is not None:
                    return outcome
            else:
                raise RuntimeError(f"Unknown phase: {inv.phase}")

    def _ask(self, ctx: TaskContext, inv: TaskInvocation, *, key: str, allow: bool) -> dict[str, Any]:
        def _call() -> dict[str, Any]:
            ctx.trace(
                "oracle_request",
                {
                    "ts": _now_ts(),
                    "iteration": inv.iteration,
                    "depth": inv.depth,
                    "allow_decomposition": allow,
                    "messages": inv.history,
                },
            )
            return self.oracle.consult(list(inv.history), allow_decomposition=allow)

        message = ctx.durable_step(key, _call)
        ctx.trace("oracle_response", {"ts": _now_ts(), "iteration": inv.iteration, "message": message})
        return message

    def _consult(self, ctx: TaskContext, inv: TaskInvocation) -> StepOutcome | None:
        allow = inv.depth > 0
        message = self._ask(ctx, inv, key=f"consult:{inv.iteration}", allow=allow)

        response = parse_oracle_message(message, tool_name=self.tool_name)
        inv.history.append(message)

        if isinstance(response, Decomposition):
            if allow:
                inv.pending = [PendingChild(request_id=r.request_id, subtopic=r.subtopic) for r in response.requests]
                inv.phase = Phase.FAN_OUT
                ctx.trace(
                    "decomposition",
                    {
                        "ts": _now_ts(),
                        "iteration": inv.iteration,
                        "requests": [{"request_id": r.request_id, "subtopic": r.subtopic} for r in response.requests],
                    },
                )
                ctx.save(inv)
                return None

            # Depth exhausted: the requests are dropped and any text stands as the answer.
            logger.warning(
                "Task %s requested %d subtopics at depth 0; ignoring", inv.task_id, len(response.requests)
            )
            ctx.trace(
                "decomposition_ignored",
                {"ts": _now_ts(), "iteration": inv.iteration, "n_requests": len(response.requests)},
            )
            if not response.text:
                return Completed(result=self._answer_directly(ctx, inv, response))

        ctx.save(inv)
        return Completed(result=response.text)

    def _answer_directly(self, ctx: TaskContext, inv: TaskInvocation, refused: Decomposition) -> str:
        """Consult once more, without the tool, after a text-less decomposition at depth 0.

        Nothing is saved before the second reply is recorded, so a resumed invocation
        replays both steps from the same history.
        """
        for r in refused.requests:
            inv.history.append(tool_result_message(r.request_id, DEPTH_EXHAUSTED_RESULT))
        inv.history.append(user_message(ANSWER_DIRECTLY_PROMPT))

        message = self._ask(ctx, inv, key=f"consult:{inv.iteration}:leaf", allow=False)
        response = parse_oracle_message(message, tool_name=self.tool_name)
        inv.history.append(message)
        ctx.save(inv)

        if isinstance(response, Decomposition):
            ctx.trace(
                "decomposition_ignored",
                {"ts": _now_ts(), "iteration": inv.iteration, "n_requests": len(response.requests)},
            )
            if not response.text:
                logger.warning("Task %s still requested subtopics at depth 0; returning an empty answer", inv.task_id)
        return response.text

    def _fan_out(self, ctx: TaskContext, inv: TaskInvocation) -> None:
        # Every handle is created before any is awaited.
        for index, child in enumerate(inv.pending):
            handle = ctx.spawn(
                child_id=inv.child_task_id(index),
                request_id=child.request_id,
                topic=child.subtopic,
                depth=inv.depth - 1,
            )
            child.task_id = handle.task_id
        inv.phase = Phase.AWAIT
        ctx.save(inv)

    def _handles(self, inv: TaskInvocation) -> list[TaskHandle]:
        handles: list[TaskHandle] = []
        for child in inv.pending:
            if not child.task_id:
                raise RuntimeError(f"Child {child.request_id!r} of {inv.task_id} was never spawned")
            handles.append(
                TaskHandle(
                    task_id=child.task_id,
                    request_id=child.request_id,
                    subtopic=child.subtopic,
                    depth=inv.depth - 1,
                )
            )
        return handles

    def _fan_in(self, ctx: TaskContext, inv: TaskInvocation) -> StepOutcome | None:
        handles = self._handles(inv)
        states = [ctx.poll(h) for h in handles]

        for handle, state in zip(handles, states):
            if state.resolved and not state.succeeded:
                raise ChildFailure.from_child(
                    subtopic=handle.subtopic,
                    depth=handle.depth,
                    child_task_id=handle.task_id,
                    status=state.status,
                    error=state.error,
                )

        waiting = tuple(h.task_id for h, s in zip(handles, states) if not s.resolved)
        if waiting:
            return Suspended(waiting_on=waiting)

        for handle, state in zip(handles, states):
            inv.history.append(tool_result_message(handle.request_id, state.result or ""))
        ctx.trace(
            "fan_in",
            {
                "ts": _now_ts(),
                "iteration": inv.iteration,
                "children": [h.task_id for h in handles],
            },
        )
        inv.pending = []
        inv.iteration += 1
        inv.phase = Phase.CONSULT
        ctx.save(inv)
        return None
