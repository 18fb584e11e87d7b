"""
Task Executor — runs task handlers and feeds their outcomes back.

The actual agent work happens elsewhere. Each task type has one async
handler that performs it and returns an OutcomeReport; the executor turns
that report (or a timeout / raised error, as a failed outcome) into an
Experience and records it through the coordinator.

Usage:
    from collective.engine.executor import OutcomeReport, TaskExecutor

    executor = TaskExecutor(coordinator)
    executor.register_handler("code-review", my_review_handler)
    result = await executor.execute("code-review", ["code", "test"], {"pr": 42})
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from collective.errors import ValidationError
from collective.learning.models import Experience

if TYPE_CHECKING:
    from collective.engine.coordinator import Coordinator, ExperienceOutcome

logger = structlog.get_logger()

EXECUTION_TIMEOUT = 30.0


@dataclass
class OutcomeReport:
    """What a handler reports back about one task."""

    success: bool
    quality: float
    duration: float | None = None
    complexity: float = 0.5
    expected_duration: float | None = None
    innovative: bool = False
    output: Any = None


# (task_type, payload) -> OutcomeReport
HandlerFn = Callable[[str, dict[str, Any]], Awaitable[OutcomeReport | Mapping[str, Any]]]


class ExecutionResult:
    """Result of one task execution."""

    __slots__ = (
        "task_type",
        "agent_types",
        "success",
        "quality",
        "duration",
        "error",
        "output",
        "experience_id",
        "outcome",
        "timestamp",
    )

    def __init__(
        self,
        task_type: str,
        agent_types: tuple[str, ...],
        success: bool,
        quality: float = 0.0,
        duration: float = 0.0,
        error: str = "",
        output: Any = None,
        experience_id: str | None = None,
        outcome: ExperienceOutcome | None = None,
    ) -> None:
        self.task_type = task_type
        self.agent_types = agent_types
        self.success = success
        self.quality = quality
        self.duration = duration
        self.error = error
        self.output = output
        self.experience_id = experience_id
        self.outcome = outcome
        self.timestamp = time.time()

    @property
    def recorded(self) -> bool:
        return self.experience_id is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_type": self.task_type,
            "agent_types": list(self.agent_types),
            "success": self.success,
            "quality": self.quality,
            "duration": self.duration,
            "error": self.error,
            "output": str(self.output)[:500] if self.output is not None else None,
            "experience_id": self.experience_id,
            "timestamp": self.timestamp,
        }


class TaskExecutor:
    """Dispatches tasks to registered async handlers and records the outcomes."""

    def __init__(
        self,
        coordinator: Coordinator,
        timeout: float = EXECUTION_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.coordinator = coordinator
        self.timeout = timeout
        self._clock = clock
        self._handlers: dict[str, HandlerFn] = {}

    def register_handler(self, task_type: str, handler: HandlerFn) -> None:
        """Register the async handler for a task type."""
        self._handlers[task_type] = handler

    async def execute(
        self,
        task_type: str,
        agent_types: Iterable[str],
        payload: Mapping[str, Any] | None = None,
        participants: Iterable[str] = (),
        strategy_id: str | None = None,
    ) -> ExecutionResult:
        """
        Run one task and record its outcome.

        A missing handler yields an unrecorded failed result. Timeouts and
        handler errors are recorded as failed experiences.

        Raises:
            ValidationError: empty task_type or agent_types
        """
        agents = tuple(sorted(set(agent_types)))
        if not task_type or not agents:
            raise ValidationError("task_type and agent_types must be non-empty")

        handler = self._handlers.get(task_type)
        if handler is None:
            return ExecutionResult(
                task_type=task_type,
                agent_types=agents,
                success=False,
                error=f"No handler registered for task type '{task_type}'",
            )

        start = self._clock()
        error = ""
        try:
            raw = await asyncio.wait_for(handler(task_type, dict(payload or {})), timeout=self.timeout)
            report = raw if isinstance(raw, OutcomeReport) else OutcomeReport(**raw)
            duration = report.duration if report.duration is not None else self._clock() - start
            experience = Experience.create(
                task_type,
                agents,
                report.success,
                report.quality,
                duration=duration,
                complexity=report.complexity,
                participants=tuple(participants),
                expected_duration=report.expected_duration,
                innovative=report.innovative,
                strategy_id=strategy_id,
            )
        except asyncio.TimeoutError:
            error = f"Execution timed out after {self.timeout}s"
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"

        if error:
            logger.warning("Task failed", task_type=task_type, error=error)
            report = OutcomeReport(success=False, quality=0.0)
            experience = Experience.create(
                task_type,
                agents,
                False,
                0.0,
                duration=self._clock() - start,
                participants=tuple(participants),
                strategy_id=strategy_id,
            )

        outcome = self.coordinator.record_experience(experience)
        return ExecutionResult(
            task_type=task_type,
            agent_types=agents,
            success=experience.success,
            quality=experience.quality,
            duration=experience.duration,
            error=error,
            output=report.output,
            experience_id=experience.id,
            outcome=outcome,
        )

    async def execute_batch(
        self,
        tasks: list[Mapping[str, Any]],
        parallel: bool = True,
    ) -> list[ExecutionResult]:
        """
        Execute several tasks, optionally in parallel.

        Each task mapping holds ``task_type`` and ``agent_types`` plus the
        optional ``payload``, ``participants`` and ``strategy_id``.
        """
        calls = [
            lambda t=t: self.execute(
                t["task_type"],
                t["agent_types"],
                t.get("payload"),
                t.get("participants", ()),
                t.get("strategy_id"),
            )
            for t in tasks
        ]
        if parallel:
            return list(await asyncio.gather(*(call() for call in calls)))

        results: list[ExecutionResult] = []
        for call in calls:
            results.append(await call())
        return results
