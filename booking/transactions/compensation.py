"""
Compensation for aborted bookings.

Every durable write the booking transaction makes is recorded in a SagaLog
together with the coroutine that undoes it. When the transaction aborts,
``compensate`` runs the undo actions newest-first. Each undo is isolated: a
failing undo is logged and the remaining ones still run, so one stuck row
never leaves the others behind.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class StepKind(str, Enum):
    PAYMENT = "payment"
    CALENDAR_EVENT = "calendar_event"
    SESSION = "session"


@dataclass(frozen=True)
class CommittedStep:
    kind: StepKind
    resource_id: str
    undo: Callable[[], Awaitable[Any]]


@dataclass
class SagaLog:
    """Ordered record of the writes one booking has made so far."""

    trace_id: str
    steps: list[CommittedStep] = field(default_factory=list)

    def record(self, kind: StepKind, resource_id: Any, undo: Callable[[], Awaitable[Any]]) -> None:
        self.steps.append(CommittedStep(kind=kind, resource_id=str(resource_id), undo=undo))

    def has(self, kind: StepKind) -> bool:
        return any(step.kind == kind for step in self.steps)

    def __len__(self) -> int:
        return len(self.steps)


async def compensate(log: SagaLog) -> list[CommittedStep]:
    """
    Undo every recorded step in reverse order.

    Never raises. An undo that raises, or returns False, counts as failed.

    Returns:
        Steps that could not be undone (need manual reconciliation)
    """
    failed: list[CommittedStep] = []

    for step in reversed(log.steps):
        try:
            outcome = await step.undo()
        except Exception as e:
            logger.error(
                f"[{log.trace_id}] Compensation failed for {step.kind.value} {step.resource_id}: {e}",
                extra={"trace_id": log.trace_id},
                exc_info=True,
            )
            failed.append(step)
            continue

        if outcome is False:
            logger.error(
                f"[{log.trace_id}] Compensation did not undo {step.kind.value} {step.resource_id}",
                extra={"trace_id": log.trace_id},
            )
            failed.append(step)
        else:
            logger.info(
                f"[{log.trace_id}] Compensated {step.kind.value} {step.resource_id}",
                extra={"trace_id": log.trace_id},
            )

    if failed:
        logger.critical(
            f"[{log.trace_id}] {len(failed)} step(s) left behind after compensation: "
            + ", ".join(f"{s.kind.value}={s.resource_id}" for s in failed),
            extra={"trace_id": log.trace_id},
        )
    return failed
