"""
Ordered execution of named provisioning and cleanup steps.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional, Tuple, Union

from .errors import ActionFailure, SequenceAborted
from .events import emit_event, EventTypes
from .poller import Check, PollResult, PollSpec, poll
from .state import ResourceHandle, ResourceRegistry, format_details

logger = logging.getLogger(__name__)

ActionReturn = Union[None, ResourceHandle, Iterable[ResourceHandle]]
PollFactory = Callable[[ResourceRegistry], PollSpec]


@dataclass
class Step:
    """A named unit of work.

    ``poll`` may be a ready PollSpec or a callable building one from the
    registry, for waits that need the ID the action just produced.
    """
    name: str
    action: Callable[[ResourceRegistry], ActionReturn]
    continue_on_error: bool = False
    poll: Optional[Union[PollSpec, PollFactory]] = None


def cleanup_step(
    name: str,
    action: Callable[[ResourceRegistry], ActionReturn],
    poll: Optional[Union[PollSpec, PollFactory]] = None,
) -> Step:
    """Cleanup steps keep going past failures."""
    return Step(name=name, action=action, continue_on_error=True, poll=poll)


class StepStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StepOutcome:
    name: str
    status: StepStatus
    reason: Optional[str] = None
    handles: List[ResourceHandle] = field(default_factory=list)
    poll_result: Optional[PollResult] = None
    duration: float = 0.0


@dataclass
class SequenceResult:
    outcomes: List[StepOutcome]
    registry: ResourceRegistry
    error: Optional[SequenceAborted] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def outcome(self, name: str) -> Optional[StepOutcome]:
        for item in self.outcomes:
            if item.name == name:
                return item
        return None

    def failed_steps(self) -> List[StepOutcome]:
        return [o for o in self.outcomes if o.status == StepStatus.FAILED]

    def raise_if_aborted(self) -> None:
        if self.error is not None:
            raise self.error

    def summary(self, title: str = "Run Summary") -> str:
        """Step name -> outcome report followed by the produced resources."""
        lines = [title, "=" * len(title)]
        for item in self.outcomes:
            line = f"[{item.status.value.upper():7}] {item.name}"
            if item.reason:
                line += f" ({item.reason})"
            lines.append(line)
        lines.append("")
        lines.append(format_details(self.registry).rstrip("\n"))
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict:
        return {
            "succeeded": self.succeeded,
            "aborted_at": self.error.step_name if self.error else None,
            "steps": [
                {"name": o.name, "status": o.status.value, "reason": o.reason,
                 "handles": [h.to_dict() for h in o.handles]}
                for o in self.outcomes
            ],
            "resources": self.registry.to_list(),
        }


def _as_handles(value: ActionReturn) -> List[ResourceHandle]:
    if value is None:
        return []
    if isinstance(value, ResourceHandle):
        return [value]
    return list(value)


class Sequencer:
    """
    Runs steps strictly in declaration order.

    A failing strict step stops the run and the remaining steps are reported
    as skipped. A failing lenient step is logged and the run continues.
    Nothing is rolled back.
    """

    def __init__(
        self,
        steps: List[Step],
        registry: Optional[ResourceRegistry] = None,
        run_id: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.steps = list(steps)
        self.registry = registry if registry is not None else ResourceRegistry()
        self.run_id = run_id
        self._sleep = sleep
        self._clock = clock

    def _emit(self, event_type: str, data: dict) -> None:
        if self.run_id:
            emit_event(self.run_id, event_type, data)

    def _run_poll(self, step: Step) -> PollResult:
        spec = step.poll if isinstance(step.poll, PollSpec) else step.poll(self.registry)

        def record(attempt: int, check: Check) -> None:
            self._emit(EventTypes.POLL_ATTEMPT, {
                "step": step.name,
                "attempt": attempt,
                "state": check.state.value,
                "detail": check.detail,
            })

        result = poll(spec, sleep=self._sleep, clock=self._clock, on_attempt=record)
        result.raise_for_outcome(spec.description)
        return result

    def _run_step(self, step: Step) -> Tuple[StepOutcome, Optional[Exception]]:
        started = self._clock()
        handles: List[ResourceHandle] = []
        poll_result = None

        try:
            handles = _as_handles(step.action(self.registry))
            for handle in handles:
                self.registry.add(handle)

            if step.poll is not None:
                poll_result = self._run_poll(step)

        except Exception as e:
            reason = e.reason if isinstance(e, ActionFailure) else str(e)
            return StepOutcome(
                name=step.name,
                status=StepStatus.FAILED,
                reason=reason or e.__class__.__name__,
                handles=handles,
                poll_result=poll_result,
                duration=self._clock() - started,
            ), e

        return StepOutcome(
            name=step.name,
            status=StepStatus.SUCCESS,
            handles=handles,
            poll_result=poll_result,
            duration=self._clock() - started,
        ), None

    def run(self) -> SequenceResult:
        """
        Execute every step.

        Returns:
            SequenceResult with one outcome per step, in declaration order
        """
        outcomes: List[StepOutcome] = []
        error: Optional[SequenceAborted] = None

        self._emit(EventTypes.RUN_START, {"steps": [s.name for s in self.steps]})

        for index, step in enumerate(self.steps):
            logger.info(f"Step {index + 1}/{len(self.steps)}: {step.name}")
            self._emit(EventTypes.STEP_START, {"step": step.name})

            outcome, cause = self._run_step(step)
            outcomes.append(outcome)

            if outcome.status == StepStatus.SUCCESS:
                self._emit(EventTypes.STEP_OK, {
                    "step": step.name,
                    "handles": [h.to_dict() for h in outcome.handles],
                })
                continue

            self._emit(EventTypes.STEP_FAILED, {
                "step": step.name,
                "reason": outcome.reason,
                "continue_on_error": step.continue_on_error,
            })

            if step.continue_on_error:
                logger.warning(f"Step '{step.name}' failed, continuing: {outcome.reason}")
                continue

            logger.error(f"Step '{step.name}' failed: {outcome.reason}")
            error = SequenceAborted(step.name, cause)

            for skipped in self.steps[index + 1:]:
                outcomes.append(StepOutcome(
                    name=skipped.name,
                    status=StepStatus.SKIPPED,
                    reason=f"aborted after '{step.name}'",
                ))
                self._emit(EventTypes.STEP_SKIPPED, {"step": skipped.name})
            break

        if error is None:
            self._emit(EventTypes.RUN_DONE, {"failed_steps": [
                o.name for o in outcomes if o.status == StepStatus.FAILED
            ]})
        else:
            self._emit(EventTypes.RUN_ABORTED, {"step": error.step_name, "reason": str(error.cause)})

        return SequenceResult(outcomes=outcomes, registry=self.registry, error=error)
