"""
Generic bounded-retry wait-for-condition primitive.

Cloud resources (NAT gateways, EFS filesystems, secrets, namespaces, peering
connections, ...) become usable some time after the create call returns.
``poll`` checks a predicate until it reports ready, reports a terminal
failure, or the attempt/time budget runs out.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .errors import PollFailed, PollTimedOut

logger = logging.getLogger(__name__)


class CheckState(Enum):
    READY = "ready"
    NOT_READY = "not_ready"
    FAILED = "failed"


@dataclass(frozen=True)
class Check:
    """Result of a single predicate call."""
    state: CheckState
    detail: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.state == CheckState.READY

    @property
    def failed(self) -> bool:
        return self.state == CheckState.FAILED


READY = Check(CheckState.READY)
NOT_READY = Check(CheckState.NOT_READY)


def not_ready(detail: str) -> Check:
    return Check(CheckState.NOT_READY, detail)


def failed(reason: str) -> Check:
    return Check(CheckState.FAILED, reason)


class PollOutcome(Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass
class PollSpec:
    """
    Describes a readiness check.

    Either bound may be left unset. With both set the loop stops on whichever
    is hit first; with neither set it runs until the predicate settles.
    """
    predicate: Callable[[], Check]
    interval: float
    max_attempts: Optional[int] = None
    total_timeout: Optional[float] = None
    description: str = "resource"

    def __post_init__(self):
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.interval < 0:
            raise ValueError(f"interval must be >= 0, got {self.interval}")
        if self.total_timeout is not None and self.total_timeout <= 0:
            raise ValueError(f"total_timeout must be > 0, got {self.total_timeout}")


@dataclass
class PollResult:
    outcome: PollOutcome
    attempts: int
    elapsed: float
    reason: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.outcome == PollOutcome.READY

    def raise_for_outcome(self, description: str = "resource") -> None:
        """
        Raise the matching error unless the poll reached ready.

        Raises:
            PollTimedOut: If the budget was exhausted
            PollFailed: If the predicate reported a terminal failure
        """
        if self.outcome == PollOutcome.TIMED_OUT:
            raise PollTimedOut(description, self.attempts)
        if self.outcome == PollOutcome.FAILED:
            raise PollFailed(self.reason or f"{description} reported a failed state")


def poll(
    spec: PollSpec,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    on_attempt: Optional[Callable[[int, Check], None]] = None,
) -> PollResult:
    """
    Run the predicate of ``spec`` until it settles or the budget runs out.

    Args:
        spec: Readiness check description
        sleep: Suspends the caller between attempts
        clock: Monotonic clock used for the total timeout
        on_attempt: Called with (attempt number, check) after every attempt

    Returns:
        PollResult with the outcome and the number of predicate calls made
    """
    start = clock()
    attempt = 0
    limit = str(spec.max_attempts) if spec.max_attempts is not None else "unbounded"

    logger.info(f"Waiting for {spec.description} to be available...")

    while True:
        attempt += 1
        check = spec.predicate()

        if on_attempt is not None:
            on_attempt(attempt, check)

        if check.ready:
            elapsed = clock() - start
            logger.info(f"{spec.description} is available (attempt {attempt})")
            return PollResult(PollOutcome.READY, attempt, elapsed)

        if check.failed:
            elapsed = clock() - start
            reason = check.detail or f"{spec.description} reported a failed state"
            logger.error(f"{spec.description} failed on attempt {attempt}: {reason}")
            return PollResult(PollOutcome.FAILED, attempt, elapsed, reason)

        status = f" Current status: {check.detail}" if check.detail else ""
        if spec.max_attempts is not None and attempt >= spec.max_attempts:
            elapsed = clock() - start
            logger.warning(f"Timed out waiting for {spec.description} after {attempt} attempt(s).{status}")
            return PollResult(PollOutcome.TIMED_OUT, attempt, elapsed)

        logger.info(f"Attempt {attempt} of {limit}, waiting {spec.interval} seconds...{status}")
        sleep(spec.interval)

        elapsed = clock() - start
        if spec.total_timeout is not None and elapsed >= spec.total_timeout:
            logger.warning(f"Timed out waiting for {spec.description} ({elapsed:.0f} seconds elapsed)")
            return PollResult(PollOutcome.TIMED_OUT, attempt, elapsed)
