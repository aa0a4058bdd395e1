"""
Error taxonomy for provisioning and cleanup runs.
"""

from typing import Optional


class JitInfraError(Exception):
    """Base class for all jitinfra errors."""


class ConfigError(JitInfraError):
    """Invalid configuration or tag file."""


class ActionFailure(JitInfraError):
    """A step action failed (the cloud call errored or returned nothing usable)."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class PollTimedOut(JitInfraError):
    """A readiness predicate never reported ready within its budget."""

    def __init__(self, description: str, attempts: int):
        super().__init__(f"Timed out waiting for {description} after {attempts} attempt(s)")
        self.description = description
        self.attempts = attempts


class PollFailed(JitInfraError):
    """A readiness predicate observed a terminal failure state."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class SequenceAborted(JitInfraError):
    """A strict step failed and stopped the sequence."""

    def __init__(self, step_name: str, cause: Optional[BaseException] = None):
        message = f"Step '{step_name}' failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.step_name = step_name
        self.cause = cause
