"""
Thin wrappers around the ``gcloud`` and ``kubectl`` CLIs.
"""

import json
import logging
import subprocess
from typing import Any, Callable, List, Optional, Tuple

from ..errors import ActionFailure

logger = logging.getLogger(__name__)

NOT_FOUND_MARKERS = ("not found", "NOT_FOUND", "was not found", "does not exist")
ALREADY_EXISTS_MARKERS = ("already exists", "ALREADY_EXISTS")

Runner = Callable[..., subprocess.CompletedProcess]


def _tail(text: str, lines: int = 20) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


class CommandLine:
    """
    Runs one CLI binary.

    ``runner`` defaults to ``subprocess.run`` and is replaced by a fake in
    tests. It is always called as ``runner(command, input=..., capture_output=True, text=True)``.
    """

    json_args: Tuple[str, ...] = ()

    def __init__(self, binary: str, runner: Optional[Runner] = None):
        self.binary = binary
        self.runner = runner or subprocess.run

    def command(self, args: List[str]) -> List[str]:
        return [self.binary, *args]

    def _execute(self, args: List[str], input: Optional[str] = None) -> subprocess.CompletedProcess:
        command = self.command(args)
        logger.debug(f"Running: {' '.join(command)}")
        try:
            return self.runner(command, input=input, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise ActionFailure(f"{self.binary} is not installed or not on PATH") from e

    def run(self, *args: str, input: Optional[str] = None) -> str:
        """
        Run a command and return its stdout.

        Raises:
            ActionFailure: If the command exits non-zero
        """
        result = self._execute(list(args), input=input)
        if result.returncode != 0:
            raise ActionFailure(
                f"{self.binary} {' '.join(args[:3])} failed (exit {result.returncode}): {_tail(result.stderr or '')}"
            )
        return result.stdout or ""

    def json(self, *args: str) -> Any:
        """Run a command with JSON output and parse it."""
        output = self.run(*args, *self.json_args)
        if not output.strip():
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise ActionFailure(f"{self.binary} returned invalid JSON for {' '.join(args[:3])}: {e}") from e


class Gcloud(CommandLine):
    """Runs ``gcloud`` commands against one project; every command gets ``--project`` appended."""

    json_args = ("--format=json",)

    def __init__(self, project_id: str, binary: str = "gcloud", runner: Optional[Runner] = None):
        super().__init__(binary, runner)
        self.project_id = project_id

    def command(self, args: List[str]) -> List[str]:
        return [self.binary, *args, f"--project={self.project_id}"]

    def for_project(self, project_id: str) -> "Gcloud":
        """Same binary and runner, another project."""
        return Gcloud(project_id, binary=self.binary, runner=self.runner)

    def exists(self, *describe_args: str) -> bool:
        """True when a ``describe`` command succeeds."""
        return self._execute(list(describe_args)).returncode == 0

    def names(self, *list_args: str) -> List[str]:
        """Run a ``list`` command and return the ``value(name)`` column."""
        output = self.run(*list_args)
        return [line.strip() for line in output.splitlines() if line.strip()]

    def create(self, description: str, *args: str, input: Optional[str] = None) -> bool:
        """
        Run a create command, treating "already exists" as success.

        Returns:
            True if the resource was created, False if it already existed
        """
        result = self._execute(list(args), input=input)
        if result.returncode == 0:
            return True
        if any(marker in (result.stderr or "") for marker in ALREADY_EXISTS_MARKERS):
            logger.info(f"{description} already exists")
            return False
        raise ActionFailure(f"Failed to create {description}: {_tail(result.stderr or '')}")

    def delete(self, description: str, *args: str) -> bool:
        """
        Run a delete command with ``--quiet``, treating "not found" as success.

        Returns:
            True if something was deleted, False if it was already gone

        Raises:
            ActionFailure: For any other failure
        """
        logger.info(f"Deleting {description}...")
        result = self._execute([*args, "--quiet"])
        if result.returncode == 0:
            return True
        if any(marker in (result.stderr or "") for marker in NOT_FOUND_MARKERS):
            logger.info(f"  {description}: not found or already deleted")
            return False
        raise ActionFailure(f"Failed to delete {description}: {_tail(result.stderr or '')}")


class Kubectl(CommandLine):
    """Runs ``kubectl`` against the current context, as set by ``get-credentials``."""

    json_args = ("-o", "json")

    def __init__(self, binary: str = "kubectl", runner: Optional[Runner] = None):
        super().__init__(binary, runner)

    def apply(self, manifest: str) -> str:
        return self.run("apply", "-f", "-", input=manifest)
