"""pm2 provider for supervising the application process."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

LOGGER = logging.getLogger(__name__)

_NOT_FOUND_MARKERS = ("not found", "doesn't exist", "does not exist")


class Pm2Error(RuntimeError):
    """Raised when a pm2 operation that must succeed fails."""


class StopStatus(str, Enum):
    """Outcome of asking pm2 to stop the process."""

    STOPPED = "stopped"
    WAS_NOT_RUNNING = "was-not-running"
    FAILED = "failed"


class RemoveStatus(str, Enum):
    """Outcome of asking pm2 to delete the process entry."""

    REMOVED = "removed"
    NOT_FOUND = "not-found"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class StopOutcome:
    """Tagged result of :meth:`Pm2Provider.stop`."""

    status: StopStatus
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class RemoveOutcome:
    """Tagged result of :meth:`Pm2Provider.remove`."""

    status: RemoveStatus
    reason: str | None = None


@dataclass(slots=True)
class Pm2Provider:
    """Register, stop and delete the pm2 entry named after the application."""

    name: str
    pm2_bin: str = "pm2"

    def remove(self) -> RemoveOutcome:
        """Delete the pm2 entry; a missing entry counts as success."""
        try:
            result = self._pm2(["delete", self.name])
        except Pm2Error as exc:
            LOGGER.warning("pm2 delete %s failed: %s", self.name, exc)
            return RemoveOutcome(RemoveStatus.FAILED, str(exc))
        if result.returncode == 0:
            return RemoveOutcome(RemoveStatus.REMOVED)
        message = _output(result)
        if _is_not_found(result):
            return RemoveOutcome(RemoveStatus.NOT_FOUND, message)
        LOGGER.warning(
            "pm2 delete %s failed (exit %s): %s", self.name, result.returncode, message
        )
        return RemoveOutcome(RemoveStatus.FAILED, message)

    def create(
        self,
        working_dir: Path,
        entry_point: str,
        interpreter: str,
    ) -> subprocess.CompletedProcess[str]:
        """Register and launch the entry with an explicit interpreter."""
        args = ["start", entry_point, "--name", self.name, "--interpreter", interpreter]
        result = self._pm2(args, cwd=working_dir)
        if result.returncode != 0:
            raise Pm2Error(
                f"{self.pm2_bin} start failed (exit {result.returncode}): {_output(result)}"
            )
        return result

    def stop(self) -> StopOutcome:
        """Stop the entry; never raises for supervisor-side failures."""
        try:
            result = self._pm2(["stop", self.name])
        except Pm2Error as exc:
            return StopOutcome(StopStatus.FAILED, str(exc))
        if result.returncode == 0:
            return StopOutcome(StopStatus.STOPPED)
        message = _output(result)
        if _is_not_found(result):
            return StopOutcome(StopStatus.WAS_NOT_RUNNING, message)
        return StopOutcome(StopStatus.FAILED, message)

    # ------------------------------------------------------------------
    def _pm2(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.pm2_bin, *args]
        try:
            return self._run_command(command, cwd=cwd)
        except FileNotFoundError as exc:
            raise Pm2Error(f"{self.pm2_bin} not found: {exc}") from exc
        except OSError as exc:
            raise Pm2Error(f"{self.pm2_bin} {args[0]} could not be started: {exc}") from exc

    def _run_command(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None,
    ) -> subprocess.CompletedProcess[str]:
        """Execute pm2 (isolated for testing)."""
        return subprocess.run(  # noqa: S603
            list(command),
            cwd=str(cwd) if cwd is not None else None,
            capture_output=True,
            text=True,
            check=False,
        )


def _output(result: subprocess.CompletedProcess[str]) -> str:
    stdout = getattr(result, "stdout", "") or ""
    stderr = getattr(result, "stderr", "") or ""
    return stderr.strip() or stdout.strip() or "no output"


def _is_not_found(result: subprocess.CompletedProcess[str]) -> bool:
    stdout = getattr(result, "stdout", "") or ""
    stderr = getattr(result, "stderr", "") or ""
    lowered = f"{stdout}\n{stderr}".lower()
    return any(marker in lowered for marker in _NOT_FOUND_MARKERS)


__all__ = [
    "Pm2Error",
    "Pm2Provider",
    "RemoveOutcome",
    "RemoveStatus",
    "StopOutcome",
    "StopStatus",
]
