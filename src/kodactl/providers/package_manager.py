"""Dependency installation via pnpm (and global tooling via npm)."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

_OUTPUT_TAIL_LINES = 20


class PackageInstallError(RuntimeError):
    """Raised when the package manager exits unsuccessfully."""


@dataclass(slots=True)
class PackageManager:
    """Run the package manager inside the install directory."""

    bin: str = "pnpm"
    install_args: Sequence[str] = ("install",)
    npm_bin: str = "npm"

    def install(self, tree: Path) -> subprocess.CompletedProcess[str]:
        """Install the dependencies declared by the application in *tree*."""
        cmd = [self.bin, *self.install_args]
        return self._checked(cmd, cwd=tree, label=" ".join(cmd))

    def install_global(self, packages: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Install *packages* globally with npm (used by ``koda setup``)."""
        if not packages:
            raise PackageInstallError("No packages requested for global install.")
        cmd = [self.npm_bin, "install", "-g", *packages]
        return self._checked(cmd, cwd=None, label=" ".join(cmd))

    def _checked(
        self,
        cmd: Sequence[str],
        *,
        cwd: Path | None,
        label: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = self._run_command(cmd, cwd=cwd)
        except FileNotFoundError as exc:
            raise PackageInstallError(f"{cmd[0]} not found: {exc}") from exc
        except OSError as exc:
            raise PackageInstallError(f"{label} could not be started: {exc}") from exc
        if result.returncode != 0:
            raise PackageInstallError(
                f"{label} failed (exit {result.returncode}): {_tail(result)}"
            )
        return result

    def _run_command(
        self,
        cmd: Sequence[str],
        *,
        cwd: Path | None,
    ) -> subprocess.CompletedProcess[str]:
        """Execute the package manager (isolated for testing)."""
        return subprocess.run(  # noqa: S603
            list(cmd),
            cwd=str(cwd) if cwd is not None else None,
            capture_output=True,
            text=True,
            check=False,
        )


def _tail(result: subprocess.CompletedProcess[str]) -> str:
    output = (result.stderr or "").strip() or (result.stdout or "").strip()
    if not output:
        return "no output"
    return "\n".join(output.splitlines()[-_OUTPUT_TAIL_LINES:])


__all__ = ["PackageInstallError", "PackageManager"]
