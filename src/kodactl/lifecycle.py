"""Lifecycle orchestration for the managed application.

:class:`LifecycleOrchestrator` sequences the providers into the operations
exposed by the CLI. Every operation is a fixed list of blocking steps with
early abort: fatal problems raise, supervisor soft failures come back as
:class:`~kodactl.providers.pm2.StopOutcome` /
:class:`~kodactl.providers.pm2.RemoveOutcome` values.

Executables are probed before anything is mutated, so a missing ``pnpm`` or
``pm2`` never leaves the install half changed.
"""
from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .config import AppConfig
from .logging import OperationScope
from .providers import (
    ArchiveFetcher,
    ClearResult,
    DependencyProber,
    InstallTreeManager,
    PackageManager,
    Pm2Provider,
    RemoveOutcome,
    RemoveStatus,
    StopOutcome,
    StopStatus,
)

ProgressCallback = Callable[[str], None]


class LifecycleError(RuntimeError):
    """Base class for orchestration preconditions that were not met."""


class MissingDependencyError(LifecycleError):
    """Raised when required executables cannot be invoked."""

    def __init__(self, missing: Sequence[str]) -> None:
        """Record the missing executable names."""
        self.missing = tuple(missing)
        super().__init__(f"Missing dependencies: {' '.join(self.missing)}")


class NotInstalledError(LifecycleError):
    """Raised when an operation needs the install directory and it is absent."""


@dataclass(frozen=True, slots=True)
class InstallResult:
    """Outcome of :meth:`LifecycleOrchestrator.install`."""

    path: Path
    replaced_existing: bool
    entries: int


@dataclass(frozen=True, slots=True)
class StartResult:
    """Outcome of :meth:`LifecycleOrchestrator.start`."""

    removed: RemoveOutcome


@dataclass(frozen=True, slots=True)
class UpdateResult:
    """Outcome of :meth:`LifecycleOrchestrator.update`."""

    stopped: StopOutcome
    env_preserved: bool
    removed: RemoveOutcome

    @property
    def warnings(self) -> list[str]:
        """Soft failures worth surfacing to the operator."""
        messages: list[str] = []
        if self.stopped.status is StopStatus.FAILED:
            messages.append(f"pm2 stop failed: {self.stopped.reason}")
        if self.removed.status is RemoveStatus.FAILED:
            messages.append(f"pm2 delete failed: {self.removed.reason}")
        return messages


@dataclass(frozen=True, slots=True)
class UninstallResult:
    """Outcome of :meth:`LifecycleOrchestrator.uninstall`."""

    removed: RemoveOutcome
    files_removed: bool


_STOP_STEP_STATUS = {
    StopStatus.STOPPED: "success",
    StopStatus.WAS_NOT_RUNNING: "skipped",
    StopStatus.FAILED: "warning",
}
_REMOVE_STEP_STATUS = {
    RemoveStatus.REMOVED: "success",
    RemoveStatus.NOT_FOUND: "skipped",
    RemoveStatus.FAILED: "warning",
}


class LifecycleOrchestrator:
    """Install, start, stop, update and uninstall the configured application."""

    def __init__(
        self,
        config: AppConfig,
        *,
        prober: DependencyProber | None = None,
        fetcher: ArchiveFetcher | None = None,
        tree: InstallTreeManager | None = None,
        packages: PackageManager | None = None,
        supervisor: Pm2Provider | None = None,
    ) -> None:
        """Wire collaborators, defaulting each one from *config*."""
        self.config = config
        self.prober = prober or DependencyProber(timeout=config.probe_timeout)
        if tree is None:
            tree = InstallTreeManager(
                fetcher=fetcher or ArchiveFetcher(timeout=config.fetch_timeout)
            )
        self.tree = tree
        self.packages = packages or PackageManager(
            bin=config.package_manager.bin,
            install_args=config.package_manager.install_args,
            npm_bin=config.setup.npm_bin,
        )
        self.supervisor = supervisor or Pm2Provider(name=config.app_name, pm2_bin=config.pm2.bin)

    @property
    def install_dir(self) -> Path:
        """Directory holding the deployed application tree."""
        return self.config.install_dir

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def setup(
        self,
        *,
        op: OperationScope | None = None,
        progress: ProgressCallback | None = None,
    ) -> tuple[str, ...]:
        """Install the package manager and supervisor globally with npm."""
        packages = self.config.setup.packages
        _announce(progress, f"Installing {', '.join(packages)}...")
        self.packages.install_global(packages)
        _step(op, "npm.install-global", "success", " ".join(packages))
        return packages

    def install(
        self,
        *,
        op: OperationScope | None = None,
        progress: ProgressCallback | None = None,
    ) -> InstallResult:
        """Fetch a fresh tree into the install directory and install dependencies."""
        self._require_dependencies(op, progress)

        existed = self.install_dir.exists()
        _announce(progress, f"Downloading and extracting {self.config.app_name}...")
        extract = self.tree.replace(self.install_dir, self.config.archive_url)
        _step(op, "tree.replace", "success", f"entries={extract.entries} existed={existed}")

        self._install_packages(op, progress)
        return InstallResult(
            path=self.install_dir,
            replaced_existing=existed,
            entries=extract.entries,
        )

    def start(
        self,
        *,
        op: OperationScope | None = None,
        progress: ProgressCallback | None = None,
    ) -> StartResult:
        """(Re)register the pm2 entry so it launches with the configured interpreter."""
        self._require_dependencies(op, progress)
        self._require_installed(op)
        removed = self._remove_entry(op, progress)
        self._create_entry(op, progress)
        return StartResult(removed=removed)

    def stop(
        self,
        *,
        op: OperationScope | None = None,
        progress: ProgressCallback | None = None,
    ) -> StopOutcome:
        """Stop the pm2 entry; "not running" is reported, never raised."""
        self._require_dependencies(op, progress)
        return self._stop_entry(op, progress)

    def update(
        self,
        *,
        op: OperationScope | None = None,
        progress: ProgressCallback | None = None,
    ) -> UpdateResult:
        """Replace the tree with the latest archive, keeping the environment file."""
        self._require_dependencies(op, progress)
        self._require_installed(op)

        stopped = self._stop_entry(op, progress)

        env_path = str(self.config.env_path)
        captured = self.tree.capture_env(self.install_dir, self.config.env_file)
        _step(
            op,
            "env.capture",
            "skipped" if captured is None else "success",
            "no environment file" if captured is None else env_path,
        )

        removed_entries = self.tree.empty(self.install_dir)
        _step(op, "tree.empty", "success", f"removed={removed_entries}")

        _announce(progress, "Downloading latest version...")
        extract = self.tree.populate(self.install_dir, self.config.archive_url)
        _step(op, "tree.populate", "success", f"entries={extract.entries}")

        env_preserved = captured is not None
        if captured is not None:
            self.tree.restore_env(self.install_dir, self.config.env_file, captured)
            _step(op, "env.restore", "success", env_path)

        self._install_packages(op, progress)
        removed = self._remove_entry(op, progress)
        self._create_entry(op, progress)
        return UpdateResult(stopped=stopped, env_preserved=env_preserved, removed=removed)

    def uninstall(
        self,
        *,
        op: OperationScope | None = None,
        progress: ProgressCallback | None = None,
    ) -> UninstallResult:
        """Delete the pm2 entry and remove the install directory."""
        self._require_dependencies(op, progress)
        removed = self._remove_entry(op, progress)
        _announce(progress, "Removing files...")
        files_removed = self.tree.wipe(self.install_dir)
        _step(op, "tree.wipe", "success" if files_removed else "skipped", str(self.install_dir))
        return UninstallResult(removed=removed, files_removed=files_removed)

    def clear_outputs(
        self,
        *,
        op: OperationScope | None = None,
        progress: ProgressCallback | None = None,
    ) -> ClearResult:
        """Empty the outputs directory, leaving the directory and the rest of the tree."""
        _announce(progress, "Clearing outputs directory...")
        result = self.tree.clear_subdir(self.config.outputs_path)
        if result.existed:
            _step(op, "outputs.clear", "success", f"removed={result.removed}")
        else:
            _step(op, "outputs.clear", "skipped", "outputs directory missing")
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_dependencies(
        self,
        op: OperationScope | None,
        progress: ProgressCallback | None,
    ) -> None:
        required = self.config.required_binaries
        _announce(progress, "Checking dependencies...")
        missing = self.prober.missing(required)
        if missing:
            _step(op, "deps.probe", "failed", f"missing={' '.join(missing)}")
            raise MissingDependencyError(missing)
        _step(op, "deps.probe", "success", " ".join(required))

    def _require_installed(self, op: OperationScope | None) -> None:
        if not self.install_dir.is_dir():
            _step(op, "tree.check", "failed", f"{self.install_dir} missing")
            raise NotInstalledError(
                f"{self.config.app_name} is not installed. Run \"koda install\" first."
            )
        _step(op, "tree.check", "success", str(self.install_dir))

    def _install_packages(
        self,
        op: OperationScope | None,
        progress: ProgressCallback | None,
    ) -> None:
        _announce(progress, f"Installing dependencies with {self.config.package_manager.bin}...")
        self.packages.install(self.install_dir)
        _step(op, "packages.install", "success", self.config.package_manager.bin)

    def _stop_entry(
        self,
        op: OperationScope | None,
        progress: ProgressCallback | None,
    ) -> StopOutcome:
        _announce(progress, f"Stopping {self.config.app_name}...")
        outcome = self.supervisor.stop()
        _step(op, "pm2.stop", _STOP_STEP_STATUS[outcome.status], outcome.reason)
        return outcome

    def _remove_entry(
        self,
        op: OperationScope | None,
        progress: ProgressCallback | None,
    ) -> RemoveOutcome:
        _announce(progress, "Removing previous pm2 entry...")
        outcome = self.supervisor.remove()
        _step(op, "pm2.delete", _REMOVE_STEP_STATUS[outcome.status], outcome.reason)
        return outcome

    def _create_entry(
        self,
        op: OperationScope | None,
        progress: ProgressCallback | None,
    ) -> None:
        _announce(progress, f"Starting {self.config.app_name}...")
        self.supervisor.create(
            self.install_dir,
            self.config.entry_point,
            self.config.interpreter,
        )
        _step(
            op,
            "pm2.start",
            "success",
            f"{self.config.entry_point} --interpreter {self.config.interpreter}",
        )


def _announce(progress: ProgressCallback | None, message: str) -> None:
    if progress is not None:
        progress(message)


def _step(op: OperationScope | None, name: str, status: str, detail: str | None) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


__all__ = [
    "InstallResult",
    "LifecycleError",
    "LifecycleOrchestrator",
    "MissingDependencyError",
    "NotInstalledError",
    "ProgressCallback",
    "StartResult",
    "UninstallResult",
    "UpdateResult",
]
