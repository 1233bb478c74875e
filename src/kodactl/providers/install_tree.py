"""Ownership of the on-disk install directory."""
from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path

from .archive import ArchiveFetcher, ExtractResult


class InstallTreeError(RuntimeError):
    """Raised when the install directory cannot be read, written or removed."""


@dataclass(frozen=True, slots=True)
class ClearResult:
    """Outcome of clearing a directory's contents."""

    path: Path
    existed: bool
    removed: int


@dataclass(slots=True)
class InstallTreeManager:
    """Replace, preserve and remove files under the install directory.

    Nothing here rolls back: if a step fails, the tree may be absent or
    partially populated and the error is surfaced to the caller.
    """

    fetcher: ArchiveFetcher

    def wipe(self, directory: Path) -> bool:
        """Remove *directory* recursively; return ``False`` if it was already absent."""
        if not directory.exists() and not directory.is_symlink():
            return False
        try:
            _remove_path(directory)
        except OSError as exc:
            raise InstallTreeError(f"Failed to remove {directory}: {exc}") from exc
        return True

    def replace(self, directory: Path, archive_url: str) -> ExtractResult:
        """Wipe *directory* and populate it fresh from *archive_url*."""
        self.wipe(directory)
        return self.populate(directory, archive_url)

    def capture_env(self, directory: Path, env_rel_path: str) -> bytes | None:
        """Return the raw environment file contents, or ``None`` when absent."""
        env_path = directory / env_rel_path
        if not env_path.is_file():
            return None
        try:
            return env_path.read_bytes()
        except OSError as exc:
            raise InstallTreeError(f"Failed to read {env_path}: {exc}") from exc

    def restore_env(self, directory: Path, env_rel_path: str, content: bytes) -> Path:
        """Write *content* back to the environment file verbatim."""
        env_path = directory / env_rel_path
        try:
            env_path.parent.mkdir(parents=True, exist_ok=True)
            env_path.write_bytes(content)
        except OSError as exc:
            raise InstallTreeError(f"Failed to restore {env_path}: {exc}") from exc
        return env_path

    def empty(self, directory: Path) -> int:
        """Delete every entry inside *directory*, keeping the directory itself."""
        removed = 0
        try:
            for child in list(directory.iterdir()):
                _remove_path(child)
                removed += 1
        except OSError as exc:
            raise InstallTreeError(f"Failed to clear {directory}: {exc}") from exc
        return removed

    def replace_preserving_env(
        self,
        directory: Path,
        archive_url: str,
        env_rel_path: str,
    ) -> bool:
        """Replace the tree contents while carrying the environment file across.

        Returns ``True`` when an environment file existed and was restored.
        """
        captured = self.capture_env(directory, env_rel_path)
        self.empty(directory)
        self.populate(directory, archive_url)
        if captured is None:
            return False
        self.restore_env(directory, env_rel_path, captured)
        return True

    def clear_subdir(self, directory: Path) -> ClearResult:
        """Remove the children of *directory*; a missing directory is a no-op."""
        if not directory.is_dir():
            return ClearResult(path=directory, existed=False, removed=0)
        removed = self.empty(directory)
        return ClearResult(path=directory, existed=True, removed=removed)

    def populate(self, directory: Path, archive_url: str) -> ExtractResult:
        """Fetch *archive_url* into *directory* without touching existing entries."""
        try:
            return self.fetcher.fetch_and_extract(archive_url, directory)
        except OSError as exc:
            raise InstallTreeError(f"Failed to write into {directory}: {exc}") from exc


def _remove_path(path: Path) -> None:
    if path.is_symlink() or not path.is_dir():
        path.unlink()
        return
    shutil.rmtree(path)


__all__ = ["ClearResult", "InstallTreeError", "InstallTreeManager"]
