"""Probe for the external executables kodactl drives."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class DependencyProber:
    """Check whether executables can be invoked.

    A candidate counts as available when ``<name> --version`` starts and
    exits with status 0 inside *timeout* seconds. Its output is ignored.
    """

    timeout: float = 30.0

    def is_available(self, name: str) -> bool:
        """Return ``True`` when *name* answers a version query successfully."""
        try:
            result = self._run_version_query(name)
        except (OSError, subprocess.TimeoutExpired) as exc:
            LOGGER.debug("Dependency probe for %s failed: %s", name, exc)
            return False
        return result.returncode == 0

    def probe(self, names: Iterable[str]) -> frozenset[str]:
        """Return the subset of *names* that are available."""
        return frozenset(name for name in dict.fromkeys(names) if self.is_available(name))

    def missing(self, names: Sequence[str]) -> tuple[str, ...]:
        """Return the entries of *names* that are not available, in order."""
        available = self.probe(names)
        return tuple(name for name in dict.fromkeys(names) if name not in available)

    def _run_version_query(self, name: str) -> subprocess.CompletedProcess[str]:
        """Execute the version query (isolated for testing)."""
        return subprocess.run(  # noqa: S603
            [name, "--version"],
            capture_output=True,
            text=True,
            check=False,
            timeout=self.timeout,
        )


__all__ = ["DependencyProber"]
