"""kodactl package bootstrap.

Exposes the package version so the CLI and packaging metadata agree on a
single source of truth.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "1.0.5"


def get_version() -> str:
    """Return the current package version."""
    return __version__
