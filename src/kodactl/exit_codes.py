"""Process exit codes returned by the ``koda`` CLI."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit codes shared by every lifecycle command.

    ``VALIDATION`` covers bad input or a missing install, ``ENVIRONMENT``
    covers missing executables and filesystem failures, and ``PROVIDER``
    covers failures reported by the network, pnpm or pm2.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4


__all__ = ["ExitCode"]
