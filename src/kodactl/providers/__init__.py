"""Adapters around the external collaborators kodactl drives."""
from __future__ import annotations

from .archive import ArchiveFetcher, ExtractResult, FetchError
from .dependencies import DependencyProber
from .install_tree import ClearResult, InstallTreeError, InstallTreeManager
from .package_manager import PackageInstallError, PackageManager
from .pm2 import Pm2Error, Pm2Provider, RemoveOutcome, RemoveStatus, StopOutcome, StopStatus

__all__ = [
    "ArchiveFetcher",
    "ClearResult",
    "DependencyProber",
    "ExtractResult",
    "FetchError",
    "InstallTreeError",
    "InstallTreeManager",
    "PackageInstallError",
    "PackageManager",
    "Pm2Error",
    "Pm2Provider",
    "RemoveOutcome",
    "RemoveStatus",
    "StopOutcome",
    "StopStatus",
]
