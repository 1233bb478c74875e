"""Shared fixtures for the kodactl test suite."""

from __future__ import annotations

import io
import tarfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from kodactl.config import AppConfig, load_config
from kodactl.providers import ExtractResult

ARCHIVE_URL = "https://example.invalid/koda-backend/main.tar.gz"


def build_tarball(
    files: Mapping[str, bytes],
    *,
    top: str = "koda-backend-main",
) -> bytes:
    """Return a gzip tarball whose entries all live under *top*."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        top_info = tarfile.TarInfo(top)
        top_info.type = tarfile.DIRTYPE
        top_info.mode = 0o755
        archive.addfile(top_info)
        for name, content in files.items():
            info = tarfile.TarInfo(f"{top}/{name}")
            info.size = len(content)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


@dataclass
class FakeFetcher:
    """Stand-in for :class:`ArchiveFetcher` that writes a fixed file set."""

    files: dict[str, bytes] = field(
        default_factory=lambda: {
            "main.js": b"console.log('v2');\n",
            "package.json": b'{"name": "koda-backend"}\n',
        }
    )
    error: Exception | None = None
    calls: list[tuple[str, Path]] = field(default_factory=list)
    events: list[str] | None = None

    def fetch_and_extract(self, url: str, dest_dir: Path) -> ExtractResult:
        """Record the call and materialise ``files`` under *dest_dir*."""
        self.calls.append((url, dest_dir))
        if self.events is not None:
            self.events.append("fetch")
        if self.error is not None:
            raise self.error
        dest_dir.mkdir(parents=True, exist_ok=True)
        for name, content in self.files.items():
            path = dest_dir / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        return ExtractResult(
            url=url,
            destination=dest_dir,
            entries=len(self.files),
            bytes_read=sum(len(content) for content in self.files.values()),
        )


@pytest.fixture
def tarball_factory() -> Callable[..., bytes]:
    """Expose :func:`build_tarball` to tests."""
    return build_tarball


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    """Return a fresh :class:`FakeFetcher`."""
    return FakeFetcher()


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration rooted entirely inside the temporary directory."""
    return load_config(
        tmp_path / "config.yml",
        env={},
        overrides={
            "install_dir": str(tmp_path / "koda"),
            "logs_dir": str(tmp_path / "logs"),
            "archive_url": ARCHIVE_URL,
        },
    )
