"""Download a gzip tarball and extract it with its top-level folder stripped.

The response body is never held in memory as a whole: ``httpx`` streams
chunks into a read-only file object that ``tarfile`` consumes in stream mode
(``r|gz``), so each archive member is written to disk as soon as it has been
received.
"""
from __future__ import annotations

import io
import logging
import tarfile
import zlib
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import httpx

LOGGER = logging.getLogger(__name__)


class FetchError(RuntimeError):
    """Raised when an archive cannot be downloaded or unpacked."""


@dataclass(frozen=True, slots=True)
class ExtractResult:
    """Summary of a completed fetch-and-extract run."""

    url: str
    destination: Path
    entries: int
    bytes_read: int


class _ChunkReader(io.RawIOBase):
    """Expose an iterator of byte chunks as a readable raw stream."""

    def __init__(self, chunks: Iterator[bytes]) -> None:
        super().__init__()
        self._chunks = chunks
        self._pending = b""
        self.bytes_read = 0

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: bytearray | memoryview) -> int:  # type: ignore[override]
        while not self._pending:
            try:
                self._pending = next(self._chunks)
            except StopIteration:
                return 0
        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        self.bytes_read += size
        return size


def strip_leading_component(name: str) -> str | None:
    """Return *name* without its first path segment, or ``None`` if nothing remains.

    A leading ``/`` is not a segment: ``/top/x`` becomes ``x``.
    """
    parts = [part for part in PurePosixPath(name.lstrip("/")).parts if part not in ("", ".")]
    if len(parts) <= 1:
        return None
    return str(PurePosixPath(*parts[1:]))


@dataclass(slots=True)
class ArchiveFetcher:
    """Fetch a remote ``.tar.gz`` and unpack it into a directory."""

    timeout: float = 120.0
    transport: httpx.BaseTransport | None = None
    chunk_size: int = 64 * 1024

    def fetch_and_extract(self, url: str, dest_dir: Path) -> ExtractResult:
        """Download *url* and extract it under *dest_dir*, stripping one level.

        The call returns only after every member has been written. Network,
        HTTP status and archive format problems raise :class:`FetchError`;
        filesystem errors while writing members propagate as ``OSError``.
        """
        LOGGER.debug("Fetching archive %s into %s", url, dest_dir)
        try:
            with self._client() as client, client.stream("GET", url) as response:
                if not response.is_success:
                    raise FetchError(
                        f"Failed to download {url}: "
                        f"{response.status_code} {response.reason_phrase}".rstrip()
                    )
                dest_dir.mkdir(parents=True, exist_ok=True)
                reader = _ChunkReader(response.iter_bytes(self.chunk_size))
                entries = _extract_stripped(io.BufferedReader(reader), dest_dir)
        except httpx.HTTPError as exc:
            raise FetchError(f"Failed to download {url}: {exc}") from exc
        except httpx.StreamError as exc:
            raise FetchError(f"Failed to read response from {url}: {exc}") from exc
        except (tarfile.TarError, EOFError, zlib.error) as exc:
            raise FetchError(f"Invalid archive from {url}: {exc}") from exc
        LOGGER.debug("Extracted %d entries (%d bytes) from %s", entries, reader.bytes_read, url)
        return ExtractResult(
            url=url,
            destination=dest_dir,
            entries=entries,
            bytes_read=reader.bytes_read,
        )

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout,
            follow_redirects=True,
            transport=self.transport,
        )


def _extract_stripped(stream: io.BufferedReader, dest_dir: Path) -> int:
    entries = 0
    with tarfile.open(fileobj=stream, mode="r|gz") as archive:
        for member in archive:
            stripped = strip_leading_component(member.name)
            if stripped is None:
                continue
            member.name = stripped
            if member.islnk():
                link_target = strip_leading_component(member.linkname)
                if link_target is None:
                    continue
                member.linkname = link_target
            archive.extract(member, path=dest_dir, filter="data")
            entries += 1
    return entries


__all__ = ["ArchiveFetcher", "ExtractResult", "FetchError", "strip_leading_component"]
