"""Resumable download of model binaries into the local model cache."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable

import httpx

from .base import ModelDownloadError

__all__ = ["ModelDownloader", "part_path_for"]

LOGGER = logging.getLogger(__name__)

_PART_SUFFIX = ".part"
_EXECUTABLE_MODE = 0o755
ProgressCallback = Callable[[int, "int | None"], None]


def part_path_for(destination: Path) -> Path:
    """Return the in-progress sibling used while ``destination`` downloads."""

    return destination.with_name(destination.name + _PART_SUFFIX)


class ModelDownloader:
    """Fetch a model binary, resuming from an existing ``.part`` file.

    The final file only appears once the transfer completed; an interrupted
    transfer leaves the ``.part`` file behind so the next call resumes from
    its current length.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        chunk_size: int = 1024 * 1024,
        timeout: float = 60.0,
        progress: ProgressCallback | None = None,
    ) -> None:
        self._client = client
        self._chunk_size = max(1, chunk_size)
        self._timeout = timeout
        self._progress = progress

    async def download(self, url: str, destination: Path) -> Path:
        """Download ``url`` to ``destination`` and mark it executable.

        Raises:
            ModelDownloadError: directory creation, network or file-system failure.
        """

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ModelDownloadError(f"Unable to create model directory {destination.parent}: {exc}") from exc

        part_path = part_path_for(destination)
        async with self._session() as client:
            total = await self._probe_size(client, url)
            offset = self._resume_offset(part_path)
            if total is not None and offset > total:
                LOGGER.warning(
                    "Partial download %s is larger than the remote file (%s > %s); restarting",
                    part_path,
                    offset,
                    total,
                )
                self._truncate(part_path)
                offset = 0

            if total is not None and offset == total:
                LOGGER.info("Partial download %s already complete; skipping transfer", part_path)
            else:
                LOGGER.info(
                    "Downloading %s to %s (resume offset %s, total %s)",
                    url,
                    destination,
                    offset,
                    total if total is not None else "unknown",
                )
                await self._transfer(client, url, part_path, offset, total)

        return self._finalize(part_path, destination, total)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
            yield client

    async def _probe_size(self, client: httpx.AsyncClient, url: str) -> int | None:
        try:
            response = await client.head(url, follow_redirects=True)
        except httpx.HTTPError as exc:
            raise ModelDownloadError(f"Unable to reach {url}: {exc}") from exc
        if response.is_error:
            LOGGER.debug("HEAD %s returned HTTP %s; size unknown", url, response.status_code)
            return None
        raw = response.headers.get("content-length")
        try:
            total = int(raw) if raw is not None else 0
        except ValueError:
            total = 0
        return total if total > 0 else None

    @staticmethod
    def _resume_offset(part_path: Path) -> int:
        try:
            return part_path.stat().st_size
        except FileNotFoundError:
            return 0
        except OSError as exc:
            raise ModelDownloadError(f"Unable to inspect {part_path}: {exc}") from exc

    @staticmethod
    def _truncate(part_path: Path) -> None:
        try:
            with part_path.open("wb"):
                pass
        except OSError as exc:
            raise ModelDownloadError(f"Unable to reset {part_path}: {exc}") from exc

    async def _transfer(
        self,
        client: httpx.AsyncClient,
        url: str,
        part_path: Path,
        offset: int,
        total: int | None,
    ) -> None:
        headers = {"Range": f"bytes={offset}-"} if offset else {}
        try:
            async with client.stream("GET", url, headers=headers, follow_redirects=True) as response:
                if offset and response.status_code == httpx.codes.REQUESTED_RANGE_NOT_SATISFIABLE:
                    LOGGER.info("Server reports nothing left past byte %s; treating download as complete", offset)
                    return
                if response.is_error:
                    raise ModelDownloadError(f"Download of {url} failed with HTTP {response.status_code}")
                mode = "ab"
                if offset and response.status_code != httpx.codes.PARTIAL_CONTENT:
                    LOGGER.warning("Server ignored the range request; restarting download from byte 0")
                    offset = 0
                    mode = "wb"
                with part_path.open(mode) as handle:
                    written = offset
                    reported = _decile(written, total)
                    async for chunk in response.aiter_bytes(self._chunk_size):
                        handle.write(chunk)
                        written += len(chunk)
                        reported = self._report(written, total, reported)
                    handle.flush()
                    os.fsync(handle.fileno())
        except httpx.HTTPError as exc:
            raise ModelDownloadError(f"Download of {url} interrupted: {exc}") from exc
        except OSError as exc:
            raise ModelDownloadError(f"Unable to write {part_path}: {exc}") from exc

    def _report(self, written: int, total: int | None, reported: int) -> int:
        if self._progress is not None:
            self._progress(written, total)
        current = _decile(written, total)
        if current > reported:
            LOGGER.info("Download progress: %s%% (%s/%s bytes)", current * 10, written, total)
        return current

    @staticmethod
    def _finalize(part_path: Path, destination: Path, total: int | None) -> Path:
        try:
            size = part_path.stat().st_size
            if total is not None and size != total:
                LOGGER.warning("Downloaded size %s does not match expected size %s", size, total)
            os.replace(part_path, destination)
            destination.chmod(destination.stat().st_mode | _EXECUTABLE_MODE)
        except OSError as exc:
            raise ModelDownloadError(f"Unable to finalize {destination}: {exc}") from exc
        LOGGER.info("Model saved to %s", destination)
        return destination


def _decile(written: int, total: int | None) -> int:
    if not total:
        return 0
    return min(10, written * 10 // total)
