from __future__ import annotations

import asyncio
import hashlib
import inspect
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Union

import httpx

from .errors import (
    AlreadyExists,
    Cancelled,
    DownloadError,
    LocalLlmError,
    err_download_in_progress,
)
from .interfaces import RemoteCatalog
from .models import (
    CancellationToken,
    DownloadProgress,
    DownloadStatus,
    RemoteModelInfo,
)

logger = logging.getLogger("mindstrike.local_llm.downloader")

ProgressCallback = Callable[[DownloadProgress], Union[None, Awaitable[None]]]

_SPEED_UNITS = ("B/s", "KB/s", "MB/s", "GB/s")
PARTIAL_SUFFIX = ".part"


def format_speed(bytes_per_second: float) -> str:
    speed = max(0.0, float(bytes_per_second))
    unit = 0
    while speed >= 1024 and unit < len(_SPEED_UNITS) - 1:
        speed /= 1024
        unit += 1
    return f"{speed:.1f} {_SPEED_UNITS[unit]}"


@dataclass
class _DownloadTask:
    filename: str
    url: str
    destination: Path
    cancel: CancellationToken = field(default_factory=CancellationToken)
    caller_cancel: Optional[CancellationToken] = None
    total_bytes: int = 0
    bytes_received: int = 0
    speed: str = "0.0 B/s"
    status: DownloadStatus = DownloadStatus.PENDING
    listeners: List[ProgressCallback] = field(default_factory=list)
    task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel.cancelled or bool(
            self.caller_cancel and self.caller_cancel.cancelled
        )

    def snapshot(self) -> DownloadProgress:
        progress = 0
        if self.total_bytes > 0:
            progress = min(100, int(self.bytes_received * 100 / self.total_bytes))
        if self.status == DownloadStatus.COMPLETED:
            progress = 100
        return DownloadProgress(
            filename=self.filename,
            total_bytes=self.total_bytes,
            bytes_received=self.bytes_received,
            progress=progress,
            speed=self.speed,
            status=self.status,
        )


class ModelDownloader:
    """Fetches GGUF files with progress, cancellation and per-filename single flight.

    Data is streamed to ``<destination>.part`` and renamed on success. A failed
    or cancelled download removes the partial file; downloads never resume.
    """

    def __init__(
        self,
        catalog: RemoteCatalog | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        token: str | None = None,
        chunk_bytes: int = 1024 * 1024,
        progress_interval_s: float = 1.0,
        timeout_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._catalog = catalog
        self._owns_client = client is None
        self._http = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s, read=None), follow_redirects=True
        )
        self._token = token
        self._chunk_bytes = chunk_bytes
        self._interval = progress_interval_s
        self._clock = clock
        self._tasks: Dict[str, _DownloadTask] = {}

    async def aclose(self) -> None:
        for entry in list(self._tasks.values()):
            entry.cancel.cancel("Downloader closed")
        pending = [e.task for e in self._tasks.values() if e.task is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._owns_client:
            await self._http.aclose()

    # ----------------------------------------------------------------- queries
    def is_downloading(self, filename: str) -> bool:
        return filename in self._tasks

    def get_download_progress(self, filename: str) -> Optional[DownloadProgress]:
        entry = self._tasks.get(filename)
        return entry.snapshot() if entry else None

    def active_downloads(self) -> List[DownloadProgress]:
        return [entry.snapshot() for entry in self._tasks.values()]

    def cancel_download(self, filename: str) -> bool:
        entry = self._tasks.get(filename)
        if entry is None:
            return False
        entry.cancel.cancel(f"Download of '{filename}' cancelled")
        logger.info("[downloader] Cancellation requested for %s", filename)
        return True

    # ----------------------------------------------------------------- catalog
    async def get_available_models(self) -> List[RemoteModelInfo]:
        if self._catalog is None:
            return []
        try:
            return await self._catalog.list_available()
        except Exception as exc:  # noqa: BLE001 - catalog is best effort
            logger.warning("[downloader] Catalog listing failed: %s", exc)
            return []

    async def search_models(self, query: str) -> List[RemoteModelInfo]:
        if self._catalog is None:
            return []
        try:
            return await self._catalog.search(query)
        except Exception as exc:  # noqa: BLE001 - catalog is best effort
            logger.warning("[downloader] Catalog search for %r failed: %s", query, exc)
            return []

    # ---------------------------------------------------------------- download
    async def download_model(
        self,
        info: RemoteModelInfo,
        destination: Path | str,
        on_progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> Path:
        destination = Path(destination)
        entry = self._tasks.get(info.filename)
        if entry is not None:
            if entry.url != info.url:
                raise err_download_in_progress(info.filename)
            if on_progress is not None:
                entry.listeners.append(on_progress)
            logger.info("[downloader] Joining active download of %s", info.filename)
            return await asyncio.shield(entry.task)

        if destination.exists():
            raise AlreadyExists(
                f"Model '{info.filename}' already exists",
                "Delete the local copy before downloading again",
            )

        entry = _DownloadTask(
            filename=info.filename,
            url=info.url,
            destination=destination,
            caller_cancel=cancel,
            total_bytes=int(info.size_bytes or 0),
        )
        if on_progress is not None:
            entry.listeners.append(on_progress)
        self._tasks[info.filename] = entry
        entry.task = asyncio.create_task(self._run(entry, info))
        return await asyncio.shield(entry.task)

    async def _run(self, entry: _DownloadTask, info: RemoteModelInfo) -> Path:
        partial = entry.destination.with_name(entry.destination.name + PARTIAL_SUFFIX)
        try:
            await self._fetch(entry, partial)
            expected = (info.catalog_metadata or {}).get("sha256")
            if expected:
                await self._verify(partial, str(expected), entry.filename)
            partial.replace(entry.destination)
            entry.status = DownloadStatus.COMPLETED
            entry.speed = format_speed(0)
            await self._emit(entry)
            logger.info(
                "[downloader] Downloaded %s (%d bytes)",
                entry.filename,
                entry.bytes_received,
            )
            return entry.destination
        except Cancelled:
            entry.status = DownloadStatus.CANCELLED
            logger.info("[downloader] Download cancelled: %s", entry.filename)
            raise
        except LocalLlmError:
            entry.status = DownloadStatus.FAILED
            logger.warning("[downloader] Download failed: %s", entry.filename)
            raise
        except (httpx.HTTPError, OSError) as exc:
            entry.status = DownloadStatus.FAILED
            logger.warning("[downloader] Download failed: %s (%s)", entry.filename, exc)
            raise DownloadError(f"Download of '{entry.filename}' failed: {exc}") from exc
        finally:
            if entry.status != DownloadStatus.COMPLETED:
                partial.unlink(missing_ok=True)
            self._tasks.pop(entry.filename, None)

    async def _fetch(self, entry: _DownloadTask, partial: Path) -> None:
        headers = {"User-Agent": "mindstrike-local-llm"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        async with self._http.stream("GET", entry.url, headers=headers) as resp:
            if resp.status_code == 401:
                raise DownloadError(
                    f"Download of '{entry.filename}' requires authentication",
                    reason="unauthorized",
                    hint="Configure a Hugging Face token",
                )
            if resp.status_code == 403:
                raise DownloadError(
                    f"Access to '{entry.filename}' is forbidden",
                    reason="forbidden",
                    hint="Accept the model's license on Hugging Face",
                )
            if resp.status_code >= 400:
                raise DownloadError(
                    f"Download of '{entry.filename}' failed: HTTP {resp.status_code}",
                    reason="http",
                )

            length = resp.headers.get("Content-Length")
            if length and length.isdigit():
                entry.total_bytes = int(length)
            entry.status = DownloadStatus.ACTIVE

            last_emit = self._clock()
            last_bytes = 0
            with partial.open("wb") as handle:
                async for chunk in resp.aiter_bytes(self._chunk_bytes):
                    if entry.cancelled:
                        raise Cancelled(entry.cancel.reason or "Download cancelled")
                    await asyncio.to_thread(handle.write, chunk)
                    entry.bytes_received += len(chunk)

                    now = self._clock()
                    elapsed = now - last_emit
                    if elapsed >= self._interval:
                        delta = entry.bytes_received - last_bytes
                        entry.speed = format_speed(delta / elapsed if elapsed > 0 else 0)
                        last_emit, last_bytes = now, entry.bytes_received
                        await self._emit(entry)
            if entry.cancelled:
                raise Cancelled(entry.cancel.reason or "Download cancelled")

    async def _verify(self, partial: Path, expected: str, filename: str) -> None:
        def digest() -> str:
            sha = hashlib.sha256()
            with partial.open("rb") as handle:
                for block in iter(lambda: handle.read(1024 * 1024), b""):
                    sha.update(block)
            return sha.hexdigest()

        actual = await asyncio.to_thread(digest)
        if actual.lower() != expected.lower():
            raise DownloadError(
                f"Checksum mismatch for '{filename}'", reason="checksum"
            )

    async def _emit(self, entry: _DownloadTask) -> None:
        snapshot = entry.snapshot()
        for listener in list(entry.listeners):
            try:
                result = listener(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001 - a bad listener must not kill the download
                logger.exception(
                    "[downloader] Progress callback failed for %s", entry.filename
                )
