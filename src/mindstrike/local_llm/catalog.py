from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from .errors import IOFailure
from .models import RemoteModelInfo
from .naming import format_remote_name, parse_parameter_count, parse_quantization

logger = logging.getLogger("mindstrike.local_llm.catalog")

PREFERRED_QUANTIZATIONS = ("Q4_K_M", "Q5_K_M", "Q4_K_S", "Q8_0", "Q4_0")
MAX_FILE_BYTES = 15_000_000_000
_DETAIL_CONCURRENCY = 8


class HuggingFaceCatalog:
    """GGUF model listing backed by the Hugging Face model API.

    Each repository is reduced to one downloadable file, preferring the
    quantizations in :data:`PREFERRED_QUANTIZATIONS`; repositories without a
    single-file match are skipped. Listings are cached for ``cache_ttl_s``.
    """

    def __init__(
        self,
        base_url: str = "https://huggingface.co",
        *,
        token: str | None = None,
        limit: int = 100,
        cache_ttl_s: float = 600.0,
        max_retries: int = 3,
        timeout_s: float = 30.0,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.limit = limit
        self._cache_ttl_s = cache_ttl_s
        self._max_retries = max_retries
        self._sleep = sleep
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._owns_client = client is None
        self._http = client or httpx.AsyncClient(timeout=timeout_s)
        self._headers = headers
        self._cache: Dict[str, Tuple[float, List[RemoteModelInfo]]] = {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def clear_cache(self) -> None:
        self._cache.clear()

    async def list_available(self) -> List[RemoteModelInfo]:
        params = {
            "filter": "gguf",
            "sort": "downloads",
            "direction": "-1",
            "limit": str(self.limit),
        }
        return await self._cached("__popular__", params)

    async def search(self, query: str) -> List[RemoteModelInfo]:
        query = (query or "").strip()
        if not query:
            return await self.list_available()
        params = {
            "search": query,
            "filter": "gguf",
            "sort": "downloads",
            "direction": "-1",
            "limit": str(self.limit),
        }
        return await self._cached(f"search:{query.lower()}", params)

    async def _cached(self, key: str, params: dict) -> List[RemoteModelInfo]:
        hit = self._cache.get(key)
        if hit and time.monotonic() - hit[0] < self._cache_ttl_s:
            return hit[1]
        listing = await self._get_json(f"{self.base_url}/api/models", params=params)
        if not isinstance(listing, list):
            raise IOFailure("Unexpected model listing payload from catalog")
        models = await self._expand(listing)
        models.sort(key=lambda info: info.downloads, reverse=True)
        self._cache[key] = (time.monotonic(), models)
        logger.info("[catalog] %d GGUF models for %s", len(models), key)
        return models

    async def _expand(self, listing: List[dict]) -> List[RemoteModelInfo]:
        semaphore = asyncio.Semaphore(_DETAIL_CONCURRENCY)

        async def one(entry: dict) -> Optional[RemoteModelInfo]:
            repo_id = entry.get("id") or entry.get("modelId")
            if not repo_id:
                return None
            async with semaphore:
                try:
                    details = await self._get_json(
                        f"{self.base_url}/api/models/{repo_id}",
                        params={"blobs": "true"},
                    )
                except IOFailure as exc:
                    logger.debug("[catalog] Skipping %s: %s", repo_id, exc)
                    return None
            merged = {**entry, **(details if isinstance(details, dict) else {})}
            return self._to_remote(repo_id, merged)

        results = await asyncio.gather(*(one(entry) for entry in listing))
        return [info for info in results if info is not None]

    def _to_remote(self, repo_id: str, details: dict) -> Optional[RemoteModelInfo]:
        siblings = details.get("siblings") or []
        candidates = []
        for sibling in siblings:
            name = sibling.get("rfilename") or ""
            if not name.lower().endswith(".gguf") or "-of-" in name:
                continue
            size = int(sibling.get("size") or 0)
            if size >= MAX_FILE_BYTES:
                continue
            candidates.append((name, size, sibling))

        selected = None
        for quant in PREFERRED_QUANTIZATIONS:
            for name, size, sibling in candidates:
                if name.upper().endswith(f"{quant}.GGUF"):
                    selected = (name, size, sibling)
                    break
            if selected:
                break
        if selected is None:
            return None

        rfilename, size, sibling = selected
        quantization = parse_quantization(rfilename)
        parameter_count = parse_parameter_count(repo_id) or parse_parameter_count(
            rfilename
        )
        gguf_meta = details.get("gguf") or {}
        metadata: Dict[str, Any] = {"repo_id": repo_id}
        sha256 = (sibling.get("lfs") or {}).get("sha256")
        if sha256:
            metadata["sha256"] = sha256
        if details.get("gated"):
            metadata["gated"] = details["gated"]

        return RemoteModelInfo(
            filename=rfilename.replace("/", "_").replace("\\", "_"),
            url=f"{self.base_url}/{repo_id}/resolve/main/{rfilename}",
            size_bytes=size,
            name=format_remote_name(repo_id, parameter_count, quantization),
            model_id=repo_id,
            quantization=quantization,
            trained_context_length=gguf_meta.get("context_length"),
            parameter_count=parameter_count,
            downloads=int(details.get("downloads") or 0),
            likes=int(details.get("likes") or 0),
            catalog_metadata=metadata,
        )

    async def _get_json(self, url: str, params: dict | None = None) -> Any:
        attempt = 0
        while True:
            try:
                resp = await self._http.get(url, params=params, headers=self._headers)
            except httpx.HTTPError as exc:
                raise IOFailure(f"Catalog request failed: {exc}") from exc

            if resp.status_code == 429 and attempt < self._max_retries:
                wait = _retry_after(resp) or float(2**attempt)
                attempt += 1
                logger.warning(
                    "[catalog] Rate limited by %s; retry %d/%d in %.1fs",
                    url,
                    attempt,
                    self._max_retries,
                    wait,
                )
                await self._sleep(wait)
                continue
            if resp.status_code == 429:
                raise IOFailure(
                    "Catalog rate limit exceeded",
                    "Wait a minute or configure a Hugging Face token",
                )
            if resp.status_code >= 400:
                raise IOFailure(f"Catalog returned HTTP {resp.status_code} for {url}")
            try:
                return resp.json()
            except ValueError as exc:
                raise IOFailure(f"Catalog returned invalid JSON for {url}") from exc


def _retry_after(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None
