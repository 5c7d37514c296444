from __future__ import annotations

import logging
import time
from typing import Dict, Iterator, List, Optional

from .models import LoadedModelRuntime, UsageStats

logger = logging.getLogger("mindstrike.local_llm.registry")


class ModelRegistry:
    """In-memory map of loaded model id -> :class:`LoadedModelRuntime`.

    No I/O and no locking: the loader serializes writes per model id.
    """

    def __init__(self) -> None:
        self._active: Dict[str, LoadedModelRuntime] = {}
        self._usage: Dict[str, UsageStats] = {}

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._active

    def __iter__(self) -> Iterator[LoadedModelRuntime]:
        return iter(list(self._active.values()))

    def __len__(self) -> int:
        return len(self._active)

    def get(self, model_id: str) -> Optional[LoadedModelRuntime]:
        return self._active.get(model_id)

    def has(self, model_id: str) -> bool:
        return model_id in self._active

    def set(self, runtime: LoadedModelRuntime) -> None:
        self._active[runtime.model_id] = runtime
        self._usage.setdefault(runtime.model_id, UsageStats())
        logger.debug("[registry] Registered %s", runtime.model_id)

    def remove(self, model_id: str) -> Optional[LoadedModelRuntime]:
        runtime = self._active.pop(model_id, None)
        if runtime is not None:
            logger.debug("[registry] Removed %s", model_id)
        return runtime

    def active_ids(self) -> List[str]:
        return list(self._active)

    def get_model_runtime_info(self, model_id: str) -> Optional[LoadedModelRuntime]:
        runtime = self._active.get(model_id)
        if runtime is not None:
            self._touch(runtime)
        return runtime

    def _touch(self, runtime: LoadedModelRuntime) -> None:
        runtime.last_used_at = time.time()
        stats = self._usage.get(runtime.model_id)
        if stats is not None:
            stats.last_accessed = runtime.last_used_at

    # threads
    def associate_thread(self, model_id: str, thread_id: str) -> None:
        runtime = self._active.get(model_id)
        if runtime is not None:
            runtime.thread_ids.add(thread_id)

    def disassociate_thread(self, thread_id: str) -> None:
        for runtime in self._active.values():
            runtime.thread_ids.discard(thread_id)

    def get_by_thread(self, thread_id: str) -> Optional[LoadedModelRuntime]:
        for runtime in self._active.values():
            if thread_id in runtime.thread_ids:
                self._touch(runtime)
                return runtime
        return None

    def unassociated_ids(self) -> List[str]:
        return [mid for mid, rt in self._active.items() if not rt.thread_ids]

    # usage
    def record_prompt_usage(self, model_id: str, tokens_generated: int) -> None:
        stats = self._usage.get(model_id)
        if stats is None:
            return
        stats.total_prompts += 1
        stats.total_tokens += max(0, int(tokens_generated))
        stats.last_accessed = time.time()

    def get_usage_stats(self, model_id: str) -> Optional[UsageStats]:
        return self._usage.get(model_id)

    def least_recently_used(self) -> Optional[str]:
        if not self._active:
            return None
        return min(self._active.values(), key=lambda rt: rt.last_used_at).model_id
