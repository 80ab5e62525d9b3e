import asyncio
import logging
import threading
from typing import Awaitable, Callable, Dict, Optional, Tuple

from app.services.heatmap_compositor import HeatmapResult

logger = logging.getLogger(__name__)


class HeatmapCache:
    """
    Heatmap results of one base image, keyed by class label.

    A new base image gets a new cache instance, so an analysis still running
    against the previous image only ever writes into the cache it started with.
    """

    def __init__(self):
        self._results: Dict[str, HeatmapResult] = {}
        self._lock = threading.Lock()
        self._key_locks: Dict[str, asyncio.Lock] = {}

    def get(self, class_label: str) -> Optional[HeatmapResult]:
        with self._lock:
            return self._results.get(class_label)

    def put(self, class_label: str, result: HeatmapResult):
        with self._lock:
            self._results[class_label] = result

    def clear(self):
        with self._lock:
            self._results.clear()
            self._key_locks.clear()

    def __contains__(self, class_label: str) -> bool:
        with self._lock:
            return class_label in self._results

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)

    def _key_lock(self, class_label: str) -> asyncio.Lock:
        with self._lock:
            if class_label not in self._key_locks:
                self._key_locks[class_label] = asyncio.Lock()
            return self._key_locks[class_label]

    async def get_or_compute(self, class_label: str,
                             factory: Callable[[], Awaitable[HeatmapResult]]) -> Tuple[HeatmapResult, bool]:
        """
        Returns (result, cached). Concurrent callers for the same label wait for a
        single computation instead of starting their own.
        """
        cached = self.get(class_label)
        if cached is not None:
            return cached, True
        async with self._key_lock(class_label):
            cached = self.get(class_label)
            if cached is not None:
                return cached, True
            result = await factory()
            self.put(class_label, result)
            logger.info(f"Cached heatmap for '{class_label}'")
            return result, False
