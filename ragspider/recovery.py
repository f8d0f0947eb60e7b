"""Recovery actions triggered by terminal page failures."""

from __future__ import annotations

import asyncio
import gc
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

LOGGER = logging.getLogger(__name__)

MEMORY_CLEANUP_PAUSE = 1.0


@dataclass
class ProxyPool:
    """Ordered proxy URLs with a round-robin cursor."""

    urls: List[str] = field(default_factory=list)
    current_index: int = 0

    @property
    def current(self) -> Optional[str]:
        if not self.urls:
            return None
        return self.urls[self.current_index]

    def rotate(self) -> Optional[str]:
        if not self.urls:
            return None
        self.current_index = (self.current_index + 1) % len(self.urls)
        return self.urls[self.current_index]


async def rotate_proxy(pool: Optional[ProxyPool], browser: Any = None) -> Optional[str]:
    """Advance the pool and install the new proxy in the browser layer.

    No-op without a configured pool. Failures while installing the proxy are
    logged, never raised.
    """
    if pool is None or not pool.urls:
        return None
    proxy_url = pool.rotate()
    try:
        if browser is not None:
            browser.set_proxy(proxy_url)
    except Exception as exc:
        LOGGER.warning("Proxy rotation failed: %s", exc)
        return proxy_url
    LOGGER.info("Rotated proxy to index %d", pool.current_index)
    return proxy_url


async def perform_memory_cleanup(
    caches: Iterable[Any] = (),
    *,
    pause: float = MEMORY_CLEANUP_PAUSE,
) -> None:
    """Collect garbage, clear reachable caches and pause briefly.

    This throttles the crawl after a memory failure; it does not guarantee
    that memory use actually drops.
    """
    try:
        collected = gc.collect()
        LOGGER.debug("Garbage collector freed %d objects", collected)
        for cache in caches:
            clear = getattr(cache, "clear_cache", None)
            if clear is None:
                continue
            outcome = clear()
            if inspect.isawaitable(outcome):
                await outcome
        await asyncio.sleep(pause)
    except Exception as exc:
        LOGGER.warning("Memory cleanup failed: %s", exc)
