"""
Layer 2 – 缓存层
  ResultCache          : 按键缓存刷新结果，单飞刷新 + 失败时返回旧值
  HistoricalSeriesCache: 365 日收盘价序列，长 TTL 整体替换
"""

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from dashboard_service.models.market import HistoricalSeries

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class CacheRefreshError(Exception):
    """刷新失败且没有任何可回退的缓存值"""

    def __init__(self, key: str, cause: BaseException):
        super().__init__(f"缓存刷新失败且无旧值可用: {key} ({cause})")
        self.key = key
        self.cause = cause


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    fetched_at: float

    def age(self, now: float) -> float:
        return now - self.fetched_at


class ResultCache:
    """
    进程内结果缓存

    - 未过期直接返回
    - 同一键同时只有一个刷新在执行，其余请求复用同一结果
    - 刷新失败时保留并返回旧条目（不更新 fetched_at），无旧条目时抛出 CacheRefreshError
    """

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._counters: Counter = Counter()

    def peek(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    async def get_or_refresh(
        self,
        key: str,
        ttl: float,
        refresh: Callable[[], Awaitable[Any]],
    ) -> Any:
        entry = self._entries.get(key)
        if entry is not None and entry.age(self._clock()) < ttl:
            self._counters["hits"] += 1
            logger.debug(f"缓存命中: {key}")
            return entry.value

        self._counters["misses"] += 1
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(key, refresh))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))
        else:
            logger.debug(f"复用进行中的刷新: {key}")

        try:
            return await asyncio.shield(task)
        except Exception as exc:
            stale = self._entries.get(key)
            if stale is None:
                raise CacheRefreshError(key, exc) from exc
            self._counters["stale_serves"] += 1
            logger.warning(
                f"⚠️ 刷新失败，返回旧缓存: {key}"
                f"（已缓存 {stale.age(self._clock()):.0f}s）: {exc}"
            )
            return stale.value

    async def _refresh(self, key: str, refresh: Callable[[], Awaitable[Any]]) -> Any:
        self._counters["refreshes"] += 1
        value = await refresh()
        self._entries[key] = CacheEntry(value=value, fetched_at=self._clock())
        logger.debug(f"缓存写入: {key}")
        return value

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            self._counters["refresh_failures"] += 1

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def stats(self) -> dict:
        now = self._clock()
        return {
            "entries": {
                key: {"age_seconds": round(entry.age(now), 1)}
                for key, entry in self._entries.items()
            },
            "inflight": sorted(self._inflight),
            "hits": self._counters["hits"],
            "misses": self._counters["misses"],
            "refreshes": self._counters["refreshes"],
            "refresh_failures": self._counters["refresh_failures"],
            "stale_serves": self._counters["stale_serves"],
        }


class HistoricalSeriesCache:
    """
    365 日历史序列缓存

    序列为空或超过 TTL 时才刷新；刷新结果长度需大于 min_points，否则保留旧序列
    （可能为空）且不推进时间戳，下次读取会再次尝试。
    """

    CANONICAL_DAYS = 365

    def __init__(
        self,
        fetch: Callable[[int], Awaitable[HistoricalSeries]],
        ttl: float = 1800,
        min_points: int = 11,
        clock: Clock = time.time,
    ):
        self._fetch = fetch
        self._ttl = ttl
        self._min_points = min_points
        self._clock = clock
        self._series = HistoricalSeries()
        self._fetched_at: Optional[float] = None
        self._lock = asyncio.Lock()

    def _fresh(self) -> bool:
        if self._fetched_at is None or len(self._series) == 0:
            return False
        return (self._clock() - self._fetched_at) < self._ttl

    async def get(self, days: int = CANONICAL_DAYS) -> HistoricalSeries:
        """返回完整的缓存序列；调用方自行用 tail(days) 截取"""
        if self._fresh():
            return self._series
        async with self._lock:
            if self._fresh():
                return self._series
            series = await self._fetch(self.CANONICAL_DAYS)
            if len(series) >= self._min_points:
                self._series = series
                self._fetched_at = self._clock()
                logger.info(f"历史序列已刷新（{series.source}，{len(series)} 条）")
            else:
                logger.warning(
                    f"历史序列刷新未达到 {self._min_points} 条，沿用旧序列（{len(self._series)} 条）"
                )
            return self._series

    def stats(self) -> dict:
        return {
            "points": len(self._series),
            "source": self._series.source,
            "age_seconds": round(self._clock() - self._fetched_at, 1) if self._fetched_at is not None else None,
        }


# ── 模块级别单例 ──────────────────────────────────────────
_result_cache: Optional[ResultCache] = None


def get_result_cache() -> ResultCache:
    global _result_cache
    if _result_cache is None:
        _result_cache = ResultCache()
    return _result_cache
