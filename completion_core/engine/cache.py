"""响应缓存。

CacheGate 包装调用方提供的 cache_get / cache_set 钩子（同步或异步均可）：
命中时整段回放已记录的输出，未命中时在请求完整成功后写入。
出错、被取消或不完整的流一律不写入。
"""

import asyncio
import hashlib
import inspect
import json
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from completion_core.domain.models import CompletionRequest, OutputUnit, input_to_dict, unit_from_dict, unit_to_dict
from completion_core.infrastructure.logging.logger import logger


def canonical_request(
    request: CompletionRequest,
    provider: Optional[str] = None,
    routed_model: Optional[str] = None,
) -> str:
    """请求的规范化 JSON；不包含 user_identifier 等与结果无关的字段。

    provider / routed_model 是解析后的厂商与具体模型，同一逻辑模型在不同质量档位下会得到不同的 key。
    """

    return json.dumps(
        {
            "model": request.model_id,
            "provider": provider,
            "routed_model": routed_model,
            "input": input_to_dict(request.input),
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "stop_sequences": list(request.stop_sequences),
            "num_outputs": request.num_outputs,
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def cache_key(
    request: CompletionRequest,
    provider: Optional[str] = None,
    routed_model: Optional[str] = None,
) -> str:
    return hashlib.sha256(canonical_request(request, provider, routed_model).encode("utf-8")).hexdigest()


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class CacheGate:
    def __init__(
        self,
        cache_get: Optional[Callable[[str], Any]] = None,
        cache_set: Optional[Callable[[str, Any], Any]] = None,
    ):
        self._get = cache_get
        self._set = cache_set

    @classmethod
    def from_cache(cls, cache) -> "CacheGate":
        return cls(cache_get=cache.get, cache_set=cache.set)

    @property
    def enabled(self) -> bool:
        return self._get is not None or self._set is not None

    async def lookup(self, key: str) -> Optional[List[List[OutputUnit]]]:
        if self._get is None:
            return None
        value = await _maybe_await(self._get(key))
        if value is None:
            return None
        return [[unit_from_dict(u) for u in units] for units in value]

    async def record(self, key: str, outputs: List[List[OutputUnit]]) -> None:
        if self._set is None:
            return
        value = [[unit_to_dict(u) for u in units] for units in outputs]
        await _maybe_await(self._set(key, value))
        logger.info("cache.recorded", extra={"extra": {"key": key[:12], "choices": len(outputs)}})


class InMemoryCache:
    """进程内 TTL 缓存：请求 key → 已记录的输出；用 asyncio.Lock 保护并发访问。"""

    def __init__(self, ttl_sec: int = 300, max_size: int = 1024, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_sec
        self._clock = clock
        self._max_size = max_size
        self._store: Dict[str, Tuple[float, Any]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._store.get(key)
            if not entry:
                return None
            ts, val = entry
            if self._clock() - ts > self._ttl:
                # expired
                del self._store[key]
                return None
            return val

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            if key not in self._store and len(self._store) >= self._max_size:
                # Evict oldest
                oldest = min(self._store.items(), key=lambda kv: kv[1][0])[0]
                del self._store[oldest]
            self._store[key] = (self._clock(), value)

    def __len__(self) -> int:
        return len(self._store)
