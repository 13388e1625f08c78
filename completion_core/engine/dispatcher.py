"""Dispatcher：请求分发与流式输出的核心。

状态流转：

    IDLE -> RESOLVING -> (CACHE_HIT | REQUESTING) -> STREAMING -> COMPLETED | FAILED | CANCELLED

步骤：
1. 通过 ModelRegistry 解析 Provider 描述符与凭证。
2. 查询缓存；命中则直接回放，不发网络请求。
3. 用描述符构造请求体和认证头，发起 HTTP 请求；非 2xx 直接失败。
4. 后台 pump 任务把字节流交给 StreamDecoder、再交给 ResponseNormalizer，
   按 choice 下标把输出单元放进各自的有界队列，调用方随取随用。
5. 终态时写缓存（仅完整成功）并恰好记录一次 Transaction。

引擎内部不做重试；是否重试由调用方根据幂等性与成本决定。
"""

import asyncio
import contextlib
import inspect
from collections import deque
from contextlib import AsyncExitStack
from enum import Enum
from typing import Any, AsyncIterator, Deque, List, Optional, Set

import httpx

from completion_core.domain.exceptions import (
    BusinessError,
    CancellationSignal,
    NetworkError,
    NormalizationError,
    ProviderHTTPError,
    StreamDecodeError,
    UnresolvedModelError,
    ValidationError,
)
from completion_core.domain.models import CompletionRequest, OutputUnit, RequestMeta
from completion_core.domain.transaction import Transaction, TransactionSink
from completion_core.engine.cache import CacheGate, InMemoryCache, cache_key
from completion_core.engine.decoder import StreamDecoder, decode_document, is_event_stream
from completion_core.engine.normalizer import ResponseNormalizer
from completion_core.infrastructure.logging.logger import logger
from completion_core.providers.resolver import ModelRegistry, Resolution


class DispatchState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    CACHE_HIT = "cache_hit"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class _FlowControl:
    """同一次补全中所有 choice 共享的唤醒信号，以及正在等待数据的消费者集合。"""

    def __init__(self) -> None:
        self.waiting: Set[int] = set()
        self._event = asyncio.Event()

    def notify(self) -> None:
        event, self._event = self._event, asyncio.Event()
        event.set()

    async def wait(self) -> None:
        await self._event.wait()


class ChoiceStream:
    """单个 choice 的输出序列。

    以异步迭代器的形式消费；出错时在最后一个已产出单元之后抛出对应异常，
    被取消时抛出 CancellationSignal。

    缓冲区满时生产方会等待，但只要有其他 choice 的消费者正在等数据就不再等待，
    因此按顺序逐个消费 outputs 也不会卡死。结束/失败标记不占缓冲区。
    """

    def __init__(self, index: int, maxsize: int = 0, flow: Optional[_FlowControl] = None):
        self.index = index
        self.units: List[OutputUnit] = []
        self.error: Optional[BusinessError] = None
        self.done = False
        self._buffer: Deque[OutputUnit] = deque()
        self._maxsize = maxsize
        self._flow = flow or _FlowControl()
        self._cancelled = False
        self._exhausted = False

    def _full(self) -> bool:
        return self._maxsize > 0 and len(self._buffer) >= self._maxsize

    def _ready(self) -> bool:
        return self._cancelled or self.done or bool(self._buffer)

    def _others_waiting(self) -> bool:
        return bool(self._flow.waiting - {self.index})

    async def put(self, unit: OutputUnit) -> None:
        while not self.done and self._full() and not self._others_waiting():
            await self._flow.wait()
        if self.done:
            return
        self.units.append(unit)
        self._buffer.append(unit)
        self._flow.notify()

    async def finish(self) -> None:
        if self.done:
            return
        self.done = True
        self._flow.notify()

    async def fail(self, error: BusinessError) -> None:
        if self.done:
            return
        self.done = True
        self.error = error
        self._flow.notify()

    def cancel(self) -> None:
        if self.done:
            return
        self.done = True
        self._cancelled = True
        self._flow.notify()

    def _terminate(self) -> OutputUnit:
        self._exhausted = True
        if self._cancelled:
            raise CancellationSignal()
        if self.error is not None:
            raise self.error
        raise StopAsyncIteration

    def __aiter__(self) -> "ChoiceStream":
        return self

    async def __anext__(self) -> OutputUnit:
        if self._exhausted:
            raise StopAsyncIteration
        if not self._ready():
            self._flow.waiting.add(self.index)
            # 唤醒可能因其他 choice 缓冲区满而等待的生产方
            self._flow.notify()
            try:
                while not self._ready():
                    await self._flow.wait()
            finally:
                self._flow.waiting.discard(self.index)
        if self._cancelled or not self._buffer:
            return self._terminate()
        unit = self._buffer.popleft()
        self._flow.notify()
        return unit


class Completion:
    """一次进行中的补全。

    作为异步上下文管理器使用；`outputs` 恰好包含 num_outputs 个 ChoiceStream，
    多个 choice 之间相互独立，应并发消费。提前退出上下文即取消请求。
    """

    def __init__(
        self,
        dispatcher: "Dispatcher",
        request: CompletionRequest,
        quality: Optional[str] = None,
        origin: Optional[str] = None,
        stream: bool = True,
    ):
        self._dispatcher = dispatcher
        self.request = request
        self._quality = quality
        self._stream = stream
        self.state = DispatchState.IDLE
        self.resolution: Optional[Resolution] = None
        self.outputs: List[ChoiceStream] = []
        self.transaction = Transaction.init(request, origin)
        self._stack = AsyncExitStack()
        self._task: Optional[asyncio.Task] = None
        self._key: Optional[str] = None
        self._recorded = False
        self._settling = False

    async def __aenter__(self) -> "Completion":
        try:
            await self._start()
        except BaseException:
            await self._stack.aclose()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.aclose()
        return False

    async def aclose(self) -> None:
        task = self._task
        try:
            if task is not None and not task.done():
                if self._settling:
                    # 上游已经读完，只剩缓存/记录收尾
                    await task
                else:
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
                    await self._cancel(CancellationSignal())
            elif task is not None:
                task.result()
        finally:
            await self._stack.aclose()

    # ------------------------------------------------------------------
    async def _start(self) -> None:
        dispatcher = self._dispatcher
        request = self.request

        self.state = DispatchState.RESOLVING
        try:
            self.resolution = dispatcher.registry.resolve(request.model_id, self._quality)
        except UnresolvedModelError as e:
            await self._fail(e)
            raise

        res = self.resolution
        self.transaction.provider = res.provider
        self.transaction.routed_model = res.model_id_for(request)
        flow = _FlowControl()
        self.outputs = [ChoiceStream(i, dispatcher.queue_size, flow) for i in range(request.num_outputs)]

        if dispatcher.cache.enabled:
            self._key = cache_key(request, provider=res.provider, routed_model=self.transaction.routed_model)
            try:
                cached = await dispatcher.cache.lookup(self._key)
            except Exception as e:
                # 缓存不可用或条目损坏时按未命中处理
                logger.warning("cache.lookup_failed", extra={"extra": {"key": self._key[:12], "error": str(e)}})
                cached = None
            if cached is not None:
                self.state = DispatchState.CACHE_HIT
                self.transaction.cached = True
                logger.info("dispatch.cache_hit", extra={"extra": {"key": self._key[:12], "provider": res.provider}})
                self._task = asyncio.create_task(self._replay(cached))
                return

        self.state = DispatchState.REQUESTING
        response = await self._open()
        self.state = DispatchState.STREAMING
        self._task = asyncio.create_task(self._pump(response))

    async def _open(self) -> httpx.Response:
        dispatcher = self._dispatcher
        res = self.resolution
        request = self.request
        descriptor = res.descriptor

        meta = RequestMeta(
            model=self.transaction.routed_model,
            stream=self._stream,
            user_identifier=request.user_identifier,
        )
        payload = descriptor.transform_for_request(request, meta)
        headers = {"Content-Type": "application/json", **descriptor.auth_headers(res.account)}
        headers["Accept"] = "text/event-stream" if self._stream else "application/json"
        url = res.url_for(request)

        client = dispatcher.client
        if client is None:
            client = await self._stack.enter_async_context(
                httpx.AsyncClient(timeout=dispatcher.timeout, trust_env=False)
            )
        logger.info(
            "dispatch.request",
            extra={"extra": {"provider": res.provider, "model": meta.model, "url": url, "stream": self._stream}},
        )
        try:
            response = await self._stack.enter_async_context(
                client.stream("POST", url, json=payload, headers=headers)
            )
            if not response.is_success:
                body = (await response.aread()).decode("utf-8", errors="replace")
                error = ProviderHTTPError(response.status_code, body, provider=res.provider)
                await self._fail(error)
                raise error
        except httpx.TimeoutException as e:
            signal = CancellationSignal(f"{res.provider} request timed out")
            await self._cancel(signal)
            raise signal from e
        except httpx.RequestError as e:
            error = NetworkError(code="NETWORK_ERROR", message=str(e), provider=res.provider)
            await self._fail(error)
            raise error from e
        return response

    async def _events(self, response: httpx.Response) -> AsyncIterator[Any]:
        descriptor = self.resolution.descriptor
        if is_event_stream(response.headers.get("content-type"), self._stream):
            async for event in StreamDecoder.for_descriptor(descriptor).decode(response.aiter_bytes()):
                yield event
        else:
            yield decode_document(await response.aread())

    async def _pump(self, response: httpx.Response) -> None:
        try:
            async for event in self._events(response):
                await self._dispatch_event(event)
        except httpx.TimeoutException:
            await self._cancel(CancellationSignal(f"{self.resolution.provider} stream timed out"))
            return
        except httpx.RequestError as e:
            await self._fail(NetworkError(code="NETWORK_ERROR", message=str(e), provider=self.resolution.provider))
            return
        except (StreamDecodeError, NormalizationError) as e:
            await self._fail(e)
            return
        else:
            await self._settle()
        finally:
            if not self._settling:
                # 取消或意外异常时，不让消费者一直等待
                self._close_streams()

    async def _dispatch_event(self, event: Any) -> None:
        descriptor = self.resolution.descriptor
        for result in self._dispatcher.normalizer.normalize(event, descriptor):
            if not 0 <= result.index < len(self.outputs):
                logger.warning("dispatch.unexpected_choice", extra={"extra": {"index": result.index}})
                continue
            stream = self.outputs[result.index]
            if stream.done:
                continue
            if result.error is not None:
                logger.warning(
                    "dispatch.choice_failed",
                    extra={"extra": {"index": result.index, "error": result.error.message}},
                )
                await stream.fail(result.error)
            elif result.unit is not None:
                await stream.put(result.unit)

    async def _settle(self) -> None:
        """上游正常结束：全部 choice 成功才写缓存；随后记录并关闭各序列。"""

        self._settling = True
        try:
            errors = [s.error for s in self.outputs if s.error is not None]
            if errors:
                await self._record(DispatchState.FAILED, error=errors[0])
                return
            outputs = [list(s.units) for s in self.outputs]
            if self._key is not None:
                try:
                    await self._dispatcher.cache.record(self._key, outputs)
                except Exception as e:
                    logger.warning("cache.record_failed", extra={"extra": {"error": str(e)}})
            await self._record(DispatchState.COMPLETED, outputs=outputs)
        finally:
            for stream in self.outputs:
                await stream.finish()

    async def _replay(self, cached: List[List[OutputUnit]]) -> None:
        """按顺序回放缓存；全部单元入队后才记录完成，中途被放弃则由 aclose 记为取消。"""

        outputs = [list(cached[i]) if i < len(cached) else [] for i in range(len(self.outputs))]

        async def replay_choice(stream: ChoiceStream, units: List[OutputUnit]) -> None:
            for unit in units:
                await stream.put(unit)

        try:
            await asyncio.gather(*(replay_choice(s, u) for s, u in zip(self.outputs, outputs)))
            self._settling = True
            await self._record(DispatchState.COMPLETED, outputs=outputs)
            for stream in self.outputs:
                await stream.finish()
        finally:
            self._close_streams()

    def _close_streams(self) -> None:
        for stream in self.outputs:
            stream.cancel()

    async def _fail(self, error: BusinessError) -> None:
        await self._record(DispatchState.FAILED, error=error)
        for stream in self.outputs:
            await stream.fail(error)

    async def _cancel(self, signal: CancellationSignal) -> None:
        for stream in self.outputs:
            stream.cancel()
        await self._record(DispatchState.CANCELLED, error=signal)

    async def _record(
        self,
        state: DispatchState,
        outputs: Optional[List[List[OutputUnit]]] = None,
        error: Optional[BusinessError] = None,
    ) -> None:
        """终态记录；每个请求只会写一次 Transaction。"""

        if self._recorded:
            return
        self._recorded = True
        self.state = state
        txn = self.transaction
        txn.status = state.value
        txn.outputs = outputs
        if state == DispatchState.FAILED and error is not None:
            txn.error = error.message

        log_extra = {
            "transaction": txn.id,
            "provider": txn.provider,
            "model": txn.routed_model,
            "cached": txn.cached,
        }
        if state == DispatchState.FAILED:
            logger.warning("dispatch.failed", extra={"extra": {**log_extra, "error": txn.error}})
        elif state == DispatchState.CANCELLED:
            logger.info("dispatch.cancelled", extra={"extra": log_extra})
        else:
            logger.info("dispatch.completed", extra={"extra": log_extra})

        recorder = self._dispatcher.recorder
        if recorder is not None:
            await _maybe_await(recorder.record_transaction(txn))


class Dispatcher:
    """对外的补全引擎入口。"""

    def __init__(
        self,
        registry: ModelRegistry,
        cache: Optional[CacheGate] = None,
        recorder: Optional[TransactionSink] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
        queue_size: int = 64,
        normalizer: Optional[ResponseNormalizer] = None,
    ):
        self.registry = registry
        self.cache = cache or CacheGate()
        self.recorder = recorder
        self.client = client
        self.timeout = timeout
        self.queue_size = queue_size
        self.normalizer = normalizer or ResponseNormalizer()

    @classmethod
    def from_settings(
        cls,
        settings,
        lookup=None,
        recorder: Optional[TransactionSink] = None,
        cache: Optional[CacheGate] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "Dispatcher":
        if cache is None and settings.cache_enabled:
            cache = CacheGate.from_cache(
                InMemoryCache(ttl_sec=settings.cache_ttl_seconds, max_size=settings.cache_max_entries)
            )
        return cls(
            ModelRegistry.from_settings(settings, lookup),
            cache=cache,
            recorder=recorder,
            client=client,
            timeout=settings.http_timeout,
            queue_size=settings.stream_queue_size,
        )

    def complete(
        self,
        request: CompletionRequest,
        quality: Optional[str] = None,
        origin: Optional[str] = None,
        stream: bool = True,
    ) -> Completion:
        return Completion(self, request, quality=quality, origin=origin, stream=stream)

    async def stream(
        self,
        request: CompletionRequest,
        quality: Optional[str] = None,
        origin: Optional[str] = None,
    ) -> AsyncIterator[OutputUnit]:
        """单输出请求的便捷接口：逐个产出输出单元。"""

        if request.num_outputs != 1:
            raise ValidationError(
                code="MULTIPLE_OUTPUTS",
                message="stream() handles a single output; use complete() for num_outputs > 1",
            )
        async with self.complete(request, quality=quality, origin=origin) as completion:
            async for unit in completion.outputs[0]:
                yield unit

    async def collect(
        self,
        request: CompletionRequest,
        quality: Optional[str] = None,
        origin: Optional[str] = None,
        stream: bool = True,
    ) -> List[List[OutputUnit]]:
        """读完所有 choice，返回每个 choice 的输出单元列表。"""

        async def drain(choice: ChoiceStream) -> List[OutputUnit]:
            return [unit async for unit in choice]

        async with self.complete(request, quality=quality, origin=origin, stream=stream) as completion:
            return list(await asyncio.gather(*(drain(c) for c in completion.outputs)))
