import asyncio
import json

import httpx
import pytest

from completion_core.domain.accounts import AuthType, ProviderAccount
from completion_core.domain.exceptions import (
    CancellationSignal,
    NormalizationError,
    ProviderHTTPError,
    StreamDecodeError,
    ValidationError,
)
from completion_core.domain.models import ChatMessage, CompletionRequest, TextDelta, unit_text
from completion_core.engine.cache import CacheGate
from completion_core.engine.dispatcher import Dispatcher, DispatchState
from completion_core.providers.openai_compat import LocalDescriptor, OpenAIDescriptor
from completion_core.providers.resolver import ModelRegistry


STUB_URL = "http://stub.local/v1"


class LocalLookup:
    def resolve_config(self, model_id):
        return None

    def default_config(self):
        return self.custom_config()

    def custom_config(self):
        return ProviderAccount(auth=AuthType.API_KEY, label="Local", api_key="local-key")


class RecorderStub:
    def __init__(self):
        self.transactions = []

    def record_transaction(self, transaction):
        self.transactions.append(transaction)


def sse(*events, done=True):
    lines = [f"data: {json.dumps(e)}\n\n" for e in events]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def delta(content, index=0):
    return {"choices": [{"index": index, "delta": {"content": content}}]}


HI_THERE = sse(delta("Hi"), delta(" there"))


def make_dispatcher(handler, cache=None, recorder=None, queue_size=64):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    registry = ModelRegistry(LocalLookup(), {"local": LocalDescriptor(base_url=STUB_URL)})
    return Dispatcher(registry, cache=cache, recorder=recorder, client=client, queue_size=queue_size)


def event_stream(body, status=200):
    return httpx.Response(status, headers={"content-type": "text/event-stream"}, content=body)


def hello(**kwargs):
    return CompletionRequest.from_prompt("Hello", model_id="low-tier", **kwargs)


def test_hi_there_scenario():
    seen = []

    def handler(request):
        seen.append(request)
        return event_stream(HI_THERE)

    recorder = RecorderStub()
    dispatcher = make_dispatcher(handler, recorder=recorder)

    async def run():
        return [unit async for unit in dispatcher.stream(hello(user_identifier="u1"))]

    units = asyncio.run(run())
    assert units == [TextDelta(text="Hi"), TextDelta(text=" there")]
    assert "".join(unit_text(u) for u in units) == "Hi there"

    request = seen[0]
    assert str(request.url) == f"{STUB_URL}/completions"
    assert request.headers["Authorization"] == "Bearer local-key"
    body = json.loads(request.content)
    assert body == {"model": "low-tier", "prompt": "Hello", "n": 1, "user": "u1", "stream": True}

    txn = recorder.transactions[0]
    assert len(recorder.transactions) == 1
    assert txn.status == "completed"
    assert txn.provider == "local"
    assert txn.routed_model == "low-tier"
    assert txn.outputs == [units]
    assert txn.error is None


def test_cache_replay_without_transport_call():
    calls = []

    def handler(request):
        calls.append(request)
        return event_stream(HI_THERE)

    store = {}
    recorder = RecorderStub()
    dispatcher = make_dispatcher(
        handler, cache=CacheGate(cache_get=store.get, cache_set=store.__setitem__), recorder=recorder
    )

    async def run():
        first = await dispatcher.collect(hello())
        # user_identifier 不影响缓存命中
        second = await dispatcher.collect(hello(user_identifier="someone"))
        return first, second

    first, second = asyncio.run(run())
    assert len(calls) == 1
    assert first == second == [[TextDelta(text="Hi"), TextDelta(text=" there")]]
    assert [t.cached for t in recorder.transactions] == [False, True]
    assert all(t.status == "completed" for t in recorder.transactions)


def test_http_429_surfaces_provider_error():
    def handler(request):
        return httpx.Response(429, json={"error": "rate limited"})

    store = {}
    recorder = RecorderStub()
    dispatcher = make_dispatcher(
        handler, cache=CacheGate(cache_get=store.get, cache_set=store.__setitem__), recorder=recorder
    )
    received = []

    async def run():
        async for unit in dispatcher.stream(hello()):
            received.append(unit)

    with pytest.raises(ProviderHTTPError) as exc:
        asyncio.run(run())
    assert exc.value.status == 429
    assert "rate limited" in exc.value.body
    assert received == []
    assert store == {}
    txn = recorder.transactions[0]
    assert txn.status == "failed"
    assert txn.outputs is None
    assert txn.error


def test_multiple_outputs_are_independent_sequences():
    body = sse(delta("a", 0), delta("x", 1), delta("b", 0), delta("y", 1))
    dispatcher = make_dispatcher(lambda request: event_stream(body))

    outputs = asyncio.run(dispatcher.collect(hello(num_outputs=2)))
    assert len(outputs) == 2
    assert ["".join(unit_text(u) for u in units) for units in outputs] == ["ab", "xy"]


def test_stream_requires_single_output():
    dispatcher = make_dispatcher(lambda request: event_stream(HI_THERE))

    async def run():
        async for _ in dispatcher.stream(hello(num_outputs=2)):
            pass

    with pytest.raises(ValidationError):
        asyncio.run(run())


def test_chunk_boundaries_do_not_change_output():
    async def chunks():
        for i in range(0, len(HI_THERE), 7):
            yield HI_THERE[i:i + 7]

    dispatcher = make_dispatcher(lambda request: event_stream(chunks()))
    outputs = asyncio.run(dispatcher.collect(hello()))
    assert outputs == [[TextDelta(text="Hi"), TextDelta(text=" there")]]


def test_per_choice_normalization_error_only_fails_that_choice():
    body = sse(
        {"choices": [{"index": 0, "delta": {"content": "ok"}}, {"index": 1, "delta": {"content": "fine"}}]},
        {"choices": [{"index": 0, "delta": {"content": "!"}}, {"index": 1, "weird": True}]},
    )
    store = {}
    recorder = RecorderStub()
    dispatcher = make_dispatcher(
        lambda request: event_stream(body),
        cache=CacheGate(cache_get=store.get, cache_set=store.__setitem__),
        recorder=recorder,
    )

    async def run():
        async with dispatcher.complete(hello(num_outputs=2)) as completion:
            first = [u async for u in completion.outputs[0]]
            second = []
            with pytest.raises(NormalizationError):
                async for unit in completion.outputs[1]:
                    second.append(unit)
            return first, second

    first, second = asyncio.run(run())
    assert first == [TextDelta(text="ok"), TextDelta(text="!")]
    assert second == [TextDelta(text="fine")]
    assert store == {}
    assert recorder.transactions[0].status == "failed"


def test_malformed_stream_line_stops_all_choices():
    body = sse(delta("Hi"), done=False) + b"data: {broken\n\n" + sse(delta("never"))
    recorder = RecorderStub()
    dispatcher = make_dispatcher(lambda request: event_stream(body), recorder=recorder)

    async def run():
        received = []
        async with dispatcher.complete(hello()) as completion:
            with pytest.raises(StreamDecodeError):
                async for unit in completion.outputs[0]:
                    received.append(unit)
        return received

    assert asyncio.run(run()) == [TextDelta(text="Hi")]
    assert recorder.transactions[0].status == "failed"


def test_cancellation_records_cancelled_and_skips_cache():
    async def slow_body():
        yield sse(delta("Hi"), done=False)
        await asyncio.sleep(30)
        yield sse(delta(" there"))

    store = {}
    recorder = RecorderStub()
    dispatcher = make_dispatcher(
        lambda request: event_stream(slow_body()),
        cache=CacheGate(cache_get=store.get, cache_set=store.__setitem__),
        recorder=recorder,
    )

    async def run():
        async with dispatcher.complete(hello()) as completion:
            unit = await completion.outputs[0].__anext__()
        return unit, completion

    unit, completion = asyncio.run(run())
    assert unit == TextDelta(text="Hi")
    assert completion.state == DispatchState.CANCELLED
    assert store == {}
    txn = recorder.transactions[0]
    assert len(recorder.transactions) == 1
    assert txn.status == "cancelled"
    assert txn.error is None


def test_consumer_sees_cancellation_signal_after_close():
    async def slow_body():
        yield sse(delta("Hi"), done=False)
        await asyncio.sleep(30)

    dispatcher = make_dispatcher(lambda request: event_stream(slow_body()))

    async def run():
        completion = dispatcher.complete(hello())
        await completion.__aenter__()
        choice = completion.outputs[0]
        await completion.aclose()
        with pytest.raises(CancellationSignal):
            async for _ in choice:
                pass

    asyncio.run(run())


def test_timeout_is_cancellation():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    recorder = RecorderStub()
    dispatcher = make_dispatcher(handler, recorder=recorder)

    with pytest.raises(CancellationSignal):
        asyncio.run(dispatcher.collect(hello()))
    assert recorder.transactions[0].status == "cancelled"


def test_non_streaming_message_matches_streamed_text():
    def handler(request):
        body = json.loads(request.content)
        if body["stream"]:
            return event_stream(HI_THERE)
        return httpx.Response(
            200, json={"choices": [{"index": 0, "message": {"role": "assistant", "content": "Hi there"}}]}
        )

    dispatcher = make_dispatcher(handler)

    async def run():
        streamed = await dispatcher.collect(hello())
        whole = await dispatcher.collect(hello(), stream=False)
        return streamed, whole

    streamed, whole = asyncio.run(run())
    assert whole == [[ChatMessage(role="assistant", content="Hi there")]]
    assert "".join(unit_text(u) for u in streamed[0]) == unit_text(whole[0][0])


def test_async_recorder_is_awaited():
    class AsyncRecorder:
        def __init__(self):
            self.statuses = []

        async def record_transaction(self, transaction):
            await asyncio.sleep(0)
            self.statuses.append(transaction.status)

    recorder = AsyncRecorder()
    dispatcher = make_dispatcher(lambda request: event_stream(HI_THERE), recorder=recorder)
    asyncio.run(dispatcher.collect(hello(), origin="test"))
    assert recorder.statuses == ["completed"]


def test_bounded_queue_applies_backpressure():
    body = sse(*[delta(str(i)) for i in range(20)])
    dispatcher = make_dispatcher(lambda request: event_stream(body), queue_size=2)

    async def run():
        async with dispatcher.complete(hello()) as completion:
            await asyncio.sleep(0.01)
            # 消费者未读取时，生产方最多缓冲 queue_size 个单元
            assert len(completion.outputs[0]._buffer) <= 2
            return [u async for u in completion.outputs[0]]

    units = asyncio.run(run())
    assert "".join(unit_text(u) for u in units) == "".join(str(i) for i in range(20))


def _dict_cache():
    store = {}
    return store, CacheGate(cache_get=store.get, cache_set=store.__setitem__)


def test_failing_cache_lookup_falls_back_to_provider():
    def broken_get(key):
        raise RuntimeError("cache backend down")

    calls = []

    def handler(request):
        calls.append(request)
        return event_stream(HI_THERE)

    recorder = RecorderStub()
    dispatcher = make_dispatcher(handler, cache=CacheGate(cache_get=broken_get), recorder=recorder)

    outputs = asyncio.run(dispatcher.collect(hello()))
    assert outputs == [[TextDelta(text="Hi"), TextDelta(text=" there")]]
    assert len(calls) == 1
    assert len(recorder.transactions) == 1
    assert recorder.transactions[0].status == "completed"
    assert not recorder.transactions[0].cached


def test_corrupt_cache_entry_is_treated_as_miss():
    calls = []

    def handler(request):
        calls.append(request)
        return event_stream(HI_THERE)

    recorder = RecorderStub()
    dispatcher = make_dispatcher(
        handler,
        cache=CacheGate(cache_get=lambda key: [[{"type": "audio"}]]),
        recorder=recorder,
    )

    outputs = asyncio.run(dispatcher.collect(hello()))
    assert "".join(unit_text(u) for u in outputs[0]) == "Hi there"
    assert len(calls) == 1
    assert [t.status for t in recorder.transactions] == ["completed"]


def test_abandoned_cache_replay_is_recorded_cancelled():
    body = sse(*[delta(str(i)) for i in range(10)])
    store, gate = _dict_cache()
    recorder = RecorderStub()
    dispatcher = make_dispatcher(lambda request: event_stream(body), cache=gate, recorder=recorder, queue_size=1)

    async def run():
        await dispatcher.collect(hello())
        async with dispatcher.complete(hello()) as completion:
            unit = await completion.outputs[0].__anext__()
        return unit, completion

    unit, completion = asyncio.run(run())
    assert unit == TextDelta(text="0")
    assert completion.state == DispatchState.CANCELLED
    assert len(recorder.transactions) == 2
    replayed = recorder.transactions[1]
    assert replayed.cached
    assert replayed.status == "cancelled"
    assert replayed.outputs is None


def test_full_cache_replay_is_recorded_completed():
    body = sse(*[delta(str(i)) for i in range(10)])
    store, gate = _dict_cache()
    recorder = RecorderStub()
    dispatcher = make_dispatcher(lambda request: event_stream(body), cache=gate, recorder=recorder, queue_size=1)

    async def run():
        first = await dispatcher.collect(hello())
        second = await dispatcher.collect(hello())
        return first, second

    first, second = asyncio.run(run())
    assert first == second
    assert len(second[0]) == 10
    assert [(t.cached, t.status) for t in recorder.transactions] == [(False, "completed"), (True, "completed")]


class OpenAILookup:
    def resolve_config(self, model_id):
        return ProviderAccount(auth=AuthType.API_KEY, label="OpenAI", models=[model_id], api_key="sk-test-0123456789")

    def default_config(self):
        return None

    def custom_config(self):
        return None


def test_quality_hint_is_part_of_cache_key():
    sent = []

    def handler(request):
        model = json.loads(request.content)["model"]
        sent.append(model)
        return event_stream(sse(delta(model)))

    store, gate = _dict_cache()
    registry = ModelRegistry(OpenAILookup(), {"openai": OpenAIDescriptor(base_url=STUB_URL)})
    dispatcher = Dispatcher(
        registry, cache=gate, client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )
    req = CompletionRequest.from_prompt("Hello", model_id="openai/gpt4")

    async def run():
        high = await dispatcher.collect(req, quality="high")
        low = await dispatcher.collect(req, quality="low")
        low_again = await dispatcher.collect(req, quality="low")
        return high, low, low_again

    high, low, low_again = asyncio.run(run())
    assert high == [[TextDelta(text="text-davinci-003")]]
    assert low == low_again == [[TextDelta(text="text-curie-001")]]
    assert sent == ["text-davinci-003", "text-curie-001"]
    assert len(store) == 2


def test_outputs_can_be_consumed_one_after_another():
    body = sse(
        delta("a", 0),
        *[delta(str(i), 1) for i in range(5)],
        delta("b", 0),
    )
    dispatcher = make_dispatcher(lambda request: event_stream(body), queue_size=2)

    async def run():
        texts = []
        async with dispatcher.complete(hello(num_outputs=2)) as completion:
            for choice in completion.outputs:
                texts.append("".join([unit_text(u) async for u in choice]))
        return texts

    async def main():
        return await asyncio.wait_for(run(), timeout=5)

    texts = asyncio.run(main())
    assert texts == ["ab", "01234"]
