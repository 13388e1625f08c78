import asyncio

from completion_core.domain.models import ChatMessage, CompletionRequest, MediaReference, TextDelta
from completion_core.engine.cache import CacheGate, InMemoryCache, cache_key


def test_cache_key_ignores_user_identifier():
    a = CompletionRequest.from_prompt("Hello", model_id="low-tier", user_identifier="alice")
    b = CompletionRequest.from_prompt("Hello", model_id="low-tier", user_identifier="bob")
    assert cache_key(a) == cache_key(b)


def test_cache_key_depends_on_request_fields():
    base = CompletionRequest.from_prompt("Hello", model_id="low-tier")
    assert cache_key(base) != cache_key(CompletionRequest.from_prompt("Hello!", model_id="low-tier"))
    assert cache_key(base) != cache_key(CompletionRequest.from_prompt("Hello", model_id="low-tier", num_outputs=2))
    assert cache_key(base) != cache_key(CompletionRequest.from_prompt("Hello", model_id="low-tier", temperature=0.5))
    assert cache_key(base) != cache_key(CompletionRequest.from_messages([{"role": "user", "content": "Hello"}], model_id="low-tier"))


def test_cache_key_depends_on_routed_model():
    req = CompletionRequest.from_prompt("Hello", model_id="openai/gpt4")
    high = cache_key(req, provider="openai", routed_model="text-davinci-003")
    low = cache_key(req, provider="openai", routed_model="text-curie-001")
    assert high != low
    assert high == cache_key(req, provider="openai", routed_model="text-davinci-003")


def test_cache_gate_disabled_without_hooks():
    gate = CacheGate()
    assert not gate.enabled
    assert asyncio.run(gate.lookup("k")) is None
    asyncio.run(gate.record("k", [[TextDelta(text="x")]]))


def test_cache_gate_with_sync_hooks():
    store = {}
    gate = CacheGate(cache_get=store.get, cache_set=store.__setitem__)
    outputs = [
        [TextDelta(text="Hi"), TextDelta(text=" there")],
        [ChatMessage(role="assistant", content="ok"), MediaReference(uri="https://x/y.png", mime_type="image/png")],
    ]
    asyncio.run(gate.record("k", outputs))
    # 存进去的是可 JSON 化的结构
    assert store["k"][0][0] == {"type": "text", "text": "Hi"}
    assert asyncio.run(gate.lookup("k")) == outputs
    assert asyncio.run(gate.lookup("missing")) is None


def test_in_memory_cache_ttl():
    now = [100.0]

    async def run():
        cache = InMemoryCache(ttl_sec=10, max_size=4, clock=lambda: now[0])
        await cache.set("a", 1)
        assert await cache.get("a") == 1
        now[0] += 11
        assert await cache.get("a") is None
        assert len(cache) == 0

    asyncio.run(run())


def test_in_memory_cache_evicts_oldest():
    now = [0.0]

    async def run():
        cache = InMemoryCache(ttl_sec=100, max_size=2, clock=lambda: now[0])
        for key in ("a", "b", "c"):
            now[0] += 1
            await cache.set(key, key.upper())
        assert await cache.get("a") is None
        assert await cache.get("b") == "B"
        assert await cache.get("c") == "C"

    asyncio.run(run())
