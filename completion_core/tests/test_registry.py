import pytest

from completion_core.config.lookup import SettingsConfigLookup
from completion_core.domain.accounts import AuthType, ProviderAccount
from completion_core.domain.exceptions import UnresolvedModelError
from completion_core.domain.models import CompletionRequest
from completion_core.providers.resolver import ModelRegistry


class SettingsStub:
    default_provider = "openrouter"
    default_quality = "high"
    openai_api_key = None
    together_api_key = None
    cohere_api_key = None
    openrouter_session = None
    openai_base_url = "https://api.openai.com/v1"
    openrouter_base_url = "https://openrouter.ai/api/v1"
    app_referer = "https://example.com"
    app_title = "test"
    together_base_url = "https://api.together.xyz"
    cohere_base_url = "https://api.cohere.ai/v1"
    local_base_url = "http://127.0.0.1:9000"
    local_api_key = None
    local_model = "local"


class EmptyLookup:
    def resolve_config(self, model_id):
        return None

    def default_config(self):
        return None

    def custom_config(self):
        return None


def _registry(**overrides):
    settings = SettingsStub()
    for k, v in overrides.items():
        setattr(settings, k, v)
    return ModelRegistry.from_settings(settings)


def test_resolve_is_idempotent():
    registry = _registry(openai_api_key="sk-test-0123456789")
    first = registry.resolve("openai/gpt4", "low")
    second = registry.resolve("openai/gpt4", "low")
    assert first.descriptor is second.descriptor
    assert first.provider == second.provider == "openai"
    assert first.quality == second.quality == "low"


def test_api_key_account_routes_to_vendor():
    registry = _registry(cohere_api_key="co-test-0123456789")
    res = registry.resolve("cohere/xlarge")
    assert res.provider == "cohere"
    assert res.account.auth == AuthType.API_KEY
    assert res.url_for(CompletionRequest.from_prompt("x")) == "https://api.cohere.ai/v1/generate"
    assert res.model_id_for(CompletionRequest.from_prompt("x")) == "xlarge"


def test_external_session_routes_to_openrouter():
    registry = _registry(openrouter_session="session-token")
    res = registry.resolve("openai/gpt3.5")
    assert res.provider == "openrouter"
    assert res.account.session == "session-token"
    # 逻辑模型自带 low 档位
    assert res.quality == "low"
    assert res.model_id_for(CompletionRequest.from_prompt("x")) == "openai/gpt-3.5-turbo"


def test_quality_hint_overrides_model_tier():
    registry = _registry(openai_api_key="sk-test-0123456789")
    res = registry.resolve("openai/gpt3.5", "high")
    assert res.model_id_for(CompletionRequest.from_prompt("x")) == "text-davinci-003"


def test_no_model_uses_default_account():
    res = _registry(openrouter_session="s").resolve()
    assert res.provider == "openrouter"
    assert res.quality == "high"

    res = _registry(default_provider="local").resolve()
    assert res.provider == "local"
    assert res.base_url == "http://127.0.0.1:9000"


def test_unknown_model_routes_to_local():
    registry = _registry()
    res = registry.resolve("low-tier")
    assert res.provider == "local"
    assert res.logical_model is None
    req = CompletionRequest.from_prompt("Hello", model_id="low-tier")
    assert res.model_id_for(req) == "low-tier"
    assert res.url_for(req) == "http://127.0.0.1:9000/completions"


def test_uncredentialed_known_model_still_resolves():
    res = _registry().resolve("together/gpt-neoxt-20B")
    assert res.provider == "together"
    assert not res.account.is_credentialed


def test_unresolved_model_error():
    registry = ModelRegistry(EmptyLookup(), {})
    with pytest.raises(UnresolvedModelError) as exc:
        registry.resolve("openai/gpt4")
    assert exc.value.code == "UNRESOLVED_MODEL"
    with pytest.raises(UnresolvedModelError):
        registry.resolve()


def test_lookup_prefers_api_key_over_session():
    settings = SettingsStub()
    settings.openai_api_key = "sk-test-0123456789"
    settings.openrouter_session = "s"
    account = SettingsConfigLookup(settings).resolve_config("openai/gpt4")
    assert account.auth == AuthType.API_KEY
    assert account.current_model == "openai/gpt4"
    assert SettingsConfigLookup(settings).resolve_config("not-a-model") is None


def test_account_credential_rules():
    assert not ProviderAccount(auth=AuthType.EXTERNAL, label="x").is_credentialed
    assert ProviderAccount(auth=AuthType.EXTERNAL, label="x", session="s").is_credentialed
    assert not ProviderAccount(auth=AuthType.API_KEY, label="x", models=["m"]).is_credentialed
    assert ProviderAccount(auth=AuthType.API_KEY, label="local").is_credentialed
    assert ProviderAccount(auth=AuthType.EXTERNAL, label="x", models=["a", "b"]).current_model is None
