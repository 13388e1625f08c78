"""基于 Settings 的 ConfigLookup 实现。

真实应用里配置由配置管理模块持久化；这里按 Settings 中的密钥生成等价的账号：

- 配置了某厂商 API key 时，该厂商的逻辑模型走 API key 账号；
- 否则若有外部会话，且会话覆盖该模型，则走外部账号；
- 否则返回一个未认证的 API key 账号（由上游返回 401）。
"""

from typing import Optional

from completion_core.domain.accounts import AuthType, ProviderAccount
from completion_core.providers.registry import EXTERNAL_MODELS, LOGICAL_MODELS


_API_KEY_FIELDS = {
    "openai": "openai_api_key",
    "together": "together_api_key",
    "cohere": "cohere_api_key",
}

_API_LABELS = {
    "openai/gpt3.5": "OpenAI: GPT-3.5",
    "openai/gpt4": "OpenAI: GPT-4",
    "together/gpt-neoxt-20B": "Together: GPT NeoXT 20B",
    "cohere/xlarge": "Cohere: Xlarge",
}


class SettingsConfigLookup:
    def __init__(self, settings):
        self._settings = settings

    def resolve_config(self, model_id: str) -> Optional[ProviderAccount]:
        logical = LOGICAL_MODELS.get(model_id)
        if logical is None:
            return None
        api_key = getattr(self._settings, _API_KEY_FIELDS[logical.provider], None)
        if api_key:
            return ProviderAccount(
                auth=AuthType.API_KEY,
                label=_API_LABELS.get(model_id, model_id),
                models=[model_id],
                api_key=api_key,
            )
        external = self._external_account()
        if external is not None and model_id in external.models:
            return external
        return ProviderAccount(auth=AuthType.API_KEY, label=_API_LABELS.get(model_id, model_id), models=[model_id])

    def default_config(self) -> Optional[ProviderAccount]:
        if self._settings.default_provider == "local":
            return self.custom_config()
        return self._external_account() or ProviderAccount(
            auth=AuthType.EXTERNAL, label="OpenRouter", models=list(EXTERNAL_MODELS)
        )

    def custom_config(self) -> Optional[ProviderAccount]:
        return ProviderAccount(
            auth=AuthType.API_KEY,
            label="Local",
            api_key=getattr(self._settings, "local_api_key", None),
            base_url=self._settings.local_base_url,
        )

    def _external_account(self) -> Optional[ProviderAccount]:
        session = getattr(self._settings, "openrouter_session", None)
        if not session:
            return None
        return ProviderAccount(
            auth=AuthType.EXTERNAL,
            label="OpenRouter",
            models=list(EXTERNAL_MODELS),
            session=session,
        )
