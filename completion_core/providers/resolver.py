"""ModelRegistry：把逻辑请求映射到 Provider 描述符与凭证。

解析规则：
1. 没有 model_id：使用默认账号（外部会话或本地模型）。
2. 已知逻辑模型：使用负责该模型的账号，查不到时回退默认账号；
   外部账号走 OpenRouter，API key 账号走模型所属厂商。
3. 未知模型：视为自定义模型，交给本地（OpenAI 兼容）账号处理。

只有在连默认账号都没有时才抛出 UnresolvedModelError。
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from completion_core.domain.accounts import AuthType, ConfigLookup, ProviderAccount
from completion_core.domain.exceptions import UnresolvedModelError
from completion_core.domain.models import CompletionRequest
from completion_core.infrastructure.logging.logger import logger
from completion_core.providers.base import ProviderDescriptor
from completion_core.providers.cohere import CohereDescriptor
from completion_core.providers.openai_compat import (
    LocalDescriptor,
    OpenAIDescriptor,
    OpenRouterDescriptor,
    TogetherDescriptor,
)
from completion_core.providers.registry import LOGICAL_MODELS, is_known_model


@dataclass(frozen=True)
class Resolution:
    """一次解析的结果：描述符 + 凭证 + 质量档位。"""

    descriptor: ProviderDescriptor
    account: ProviderAccount
    quality: str
    logical_model: Optional[str] = None

    @property
    def provider(self) -> str:
        return self.descriptor.model_provider

    @property
    def base_url(self) -> str:
        return (self.account.base_url or self.descriptor.base_url).rstrip("/")

    def model_id_for(self, request: CompletionRequest) -> str:
        return self.descriptor.get_model_id(request, self.quality)

    def url_for(self, request: CompletionRequest) -> str:
        return f"{self.base_url}{self.descriptor.get_path(request)}"


def build_descriptors(settings) -> Dict[str, ProviderDescriptor]:
    """按 Settings 构造所有内置描述符（进程内只构造一次）。"""

    return {
        "openai": OpenAIDescriptor(base_url=settings.openai_base_url),
        "openrouter": OpenRouterDescriptor(
            base_url=settings.openrouter_base_url,
            referer=settings.app_referer,
            title=settings.app_title,
        ),
        "together": TogetherDescriptor(base_url=settings.together_base_url),
        "cohere": CohereDescriptor(base_url=settings.cohere_base_url),
        "local": LocalDescriptor(base_url=settings.local_base_url, default_model=settings.local_model),
    }


class ModelRegistry:
    def __init__(
        self,
        lookup: ConfigLookup,
        descriptors: Mapping[str, ProviderDescriptor],
        default_quality: str = "high",
    ):
        self._lookup = lookup
        self._descriptors = dict(descriptors)
        self._default_quality = default_quality

    @classmethod
    def from_settings(cls, settings, lookup: Optional[ConfigLookup] = None) -> "ModelRegistry":
        if lookup is None:
            from completion_core.config.lookup import SettingsConfigLookup

            lookup = SettingsConfigLookup(settings)
        return cls(lookup, build_descriptors(settings), default_quality=settings.default_quality)

    def descriptor(self, name: str) -> ProviderDescriptor:
        try:
            return self._descriptors[name]
        except KeyError:
            raise UnresolvedModelError(name)

    def resolve(self, model_id: Optional[str] = None, quality: Optional[str] = None) -> Resolution:
        if not model_id:
            account = self._lookup.default_config()
        elif is_known_model(model_id):
            account = self._lookup.resolve_config(model_id) or self._lookup.default_config()
        else:
            # 自定义模型：交给本地账号处理
            account = (
                self._lookup.resolve_config(model_id)
                or self._lookup.custom_config()
                or self._lookup.default_config()
            )
        if account is None:
            raise UnresolvedModelError(model_id)

        descriptor = self.descriptor(self._provider_for(account, model_id))
        logical = model_id if is_known_model(model_id) else None
        if quality is None:
            quality = LOGICAL_MODELS[logical].quality if logical else self._default_quality

        if not account.is_credentialed:
            logger.warning(
                "registry.uncredentialed",
                extra={"extra": {"provider": descriptor.model_provider, "account": account.label}},
            )
        logger.info(
            "registry.resolved",
            extra={"extra": {"model": model_id, "provider": descriptor.model_provider, "quality": quality}},
        )
        return Resolution(descriptor=descriptor, account=account, quality=quality, logical_model=logical)

    @staticmethod
    def _provider_for(account: ProviderAccount, model_id: Optional[str]) -> str:
        if account.auth == AuthType.EXTERNAL:
            return "openrouter"
        model = model_id if model_id in account.models else account.current_model
        if is_known_model(model):
            return LOGICAL_MODELS[model].provider
        return "local"
