"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 描述符协议 (base)。
- 维护 Provider 与逻辑模型配置表 (registry)。
- 提供各厂商的具体描述符 (openai_compat、cohere)。
- 把逻辑请求解析到描述符与凭证 (resolver)。
"""

from typing import Optional

from completion_core.config.settings import settings
from completion_core.providers.base import ProviderDescriptor


def create_descriptor(name: Optional[str] = None) -> ProviderDescriptor:
    """根据名称创建描述符，默认取配置中的 provider。"""

    from completion_core.providers.resolver import build_descriptors

    provider_name = (name or settings.default_provider).lower()
    descriptors = build_descriptors(settings)
    if provider_name not in descriptors:
        from completion_core.domain.exceptions import UnresolvedModelError

        raise UnresolvedModelError(provider_name)
    return descriptors[provider_name]

