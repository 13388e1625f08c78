"""Provider 与模型配置。

本模块将“逻辑模型名”与“具体厂商模型名”解耦：

- 逻辑名（logical model）：调用方使用的统一名称，例如 "openai/gpt4"。
- provider model：厂商实际提供的模型 ID，例如 "gpt-4"。

质量档位（low / high）在这里静态配置：low 选更便宜、更快的模型，其余一律选顶级模型。
上层只关心逻辑名，具体用哪个底层模型由这里集中配置，便于后续升级或切换。"""

from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass(frozen=True)
class ModelTier:
    """同一用途下按质量档位区分的模型。"""

    low: str
    high: str

    def select(self, quality: Optional[str]) -> str:
        return self.low if quality == "low" else self.high


@dataclass(frozen=True)
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    completion: Optional[ModelTier]
    chat: Optional[ModelTier] = None


@dataclass(frozen=True)
class LogicalModel:
    """单个逻辑模型：由哪个 Provider 处理，默认质量档位是什么。"""

    name: str
    provider: str
    quality: str


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    completion=ModelTier(low="text-curie-001", high="text-davinci-003"),
    chat=ModelTier(low="gpt-3.5-turbo", high="gpt-4"),
)

OPENROUTER_CONFIG = ProviderConfig(
    name="openrouter",
    base_url="https://openrouter.ai/api/v1",
    completion=None,
    chat=ModelTier(low="openai/gpt-3.5-turbo", high="openai/gpt-4"),
)

TOGETHER_CONFIG = ProviderConfig(
    name="together",
    base_url="https://api.together.xyz",
    completion=ModelTier(
        low="togethercomputer/GPT-NeoXT-Chat-Base-20B",
        high="togethercomputer/GPT-NeoXT-Chat-Base-20B",
    ),
)

COHERE_CONFIG = ProviderConfig(
    name="cohere",
    base_url="https://api.cohere.ai/v1",
    completion=ModelTier(low="medium", high="xlarge"),
)


LOGICAL_MODELS: Mapping[str, LogicalModel] = {
    "openai/gpt3.5": LogicalModel(name="openai/gpt3.5", provider="openai", quality="low"),
    "openai/gpt4": LogicalModel(name="openai/gpt4", provider="openai", quality="high"),
    "together/gpt-neoxt-20B": LogicalModel(name="together/gpt-neoxt-20B", provider="together", quality="high"),
    "cohere/xlarge": LogicalModel(name="cohere/xlarge", provider="cohere", quality="high"),
}

# 外部会话（OpenRouter）可以处理的逻辑模型
EXTERNAL_MODELS = ("openai/gpt3.5", "openai/gpt4")

PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openai": OPENAI_CONFIG,
    "openrouter": OPENROUTER_CONFIG,
    "together": TOGETHER_CONFIG,
    "cohere": COHERE_CONFIG,
}


def is_known_model(model_id: Optional[str]) -> bool:
    return bool(model_id) and model_id in LOGICAL_MODELS


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
