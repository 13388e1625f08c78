"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("COMPLETION_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 路由相关配置 ----
    default_provider: str = Field(
        default="openrouter",
        description="未指定模型时使用的 Provider：openrouter（外部会话）或 local",
    )
    default_quality: str = Field(default="high", description="未给出质量提示时的档位：low / high")

    # OpenAI
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI API 基础URL")
    # Together
    together_api_key: Optional[str] = Field(default=None, description="Together API 密钥")
    together_base_url: str = Field(default="https://api.together.xyz", description="Together API 基础URL")
    # Cohere
    cohere_api_key: Optional[str] = Field(default=None, description="Cohere API 密钥")
    cohere_base_url: str = Field(default="https://api.cohere.ai/v1", description="Cohere API 基础URL")
    # OpenRouter（外部会话）
    openrouter_session: Optional[str] = Field(default=None, description="OpenRouter 会话 access token")
    openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1", description="OpenRouter 基础URL")
    app_referer: str = Field(default="https://windowai.io", description="OpenRouter HTTP-Referer 头")
    app_title: str = Field(default="completion-core", description="OpenRouter X-Title 头")
    # 本地 / 自定义模型
    local_base_url: str = Field(default="http://127.0.0.1:8000", description="本地模型服务地址")
    local_api_key: Optional[str] = Field(default=None, description="本地模型服务密钥（可选）")
    local_model: str = Field(default="local", description="本地服务未指定模型时使用的模型名")

    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")
    stream_queue_size: int = Field(default=64, ge=0, description="每个 choice 的输出队列长度，0 表示不限")
    cache_enabled: bool = Field(default=False, description="是否启用内存响应缓存")
    cache_ttl_seconds: int = Field(default=300, ge=1, description="缓存有效期（秒）")
    cache_max_entries: int = Field(default=1024, ge=1, description="缓存最大条目数")
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_api_key", "together_api_key", "cohere_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("default_provider")
    @classmethod
    def validate_default_provider(cls, v: str) -> str:
        v = v.lower()
        if v not in {"openrouter", "local"}:
            raise ValueError("default_provider must be 'openrouter' or 'local'")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
