"""Provider 账号（凭证）模型与配置查询协议。

配置的持久化不属于本项目，引擎只通过 ConfigLookup 协议读取：
某个逻辑模型由哪个账号处理、默认账号是什么、自定义模型走哪个账号。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Protocol
from uuid import uuid4


class AuthType(str, Enum):
    # 由外部站点（OpenRouter 会话）负责全部认证
    EXTERNAL = "external"
    # 使用 API key
    API_KEY = "key"


@dataclass(frozen=True)
class ProviderAccount:
    """一份凭证配置。

    - auth: 认证方式。
    - models: 该账号负责的逻辑模型；为空表示本地/自定义模型账号。
    - session: 外部会话的 access token（仅 EXTERNAL）。
    - base_url: 覆盖 Provider 默认地址（本地模型常用）。
    """

    auth: AuthType
    label: str
    models: List[str] = field(default_factory=list)
    api_key: Optional[str] = None
    session: Optional[str] = None
    base_url: Optional[str] = None
    id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def is_credentialed(self) -> bool:
        if self.auth == AuthType.EXTERNAL:
            return bool(self.session)
        return bool(self.api_key) if self.models else True

    @property
    def current_model(self) -> Optional[str]:
        # 多模型账号（例如外部会话）没有唯一的当前模型
        if len(self.models) != 1:
            return None
        return self.models[0]


class ConfigLookup(Protocol):
    """配置管理协作方。"""

    def resolve_config(self, model_id: str) -> Optional[ProviderAccount]:
        ...

    def default_config(self) -> Optional[ProviderAccount]:
        ...

    def custom_config(self) -> Optional[ProviderAccount]:
        ...
