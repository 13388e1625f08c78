"""Provider 描述符接口。

Dispatcher 不直接依赖具体厂商的 HTTP 格式，而是依赖此协议：

- 每个厂商实现一个 ProviderDescriptor（如 OpenAIDescriptor）。
- 负责：将 CompletionRequest 转成具体 API 请求体，并把单个响应事件拆成 choice、
  再把 choice 转成统一的输出单元。

描述符在进程启动时构造一次，之后只读，所有请求共享。
"""

from typing import Any, Dict, List, Optional, Protocol, Tuple

from completion_core.domain.accounts import ProviderAccount
from completion_core.domain.models import CompletionRequest, OutputUnit, RequestMeta


class ProviderDescriptor(Protocol):
    """上游 Provider 描述符协议。

    - model_provider: Provider 标识，用于日志/Transaction。
    - base_url: 默认基础地址（账号可覆盖）。
    - event_prefix: 流式事件行前缀，如 "data:"；None 表示整行都是 JSON。
    - end_of_stream_sentinel: 逻辑结束标记，如 "[DONE]"；None 表示只依赖连接关闭。
    """

    model_provider: str
    base_url: str
    event_prefix: Optional[str]
    end_of_stream_sentinel: Optional[str]

    def get_path(self, request: CompletionRequest) -> str:
        ...

    def get_model_id(self, request: CompletionRequest, quality: str) -> str:
        ...

    def transform_for_request(self, request: CompletionRequest, meta: RequestMeta) -> Dict[str, Any]:
        ...

    def auth_headers(self, account: ProviderAccount) -> Dict[str, str]:
        ...

    def split_choices(self, event: Any) -> List[Tuple[int, Any]]:
        """把一个解码后的事件拆成 (choice 下标, 原始 choice) 列表。"""

        ...

    def transform_response(self, choice: Any) -> Optional[OutputUnit]:
        ...
