"""统一业务异常模型。

所有跨模块抛出的错误都继承自 BusinessError，便于调用方统一捕获：

- UnresolvedModelError: 找不到可用的 Provider/凭证。
- ProviderHTTPError: 上游返回非 2xx，原样携带 status 与 body。
- StreamDecodeError: 流中出现无法解析的行，整条流终止。
- NormalizationError: 事件不符合任何已知响应结构，只终止对应 choice。
- CancellationSignal: 调用方放弃消费或传输超时；不是失败，也不算成功。

引擎内部不做任何重试，重试策略由调用方决定。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、model 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、连接被重置等（超时除外）。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class UnresolvedModelError(BusinessError):
    """连默认配置都没有时，无法为请求找到 Provider。"""

    def __init__(self, model_id: Optional[str] = None):
        super().__init__(
            code="UNRESOLVED_MODEL",
            message=f"No provider configured for model {model_id!r}",
            http_status=404,
            model_id=model_id,
        )
        self.model_id = model_id


class ProviderHTTPError(BusinessError):
    """上游返回非 2xx 响应；status 与 body 原样透出，供调用方决定是否退避重试。"""

    def __init__(self, status: int, body: str, provider: Optional[str] = None):
        super().__init__(
            code="PROVIDER_HTTP_ERROR",
            message=f"{provider or 'provider'} responded with HTTP {status}: {body[:200]}",
            http_status=status,
            provider=provider,
        )
        self.status = status
        self.body = body
        self.provider = provider


class StreamDecodeError(BusinessError):
    """事件行既不是 JSON 也不是结束标记。"""

    def __init__(self, line: str, reason: str = "invalid JSON"):
        super().__init__(
            code="STREAM_DECODE_ERROR",
            message=f"Cannot decode stream line ({reason}): {line[:200]!r}",
            http_status=502,
        )
        self.line = line


class NormalizationError(BusinessError):
    """解码后的事件不符合任何已知的响应结构。"""

    def __init__(self, message: str, index: Optional[int] = None, event=None):
        super().__init__(code="NORMALIZATION_ERROR", message=message, http_status=502)
        self.index = index
        self.event = event


class CancellationSignal(BusinessError):
    """请求被放弃（调用方提前退出或传输超时）。"""

    def __init__(self, message: str = "Completion cancelled"):
        super().__init__(code="CANCELLED", message=message, http_status=499)
