"""OpenAI 兼容协议的 Provider 描述符。

OpenAI、OpenRouter、本地模型服务都使用 completions / chat/completions 端点：
- URL: {base_url}/completions 或 {base_url}/chat/completions
- 认证: Authorization: Bearer <key>
- 流式: `data: {...}` 行，以 `data: [DONE]` 结束

Together 的 inference 端点结构不同，但事件同样是 `data:` 前缀 + `[DONE]`，
因此也复用这里的基类。
"""

from typing import Any, Dict, List, Optional, Tuple

from completion_core.domain.accounts import ProviderAccount
from completion_core.domain.exceptions import NormalizationError
from completion_core.domain.models import (
    CompletionRequest,
    MessagesInput,
    OutputUnit,
    PromptInput,
    RequestMeta,
)
from completion_core.providers.registry import (
    OPENAI_CONFIG,
    OPENROUTER_CONFIG,
    TOGETHER_CONFIG,
    ProviderConfig,
)
from completion_core.providers.schemas import parse_choice


class OpenAICompatibleDescriptor:
    """OpenAI 风格描述符的公共实现。"""

    event_prefix: Optional[str] = "data:"
    end_of_stream_sentinel: Optional[str] = "[DONE]"

    def __init__(self, config: ProviderConfig, base_url: Optional[str] = None):
        self._config = config
        self.model_provider = config.name
        self.base_url = (base_url or config.base_url).rstrip("/")

    def get_path(self, request: CompletionRequest) -> str:
        return "/chat/completions" if request.is_chat else "/completions"

    def get_model_id(self, request: CompletionRequest, quality: str) -> str:
        tier = self._config.chat if request.is_chat and self._config.chat else self._config.completion
        return tier.select(quality)

    def transform_for_request(self, request: CompletionRequest, meta: RequestMeta) -> Dict[str, Any]:
        """构造请求体；只写入厂商认识的字段，逻辑模型名等路由字段不会出现在这里。"""

        payload: Dict[str, Any] = {"model": meta.model}
        if isinstance(request.input, MessagesInput):
            payload["messages"] = [{"role": m.role, "content": m.content} for m in request.input.messages]
        else:
            payload["prompt"] = request.input.prompt
        payload["n"] = request.num_outputs
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        if request.stop_sequences:
            payload["stop"] = list(request.stop_sequences)
        user = meta.user_identifier or request.user_identifier
        if user:
            payload["user"] = user
        payload["stream"] = meta.stream
        return payload

    def auth_headers(self, account: ProviderAccount) -> Dict[str, str]:
        if not account.api_key:
            return {}
        return {"Authorization": f"Bearer {account.api_key}"}

    def split_choices(self, event: Any) -> List[Tuple[int, Any]]:
        if not isinstance(event, dict) or not isinstance(event.get("choices"), list):
            raise NormalizationError("Event has no choices list", event=event)
        pairs: List[Tuple[int, Any]] = []
        for pos, choice in enumerate(event["choices"]):
            index = choice.get("index", pos) if isinstance(choice, dict) else pos
            pairs.append((index if isinstance(index, int) else pos, choice))
        return pairs

    def transform_response(self, choice: Any) -> Optional[OutputUnit]:
        return parse_choice(choice)


class OpenAIDescriptor(OpenAICompatibleDescriptor):
    def __init__(self, base_url: Optional[str] = None):
        super().__init__(OPENAI_CONFIG, base_url)


class OpenRouterDescriptor(OpenAICompatibleDescriptor):
    """OpenRouter 外部会话：只提供 chat 端点，prompt 输入会包成一条 user 消息。"""

    def __init__(self, base_url: Optional[str] = None, referer: str = "", title: str = ""):
        super().__init__(OPENROUTER_CONFIG, base_url)
        self._referer = referer
        self._title = title

    def get_path(self, request: CompletionRequest) -> str:
        return "/chat/completions"

    def get_model_id(self, request: CompletionRequest, quality: str) -> str:
        return self._config.chat.select(quality)

    def transform_for_request(self, request: CompletionRequest, meta: RequestMeta) -> Dict[str, Any]:
        payload = super().transform_for_request(request, meta)
        if "prompt" in payload:
            payload["messages"] = [{"role": "user", "content": payload.pop("prompt")}]
        return payload

    def auth_headers(self, account: ProviderAccount) -> Dict[str, str]:
        headers = {}
        if account.session:
            headers["Authorization"] = f"Bearer {account.session}"
        if self._referer:
            headers["HTTP-Referer"] = self._referer
        if self._title:
            headers["X-Title"] = self._title
        return headers


class LocalDescriptor(OpenAICompatibleDescriptor):
    """本地 / 自定义模型：OpenAI 兼容服务，模型名直接使用请求里的 model_id。"""

    def __init__(self, base_url: str, default_model: str = "local"):
        config = ProviderConfig(name="local", base_url=base_url, completion=None, chat=None)
        super().__init__(config, base_url)
        self._default_model = default_model

    def get_model_id(self, request: CompletionRequest, quality: str) -> str:
        return request.model_id or self._default_model


class TogetherDescriptor(OpenAICompatibleDescriptor):
    """Together inference 端点：只接受 prompt，消息会被拼成 <human>/<bot> 对话格式。"""

    def __init__(self, base_url: Optional[str] = None):
        super().__init__(TOGETHER_CONFIG, base_url)

    def get_path(self, request: CompletionRequest) -> str:
        return "/inference"

    def transform_for_request(self, request: CompletionRequest, meta: RequestMeta) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": meta.model,
            "prompt": _format_together_prompt(request),
            "stream_tokens": meta.stream,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        if request.stop_sequences:
            payload["stop"] = list(request.stop_sequences)
        return payload

    def split_choices(self, event: Any) -> List[Tuple[int, Any]]:
        # 非流式响应把 choices 包在 output 里
        if isinstance(event, dict) and isinstance(event.get("output"), dict):
            event = event["output"]
        return super().split_choices(event)


def _format_together_prompt(request: CompletionRequest) -> str:
    if isinstance(request.input, PromptInput):
        return request.input.prompt
    lines = []
    for msg in request.input.messages:
        if msg.role == "system":
            lines.append(msg.content)
        elif msg.role == "user":
            lines.append(f"<human>: {msg.content}")
        else:
            lines.append(f"<bot>: {msg.content}")
    lines.append("<bot>:")
    return "\n".join(lines)
