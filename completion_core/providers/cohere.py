"""Cohere generate 端点描述符。

与 OpenAI 风格不同：
- 流式响应是逐行 JSON（没有 `data:` 前缀，也没有结束标记，依赖连接关闭）；
- 每行形如 {"text": "...", "is_finished": false, "index": 0}，最后一行 is_finished=true；
- 非流式响应为 {"generations": [{"text": "..."}, ...]}。
"""

from typing import Any, Dict, List, Optional, Tuple

from completion_core.domain.accounts import ProviderAccount
from completion_core.domain.exceptions import NormalizationError
from completion_core.domain.models import (
    CompletionRequest,
    MessagesInput,
    OutputUnit,
    RequestMeta,
)
from completion_core.providers.registry import COHERE_CONFIG
from completion_core.providers.schemas import parse_choice


class CohereDescriptor:
    event_prefix: Optional[str] = None
    end_of_stream_sentinel: Optional[str] = None

    def __init__(self, base_url: Optional[str] = None):
        self._config = COHERE_CONFIG
        self.model_provider = COHERE_CONFIG.name
        self.base_url = (base_url or COHERE_CONFIG.base_url).rstrip("/")

    def get_path(self, request: CompletionRequest) -> str:
        return "/generate"

    def get_model_id(self, request: CompletionRequest, quality: str) -> str:
        return self._config.completion.select(quality)

    def transform_for_request(self, request: CompletionRequest, meta: RequestMeta) -> Dict[str, Any]:
        if isinstance(request.input, MessagesInput):
            prompt = "\n".join(f"{m.role}: {m.content}" for m in request.input.messages)
        else:
            prompt = request.input.prompt
        payload: Dict[str, Any] = {
            "model": meta.model,
            "prompt": prompt,
            "num_generations": request.num_outputs,
            "stream": meta.stream,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        if request.stop_sequences:
            payload["stop_sequences"] = list(request.stop_sequences)
        return payload

    def auth_headers(self, account: ProviderAccount) -> Dict[str, str]:
        if not account.api_key:
            return {}
        return {"Authorization": f"Bearer {account.api_key}"}

    def split_choices(self, event: Any) -> List[Tuple[int, Any]]:
        if not isinstance(event, dict):
            raise NormalizationError("Event is not an object", event=event)
        if isinstance(event.get("generations"), list):
            return [
                (gen.get("index", pos) if isinstance(gen, dict) else pos, gen)
                for pos, gen in enumerate(event["generations"])
            ]
        if event.get("is_finished"):
            # 结束事件只带汇总信息，不产生输出
            return []
        if "text" in event:
            return [(int(event.get("index") or 0), event)]
        raise NormalizationError(f"Unknown Cohere event with keys {sorted(event)}", event=event)

    def transform_response(self, choice: Any) -> Optional[OutputUnit]:
        return parse_choice(choice)
