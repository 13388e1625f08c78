"""Transaction 记录模型与写入协议。

每个请求在到达终态（completed/failed/cancelled）时恰好写入一次 Transaction。
存储由外部协作方负责，这里只定义结构与 TransactionSink 协议。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Protocol
from uuid import uuid4

from completion_core.domain.models import (
    ChatMessage,
    CompletionRequest,
    MediaReference,
    MessagesInput,
    OutputUnit,
    PromptInput,
    input_from_dict,
    input_to_dict,
    unit_from_dict,
    unit_to_dict,
)


TransactionStatus = Literal["completed", "failed", "cancelled"]


@dataclass
class Transaction:
    id: str
    timestamp: datetime
    origin: Optional[str]
    input: Any
    num_outputs: int
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stop_sequences: List[str] = field(default_factory=list)
    model: Optional[str] = None
    routed_model: Optional[str] = None
    provider: Optional[str] = None
    outputs: Optional[List[List[OutputUnit]]] = None
    error: Optional[str] = None
    status: Optional[TransactionStatus] = None
    cached: bool = False

    @classmethod
    def init(cls, request: CompletionRequest, origin: Optional[str] = None) -> "Transaction":
        return cls(
            id=uuid4().hex,
            timestamp=datetime.now(timezone.utc),
            origin=origin,
            input=request.input,
            num_outputs=request.num_outputs,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            stop_sequences=list(request.stop_sequences),
            model=request.model_id,
        )

    def get_routed_model(self) -> Optional[str]:
        return self.routed_model or self.model

    def format_input(self) -> str:
        if isinstance(self.input, PromptInput):
            return self.input.prompt
        if isinstance(self.input, MessagesInput):
            return "\n".join(f"{m.role}: {m.content}" for m in self.input.messages)
        return str(self.input)

    def format_output(self) -> Optional[str]:
        """每个 choice 一行；媒体输出只展示 uri 前 50 个字符。"""

        if self.outputs is None:
            return None
        lines = []
        for units in self.outputs:
            parts = []
            for unit in units:
                if isinstance(unit, MediaReference):
                    parts.append(unit.uri[:50] + "...")
                elif isinstance(unit, ChatMessage):
                    parts.append(f"{unit.role}: {unit.content}")
                else:
                    parts.append(unit.text)
            lines.append("".join(parts))
        return "\n".join(lines)

    def format_json(self) -> Dict[str, Any]:
        return {
            "input": input_to_dict(self.input),
            "temperature": self.temperature,
            "maxTokens": self.max_tokens,
            "stopSequences": self.stop_sequences,
            "model": self.model,
            "numOutputs": self.num_outputs,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
            "origin": self.origin,
            "input": input_to_dict(self.input),
            "num_outputs": self.num_outputs,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stop_sequences": self.stop_sequences,
            "model": self.model,
            "routed_model": self.routed_model,
            "provider": self.provider,
            "outputs": None
            if self.outputs is None
            else [[unit_to_dict(u) for u in units] for units in self.outputs],
            "error": self.error,
            "status": self.status,
            "cached": self.cached,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        outputs = data.get("outputs")
        return cls(
            id=data["id"],
            timestamp=datetime.fromisoformat(str(data["timestamp"]).replace("Z", "+00:00")),
            origin=data.get("origin"),
            input=input_from_dict(data["input"]),
            # 旧数据可能没有 num_outputs
            num_outputs=int(data.get("num_outputs") or 1),
            temperature=data.get("temperature"),
            max_tokens=data.get("max_tokens"),
            stop_sequences=list(data.get("stop_sequences") or []),
            model=data.get("model"),
            routed_model=data.get("routed_model"),
            provider=data.get("provider"),
            outputs=None if outputs is None else [[unit_from_dict(u) for u in units] for units in outputs],
            error=data.get("error"),
            status=data.get("status"),
            cached=bool(data.get("cached", False)),
        )


class TransactionSink(Protocol):
    """历史记录协作方；实现可以是同步函数，也可以返回 awaitable。"""

    def record_transaction(self, transaction: Transaction) -> Any:
        ...
