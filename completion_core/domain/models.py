"""统一的请求与输出数据模型。

本模块定义了引擎在不同 Provider 之间共享的标准数据结构：

- ChatMessage: 一条对话消息（system/user/assistant），同时也是一种输出单元。
- CompletionRequest: 发给引擎的逻辑请求，与具体 Provider 无关。
- TextDelta / MediaReference: 其余两种标准化输出单元。

所有 Provider 描述符都只依赖这些模型，并负责在各自 JSON 与这些模型之间做转换。
"""

from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional, Tuple, Union

from completion_core.domain.exceptions import ValidationError


# 消息角色（与 OpenAI 等厂商的 role 字段对应）
Role = Literal["system", "user", "assistant"]

ROLES = ("system", "user", "assistant")


@dataclass(frozen=True)
class ChatMessage:
    """一条对话消息，既可用于请求，也可作为非流式 chat 响应的输出单元。"""

    role: Role
    content: str


@dataclass(frozen=True)
class PromptInput:
    """单条 prompt 形式的输入。"""

    prompt: str


@dataclass(frozen=True)
class MessagesInput:
    """按顺序排列的多条消息输入。"""

    messages: Tuple[ChatMessage, ...]

    def __post_init__(self) -> None:
        # 允许传入 list，统一转成 tuple 以保持不可变
        object.__setattr__(self, "messages", tuple(self.messages))
        for msg in self.messages:
            if msg.role not in ROLES:
                raise ValidationError(code="INVALID_ROLE", message=f"Unknown role: {msg.role!r}")


CompletionInput = Union[PromptInput, MessagesInput]


@dataclass(frozen=True)
class CompletionRequest:
    """一次完整的逻辑补全请求。

    - input: PromptInput 或 MessagesInput，二者互斥。
    - model_id: 逻辑模型名（如 "openai/gpt4"），由 ModelRegistry 解析；为空时走默认配置。
    - stop_sequences: 空 tuple 表示不设置 stop，不会发送给 Provider。
    - user_identifier: 透传给 Provider 的用户标识（用于滥用追踪）。

    请求一旦发出即不可变；重试复用同一个对象。
    """

    input: CompletionInput
    model_id: Optional[str] = None
    num_outputs: int = 1
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stop_sequences: Tuple[str, ...] = ()
    user_identifier: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.input, (PromptInput, MessagesInput)):
            raise ValidationError(code="INVALID_INPUT", message="Input must be a prompt or a list of messages")
        if self.num_outputs < 1:
            raise ValidationError(code="INVALID_NUM_OUTPUTS", message="num_outputs must be positive")
        object.__setattr__(self, "stop_sequences", tuple(self.stop_sequences))

    @property
    def is_chat(self) -> bool:
        return isinstance(self.input, MessagesInput)

    @classmethod
    def from_prompt(cls, prompt: str, **kwargs: Any) -> "CompletionRequest":
        return cls(input=PromptInput(prompt=prompt), **kwargs)

    @classmethod
    def from_messages(cls, messages, **kwargs: Any) -> "CompletionRequest":
        msgs = [m if isinstance(m, ChatMessage) else ChatMessage(role=m["role"], content=m["content"]) for m in messages]
        return cls(input=MessagesInput(messages=tuple(msgs)), **kwargs)


@dataclass(frozen=True)
class RequestMeta:
    """构造上游请求体时需要的附加信息（不属于逻辑请求本身）。"""

    model: str  # 具体厂商模型名
    stream: bool = True
    user_identifier: Optional[str] = None


@dataclass(frozen=True)
class TextDelta:
    """文本增量；同一 choice 的所有 TextDelta 按顺序拼接即为完整文本。"""

    text: str


@dataclass(frozen=True)
class MediaReference:
    """媒体结果引用（例如生成的图片/3D 模型地址）。"""

    uri: str
    mime_type: str


OutputUnit = Union[TextDelta, ChatMessage, MediaReference]


def input_to_dict(value: CompletionInput) -> Dict[str, Any]:
    if isinstance(value, PromptInput):
        return {"prompt": value.prompt}
    return {"messages": [{"role": m.role, "content": m.content} for m in value.messages]}


def input_from_dict(data: Dict[str, Any]) -> CompletionInput:
    if "prompt" in data:
        return PromptInput(prompt=data["prompt"])
    return MessagesInput(messages=tuple(ChatMessage(role=m["role"], content=m["content"]) for m in data["messages"]))


def unit_to_dict(unit: OutputUnit) -> Dict[str, Any]:
    """把输出单元转成带 type 标签的 JSON 结构（供缓存与持久化使用）。"""

    if isinstance(unit, TextDelta):
        return {"type": "text", "text": unit.text}
    if isinstance(unit, ChatMessage):
        return {"type": "message", "role": unit.role, "content": unit.content}
    if isinstance(unit, MediaReference):
        return {"type": "media", "uri": unit.uri, "mime_type": unit.mime_type}
    raise ValidationError(code="INVALID_UNIT", message=f"Unsupported output unit: {unit!r}")


def unit_from_dict(data: Dict[str, Any]) -> OutputUnit:
    kind = data.get("type")
    if kind == "text":
        return TextDelta(text=data["text"])
    if kind == "message":
        return ChatMessage(role=data["role"], content=data["content"])
    if kind == "media":
        return MediaReference(uri=data["uri"], mime_type=data["mime_type"])
    raise ValidationError(code="INVALID_UNIT", message=f"Unknown output unit type: {kind!r}")


def unit_text(unit: OutputUnit) -> str:
    """返回输出单元的文本部分；媒体引用返回其 uri。"""

    if isinstance(unit, TextDelta):
        return unit.text
    if isinstance(unit, ChatMessage):
        return unit.content
    return unit.uri
