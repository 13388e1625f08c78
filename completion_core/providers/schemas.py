"""已知的 choice 响应结构。

各厂商的单个 choice 只可能是以下几种形状之一，按优先级依次判断：

1. delta: 流式增量 {"delta": {"role"?, "content"?}}
2. message: 完整消息 {"message": {"role", "content"}}
3. text: 纯文本 {"text": "..."}
4. uri: 媒体引用 {"uri": "...", "mimeType": "..."}

每种形状都先用 pydantic 校验再使用，避免把残缺的数据误判成另一种结构。
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from completion_core.domain.exceptions import NormalizationError
from completion_core.domain.models import ChatMessage, MediaReference, OutputUnit, TextDelta


class DeltaPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Optional[str] = None
    content: Optional[str] = None


class DeltaChoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int = 0
    delta: DeltaPayload


class MessagePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str = "assistant"
    content: Optional[str] = None


class MessageChoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int = 0
    message: MessagePayload


class TextChoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int = 0
    text: str


class MediaChoice(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    index: int = 0
    uri: str
    mime_type: str = Field(alias="mimeType")


def parse_choice(choice: Dict[str, Any]) -> Optional[OutputUnit]:
    """把单个 choice 转成输出单元；没有内容的增量（只有 role/finish_reason）返回 None。"""

    if not isinstance(choice, dict):
        raise NormalizationError(f"Choice is not an object: {choice!r}", event=choice)
    try:
        if "delta" in choice:
            delta = DeltaChoice.model_validate(choice).delta
            return TextDelta(text=delta.content) if delta.content else None
        if "message" in choice:
            message = MessageChoice.model_validate(choice).message
            return ChatMessage(role=message.role, content=message.content or "")
        if "text" in choice:
            return TextDelta(text=TextChoice.model_validate(choice).text)
        if "uri" in choice:
            media = MediaChoice.model_validate(choice)
            return MediaReference(uri=media.uri, mime_type=media.mime_type)
    except PydanticValidationError as e:
        raise NormalizationError(f"Malformed choice: {e.errors()[0]['msg']}", event=choice)
    raise NormalizationError(f"Unknown choice shape with keys {sorted(choice)}", event=choice)
