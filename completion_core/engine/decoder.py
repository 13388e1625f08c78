"""流式响应解码器。

把传输层按任意边界切开的字节块还原成 Provider 原生 JSON 事件：

- 事件按换行分隔，可带 Provider 前缀（如 `data:`），不完整的行会跨块缓存；
- 行内容恰好等于结束标记时立即结束，不再当作 JSON 解析；
- 空行与 SSE 注释行（以 `:` 开头）跳过；
- 其他无法解析为 JSON 的行视为协议漂移，抛出 StreamDecodeError，不静默丢弃。

非流式响应（application/json）则整体解析为一个事件。
"""

import codecs
import json
from typing import Any, AsyncIterable, AsyncIterator, List, Optional, Union

from completion_core.domain.exceptions import StreamDecodeError


class StreamDecoder:
    def __init__(self, prefix: Optional[str] = None, sentinel: Optional[str] = None, encoding: str = "utf-8"):
        self._prefix = prefix
        self._sentinel = sentinel
        self._decoder = codecs.getincrementaldecoder(encoding)()
        self._buffer = ""
        self.finished = False

    @classmethod
    def for_descriptor(cls, descriptor) -> "StreamDecoder":
        return cls(prefix=descriptor.event_prefix, sentinel=descriptor.end_of_stream_sentinel)

    def feed(self, chunk: Union[bytes, str]) -> List[Any]:
        """喂入一个数据块，返回其中已完整的事件。"""

        if self.finished:
            return []
        if isinstance(chunk, bytes):
            try:
                chunk = self._decoder.decode(chunk)
            except UnicodeDecodeError as e:
                raise StreamDecodeError(repr(chunk), reason=str(e))
        self._buffer += chunk
        events: List[Any] = []
        while not self.finished:
            pos = self._buffer.find("\n")
            if pos < 0:
                break
            line = self._buffer[:pos]
            self._buffer = self._buffer[pos + 1:]
            self._handle_line(line, events)
        return events

    def close(self) -> List[Any]:
        """传输结束：解析缓冲区里最后一行（没有换行结尾的情况）。"""

        if self.finished:
            return []
        try:
            self._buffer += self._decoder.decode(b"", final=True)
        except UnicodeDecodeError as e:
            raise StreamDecodeError(self._buffer, reason=str(e))
        events: List[Any] = []
        line, self._buffer = self._buffer, ""
        self._handle_line(line, events)
        self.finished = True
        return events

    async def decode(self, chunks: AsyncIterable[Union[bytes, str]]) -> AsyncIterator[Any]:
        async for chunk in chunks:
            for event in self.feed(chunk):
                yield event
            if self.finished:
                return
        for event in self.close():
            yield event

    def _handle_line(self, raw: str, events: List[Any]) -> None:
        line = raw.rstrip("\r")
        if not line.strip() or line.startswith(":"):
            return
        payload = line
        if self._prefix and payload.startswith(self._prefix):
            payload = payload[len(self._prefix):]
        payload = payload.strip()
        if self._sentinel is not None and payload == self._sentinel:
            self.finished = True
            self._buffer = ""
            return
        try:
            events.append(json.loads(payload))
        except json.JSONDecodeError:
            raise StreamDecodeError(line)


def decode_document(body: Union[bytes, str]) -> Any:
    """解析非流式响应体。"""

    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
        raise StreamDecodeError(text, reason="invalid JSON document")


def is_event_stream(content_type: Optional[str], stream_requested: bool) -> bool:
    """按响应的 content-type 判断是否为事件流；缺失时才退回到请求里的 stream 标记。"""

    media = (content_type or "").split(";")[0].strip().lower()
    if not media:
        return stream_requested
    if media == "application/json":
        return False
    if "event-stream" in media or "ndjson" in media or "stream" in media:
        return True
    return stream_requested
