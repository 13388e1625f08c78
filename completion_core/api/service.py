"""对外 API 服务模块。

提供简化的同步函数接口供上层应用调用。
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

from completion_core.config.settings import settings
from completion_core.domain.models import CompletionRequest, unit_text, unit_to_dict
from completion_core.engine.dispatcher import Dispatcher
from completion_core.infrastructure.logging.logger import logger
from completion_core.infrastructure.storage.json_store import JsonTransactionStore


_store: Optional[JsonTransactionStore] = None
_engine: Optional[Dispatcher] = None


def get_default_store() -> JsonTransactionStore:
    global _store
    if _store is None:
        _store = JsonTransactionStore(root=settings.storage_root)
    return _store


def get_default_engine() -> Dispatcher:
    """获取默认的补全引擎实例（单例）。"""
    global _engine
    if _engine is None:
        _engine = Dispatcher.from_settings(settings, recorder=get_default_store())
    return _engine


def run_completion(
    prompt: Optional[str] = None,
    messages: Optional[Sequence[Any]] = None,
    model: Optional[str] = None,
    quality: Optional[str] = None,
    num_outputs: int = 1,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    stop_sequences: Sequence[str] = (),
    origin: Optional[str] = None,
    stream: bool = True,
) -> Dict[str, Any]:
    """运行一次补全并等待全部输出。

    Args:
        prompt: 纯文本提示（与 messages 二选一）
        messages: 对话消息列表，元素可以是 ChatMessage 或 {"role", "content"} 字典
        model: 逻辑模型 ID（可选，不提供则使用默认账号）
        quality: 质量档位 "low" / "high"（可选）
        num_outputs: 需要的独立输出数量

    Returns:
        包含 outputs（每个 choice 的输出单元）与 texts（每个 choice 的拼接文本）的字典

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    kwargs = dict(
        model_id=model,
        num_outputs=num_outputs,
        temperature=temperature,
        max_tokens=max_tokens,
        stop_sequences=tuple(stop_sequences),
    )
    if messages is not None:
        request = CompletionRequest.from_messages(messages, **kwargs)
    else:
        request = CompletionRequest.from_prompt(prompt or "", **kwargs)

    try:
        engine = get_default_engine()
        outputs = asyncio.run(engine.collect(request, quality=quality, origin=origin, stream=stream))
    except Exception as e:
        logger.error(f"Completion failed: {e}", extra={"extra": {
            "model": model,
            "error": str(e),
        }})
        raise

    return {
        "model": model,
        "outputs": [[unit_to_dict(u) for u in units] for units in outputs],
        "texts": ["".join(unit_text(u) for u in units) for units in outputs],
    }


def list_transactions(origin: Optional[str] = None) -> List[Dict[str, Any]]:
    """列出已记录的请求历史。"""
    store = get_default_store()
    return [
        {
            "id": t.id,
            "timestamp": t.timestamp.isoformat(),
            "origin": t.origin,
            "provider": t.provider,
            "model": t.get_routed_model(),
            "status": t.status,
            "cached": t.cached,
            "input": t.format_input(),
            "output": t.format_output(),
            "error": t.error,
        }
        for t in store.list_transactions(origin=origin)
    ]
