"""Completion Core 顶层包。

该包提供与厂商无关的 LLM 请求/响应引擎，
包括配置加载、领域模型、Provider 描述符、流式解码、
响应标准化、缓存、请求调度与请求历史存储等能力。
"""

from completion_core.domain.models import CompletionRequest
from completion_core.engine.dispatcher import Completion, Dispatcher

__all__ = ["Completion", "CompletionRequest", "Dispatcher"]
