"""领域层模型与协议。

包含：
- models: 统一的 CompletionRequest / ChatMessage / 输出单元模型。
- accounts: Provider 账号与 ConfigLookup 协议。
- transaction: Transaction 记录与 TransactionSink 协议。
- exceptions: 业务异常类型定义。
"""
