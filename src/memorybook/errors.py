"""
核心异常类
"""


class MemoryBookError(Exception):
    """记忆系统异常基类"""


class EmbeddingError(MemoryBookError):
    """Embedding 调用失败 (HTTP 错误、超时、响应格式错误)"""


class EmbeddingProviderError(EmbeddingError):
    """Embedding 后端无法构造 (缺少凭据或依赖)。

    显式指定后端且配置了 fallback 时, 两者都失败会把主后端的
    原因与 fallback 的原因合并到同一条消息里。

    Attributes:
        provider: 失败的后端 ID
        reason: 主后端的失败原因
    """

    def __init__(self, message: str, provider: str = "", reason: str = ""):
        self.provider = provider
        self.reason = reason or message
        super().__init__(message)


class IndexWriteError(MemoryBookError):
    """索引批量写入失败, 整个事务已回滚"""
