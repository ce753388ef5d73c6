"""
MemoryBook 配置模块

所有配置在加载时校验一次, 之后以对象形式传递给各组件。
环境变量前缀 MEMORYBOOK_, 嵌套字段使用 "__" 分隔, 例如:

    MEMORYBOOK_VECTOR_SEARCH__EMBEDDING__PROVIDER=openai
    MEMORYBOOK_MEMORY__EXTRACTION_MODE=trigger
"""

import json
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

# 让 OPENAI_API_KEY 等 provider 凭据也能从 .env 读到
load_dotenv()


DEFAULT_EXTRACTION_TRIGGERS = [
    r"\bremember\b",
    r"\bdon'?t forget\b",
    r"\bkeep in mind\b",
    r"记住",
    r"别忘了",
    r"不要忘记",
]


class EmbeddingSettings(BaseModel):
    """Embedding 后端配置"""

    provider: Literal["openai", "voyage", "gemini", "local", "auto"] = Field(
        default="auto", description="Embedding 后端, auto 时按 openai → voyage → gemini 顺序尝试"
    )
    model: str = Field(default="", description="模型名称 (留空使用后端默认模型)")
    fallback: Literal["openai", "voyage", "gemini", "local", "none"] = Field(
        default="none", description="主后端构造失败时的备用后端"
    )
    base_url: str = Field(default="", description="API Base URL (OpenAI 兼容服务)")
    api_key: str = Field(default="", description="API Key (留空则读取环境变量)")
    local_model_path: str = Field(default="", description="本地模型名称或路径")
    local_model_cache_dir: str = Field(default="", description="本地模型缓存目录")
    device: str = Field(default="cpu", description="本地模型设备 (cpu 或 cuda)")
    timeout: float = Field(default=30.0, gt=0, description="HTTP 请求超时 (秒)")


class VectorSearchSettings(BaseModel):
    """向量 / 混合检索配置"""

    enabled: bool = Field(default=True, description="是否启用向量检索")
    use_hybrid: bool = Field(default=True, description="是否使用向量+关键词混合检索")
    max_results: int = Field(default=10, ge=1, description="最大返回数量")
    min_score: float = Field(default=0.3, ge=0.0, le=1.0, description="最低综合得分")
    vector_weight: float = Field(default=0.7, ge=0.0, le=1.0, description="向量得分权重")
    keyword_weight: float = Field(default=0.3, ge=0.0, le=1.0, description="关键词得分权重")
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)

    @model_validator(mode="after")
    def _check_weights(self) -> "VectorSearchSettings":
        if self.vector_weight + self.keyword_weight <= 0:
            raise ValueError("vector_weight + keyword_weight must be greater than 0")
        return self


class MemorySettings(BaseModel):
    """记忆检索与提取配置"""

    enabled: bool = Field(default=True, description="是否启用记忆系统")
    max_memories_per_request: int = Field(default=10, ge=1, description="每次注入的最大记忆条数")
    max_memory_tokens: int = Field(default=1000, ge=1, description="注入记忆的最大 token 数")
    use_keyword_retrieval: bool = Field(default=True, description="是否使用关键词检索")
    min_importance: int = Field(default=50, ge=0, le=100, description="注入所需最低重要性")
    sort_by: Literal["importance", "recency", "accessCount"] = Field(
        default="importance", description="排序方式"
    )
    auto_extract: bool = Field(default=False, description="新建记忆本时是否开启自动提取")
    extraction_mode: Literal["off", "trigger", "auto"] = Field(
        default="off", description="提取模式"
    )
    extraction_triggers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXTRACTION_TRIGGERS),
        description="触发提取的正则表达式",
    )
    deduplication_threshold: float = Field(
        default=0.85, ge=0.0, le=1.0, description="去重相似度阈值"
    )


class Settings(BaseSettings):
    """应用配置"""

    storage_dir: Path = Field(
        default_factory=lambda: Path.home() / ".memorybook" / "memories",
        description="记忆本与索引文件目录",
    )
    log_level: str = Field(default="INFO", description="日志级别")

    memory: MemorySettings = Field(default_factory=MemorySettings)
    vector_search: VectorSearchSettings = Field(default_factory=VectorSearchSettings)

    model_config = {
        "env_prefix": "MEMORYBOOK_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @classmethod
    def from_json_file(cls, path: str | Path) -> "Settings":
        """从 JSON 配置文件加载 (字段结构与本类一致)"""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.model_validate(data)

    @property
    def embedding(self) -> EmbeddingSettings:
        return self.vector_search.embedding
