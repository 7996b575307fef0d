"""
ShelfFlow Configuration Management
遵循约束：环境变量前缀 SF__
"""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, validator
from functools import lru_cache


class Settings(BaseSettings):
    """全局配置类"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SF__",
        case_sensitive=False
    )

    # Database（权威数据源，本层只读）
    db_host: str = Field(default="localhost")
    db_port: int = Field(default=5432)
    db_name: str = Field(default="shelfflow")
    db_user: str = Field(default="shelfflow")
    db_password: str = Field(default="")
    db_pool_size: int = Field(default=10)
    db_max_overflow: int = Field(default=20)

    # Redis
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379)
    redis_db: int = Field(default=0)
    redis_password: Optional[str] = Field(default=None)

    # API Settings
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_prefix: str = Field(default="/api/sf/v1")
    api_title: str = Field(default="ShelfFlow API")
    api_version: str = Field(default="1.0.0")
    api_debug: bool = Field(default=False)

    # Monitoring
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text
    metrics_enabled: bool = Field(default=True)
    metrics_prefix: str = Field(default="sf")

    # 索引存储
    search_backend: str = Field(default="memory")  # memory or algolia
    algolia_app_id: Optional[str] = Field(default=None)
    algolia_api_key: Optional[str] = Field(default=None)
    search_index_prefix: str = Field(default="")
    search_rate_limit: float = Field(default=50)
    search_request_timeout: float = Field(default=10.0)

    # 投影器
    projector_concurrency: int = Field(default=16)
    publish_max_attempts: int = Field(default=5)
    publish_backoff_base_seconds: float = Field(default=0.5)
    publish_backoff_max_seconds: float = Field(default=30.0)
    fanout_batch_size: int = Field(default=100)

    # 查询网关
    query_timeout_seconds: float = Field(default=3.0)
    default_page_size: int = Field(default=20)

    # 变更事件流
    change_stream: str = Field(default="sf:changes")
    change_consumer_group: str = Field(default="sf:group:projector")
    change_consumer_enabled: bool = Field(default=False)
    change_claim_idle_ms: int = Field(default=60000)  # pending 超过该时长的消息会被重新认领

    @validator("api_prefix")
    def validate_api_prefix(cls, v):
        """确保 API 前缀符合规范"""
        if not v.startswith("/api/sf/"):
            raise ValueError("API prefix must start with /api/sf/")
        return v

    @validator("metrics_prefix")
    def validate_metrics_prefix(cls, v):
        """确保指标前缀符合规范"""
        if not v.startswith("sf"):
            raise ValueError("Metrics prefix must start with 'sf'")
        return v

    @validator("search_backend")
    def validate_search_backend(cls, v):
        """索引存储后端只支持 memory / algolia"""
        if v not in ("memory", "algolia"):
            raise ValueError("search_backend must be 'memory' or 'algolia'")
        return v

    @property
    def database_url(self) -> str:
        """构建数据库连接字符串"""
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def redis_url(self) -> str:
        """构建 Redis 连接字符串"""
        password = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{password}{self.redis_host}:{self.redis_port}/{self.redis_db}"


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()
