"""
应用托管发布控制器 - 配置模块
"""
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    控制器配置

    全部字段可由同名环境变量或 .env 覆盖。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    APP_NAME: str = "应用托管发布控制器"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    API_PREFIX: str = "/api/v1"
    HOST: str = "0.0.0.0"
    PORT: int = Field(default=8000, ge=1, le=65535)

    # 调度循环，时间单位均为秒
    ROLLOUT_TICK_INTERVAL: float = Field(default=10.0, gt=0)
    ROLLOUT_MAX_APPLY_ATTEMPTS: int = Field(default=3, ge=1)
    ROLLOUT_RETRY_BASE_DELAY: float = Field(default=1.0, ge=0)
    ROLLOUT_RETRY_MAX_DELAY: float = Field(default=60.0, ge=0)
    # 构建就绪等待上限，None 表示一直等待
    BUILD_READY_TIMEOUT: Optional[float] = Field(default=30 * 60, gt=0)

    # 为空时状态只保存在内存
    STATE_FILE: Optional[str] = None

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Literal["json", "console"] = "json"
    LOG_FILE: Optional[str] = None

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"未知日志级别: {value}")
        return level


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()


settings = get_settings()
