from pydantic import Field
from pydantic_settings import BaseSettings
from typing import Optional
from enum import Enum


class Environment(str, Enum):

    """运行环境枚举"""
    TESTING = "testing"
    PRODUCTION = "production"


class Settings(BaseSettings):

    # 应用基础配置
    app_name: str = "User Discounts"
    app_version: str = "1.0.0"
    environment: Environment = Environment.TESTING
    debug: bool = False

    # 数据库配置
    database_url: Optional[str] = None
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "user_discounts_db"
    db_user: str = "user_discounts"
    db_password: str = "user_discounts_password"

    # Redis配置 (折扣事件通知)
    redis_url: Optional[str] = None
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0

    # 折扣叠加配置
    discount_stacking_strategy: str = "sequential"  # sequential, best, all
    discount_max_percentage_cap: int = Field(default=100, ge=0, le=100)
    discount_rounding_mode: str = "half_up"  # up, down, half_up, half_down, half_even
    discount_rounding_precision: int = Field(default=2, ge=0, le=6)

    # 审计与通知
    discount_enable_audit: bool = True
    discount_enable_notifications: bool = True
    discount_notification_channel: str = "discount_events"

    # 日志配置
    log_level: str = "INFO"

    @property
    def is_testing(self) -> bool:
        return self.environment == Environment.TESTING

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def database_url_computed(self) -> str:
        """计算数据库URL"""
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def redis_url_computed(self) -> str:
        """计算Redis URL"""
        if self.redis_url:
            return self.redis_url
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    class Config:
        env_file = ".env"
        case_sensitive = False


# 全局配置实例
settings = Settings()
