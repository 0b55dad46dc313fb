import redis.asyncio as aioredis
import json
from typing import Optional, Union
from user_discounts.core.config import settings
import structlog

"redis连接管理器，用于折扣事件发布"

logger = structlog.get_logger()


class RedisManager:
    """Redis连接管理器"""

    def __init__(self):
        self.redis_pool: Optional[aioredis.Redis] = None

    async def init_redis(self) -> None:
        """初始化Redis连接池"""
        try:
            self.redis_pool = aioredis.from_url(
                settings.redis_url_computed,
                encoding="utf-8",
                decode_responses=True,
                max_connections=20,
                retry_on_timeout=True
            )
            # 测试连接
            await self.redis_pool.ping()
            logger.info("Redis连接初始化成功")
        except Exception as e:
            logger.error("Redis连接初始化失败", error=str(e))
            raise

    async def close_redis(self) -> None:
        """关闭Redis连接"""
        if self.redis_pool:
            await self.redis_pool.aclose()
            logger.info("Redis连接已关闭")

    async def publish(self, channel: str, message: Union[str, dict, list]) -> int:
        """发布消息到频道，返回接收到消息的订阅者数量"""
        if self.redis_pool is None:
            raise RuntimeError("Redis未初始化，请先调用 init_redis()")

        if isinstance(message, (dict, list)):
            message = json.dumps(message, ensure_ascii=False, default=str)

        receivers = await self.redis_pool.publish(channel, message)
        logger.debug("Redis消息已发布", channel=channel, receivers=receivers)
        return receivers

    async def ping(self) -> bool:
        """检查连接状态"""
        try:
            return bool(await self.redis_pool.ping())
        except Exception as e:
            logger.error("Redis连接检查失败", error=str(e))
            return False


# 全局Redis管理器实例
redis_manager = RedisManager()
