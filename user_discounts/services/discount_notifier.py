"""
折扣事件通知
分配、撤销、应用成功提交后发送；发送失败只记日志，不影响业务结果
"""

import logging
from abc import ABC, abstractmethod
from typing import List

from user_discounts.core.redis import RedisManager, redis_manager
from user_discounts.models.events import DiscountEvent

logger = logging.getLogger(__name__)


class DiscountNotifier(ABC):
    """折扣事件通知接口"""

    @abstractmethod
    async def notify(self, event: DiscountEvent) -> None:
        ...


class RedisDiscountNotifier(DiscountNotifier):
    """通过Redis发布/订阅发送折扣事件"""

    def __init__(self, manager: RedisManager, channel: str = "discount_events"):
        self.manager = manager
        self.channel = channel

    async def notify(self, event: DiscountEvent) -> None:
        receivers = await self.manager.publish(self.channel, event.to_message())
        logger.debug(f"折扣事件已发布: {event.event_type.value} user={event.user_id} receivers={receivers}")


class NullDiscountNotifier(DiscountNotifier):
    """关闭通知时使用"""

    async def notify(self, event: DiscountEvent) -> None:
        return None


class RecordingDiscountNotifier(DiscountNotifier):
    """在内存中记录事件，便于本地调试与测试"""

    def __init__(self):
        self.events: List[DiscountEvent] = []

    async def notify(self, event: DiscountEvent) -> None:
        self.events.append(event)


def create_discount_notifier(settings, manager: RedisManager = redis_manager) -> DiscountNotifier:
    """根据配置创建通知器"""
    if not settings.discount_enable_notifications:
        return NullDiscountNotifier()
    return RedisDiscountNotifier(manager, settings.discount_notification_channel)
