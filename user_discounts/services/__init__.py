"""
服务包初始化文件
"""

from .stacking_strategies import (
    DiscountStackingStrategy,
    SequentialStackingStrategy,
    BestDiscountStrategy,
    AllDiscountsStrategy,
    create_stacking_strategy
)
from .eligibility_resolver import EligibilityResolver
from .discount_notifier import (
    DiscountNotifier,
    RedisDiscountNotifier,
    NullDiscountNotifier,
    create_discount_notifier
)
from .discount_service import DiscountService, create_discount_service

__all__ = [
    "DiscountStackingStrategy",
    "SequentialStackingStrategy",
    "BestDiscountStrategy",
    "AllDiscountsStrategy",
    "create_stacking_strategy",
    "EligibilityResolver",
    "DiscountNotifier",
    "RedisDiscountNotifier",
    "NullDiscountNotifier",
    "create_discount_notifier",
    "DiscountService",
    "create_discount_service"
]
