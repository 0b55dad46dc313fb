"""
数据模型包初始化文件
"""

from .discount import (
    Discount,
    DiscountCreate,
    DiscountType,
    UserDiscount,
    DiscountAudit,
    AuditAction,
    DiscountApplicationResult
)
from .events import DiscountEvent, DiscountEventType

__all__ = [
    "Discount",
    "DiscountCreate",
    "DiscountType",
    "UserDiscount",
    "DiscountAudit",
    "AuditAction",
    "DiscountApplicationResult",
    "DiscountEvent",
    "DiscountEventType"
]
