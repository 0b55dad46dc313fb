"""
仓库包初始化文件 - 数据库访问层
"""

from .discount_repository import DiscountRepository, valid_discount_conditions
from .user_discount_repository import UserDiscountRepository
from .discount_audit_repository import DiscountAuditRepository

__all__ = [
    "DiscountRepository",
    "UserDiscountRepository",
    "DiscountAuditRepository",
    "valid_discount_conditions"
]
