"""
数据库模型包初始化文件
"""

from .discount_db import DiscountDB, UserDiscountDB, DiscountAuditDB

__all__ = [
    "DiscountDB",
    "UserDiscountDB",
    "DiscountAuditDB"
]
