"""
折扣相关数据库模型
"""

from sqlalchemy import (
    Column, String, Integer, Numeric, Text, Boolean, DateTime, JSON, ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.sql import func
from user_discounts.core.database import Base


class DiscountDB(Base):
    """折扣规则表"""

    __tablename__ = "discounts"

    # 主键和基本信息
    id = Column(Integer, primary_key=True, autoincrement=True, comment="折扣ID")
    code = Column(String(50), nullable=False, unique=True, index=True, comment="折扣代码")
    name = Column(String(200), nullable=False, comment="折扣名称")
    description = Column(Text, comment="折扣描述")

    # 折扣信息
    discount_type = Column(String(20), nullable=False, default="percentage", comment="折扣类型")
    discount_value = Column(Numeric(18, 6), nullable=False, comment="折扣值")

    # 有效期
    starts_at = Column(DateTime, comment="生效时间")
    expires_at = Column(DateTime, comment="过期时间")

    # 使用限制
    max_usage_per_user = Column(Integer, nullable=False, default=1, comment="单用户使用次数上限")
    max_total_usage = Column(Integer, comment="总使用次数上限")
    current_usage = Column(Integer, nullable=False, default=0, comment="已使用总次数")

    # 状态与叠加顺序
    is_active = Column(Boolean, nullable=False, default=True, comment="是否启用")
    priority = Column(Integer, nullable=False, default=0, index=True, comment="优先级")
    conditions = Column(JSON, comment="扩展条件")

    # 时间戳
    created_at = Column(DateTime, server_default=func.now(), comment="创建时间")
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), comment="更新时间")
    deleted_at = Column(DateTime, comment="软删除时间")

    __table_args__ = (
        Index("idx_discounts_validity", "is_active", "starts_at", "expires_at"),
        {'comment': '折扣规则表'}
    )


class UserDiscountDB(Base):
    """用户折扣分配表"""

    __tablename__ = "user_discounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(50), nullable=False, comment="用户ID")
    discount_id = Column(
        Integer,
        ForeignKey("discounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="折扣ID"
    )

    # 分配与撤销
    assigned_at = Column(DateTime, nullable=False, comment="分配时间")
    assigned_by = Column(String(100), comment="分配人")
    revoked_at = Column(DateTime, comment="撤销时间")
    revoked_by = Column(String(100), comment="撤销人")

    # 使用情况
    usage_count = Column(Integer, nullable=False, default=0, comment="已使用次数")
    notes = Column(Text, comment="备注")

    created_at = Column(DateTime, server_default=func.now(), comment="创建时间")
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), comment="更新时间")

    __table_args__ = (
        UniqueConstraint("user_id", "discount_id", name="user_discount_unique"),
        Index("idx_user_discounts_user_revoked", "user_id", "revoked_at"),
        {'comment': '用户折扣分配表'}
    )


class DiscountAuditDB(Base):
    """折扣审计表"""

    __tablename__ = "discount_audits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(50), nullable=False, comment="用户ID")
    discount_id = Column(
        Integer,
        ForeignKey("discounts.id", ondelete="CASCADE"),
        nullable=False,
        comment="折扣ID"
    )
    action = Column(String(20), nullable=False, index=True, comment="动作")

    # 金额快照，仅应用/失败时记录
    original_amount = Column(Numeric(18, 6), comment="原始金额")
    discount_amount = Column(Numeric(18, 6), comment="折扣金额")
    final_amount = Column(Numeric(18, 6), comment="最终金额")
    discount_type = Column(String(20), comment="折扣类型快照")
    discount_value = Column(Numeric(18, 6), comment="折扣值快照")

    # metadata 为 Declarative 保留名
    audit_metadata = Column("metadata", JSON, comment="附加信息")
    performed_by = Column(String(100), comment="操作人")
    ip_address = Column(String(45), comment="请求IP")
    created_at = Column(DateTime, nullable=False, comment="创建时间")

    __table_args__ = (
        Index("idx_discount_audits_user_time", "user_id", "created_at"),
        Index("idx_discount_audits_discount_action", "discount_id", "action"),
        {'comment': '折扣审计表'}
    )
