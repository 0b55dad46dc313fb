"""
折扣相关数据模型
"""

from decimal import Decimal
from datetime import datetime
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, validator
from enum import Enum


class DiscountType(str, Enum):
    """折扣类型枚举"""
    PERCENTAGE = "percentage"  # 百分比折扣，折扣值为0-100
    FIXED = "fixed"  # 固定金额折扣


class AuditAction(str, Enum):
    """审计动作枚举"""
    ASSIGNED = "assigned"
    REVOKED = "revoked"
    APPLIED = "applied"
    FAILED = "failed"


class Discount(BaseModel):
    """折扣规则模型"""

    id: Optional[int] = Field(None, description="折扣ID")
    code: str = Field(..., min_length=1, max_length=50, description="折扣代码")
    name: str = Field(..., description="折扣名称")
    description: Optional[str] = Field(None, max_length=500, description="折扣描述")
    discount_type: DiscountType = Field(..., description="折扣计算类型")
    discount_value: Decimal = Field(..., ge=0, description="折扣值")
    starts_at: Optional[datetime] = Field(None, description="生效时间")
    expires_at: Optional[datetime] = Field(None, description="过期时间")
    max_usage_per_user: int = Field(default=1, ge=1, description="单用户使用次数上限")
    max_total_usage: Optional[int] = Field(None, ge=0, description="总使用次数上限")
    current_usage: int = Field(default=0, ge=0, description="已使用总次数")
    is_active: bool = Field(default=True, description="是否启用")
    priority: int = Field(default=0, description="优先级，越大越先应用")
    conditions: Optional[Dict[str, Any]] = Field(None, description="扩展条件")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = Field(None, description="软删除时间")

    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def has_started(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        return self.starts_at is None or self.starts_at <= now

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        return self.expires_at is not None and now > self.expires_at

    def is_exhausted(self) -> bool:
        """总使用次数是否已用完"""
        return self.max_total_usage is not None and self.current_usage >= self.max_total_usage

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """检查折扣当前是否可用"""
        now = now or datetime.now()
        return (
            self.is_active and
            not self.is_deleted() and
            self.has_started(now) and
            not self.is_expired(now) and
            not self.is_exhausted()
        )

    def is_percentage(self) -> bool:
        return self.discount_type == DiscountType.PERCENTAGE

    def is_fixed(self) -> bool:
        return self.discount_type == DiscountType.FIXED


class DiscountCreate(BaseModel):
    """创建折扣模型"""

    code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(...)
    description: Optional[str] = Field(None, max_length=500)
    discount_type: DiscountType = Field(...)
    discount_value: Decimal = Field(..., ge=0)
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    max_usage_per_user: int = Field(default=1, ge=1)
    max_total_usage: Optional[int] = Field(None, ge=0)
    is_active: bool = True
    priority: int = 0
    conditions: Optional[Dict[str, Any]] = None

    @validator('expires_at')
    def validate_validity_period(cls, v, values):
        """验证有效期"""
        if v is not None and values.get('starts_at') is not None and v <= values['starts_at']:
            raise ValueError('过期时间必须晚于生效时间')
        return v


class UserDiscount(BaseModel):
    """用户折扣分配记录"""

    id: Optional[int] = None
    user_id: str = Field(..., description="用户ID")
    discount_id: int = Field(..., description="折扣ID")
    assigned_at: datetime = Field(default_factory=datetime.now, description="分配时间")
    assigned_by: Optional[str] = Field(None, description="分配人")
    revoked_at: Optional[datetime] = Field(None, description="撤销时间")
    revoked_by: Optional[str] = Field(None, description="撤销人")
    usage_count: int = Field(default=0, ge=0, description="已使用次数")
    notes: Optional[str] = Field(None, description="备注")
    discount: Optional[Discount] = Field(None, description="关联折扣")

    def is_active(self) -> bool:
        return self.revoked_at is None

    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def has_reached_usage_limit(self) -> bool:
        if self.discount is None:
            return True
        return self.usage_count >= self.discount.max_usage_per_user

    def can_use(self, now: Optional[datetime] = None) -> bool:
        """是否可以使用：未撤销、未达上限且折扣本身有效"""
        return (
            self.is_active() and
            not self.has_reached_usage_limit() and
            self.discount.is_valid(now)
        )


class DiscountAudit(BaseModel):
    """折扣审计记录，只追加不修改"""

    id: Optional[int] = None
    user_id: str
    discount_id: int
    action: AuditAction
    original_amount: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    final_amount: Optional[Decimal] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[Decimal] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    performed_by: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)


class DiscountApplicationResult(BaseModel):
    """折扣应用结果"""

    original_amount: Decimal = Field(..., description="原始金额")
    discount_amount: Decimal = Field(default=Decimal("0"), description="折扣金额")
    final_amount: Decimal = Field(..., description="最终金额")
    applied_discounts: List[Discount] = Field(default_factory=list, description="应用的折扣")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def passthrough(cls, amount: Decimal, metadata: Optional[Dict[str, Any]] = None) -> "DiscountApplicationResult":
        """不打折，原样返回金额"""
        return cls(
            original_amount=amount,
            discount_amount=Decimal("0"),
            final_amount=amount,
            metadata=metadata or {}
        )

    @property
    def discount_percentage(self) -> Decimal:
        if self.original_amount <= 0:
            return Decimal("0")
        return self.discount_amount / self.original_amount * 100

    @property
    def has_discounts(self) -> bool:
        return len(self.applied_discounts) > 0

    @property
    def discount_count(self) -> int:
        return len(self.applied_discounts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_amount": self.original_amount,
            "discount_amount": self.discount_amount,
            "final_amount": self.final_amount,
            "discount_percentage": self.discount_percentage,
            "applied_discounts": [
                {
                    "id": discount.id,
                    "name": discount.name,
                    "code": discount.code,
                    "type": discount.discount_type.value,
                    "value": discount.discount_value,
                }
                for discount in self.applied_discounts
            ],
            "metadata": self.metadata,
        }
