"""
折扣事件模型 - 分配/撤销/应用后对外发送的通知
"""

from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field
from enum import Enum

from user_discounts.models.discount import Discount, DiscountApplicationResult


class DiscountEventType(str, Enum):
    """折扣事件类型"""
    ASSIGNED = "discount.assigned"
    REVOKED = "discount.revoked"
    APPLIED = "discount.applied"


class DiscountEvent(BaseModel):
    """折扣事件"""

    event_type: DiscountEventType = Field(..., description="事件类型")
    user_id: str = Field(..., description="用户ID")
    discount: Optional[Discount] = Field(None, description="分配/撤销的折扣")
    result: Optional[DiscountApplicationResult] = Field(None, description="折扣应用结果")
    performed_by: Optional[str] = Field(None, description="操作人")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=datetime.now)

    @classmethod
    def assigned(
        cls,
        user_id: str,
        discount: Discount,
        assigned_by: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None
    ) -> "DiscountEvent":
        return cls(
            event_type=DiscountEventType.ASSIGNED,
            user_id=user_id,
            discount=discount,
            performed_by=assigned_by,
            metadata=options or {}
        )

    @classmethod
    def revoked(cls, user_id: str, discount: Discount, revoked_by: Optional[str] = None) -> "DiscountEvent":
        return cls(
            event_type=DiscountEventType.REVOKED,
            user_id=user_id,
            discount=discount,
            performed_by=revoked_by
        )

    @classmethod
    def applied(
        cls,
        user_id: str,
        result: DiscountApplicationResult,
        performed_by: Optional[str] = None
    ) -> "DiscountEvent":
        return cls(
            event_type=DiscountEventType.APPLIED,
            user_id=user_id,
            result=result,
            performed_by=performed_by,
            metadata={"discount_count": result.discount_count}
        )

    def to_message(self) -> Dict[str, Any]:
        """序列化为可发布的消息"""
        return self.model_dump(mode="json")
