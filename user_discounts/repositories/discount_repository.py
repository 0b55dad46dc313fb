"""
折扣规则数据库操作层
"""

from typing import List, Optional
from datetime import datetime

from sqlalchemy import select, update, and_, or_, desc
from sqlalchemy.ext.asyncio import AsyncSession

from user_discounts.models.discount import Discount, DiscountCreate
from user_discounts.models.database.discount_db import DiscountDB


def valid_discount_conditions(current_time: datetime) -> list:
    """折扣有效条件：启用、未删除、在有效期内、未超过总使用次数"""
    return [
        DiscountDB.is_active.is_(True),
        DiscountDB.deleted_at.is_(None),
        or_(DiscountDB.starts_at.is_(None), DiscountDB.starts_at <= current_time),
        or_(DiscountDB.expires_at.is_(None), DiscountDB.expires_at >= current_time),
        or_(
            DiscountDB.max_total_usage.is_(None),
            DiscountDB.current_usage < DiscountDB.max_total_usage
        ),
    ]


class DiscountRepository:
    """折扣规则数据库操作类"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find(self, discount_id: int, include_deleted: bool = False) -> Optional[DiscountDB]:
        """根据ID获取折扣，默认不返回已软删除的折扣"""
        query = select(DiscountDB).where(DiscountDB.id == discount_id)
        if not include_deleted:
            query = query.where(DiscountDB.deleted_at.is_(None))

        result = await self.db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def find_by_code(self, code: str) -> Optional[DiscountDB]:
        """根据折扣代码获取折扣"""
        result = await self.db.execute(
            select(DiscountDB).where(
                and_(
                    DiscountDB.code == code,
                    DiscountDB.deleted_at.is_(None)
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_valid_discounts(self, current_time: Optional[datetime] = None) -> List[DiscountDB]:
        """获取当前有效的折扣，按优先级降序"""
        if current_time is None:
            current_time = datetime.now()

        query = select(DiscountDB).where(
            and_(*valid_discount_conditions(current_time))
        ).order_by(desc(DiscountDB.priority), DiscountDB.id)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def create(self, discount_data: DiscountCreate) -> DiscountDB:
        """创建折扣"""
        data = discount_data.model_dump()
        data["discount_type"] = discount_data.discount_type.value
        db_discount = DiscountDB(**data, current_usage=0)

        self.db.add(db_discount)
        await self.db.flush()
        await self.db.refresh(db_discount)
        return db_discount

    async def soft_delete(self, discount_id: int) -> bool:
        """软删除折扣，历史审计仍可关联"""
        result = await self.db.execute(
            update(DiscountDB)
            .where(
                and_(
                    DiscountDB.id == discount_id,
                    DiscountDB.deleted_at.is_(None)
                )
            )
            .values(deleted_at=datetime.now())
        )
        return result.rowcount > 0

    async def restore(self, discount_id: int) -> bool:
        """恢复软删除的折扣"""
        result = await self.db.execute(
            update(DiscountDB)
            .where(
                and_(
                    DiscountDB.id == discount_id,
                    DiscountDB.deleted_at.is_not(None)
                )
            )
            .values(deleted_at=None)
        )
        return result.rowcount > 0

    async def increment_total_usage(self, discount_id: int) -> bool:
        """
        原子增加折扣总使用次数
        带总上限条件自增，不同用户并发抢最后一次名额时只有一个成功；返回False表示已用完
        """
        result = await self.db.execute(
            update(DiscountDB)
            .where(
                and_(
                    DiscountDB.id == discount_id,
                    or_(
                        DiscountDB.max_total_usage.is_(None),
                        DiscountDB.current_usage < DiscountDB.max_total_usage
                    )
                )
            )
            .values(current_usage=DiscountDB.current_usage + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def to_model(self, db_discount: DiscountDB) -> Discount:
        """转换为Pydantic模型"""
        return Discount(
            id=db_discount.id,
            code=db_discount.code,
            name=db_discount.name,
            description=db_discount.description,
            discount_type=db_discount.discount_type,
            discount_value=db_discount.discount_value,
            starts_at=db_discount.starts_at,
            expires_at=db_discount.expires_at,
            max_usage_per_user=db_discount.max_usage_per_user,
            max_total_usage=db_discount.max_total_usage,
            current_usage=db_discount.current_usage or 0,
            is_active=db_discount.is_active,
            priority=db_discount.priority or 0,
            conditions=db_discount.conditions,
            created_at=db_discount.created_at,
            updated_at=db_discount.updated_at,
            deleted_at=db_discount.deleted_at
        )

    def to_models(self, db_discounts: List[DiscountDB]) -> List[Discount]:
        return [self.to_model(db_discount) for db_discount in db_discounts]
