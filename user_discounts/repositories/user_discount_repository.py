"""
用户折扣分配与使用次数数据库操作层
"""

import logging
from typing import List, Optional, Dict, Any, Iterable
from datetime import datetime

from sqlalchemy import select, update, and_, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from user_discounts.core.exceptions import DiscountAlreadyAssignedException
from user_discounts.models.discount import Discount, UserDiscount
from user_discounts.models.database.discount_db import DiscountDB, UserDiscountDB
from user_discounts.repositories.discount_repository import DiscountRepository, valid_discount_conditions

logger = logging.getLogger(__name__)


class UserDiscountRepository:
    """用户折扣分配数据库操作类"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find(
        self,
        user_id: str,
        discount_id: int,
        for_update: bool = False
    ) -> Optional[UserDiscountDB]:
        """获取用户对某折扣的分配记录（包括已撤销的）"""
        query = select(UserDiscountDB).where(
            and_(
                UserDiscountDB.user_id == user_id,
                UserDiscountDB.discount_id == discount_id
            )
        )
        if for_update:
            query = query.with_for_update()

        # 使用次数由不同步会话的UPDATE修改，这里总是以数据库为准
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_eligible_discounts_for_user(
        self,
        user_id: str,
        discount_ids: Optional[Iterable[int]] = None,
        current_time: Optional[datetime] = None
    ) -> List[DiscountDB]:
        """
        获取用户当前可用的折扣
        条件：已分配、未撤销、未达到单用户上限、折扣本身有效
        结果按优先级降序，优先级相同按ID升序
        """
        if current_time is None:
            current_time = datetime.now()

        conditions = [
            UserDiscountDB.user_id == user_id,
            UserDiscountDB.revoked_at.is_(None),
            UserDiscountDB.usage_count < DiscountDB.max_usage_per_user,
            *valid_discount_conditions(current_time)
        ]

        if discount_ids:
            conditions.append(DiscountDB.id.in_(list(discount_ids)))

        query = select(DiscountDB).join(
            UserDiscountDB, UserDiscountDB.discount_id == DiscountDB.id
        ).where(
            and_(*conditions)
        ).order_by(desc(DiscountDB.priority), DiscountDB.id)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def assign_to_user(
        self,
        user_id: str,
        discount_id: int,
        assigned_by: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None
    ) -> UserDiscountDB:
        """
        分配折扣给用户
        已撤销的记录会被重新激活，使用次数清零
        """
        options = options or {}
        now = datetime.now()

        # 锁住已有记录，并发重新分配同一撤销记录时只有一个能激活
        existing = await self.find(user_id, discount_id, for_update=True)

        if existing:
            if existing.revoked_at is None:
                raise DiscountAlreadyAssignedException(user_id, discount_id)

            # 重新分配视为一次全新的授予
            existing.revoked_at = None
            existing.revoked_by = None
            existing.assigned_at = now
            existing.assigned_by = assigned_by
            existing.usage_count = 0
            existing.notes = options.get("notes")
            await self.db.flush()
            logger.info(f"折扣重新分配: user={user_id} discount={discount_id}")
            return existing

        user_discount = UserDiscountDB(
            user_id=user_id,
            discount_id=discount_id,
            assigned_at=now,
            assigned_by=assigned_by,
            usage_count=0,
            notes=options.get("notes")
        )
        self.db.add(user_discount)
        try:
            await self.db.flush()
        except IntegrityError as e:
            # 并发分配时唯一约束冲突
            raise DiscountAlreadyAssignedException(user_id, discount_id) from e
        return user_discount

    async def revoke_from_user(
        self,
        user_id: str,
        discount_id: int,
        revoked_by: Optional[str] = None
    ) -> bool:
        """撤销用户折扣，没有有效分配时返回False"""
        result = await self.db.execute(
            update(UserDiscountDB)
            .where(
                and_(
                    UserDiscountDB.user_id == user_id,
                    UserDiscountDB.discount_id == discount_id,
                    UserDiscountDB.revoked_at.is_(None)
                )
            )
            .values(revoked_at=datetime.now(), revoked_by=revoked_by)
        )
        return result.rowcount > 0

    async def user_has_discount(self, user_id: str, discount_id: int) -> bool:
        """用户是否拥有有效（未撤销）的分配"""
        result = await self.db.execute(
            select(UserDiscountDB.id).where(
                and_(
                    UserDiscountDB.user_id == user_id,
                    UserDiscountDB.discount_id == discount_id,
                    UserDiscountDB.revoked_at.is_(None)
                )
            )
        )
        return result.first() is not None

    async def increment_usage_locked(self, user_id: str, discount_id: int) -> bool:
        """
        加锁增加用户的折扣使用次数

        先以 SELECT ... FOR UPDATE 锁住 (user_id, discount_id) 行并复查上限，
        再用带上限条件的 UPDATE 自增，不支持行锁的存储也不会越过上限。
        返回False表示记录不存在、已撤销或已达上限。
        """
        locked = await self.db.execute(
            select(UserDiscountDB.usage_count, DiscountDB.max_usage_per_user)
            .join(DiscountDB, DiscountDB.id == UserDiscountDB.discount_id)
            .where(
                and_(
                    UserDiscountDB.user_id == user_id,
                    UserDiscountDB.discount_id == discount_id,
                    UserDiscountDB.revoked_at.is_(None)
                )
            )
            .with_for_update(of=UserDiscountDB)
        )
        row = locked.first()
        if row is None or row.usage_count >= row.max_usage_per_user:
            return False

        result = await self.db.execute(
            update(UserDiscountDB)
            .where(
                and_(
                    UserDiscountDB.user_id == user_id,
                    UserDiscountDB.discount_id == discount_id,
                    UserDiscountDB.revoked_at.is_(None),
                    UserDiscountDB.usage_count < row.max_usage_per_user
                )
            )
            .values(usage_count=UserDiscountDB.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def get_user_assignments(self, user_id: str, include_revoked: bool = False) -> List[UserDiscount]:
        """获取用户的所有分配记录及其折扣"""
        conditions = [UserDiscountDB.user_id == user_id]
        if not include_revoked:
            conditions.append(UserDiscountDB.revoked_at.is_(None))

        result = await self.db.execute(
            select(UserDiscountDB, DiscountDB)
            .join(DiscountDB, DiscountDB.id == UserDiscountDB.discount_id)
            .where(and_(*conditions))
            .order_by(desc(UserDiscountDB.assigned_at))
        )
        discount_repo = DiscountRepository(self.db)
        return [
            self.to_model(row.UserDiscountDB, discount_repo.to_model(row.DiscountDB))
            for row in result.fetchall()
        ]

    def to_model(self, db_user_discount: UserDiscountDB, discount: Optional[Discount] = None) -> UserDiscount:
        """转换为Pydantic模型"""
        return UserDiscount(
            id=db_user_discount.id,
            user_id=db_user_discount.user_id,
            discount_id=db_user_discount.discount_id,
            assigned_at=db_user_discount.assigned_at,
            assigned_by=db_user_discount.assigned_by,
            revoked_at=db_user_discount.revoked_at,
            revoked_by=db_user_discount.revoked_by,
            usage_count=db_user_discount.usage_count or 0,
            notes=db_user_discount.notes,
            discount=discount
        )
