"""
折扣资格解析
"""

from typing import List, Optional, Iterable
from datetime import datetime

from user_discounts.models.discount import Discount
from user_discounts.repositories.discount_repository import DiscountRepository
from user_discounts.repositories.user_discount_repository import UserDiscountRepository


class EligibilityResolver:
    """解析用户当前可用的折扣，只读无副作用"""

    def __init__(self, user_discount_repo: UserDiscountRepository, discount_repo: DiscountRepository):
        self.user_discount_repo = user_discount_repo
        self.discount_repo = discount_repo

    async def eligible_for(
        self,
        user_id: str,
        discount_ids: Optional[Iterable[int]] = None,
        current_time: Optional[datetime] = None
    ) -> List[Discount]:
        """
        用户可用折扣：已分配且未撤销、未达单用户上限、折扣有效
        按优先级降序，同优先级按ID升序；discount_ids 不为空时取交集
        """
        db_discounts = await self.user_discount_repo.get_eligible_discounts_for_user(
            user_id=user_id,
            discount_ids=discount_ids,
            current_time=current_time
        )
        return self.discount_repo.to_models(db_discounts)

    async def is_eligible_for(self, user_id: str, discount_id: int) -> bool:
        eligible = await self.eligible_for(user_id, [discount_id])
        return any(discount.id == discount_id for discount in eligible)
