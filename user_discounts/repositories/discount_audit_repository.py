"""
折扣审计数据库操作层 - 只追加
"""

from typing import List, Optional, Dict, Any
from datetime import datetime

from sqlalchemy import select, and_, desc, func
from sqlalchemy.ext.asyncio import AsyncSession

from user_discounts.models.discount import DiscountAudit, AuditAction
from user_discounts.models.database.discount_db import DiscountAuditDB


class DiscountAuditRepository:
    """折扣审计数据库操作类"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_audit(self, audit: DiscountAudit) -> DiscountAuditDB:
        """追加审计记录，与触发它的变更处于同一事务"""
        db_audit = DiscountAuditDB(
            user_id=audit.user_id,
            discount_id=audit.discount_id,
            action=audit.action.value,
            original_amount=audit.original_amount,
            discount_amount=audit.discount_amount,
            final_amount=audit.final_amount,
            discount_type=audit.discount_type.value if audit.discount_type else None,
            discount_value=audit.discount_value,
            audit_metadata=self._json_safe(audit.metadata),
            performed_by=audit.performed_by,
            ip_address=audit.ip_address,
            created_at=audit.created_at
        )
        self.db.add(db_audit)
        await self.db.flush()
        return db_audit

    async def get_audits(
        self,
        user_id: Optional[str] = None,
        discount_id: Optional[int] = None,
        action: Optional[AuditAction] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[DiscountAuditDB]:
        """按用户/折扣/动作/时间范围查询审计记录，最新的在前"""
        conditions = []
        if user_id is not None:
            conditions.append(DiscountAuditDB.user_id == user_id)
        if discount_id is not None:
            conditions.append(DiscountAuditDB.discount_id == discount_id)
        if action is not None:
            conditions.append(DiscountAuditDB.action == action.value)
        if start_date is not None:
            conditions.append(DiscountAuditDB.created_at >= start_date)
        if end_date is not None:
            conditions.append(DiscountAuditDB.created_at <= end_date)

        query = select(DiscountAuditDB).where(
            and_(True, *conditions)
        ).order_by(
            desc(DiscountAuditDB.created_at), desc(DiscountAuditDB.id)
        ).limit(limit).offset(offset)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count_by_action(self, user_id: Optional[str] = None) -> Dict[str, int]:
        """统计各动作的审计条数"""
        query = select(
            DiscountAuditDB.action,
            func.count(DiscountAuditDB.id).label("total")
        ).group_by(DiscountAuditDB.action)

        if user_id is not None:
            query = query.where(DiscountAuditDB.user_id == user_id)

        result = await self.db.execute(query)
        return {row.action: row.total for row in result.fetchall()}

    def to_model(self, db_audit: DiscountAuditDB) -> DiscountAudit:
        """转换为Pydantic模型"""
        return DiscountAudit(
            id=db_audit.id,
            user_id=db_audit.user_id,
            discount_id=db_audit.discount_id,
            action=db_audit.action,
            original_amount=db_audit.original_amount,
            discount_amount=db_audit.discount_amount,
            final_amount=db_audit.final_amount,
            discount_type=db_audit.discount_type,
            discount_value=db_audit.discount_value,
            metadata=db_audit.audit_metadata or {},
            performed_by=db_audit.performed_by,
            ip_address=db_audit.ip_address,
            created_at=db_audit.created_at
        )

    @staticmethod
    def _json_safe(metadata: Dict[str, Any]) -> Dict[str, Any]:
        """JSON列不接受Decimal/datetime，统一转为字符串"""
        safe = {}
        for key, value in (metadata or {}).items():
            if isinstance(value, dict):
                safe[key] = DiscountAuditRepository._json_safe(value)
            elif isinstance(value, (str, int, float, bool)) or value is None:
                safe[key] = value
            else:
                safe[key] = str(value)
        return safe
