"""
折扣业务服务层
协调资格解析、叠加策略、使用次数台账与审计，每个操作是一个独立事务
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import List, Optional, Dict, Any, Iterable, AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from user_discounts.core.config import settings as default_settings
from user_discounts.core.database import get_session_maker
from user_discounts.core.exceptions import (
    DiscountNotFoundException,
    DiscountNotAssignedException,
    DiscountInactiveException,
    DiscountExpiredException,
    UsageLimitExceededException,
    DiscountUnavailableException,
)
from user_discounts.models.discount import (
    Discount, UserDiscount, DiscountAudit, AuditAction, DiscountApplicationResult
)
from user_discounts.models.events import DiscountEvent
from user_discounts.repositories.discount_repository import DiscountRepository
from user_discounts.repositories.user_discount_repository import UserDiscountRepository
from user_discounts.repositories.discount_audit_repository import DiscountAuditRepository
from user_discounts.services.eligibility_resolver import EligibilityResolver
from user_discounts.services.stacking_strategies import DiscountStackingStrategy, create_stacking_strategy
from user_discounts.services.discount_notifier import (
    DiscountNotifier, NullDiscountNotifier, create_discount_notifier
)

logger = logging.getLogger(__name__)


class DiscountService:
    """折扣业务服务"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        strategy: DiscountStackingStrategy,
        notifier: Optional[DiscountNotifier] = None,
        enable_audit: bool = True
    ):
        self.session_factory = session_factory
        self.strategy = strategy
        self.notifier = notifier or NullDiscountNotifier()
        self.enable_audit = enable_audit

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        """开启一个事务，成功提交、异常回滚；存储错误转换为可重试的不可用异常"""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error(f"折扣存储操作失败 {operation}: {e}")
            raise DiscountUnavailableException(operation, e) from e

    async def _notify(self, event: DiscountEvent) -> None:
        """事务提交后发送通知，失败不影响已提交的结果"""
        try:
            await self.notifier.notify(event)
        except Exception as e:
            logger.warning(f"折扣事件通知失败 {event.event_type.value} user={event.user_id}: {e}")

    async def assign_discount(
        self,
        user_id: str,
        discount_id: int,
        assigned_by: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None
    ) -> UserDiscount:
        """分配折扣给用户，已撤销的分配会被重新激活并清零使用次数"""
        options = options or {}

        async with self._transaction("assign_discount") as session:
            discount_repo = DiscountRepository(session)
            user_discount_repo = UserDiscountRepository(session)

            db_discount = await discount_repo.find(discount_id)
            if not db_discount:
                raise DiscountNotFoundException(discount_id)
            if not db_discount.is_active:
                raise DiscountInactiveException(discount_id)

            discount = discount_repo.to_model(db_discount)
            db_user_discount = await user_discount_repo.assign_to_user(
                user_id, discount_id, assigned_by, options
            )
            user_discount = user_discount_repo.to_model(db_user_discount, discount)

            if self.enable_audit:
                await DiscountAuditRepository(session).create_audit(DiscountAudit(
                    user_id=user_id,
                    discount_id=discount_id,
                    action=AuditAction.ASSIGNED,
                    metadata=options,
                    performed_by=assigned_by,
                    ip_address=ip_address
                ))

        logger.info(f"折扣已分配: user={user_id} discount={discount_id} by={assigned_by}")
        await self._notify(DiscountEvent.assigned(user_id, discount, assigned_by, options))
        return user_discount

    async def revoke_discount(
        self,
        user_id: str,
        discount_id: int,
        revoked_by: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> bool:
        """撤销用户折扣，没有有效分配时返回False"""
        async with self._transaction("revoke_discount") as session:
            discount_repo = DiscountRepository(session)

            db_discount = await discount_repo.find(discount_id, include_deleted=True)
            if not db_discount:
                raise DiscountNotFoundException(discount_id)

            revoked = await UserDiscountRepository(session).revoke_from_user(user_id, discount_id, revoked_by)
            if not revoked:
                return False

            discount = discount_repo.to_model(db_discount)
            if self.enable_audit:
                await DiscountAuditRepository(session).create_audit(DiscountAudit(
                    user_id=user_id,
                    discount_id=discount_id,
                    action=AuditAction.REVOKED,
                    performed_by=revoked_by,
                    ip_address=ip_address
                ))

        logger.info(f"折扣已撤销: user={user_id} discount={discount_id} by={revoked_by}")
        await self._notify(DiscountEvent.revoked(user_id, discount, revoked_by))
        return True

    async def get_eligible_discounts(self, user_id: str) -> List[Discount]:
        """获取用户当前可用的折扣，按优先级降序"""
        async with self._transaction("get_eligible_discounts") as session:
            return await self._resolver(session).eligible_for(user_id)

    async def is_eligible_for(self, user_id: str, discount_id: int) -> bool:
        """折扣有效、分配有效且未达到使用上限"""
        async with self._transaction("is_eligible_for") as session:
            return await self._resolver(session).is_eligible_for(user_id, discount_id)

    async def ensure_eligible(self, user_id: str, discount_id: int) -> Discount:
        """
        校验用户可以使用该折扣，否则抛出具体原因
        用于需要向调用方说明不可用原因的场景
        """
        async with self._transaction("ensure_eligible") as session:
            discount_repo = DiscountRepository(session)

            db_discount = await discount_repo.find(discount_id)
            if not db_discount:
                raise DiscountNotFoundException(discount_id)
            discount = discount_repo.to_model(db_discount)

            if not discount.is_active:
                raise DiscountInactiveException(discount_id)
            if not discount.has_started():
                raise DiscountInactiveException(discount_id, reason="折扣尚未生效")
            if discount.is_expired():
                raise DiscountExpiredException(discount_id)
            if discount.is_exhausted():
                raise UsageLimitExceededException(discount_id)

            db_user_discount = await UserDiscountRepository(session).find(user_id, discount_id)
            if not db_user_discount or db_user_discount.revoked_at is not None:
                raise DiscountNotAssignedException(user_id, discount_id)
            if db_user_discount.usage_count >= discount.max_usage_per_user:
                raise UsageLimitExceededException(discount_id, user_id)

            return discount

    async def calculate_discounts(
        self,
        user_id: str,
        amount: Decimal,
        discount_ids: Optional[Iterable[int]] = None
    ) -> DiscountApplicationResult:
        """预览折扣结果，不加锁、不修改使用次数、不写审计"""
        amount = Decimal(amount)
        if amount <= 0:
            return DiscountApplicationResult.passthrough(amount)

        async with self._transaction("calculate_discounts") as session:
            eligible = await self._resolver(session).eligible_for(user_id, discount_ids)

        if not eligible:
            return DiscountApplicationResult.passthrough(amount)
        return self.strategy.apply(amount, eligible)

    async def apply_discounts(
        self,
        user_id: str,
        amount: Decimal,
        discount_ids: Optional[Iterable[int]] = None,
        performed_by: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> DiscountApplicationResult:
        """
        应用折扣，资格解析、使用次数自增与审计在同一事务中完成

        加锁复查发现单用户或总使用次数已达上限时整个事务回滚，
        另开事务记录失败审计后返回零折扣结果；没有可用折扣时同样返回零折扣结果
        """
        amount = Decimal(amount)
        if amount <= 0:
            return DiscountApplicationResult.passthrough(amount)

        try:
            async with self._transaction("apply_discounts") as session:
                eligible = await self._resolver(session).eligible_for(user_id, discount_ids)
                if not eligible:
                    return DiscountApplicationResult.passthrough(amount)

                result = self.strategy.apply(amount, eligible)

                user_discount_repo = UserDiscountRepository(session)
                discount_repo = DiscountRepository(session)
                for discount in result.applied_discounts:
                    if not await user_discount_repo.increment_usage_locked(user_id, discount.id):
                        raise UsageLimitExceededException(discount.id, user_id)
                    if not await discount_repo.increment_total_usage(discount.id):
                        raise UsageLimitExceededException(discount.id)

                if self.enable_audit:
                    audit_repo = DiscountAuditRepository(session)
                    for discount in result.applied_discounts:
                        await audit_repo.create_audit(self._application_audit(
                            AuditAction.APPLIED, user_id, discount, result,
                            performed_by, ip_address
                        ))
        except UsageLimitExceededException as e:
            logger.warning(f"折扣使用次数已达上限，本次应用已回滚: user={user_id} discount={e.discount_id}")
            await self._record_failure(user_id, amount, eligible, e, performed_by, ip_address)
            return DiscountApplicationResult.passthrough(amount)

        if result.has_discounts:
            logger.info(
                f"折扣已应用: user={user_id} amount={amount} discount={result.discount_amount} "
                f"count={result.discount_count}"
            )
            await self._notify(DiscountEvent.applied(user_id, result, performed_by))
        return result

    async def get_discount_by_code(self, code: str) -> Optional[Discount]:
        async with self._transaction("get_discount_by_code") as session:
            discount_repo = DiscountRepository(session)
            db_discount = await discount_repo.find_by_code(code)
            return discount_repo.to_model(db_discount) if db_discount else None

    async def get_valid_discounts(self) -> List[Discount]:
        async with self._transaction("get_valid_discounts") as session:
            discount_repo = DiscountRepository(session)
            return discount_repo.to_models(await discount_repo.get_valid_discounts())

    async def get_audit_trail(
        self,
        user_id: str,
        discount_id: Optional[int] = None,
        action: Optional[AuditAction] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[DiscountAudit]:
        """查询用户的折扣审计记录，已软删除折扣的历史记录同样返回"""
        async with self._transaction("get_audit_trail") as session:
            audit_repo = DiscountAuditRepository(session)
            db_audits = await audit_repo.get_audits(
                user_id=user_id,
                discount_id=discount_id,
                action=action,
                limit=limit,
                offset=offset
            )
            return [audit_repo.to_model(db_audit) for db_audit in db_audits]

    def _resolver(self, session: AsyncSession) -> EligibilityResolver:
        return EligibilityResolver(UserDiscountRepository(session), DiscountRepository(session))

    def _application_audit(
        self,
        action: AuditAction,
        user_id: str,
        discount: Discount,
        result: DiscountApplicationResult,
        performed_by: Optional[str],
        ip_address: Optional[str],
        extra: Optional[Dict[str, Any]] = None
    ) -> DiscountAudit:
        metadata = {
            "strategy": self.strategy.name,
            "total_discounts_applied": result.discount_count,
        }
        metadata.update(extra or {})
        return DiscountAudit(
            user_id=user_id,
            discount_id=discount.id,
            action=action,
            original_amount=result.original_amount,
            discount_amount=result.discount_amount,
            final_amount=result.final_amount,
            discount_type=discount.discount_type,
            discount_value=discount.discount_value,
            metadata=metadata,
            performed_by=performed_by,
            ip_address=ip_address
        )

    async def _record_failure(
        self,
        user_id: str,
        amount: Decimal,
        eligible: List[Discount],
        error: UsageLimitExceededException,
        performed_by: Optional[str],
        ip_address: Optional[str]
    ) -> None:
        """在独立事务中写入失败审计，写入失败只记日志"""
        if not self.enable_audit:
            return

        discount = next((d for d in eligible if d.id == error.discount_id), None)
        if discount is None:
            return

        try:
            async with self._transaction("record_failure") as session:
                await DiscountAuditRepository(session).create_audit(self._application_audit(
                    AuditAction.FAILED, user_id, discount,
                    DiscountApplicationResult.passthrough(amount),
                    performed_by, ip_address,
                    extra={"error_code": error.error_code, "reason": error.message}
                ))
        except DiscountUnavailableException as e:
            logger.error(f"失败审计写入失败: user={user_id} discount={error.discount_id}: {e.message}")


def create_discount_service(settings=default_settings, session_factory: Optional[async_sessionmaker] = None) -> DiscountService:
    """根据配置组装折扣服务，数据库需已初始化"""
    return DiscountService(
        session_factory=session_factory or get_session_maker(),
        strategy=create_stacking_strategy(settings),
        notifier=create_discount_notifier(settings),
        enable_audit=settings.discount_enable_audit
    )
