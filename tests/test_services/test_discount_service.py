"""
DiscountService业务逻辑测试 - 使用SQLite内存库跑完整事务
"""

import asyncio
import pytest
import pytest_asyncio
from decimal import Decimal
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from user_discounts.core.database import Base
from user_discounts.core.exceptions import (
    DiscountNotFoundException,
    DiscountNotAssignedException,
    DiscountInactiveException,
    DiscountExpiredException,
    DiscountAlreadyAssignedException,
    UsageLimitExceededException,
    DiscountUnavailableException,
)
from user_discounts.models.discount import AuditAction, DiscountType
from user_discounts.models.database.discount_db import DiscountDB, UserDiscountDB
from user_discounts.models.events import DiscountEventType
from user_discounts.repositories.discount_repository import DiscountRepository
from user_discounts.services.discount_notifier import DiscountNotifier
from user_discounts.services.discount_service import DiscountService
from user_discounts.services.eligibility_resolver import EligibilityResolver
from user_discounts.services.stacking_strategies import BestDiscountStrategy, SequentialStackingStrategy


@pytest.mark.asyncio
class TestAssignAndRevoke:
    """分配与撤销"""

    async def test_assign_discount(self, discount_service, create_discount, notifier):
        discount = await create_discount("WELCOME10")

        assignment = await discount_service.assign_discount(
            "user_001", discount.id, assigned_by="admin", options={"notes": "新用户"}
        )

        assert assignment.user_id == "user_001"
        assert assignment.usage_count == 0
        assert assignment.notes == "新用户"
        assert assignment.discount.code == "WELCOME10"
        assert await discount_service.is_eligible_for("user_001", discount.id)

        assert len(notifier.events) == 1
        assert notifier.events[0].event_type == DiscountEventType.ASSIGNED
        assert notifier.events[0].performed_by == "admin"

        audits = await discount_service.get_audit_trail("user_001")
        assert [a.action for a in audits] == [AuditAction.ASSIGNED]
        assert audits[0].metadata == {"notes": "新用户"}

    async def test_assign_unknown_discount(self, discount_service):
        with pytest.raises(DiscountNotFoundException):
            await discount_service.assign_discount("user_001", 9999)

    async def test_assign_inactive_discount(self, discount_service, create_discount):
        discount = await create_discount("OFF", is_active=False)

        with pytest.raises(DiscountInactiveException):
            await discount_service.assign_discount("user_001", discount.id)

    async def test_assign_twice(self, discount_service, create_discount, notifier):
        discount = await create_discount("ONCE")
        await discount_service.assign_discount("user_001", discount.id)

        with pytest.raises(DiscountAlreadyAssignedException):
            await discount_service.assign_discount("user_001", discount.id)

        assert len(notifier.events) == 1

    async def test_assign_soft_deleted_discount(self, discount_service, create_discount, session_factory):
        discount = await create_discount("GONE")
        async with session_factory() as session:
            async with session.begin():
                await DiscountRepository(session).soft_delete(discount.id)

        with pytest.raises(DiscountNotFoundException):
            await discount_service.assign_discount("user_001", discount.id)

    async def test_revoke_discount(self, discount_service, create_discount, notifier):
        discount = await create_discount("REVOKE")
        await discount_service.assign_discount("user_001", discount.id)

        assert await discount_service.revoke_discount("user_001", discount.id, revoked_by="admin")
        assert not await discount_service.is_eligible_for("user_001", discount.id)
        assert notifier.events[-1].event_type == DiscountEventType.REVOKED

        # 没有有效分配时返回False，不写审计也不通知
        assert not await discount_service.revoke_discount("user_001", discount.id)
        assert len(notifier.events) == 2

        audits = await discount_service.get_audit_trail("user_001", action=AuditAction.REVOKED)
        assert len(audits) == 1
        assert audits[0].performed_by == "admin"

    async def test_revoke_unknown_discount(self, discount_service):
        with pytest.raises(DiscountNotFoundException):
            await discount_service.revoke_discount("user_001", 9999)

    async def test_reassign_resets_usage(self, discount_service, create_discount, usage_count):
        discount = await create_discount("AGAIN", max_usage_per_user=1)
        await discount_service.assign_discount("user_001", discount.id)
        await discount_service.apply_discounts("user_001", Decimal("100"))
        assert await usage_count("user_001", discount.id) == 1

        await discount_service.revoke_discount("user_001", discount.id)
        assignment = await discount_service.assign_discount("user_001", discount.id, assigned_by="ops")

        assert assignment.usage_count == 0
        assert assignment.revoked_at is None
        assert assignment.assigned_by == "ops"
        assert await usage_count("user_001", discount.id) == 0
        assert await discount_service.is_eligible_for("user_001", discount.id)


@pytest.mark.asyncio
class TestEligibility:

    async def test_eligible_discounts_ordered_by_priority(self, discount_service, create_discount):
        low = await create_discount("LOW", priority=1)
        high = await create_discount("HIGH", priority=5)
        same = await create_discount("SAME", priority=1)
        for discount in (low, high, same):
            await discount_service.assign_discount("user_001", discount.id)

        eligible = await discount_service.get_eligible_discounts("user_001")

        assert [d.code for d in eligible] == ["HIGH", "LOW", "SAME"]

    async def test_invalid_discounts_excluded(self, discount_service, create_discount):
        now = datetime.now()
        expired = await create_discount("EXPIRED", expires_at=now - timedelta(days=1))
        future = await create_discount("FUTURE", starts_at=now + timedelta(days=1))
        exhausted = await create_discount("EXHAUSTED", max_total_usage=0)
        valid = await create_discount("VALID")
        for discount in (expired, future, exhausted, valid):
            await discount_service.assign_discount("user_001", discount.id)

        eligible = await discount_service.get_eligible_discounts("user_001")

        assert [d.code for d in eligible] == ["VALID"]
        assert not await discount_service.is_eligible_for("user_001", expired.id)

    async def test_other_users_assignments_ignored(self, discount_service, create_discount):
        discount = await create_discount("MINE")
        await discount_service.assign_discount("user_001", discount.id)

        assert await discount_service.get_eligible_discounts("user_002") == []
        assert not await discount_service.is_eligible_for("user_002", discount.id)

    async def test_ensure_eligible(self, discount_service, create_discount):
        discount = await create_discount("ENSURE")
        await discount_service.assign_discount("user_001", discount.id)

        result = await discount_service.ensure_eligible("user_001", discount.id)

        assert result.code == "ENSURE"

    async def test_ensure_eligible_reasons(self, discount_service, create_discount):
        now = datetime.now()
        expired = await create_discount("E1", expires_at=now - timedelta(days=1))
        future = await create_discount("E2", starts_at=now + timedelta(days=1))
        limited = await create_discount("E3", max_usage_per_user=1)
        unassigned = await create_discount("E4")
        for discount in (expired, future, limited):
            await discount_service.assign_discount("user_001", discount.id)
        await discount_service.apply_discounts("user_001", Decimal("100"), discount_ids=[limited.id])

        with pytest.raises(DiscountExpiredException):
            await discount_service.ensure_eligible("user_001", expired.id)
        with pytest.raises(DiscountInactiveException):
            await discount_service.ensure_eligible("user_001", future.id)
        with pytest.raises(UsageLimitExceededException):
            await discount_service.ensure_eligible("user_001", limited.id)
        with pytest.raises(DiscountNotAssignedException):
            await discount_service.ensure_eligible("user_001", unassigned.id)
        with pytest.raises(DiscountNotFoundException):
            await discount_service.ensure_eligible("user_001", 9999)


@pytest.mark.asyncio
class TestCalculateAndApply:

    async def test_calculate_does_not_mutate(self, discount_service, create_discount, usage_count, notifier):
        discount = await create_discount("PREVIEW", value="10")
        await discount_service.assign_discount("user_001", discount.id)

        for _ in range(3):
            result = await discount_service.calculate_discounts("user_001", Decimal("100"))
            assert result.discount_amount == Decimal("10.00")

        assert await usage_count("user_001", discount.id) == 0
        assert await discount_service.get_audit_trail("user_001", action=AuditAction.APPLIED) == []
        assert len(notifier.events) == 1

    async def test_calculate_with_discount_filter(self, discount_service, create_discount):
        first = await create_discount("F1", value="10", priority=2)
        second = await create_discount("F2", value="20", priority=1)
        for discount in (first, second):
            await discount_service.assign_discount("user_001", discount.id)

        result = await discount_service.calculate_discounts("user_001", Decimal("100"), discount_ids=[second.id])
        assert result.discount_amount == Decimal("20.00")

        # 空列表不做过滤
        result = await discount_service.calculate_discounts("user_001", Decimal("100"), discount_ids=[])
        assert result.discount_amount == Decimal("28.00")

    async def test_apply_sequential(self, discount_service, create_discount, usage_count, notifier):
        first = await create_discount("A", value="10", priority=2)
        second = await create_discount("B", value="20", priority=1)
        for discount in (first, second):
            await discount_service.assign_discount("user_001", discount.id)

        result = await discount_service.apply_discounts(
            "user_001", Decimal("100"), performed_by="checkout", ip_address="10.0.0.1"
        )

        assert result.discount_amount == Decimal("28.00")
        assert result.final_amount == Decimal("72.00")
        assert await usage_count("user_001", first.id) == 1
        assert await usage_count("user_001", second.id) == 1

        audits = await discount_service.get_audit_trail("user_001", action=AuditAction.APPLIED)
        assert sorted(a.discount_id for a in audits) == sorted([first.id, second.id])
        for audit in audits:
            assert audit.original_amount == Decimal("100")
            assert audit.discount_amount == Decimal("28")
            assert audit.final_amount == Decimal("72")
            assert audit.performed_by == "checkout"
            assert audit.ip_address == "10.0.0.1"
            assert audit.metadata == {"strategy": "sequential", "total_discounts_applied": 2}

        assert notifier.events[-1].event_type == DiscountEventType.APPLIED
        assert notifier.events[-1].result.final_amount == Decimal("72.00")

    async def test_apply_increments_total_usage(self, discount_service, create_discount):
        discount = await create_discount("TOTAL", max_usage_per_user=5)
        await discount_service.assign_discount("user_001", discount.id)
        await discount_service.assign_discount("user_002", discount.id)

        await discount_service.apply_discounts("user_001", Decimal("50"))
        await discount_service.apply_discounts("user_002", Decimal("50"))

        by_code = await discount_service.get_discount_by_code("TOTAL")
        assert by_code.current_usage == 2
        assert [d.code for d in await discount_service.get_valid_discounts()] == ["TOTAL"]
        assert await discount_service.get_discount_by_code("UNKNOWN") is None

    async def test_usage_limit_gates_repeated_apply(self, discount_service, create_discount, usage_count):
        discount = await create_discount("TWICE", value="10", max_usage_per_user=2)
        await discount_service.assign_discount("user_001", discount.id)

        amounts = []
        for _ in range(3):
            result = await discount_service.apply_discounts("user_001", Decimal("100"))
            amounts.append(result.discount_amount)

        assert amounts == [Decimal("10.00"), Decimal("10.00"), Decimal("0")]
        assert await usage_count("user_001", discount.id) == 2

    async def test_revoked_discount_contributes_nothing(self, discount_service, create_discount, usage_count):
        discount = await create_discount("REVOKED", value="50")
        await discount_service.assign_discount("user_001", discount.id)
        await discount_service.revoke_discount("user_001", discount.id)

        result = await discount_service.apply_discounts("user_001", Decimal("100"))

        assert result.discount_amount == Decimal("0")
        assert result.final_amount == Decimal("100")
        assert await usage_count("user_001", discount.id) == 0

    async def test_non_positive_amount(self, discount_service, create_discount, usage_count):
        discount = await create_discount("ZERO")
        await discount_service.assign_discount("user_001", discount.id)

        result = await discount_service.apply_discounts("user_001", Decimal("0"))

        assert result.discount_amount == Decimal("0")
        assert result.final_amount == Decimal("0")
        assert await usage_count("user_001", discount.id) == 0

    async def test_rounding(self, discount_service, create_discount):
        discount = await create_discount("THIRD", value="33.33")
        await discount_service.assign_discount("user_001", discount.id)

        result = await discount_service.apply_discounts("user_001", Decimal("100.00"))

        assert result.discount_amount == Decimal("33.33")
        assert result.final_amount == Decimal("66.67")

    async def test_best_strategy_only_consumes_winner(self, session_factory, create_discount, usage_count):
        service = DiscountService(session_factory, BestDiscountStrategy())
        small = await create_discount("S", value="10")
        big = await create_discount("B", value="25")
        fixed = await create_discount("F", discount_type=DiscountType.FIXED, value="15")
        for discount in (small, big, fixed):
            await service.assign_discount("user_001", discount.id)

        result = await service.apply_discounts("user_001", Decimal("100"))

        assert result.discount_amount == Decimal("25.00")
        assert await usage_count("user_001", big.id) == 1
        assert await usage_count("user_001", small.id) == 0
        assert await usage_count("user_001", fixed.id) == 0

    async def test_audit_disabled(self, session_factory, create_discount):
        service = DiscountService(session_factory, SequentialStackingStrategy(), enable_audit=False)
        discount = await create_discount("QUIET")
        await service.assign_discount("user_001", discount.id)
        await service.apply_discounts("user_001", Decimal("100"))

        assert await service.get_audit_trail("user_001") == []

    async def test_audit_trail_keeps_soft_deleted_discounts(self, discount_service, create_discount, session_factory):
        discount = await create_discount("HISTORY")
        await discount_service.assign_discount("user_001", discount.id)
        await discount_service.apply_discounts("user_001", Decimal("100"))
        async with session_factory() as session:
            async with session.begin():
                await DiscountRepository(session).soft_delete(discount.id)

        audits = await discount_service.get_audit_trail("user_001", discount_id=discount.id)

        assert [a.action for a in audits] == [AuditAction.APPLIED, AuditAction.ASSIGNED]
        assert await discount_service.get_eligible_discounts("user_001") == []
        assert await discount_service.revoke_discount("user_001", discount.id)


@pytest.mark.asyncio
class TestNotificationAndFailures:

    async def test_notifier_failure_is_not_fatal(self, session_factory, create_discount, usage_count):
        failing = AsyncMock(spec=DiscountNotifier)
        failing.notify.side_effect = RuntimeError("redis down")
        service = DiscountService(session_factory, SequentialStackingStrategy(), notifier=failing)
        discount = await create_discount("NOTIFY", value="10")

        await service.assign_discount("user_001", discount.id)
        result = await service.apply_discounts("user_001", Decimal("100"))

        assert result.discount_amount == Decimal("10.00")
        assert await usage_count("user_001", discount.id) == 1
        assert failing.notify.await_count == 2

    async def test_no_notification_without_discounts(self, discount_service, notifier):
        result = await discount_service.apply_discounts("user_001", Decimal("100"))

        assert not result.has_discounts
        assert notifier.events == []

    async def test_stale_eligibility_rolls_back(
        self, discount_service, create_discount, usage_count, notifier, monkeypatch
    ):
        """资格检查通过后另一个请求已用完次数，加锁复查时整个事务回滚并返回零折扣"""
        other = await create_discount("OTHER", value="5", priority=9)
        limited = await create_discount("LIMITED", value="10", max_usage_per_user=1)
        await discount_service.assign_discount("user_001", other.id)
        await discount_service.assign_discount("user_001", limited.id)
        await discount_service.apply_discounts("user_001", Decimal("100"), discount_ids=[limited.id])
        assert await usage_count("user_001", limited.id) == 1

        async def stale_eligible_for(self, user_id, discount_ids=None, current_time=None):
            return [other, limited]

        monkeypatch.setattr(EligibilityResolver, "eligible_for", stale_eligible_for)
        events_before = len(notifier.events)

        result = await discount_service.apply_discounts("user_001", Decimal("100"), performed_by="checkout")

        assert result.discount_amount == Decimal("0")
        assert result.final_amount == Decimal("100")
        assert result.applied_discounts == []
        # OTHER 的自增随事务一起回滚
        assert await usage_count("user_001", other.id) == 0
        assert await usage_count("user_001", limited.id) == 1
        assert len(notifier.events) == events_before

        monkeypatch.undo()
        failed = await discount_service.get_audit_trail("user_001", action=AuditAction.FAILED)
        assert len(failed) == 1
        assert failed[0].discount_id == limited.id
        assert failed[0].performed_by == "checkout"
        assert failed[0].discount_amount == Decimal("0")
        assert failed[0].metadata["error_code"] == "USAGE_LIMIT_EXCEEDED"
        applied = await discount_service.get_audit_trail("user_001", action=AuditAction.APPLIED)
        assert len(applied) == 1

    async def test_total_limit_race_between_users(
        self, discount_service, create_discount, usage_count, monkeypatch
    ):
        """两个用户抢最后一次总名额，后到者拿着过期的资格快照也不会超出总上限"""
        shared = await create_discount("LASTONE", value="10", max_total_usage=1, max_usage_per_user=5)
        await discount_service.assign_discount("user_a", shared.id)
        await discount_service.assign_discount("user_b", shared.id)

        first = await discount_service.apply_discounts("user_a", Decimal("100"))
        assert first.discount_amount == Decimal("10.00")

        async def stale_eligible_for(self, user_id, discount_ids=None, current_time=None):
            return [shared]

        monkeypatch.setattr(EligibilityResolver, "eligible_for", stale_eligible_for)
        second = await discount_service.apply_discounts("user_b", Decimal("100"), performed_by="checkout")
        monkeypatch.undo()

        assert second.discount_amount == Decimal("0")
        assert second.final_amount == Decimal("100")
        assert (await discount_service.get_discount_by_code("LASTONE")).current_usage == 1
        # 用户自增已随总次数检查失败一起回滚
        assert await usage_count("user_b", shared.id) == 0

        failed = await discount_service.get_audit_trail("user_b", action=AuditAction.FAILED)
        assert len(failed) == 1
        assert failed[0].metadata["error_code"] == "USAGE_LIMIT_EXCEEDED"
        assert await discount_service.get_audit_trail("user_b", action=AuditAction.APPLIED) == []

    async def test_store_error_becomes_unavailable(self, discount_service, create_discount, monkeypatch):
        discount = await create_discount("BROKEN")
        await discount_service.assign_discount("user_001", discount.id)

        async def broken(self, user_id, discount_id):
            raise OperationalError("UPDATE user_discounts", {}, Exception("database is locked"))

        monkeypatch.setattr(
            "user_discounts.repositories.user_discount_repository.UserDiscountRepository.increment_usage_locked",
            broken
        )

        with pytest.raises(DiscountUnavailableException):
            await discount_service.apply_discounts("user_001", Decimal("100"))

        monkeypatch.undo()
        assert await discount_service.get_audit_trail("user_001", action=AuditAction.APPLIED) == []


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """文件SQLite，每个会话独立连接，用于并发测试"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'discounts.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30}
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.mark.asyncio
async def test_concurrent_apply_never_exceeds_limit(file_session_factory):
    service = DiscountService(file_session_factory, SequentialStackingStrategy())
    async with file_session_factory() as session:
        async with session.begin():
            db_discount = DiscountDB(
                code="RACE",
                name="并发测试",
                discount_type="percentage",
                discount_value=Decimal("10"),
                max_usage_per_user=3,
                current_usage=0,
                is_active=True,
                priority=0
            )
            session.add(db_discount)
        discount_id = db_discount.id
    await service.assign_discount("user_001", discount_id)

    results = await asyncio.gather(
        *[service.apply_discounts("user_001", Decimal("100")) for _ in range(10)],
        return_exceptions=True
    )

    discounted = [
        r for r in results
        if not isinstance(r, BaseException) and r.discount_amount > 0
    ]
    async with file_session_factory() as session:
        usage = (await session.execute(
            select(DiscountDB.current_usage).where(DiscountDB.id == discount_id)
        )).scalar_one()
        user_usage = (await session.execute(
            select(UserDiscountDB.usage_count).where(
                UserDiscountDB.user_id == "user_001",
                UserDiscountDB.discount_id == discount_id
            )
        )).scalar_one()
    applied_audits = await service.get_audit_trail("user_001", action=AuditAction.APPLIED, limit=100)

    assert 1 <= len(discounted) <= 3
    assert user_usage == len(discounted)
    assert usage == len(discounted)
    assert len(applied_audits) == len(discounted)
    for r in results:
        if isinstance(r, BaseException):
            # 次数用完走零折扣返回，只有存储繁忙会抛出
            assert isinstance(r, DiscountUnavailableException)
