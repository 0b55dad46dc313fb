"""
折扣叠加策略
sequential: 按优先级依次在剩余金额上叠加
best: 只取贡献最大的一个折扣
all: 各折扣独立按原价计算后求和
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP, ROUND_HALF_DOWN, ROUND_HALF_EVEN
from typing import List, Dict, Type

from user_discounts.core.exceptions import InvalidStackingStrategyException
from user_discounts.models.discount import Discount, DiscountApplicationResult

logger = logging.getLogger(__name__)

ROUNDING_MODES = {
    "up": ROUND_HALF_UP,
    "half_up": ROUND_HALF_UP,
    "down": ROUND_HALF_DOWN,
    "half_down": ROUND_HALF_DOWN,
    "half_even": ROUND_HALF_EVEN,
}


class DiscountStackingStrategy(ABC):
    """叠加策略基类"""

    name: str = ""

    def __init__(
        self,
        max_percentage_cap: int = 100,
        rounding_mode: str = "half_up",
        rounding_precision: int = 2
    ):
        if rounding_mode not in ROUNDING_MODES:
            raise InvalidStackingStrategyException(f"不支持的舍入模式: {rounding_mode}")
        if not 0 <= max_percentage_cap <= 100:
            raise InvalidStackingStrategyException(f"折扣上限百分比必须在0-100之间: {max_percentage_cap}")

        self.max_percentage_cap = Decimal(max_percentage_cap)
        self.rounding_mode = rounding_mode
        self.rounding_precision = rounding_precision
        self._quantum = Decimal(1).scaleb(-rounding_precision)

    @abstractmethod
    def apply(self, amount: Decimal, discounts: List[Discount]) -> DiscountApplicationResult:
        """在金额上应用一组折扣"""

    def round(self, value: Decimal) -> Decimal:
        return Decimal(value).quantize(self._quantum, rounding=ROUNDING_MODES[self.rounding_mode])

    def max_discount_amount(self, amount: Decimal) -> Decimal:
        """上限百分比对应的最大折扣金额"""
        return amount * self.max_percentage_cap / 100

    def metadata(self) -> Dict[str, object]:
        return {
            "strategy": self.name,
            "max_percentage_cap": int(self.max_percentage_cap)
        }

    def _passthrough(self, amount: Decimal) -> DiscountApplicationResult:
        return DiscountApplicationResult.passthrough(amount, {"strategy": self.name})

    def _build_result(
        self,
        amount: Decimal,
        discount_amount: Decimal,
        applied: List[Discount]
    ) -> DiscountApplicationResult:
        discount_amount = self.round(discount_amount)
        return DiscountApplicationResult(
            original_amount=amount,
            discount_amount=discount_amount,
            final_amount=self.round(amount - discount_amount),
            applied_discounts=applied,
            metadata=self.metadata()
        )


class SequentialStackingStrategy(DiscountStackingStrategy):
    """按优先级依次叠加，每个折扣作用于上一步的剩余金额"""

    name = "sequential"

    def apply(self, amount: Decimal, discounts: List[Discount]) -> DiscountApplicationResult:
        amount = Decimal(amount)
        if amount <= 0:
            return self._passthrough(amount)

        # sorted 是稳定排序，同优先级保持传入顺序
        ordered = sorted(discounts, key=lambda d: d.priority, reverse=True)

        current = amount
        applied: List[Discount] = []

        for discount in ordered:
            step = self._step_amount(current, discount)
            if step <= 0:
                continue

            current -= step
            applied.append(discount)

            # 达到上限后精确截断并停止，不再按比例部分应用
            if (amount - current) / amount * 100 >= self.max_percentage_cap:
                current = amount - self.max_discount_amount(amount)
                break

        final_amount = self.round(current)
        return DiscountApplicationResult(
            original_amount=amount,
            discount_amount=self.round(amount - final_amount),
            final_amount=final_amount,
            applied_discounts=applied,
            metadata=self.metadata()
        )

    def _step_amount(self, current: Decimal, discount: Discount) -> Decimal:
        if discount.is_percentage():
            return self.round(current * discount.discount_value / 100)
        if discount.is_fixed():
            return min(discount.discount_value, current)
        return Decimal("0")


class BestDiscountStrategy(DiscountStackingStrategy):
    """只应用按原价计算贡献最大的一个折扣"""

    name = "best"

    def apply(self, amount: Decimal, discounts: List[Discount]) -> DiscountApplicationResult:
        amount = Decimal(amount)
        if amount <= 0:
            return self._passthrough(amount)

        best = None
        best_amount = Decimal("0")

        for discount in discounts:
            contribution = self._contribution(amount, discount)
            # 严格大于，并列时保留先出现的
            if contribution > best_amount:
                best = discount
                best_amount = contribution

        if best is None:
            return DiscountApplicationResult.passthrough(amount, self.metadata())

        best_amount = min(best_amount, self.max_discount_amount(amount))
        return self._build_result(amount, best_amount, [best])

    def _contribution(self, amount: Decimal, discount: Discount) -> Decimal:
        if discount.is_percentage():
            return amount * discount.discount_value / 100
        if discount.is_fixed():
            return min(discount.discount_value, amount)
        return Decimal("0")


class AllDiscountsStrategy(DiscountStackingStrategy):
    """所有折扣都按原价独立计算后求和，再受上限约束"""

    name = "all"

    def apply(self, amount: Decimal, discounts: List[Discount]) -> DiscountApplicationResult:
        amount = Decimal(amount)
        if amount <= 0:
            return self._passthrough(amount)

        total = Decimal("0")
        applied: List[Discount] = []

        for discount in discounts:
            contribution = self._contribution(amount, discount)
            if contribution > 0:
                total += contribution
                applied.append(discount)

        total = min(total, self.max_discount_amount(amount), amount)
        return self._build_result(amount, total, applied)

    def _contribution(self, amount: Decimal, discount: Discount) -> Decimal:
        if discount.is_percentage():
            return amount * discount.discount_value / 100
        if discount.is_fixed():
            return min(discount.discount_value, amount)
        return Decimal("0")


STACKING_STRATEGIES: Dict[str, Type[DiscountStackingStrategy]] = {
    SequentialStackingStrategy.name: SequentialStackingStrategy,
    BestDiscountStrategy.name: BestDiscountStrategy,
    AllDiscountsStrategy.name: AllDiscountsStrategy,
}


def create_stacking_strategy(settings) -> DiscountStackingStrategy:
    """
    根据配置创建叠加策略，启动时调用一次
    未知的策略名或舍入模式直接抛出异常
    """
    strategy_name = settings.discount_stacking_strategy
    strategy_class = STACKING_STRATEGIES.get(strategy_name)
    if strategy_class is None:
        raise InvalidStackingStrategyException(
            f"未知的折扣叠加策略: {strategy_name}，可选值: {', '.join(STACKING_STRATEGIES)}"
        )

    strategy = strategy_class(
        max_percentage_cap=settings.discount_max_percentage_cap,
        rounding_mode=settings.discount_rounding_mode,
        rounding_precision=settings.discount_rounding_precision
    )
    logger.info(
        f"折扣叠加策略: {strategy.name}, 上限: {settings.discount_max_percentage_cap}%, "
        f"舍入: {settings.discount_rounding_mode}/{settings.discount_rounding_precision}"
    )
    return strategy
