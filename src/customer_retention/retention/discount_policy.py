"""
ABCカテゴリ別の割引上限・下限

回帰分析などで得られた最適割引率を、ABC分析のカテゴリに応じて補正する。

- A: 高収益カテゴリ。割引は上限 0.2 まで
- B: 中位カテゴリ。割引は上限 0.3 まで
- C: 低収益カテゴリ。リフトが正なら最低 0.1 まで引き上げる
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional

from ..utils.logger import get_logger

logger = get_logger(__name__)


class ABCCategory(str, Enum):
    """ABC分析のカテゴリ"""
    A = "A"
    B = "B"
    C = "C"


@dataclass(frozen=True)
class DiscountBounds:
    """1カテゴリ分の割引率の範囲"""
    max_discount: Optional[float] = None
    min_discount: Optional[float] = None
    require_positive_lift: bool = True


@dataclass(frozen=True)
class DiscountRecommendation:
    """割引推奨"""
    optimal_discount: float
    lift_factor: float
    abc_category: Optional[str] = None
    product_id: Optional[str] = None
    category: Optional[str] = None
    confidence: float = 0.0
    adjustment_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'product_id': self.product_id,
            'category': self.category,
            'optimal_discount': self.optimal_discount,
            'lift_factor': self.lift_factor,
            'abc_category': self.abc_category,
            'confidence': self.confidence,
            'adjustment_reason': self.adjustment_reason,
        }


DEFAULT_BOUNDS: Dict[ABCCategory, DiscountBounds] = {
    ABCCategory.A: DiscountBounds(max_discount=0.2),
    ABCCategory.B: DiscountBounds(max_discount=0.3),
    ABCCategory.C: DiscountBounds(min_discount=0.1, require_positive_lift=True),
}

_REASONS = {
    ABCCategory.A: "高収益カテゴリAのため割引を上限に制限しました",
    ABCCategory.B: "カテゴリBの上限に合わせて割引を調整しました",
    ABCCategory.C: "低収益カテゴリCの販売促進のため割引を引き上げました",
}


class DiscountPolicy:
    """ABCカテゴリに応じて割引推奨を補正する"""

    def __init__(self, bounds: Optional[Dict[ABCCategory, DiscountBounds]] = None):
        self.bounds = dict(DEFAULT_BOUNDS)
        if bounds:
            self.bounds.update(bounds)

    @classmethod
    def from_config(cls, config_manager) -> "DiscountPolicy":
        """ConfigManager の discount_policy.abc_bounds から生成"""
        raw = config_manager.get('discount_policy.abc_bounds', {}) or {}
        bounds = {}
        for key, values in raw.items():
            values = values or {}
            bounds[ABCCategory(str(key).upper())] = DiscountBounds(
                max_discount=_optional_float(values.get('max_discount')),
                min_discount=_optional_float(values.get('min_discount')),
                require_positive_lift=bool(values.get('require_positive_lift', True)),
            )
        return cls(bounds)

    def adjust(self, recommendation: DiscountRecommendation) -> DiscountRecommendation:
        """
        カテゴリの範囲に収まるよう割引率を補正した推奨を返す

        未知・未指定のカテゴリはそのまま返す。
        """
        if recommendation.abc_category is None:
            return recommendation
        try:
            category = ABCCategory(str(recommendation.abc_category).upper())
        except ValueError:
            logger.debug(f"未知のABCカテゴリです: {recommendation.abc_category}")
            return recommendation

        bounds = self.bounds.get(category)
        if bounds is None:
            return recommendation

        discount = recommendation.optimal_discount
        if bounds.max_discount is not None and discount > bounds.max_discount:
            discount = bounds.max_discount
        elif bounds.min_discount is not None and discount < bounds.min_discount:
            if recommendation.lift_factor > 0 or not bounds.require_positive_lift:
                discount = bounds.min_discount

        if discount == recommendation.optimal_discount:
            return recommendation

        logger.debug(
            f"割引率を補正: カテゴリ={category.value}, "
            f"{recommendation.optimal_discount:.3f} -> {discount:.3f}"
        )
        return replace(recommendation, optimal_discount=discount, adjustment_reason=_REASONS[category])


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)
