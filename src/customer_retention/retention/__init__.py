"""
定着評価モジュール

生存時間分析エンジンの予測結果を、セグメント別の定着評価と割引判断に
つなげるモジュールです。

主要コンポーネント:
- retention_service: セグメント別モデル管理と保守的フォールバック
- discount_policy: ABCカテゴリ別の割引上限・下限
"""

from .discount_policy import ABCCategory, DiscountBounds, DiscountPolicy, DiscountRecommendation
from .retention_service import DEFAULT_SEGMENT, RetentionAssessment, RetentionService

__all__ = [
    'RetentionService',
    'RetentionAssessment',
    'DEFAULT_SEGMENT',
    'DiscountPolicy',
    'DiscountBounds',
    'DiscountRecommendation',
    'ABCCategory',
]
