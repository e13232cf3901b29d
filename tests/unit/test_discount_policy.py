"""
ABCカテゴリ別割引補正のテスト
"""

import pytest

from customer_retention.retention import ABCCategory, DiscountBounds, DiscountPolicy, DiscountRecommendation
from customer_retention.utils.config_manager import ConfigManager


@pytest.fixture
def policy():
    return DiscountPolicy()


def test_category_a_capped(policy):
    adjusted = policy.adjust(DiscountRecommendation(optimal_discount=0.35, lift_factor=1.2, abc_category="A"))

    assert adjusted.optimal_discount == 0.2
    assert adjusted.adjustment_reason is not None


def test_category_b_capped(policy):
    adjusted = policy.adjust(DiscountRecommendation(optimal_discount=0.45, lift_factor=0.5, abc_category="B"))

    assert adjusted.optimal_discount == 0.3


def test_within_bounds_unchanged(policy):
    recommendation = DiscountRecommendation(optimal_discount=0.25, lift_factor=0.5, abc_category="B")

    assert policy.adjust(recommendation) is recommendation


def test_category_c_raised_when_lift_positive(policy):
    adjusted = policy.adjust(DiscountRecommendation(optimal_discount=0.05, lift_factor=0.8, abc_category="C"))

    assert adjusted.optimal_discount == 0.1
    assert adjusted.adjustment_reason is not None


def test_category_c_unchanged_without_lift(policy):
    recommendation = DiscountRecommendation(optimal_discount=0.05, lift_factor=-0.1, abc_category="C")

    assert policy.adjust(recommendation).optimal_discount == 0.05


def test_unknown_category_unchanged(policy):
    recommendation = DiscountRecommendation(optimal_discount=0.9, lift_factor=1.0, abc_category="Z")

    assert policy.adjust(recommendation) is recommendation
    assert policy.adjust(DiscountRecommendation(optimal_discount=0.9, lift_factor=1.0)).optimal_discount == 0.9


def test_custom_bounds():
    policy = DiscountPolicy({ABCCategory.A: DiscountBounds(max_discount=0.1)})

    adjusted = policy.adjust(DiscountRecommendation(optimal_discount=0.15, lift_factor=1.0, abc_category="a"))

    assert adjusted.optimal_discount == 0.1
    assert adjusted.to_dict()['abc_category'] == "a"


def test_from_config(config_dir):
    config_manager = ConfigManager(config_dir)
    config_manager.set("discount_policy.abc_bounds.B.max_discount", 0.25)

    policy = DiscountPolicy.from_config(config_manager)

    assert policy.bounds[ABCCategory.A].max_discount == 0.2
    assert policy.bounds[ABCCategory.B].max_discount == 0.25
    assert policy.bounds[ABCCategory.C].min_discount == 0.1
