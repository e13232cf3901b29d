"""
定着評価サービスのテスト
"""

import time
import unittest

import pytest

from customer_retention.retention import DEFAULT_SEGMENT, RetentionAssessment, RetentionService
from customer_retention.survival import (
    CoxSurvivalModel,
    InsufficientDataError,
    NumericalError,
    SubjectNotFoundError,
)
from customer_retention.utils.config_manager import ConfigManager


class _SlowCoxSurvivalModel(CoxSurvivalModel):
    """訓練に時間がかかるモデル"""

    def train_snapshot(self, samples):
        time.sleep(0.5)
        return super().train_snapshot(samples)


class TestRetentionServiceFallback(unittest.TestCase):
    """フォールバック動作のテストクラス"""

    def setUp(self):
        self.service = RetentionService({'default_churn_probability': 0.2})

    def test_untrained_segment_falls_back(self):
        assessment = self.service.assess("c1", [10.0, 2.0, 30.0, 40.0, 3.0, 5.0])

        self.assertIsInstance(assessment, RetentionAssessment)
        self.assertTrue(assessment.is_fallback)
        self.assertEqual(assessment.churn_probability, 0.2)
        self.assertIsNone(assessment.expected_time_to_event)
        self.assertEqual(assessment.fallback_reason, "MODEL_NOT_TRAINED")
        self.assertEqual(assessment.risk_level, "low")

    def test_predict_helpers_fall_back(self):
        self.assertEqual(self.service.predict_churn_probability("c1", [1.0] * 6), 0.2)
        self.assertIsNone(self.service.predict_time_to_event("c1", [1.0] * 6))

    def test_invalid_default_rejected(self):
        with self.assertRaises(ValueError):
            RetentionService({'default_churn_probability': 1.5})

    def test_to_dict(self):
        payload = self.service.assess("c1", [1.0] * 6).to_dict()

        self.assertEqual(payload['segment_id'], DEFAULT_SEGMENT)
        self.assertTrue(payload['is_fallback'])
        self.assertIn('assessed_at', payload)


def test_trained_segment_assessment(mixed_records, sample_customer):
    service = RetentionService({'top_factor_count': 2})
    fit_result = service.build_segment_model("vip", mixed_records)

    assessment = service.assess("probe", sample_customer, segment_id="vip")

    assert fit_result.n_samples == len(mixed_records)
    assert service.segments == ["vip"]
    assert not assessment.is_fallback
    assert 0.0 <= assessment.churn_probability <= 1.0
    assert assessment.expected_time_to_event >= 0.0
    assert assessment.risk_level in ("low", "medium", "high")
    assert len(assessment.top_risk_factors) == 2
    assert assessment.churn_probability == service.model_for("vip").predict_churn_probability("probe")


def test_segments_are_independent(mixed_records, scenario_a_records, sample_customer):
    service = RetentionService()
    service.build_segment_model("a", scenario_a_records)
    service.build_segment_model("b", mixed_records)

    assert service.model_for("a").coefficients != service.model_for("b").coefficients
    assert service.assess("probe", sample_customer, segment_id="c").is_fallback


def test_failed_rebuild_keeps_segment_model(mixed_records, sample_customer):
    service = RetentionService()
    service.build_segment_model(DEFAULT_SEGMENT, mixed_records)
    probability = service.predict_churn_probability("probe", sample_customer)

    with pytest.raises(InsufficientDataError):
        service.build_segment_model(DEFAULT_SEGMENT, [])

    assert service.predict_churn_probability("probe", sample_customer) == probability


def test_reset_segment_falls_back(mixed_records, sample_customer):
    service = RetentionService()
    service.build_segment_model(DEFAULT_SEGMENT, mixed_records)

    assert service.reset_segment(DEFAULT_SEGMENT)
    assert not service.reset_segment("unknown")
    assessment = service.assess("probe", sample_customer)
    assert assessment.is_fallback
    assert assessment.churn_probability == service.default_churn_probability


def test_unknown_subject_is_not_masked(mixed_records):
    service = RetentionService()
    service.build_segment_model(DEFAULT_SEGMENT, mixed_records)

    with pytest.raises(SubjectNotFoundError):
        service.assess("nobody")


def test_training_timeout_raises_numerical_error(mixed_records, sample_customer):
    service = RetentionService(model_factory=_SlowCoxSurvivalModel)

    with pytest.raises(NumericalError):
        service.build_segment_model(DEFAULT_SEGMENT, mixed_records, timeout_seconds=0.05)

    assert not service.model_for(DEFAULT_SEGMENT).is_trained
    assert service.assess("probe", sample_customer).is_fallback


def test_training_within_timeout(mixed_records, sample_customer):
    service = RetentionService({'training_timeout_seconds': 30})

    service.build_segment_model(DEFAULT_SEGMENT, mixed_records)

    assert service.model_for(DEFAULT_SEGMENT).is_trained
    assert not service.assess("probe", sample_customer).is_fallback


def test_risk_levels():
    service = RetentionService({'risk_thresholds': {'high': 0.7, 'medium': 0.4}})

    assert service.risk_level(0.9) == "high"
    assert service.risk_level(0.7) == "high"
    assert service.risk_level(0.5) == "medium"
    assert service.risk_level(0.1) == "low"


def test_from_config(config_dir, monkeypatch):
    monkeypatch.setenv("RETENTION_DEFAULT_CHURN_PROBABILITY", "0.25")
    monkeypatch.setenv("SURVIVAL_MAX_ITER", "40")

    service = RetentionService.from_config(ConfigManager(config_dir))

    assert service.default_churn_probability == 0.25
    assert service.top_factor_count == 3
    assert service.training_timeout_seconds is None
    assert service.model_factory().optimizer.max_iter == 40
