"""
Coxモデル（訓練・予測・キャッシュ）のテスト

CoxSurvivalModel の状態遷移、予測値の性質、再訓練時のキャッシュ破棄、
並行アクセス時の一貫性を確認する。
"""

import math
import threading
import unittest

import numpy as np
import pandas as pd
import pytest

from customer_retention.survival import (
    CoxSurvivalModel,
    CustomerMetrics,
    InsufficientDataError,
    ModelNotTrainedError,
    SubjectNotFoundError,
    TrainingSample,
)
from customer_retention.survival.cox_model import FitResult
from customer_retention.utils.logger import get_performance_monitor


def _customer(subject_id, recency, **overrides):
    values = dict(
        frequency=3, monetary=50.0, age=30, session_count=4.0, avg_session_duration=12.5,
    )
    values.update(overrides)
    return CustomerMetrics(subject_id=subject_id, recency=recency, **values)


class TestScenarioA:
    """recency だけで離脱が分かれるデータ"""

    def test_recency_coefficient_positive(self, scenario_a_records):
        model = CoxSurvivalModel()
        fit_result = model.build_cox_model(scenario_a_records)

        assert isinstance(fit_result, FitResult)
        assert fit_result.n_samples == 40
        assert fit_result.n_events == 20
        assert model.coefficients["recency"] > 0.0

    def test_recency_is_top_risk_factor(self, scenario_a_records):
        model = CoxSurvivalModel()
        model.build_cox_model(scenario_a_records)

        factors = model.get_churn_risk_factors("new", _customer("new", 70))

        assert next(iter(factors)) == "recency"
        assert list(factors.values())[0] > 0.0

    def test_high_recency_churns_more(self, scenario_a_records):
        model = CoxSurvivalModel()
        model.build_cox_model(scenario_a_records)

        high = model.predict_churn_probability("high", _customer("high", 75))
        low = model.predict_churn_probability("low", _customer("low", 5))

        assert high > low
        assert model.predict_time_to_event("high") < model.predict_time_to_event("low")


class TestScenarioB:
    """同一特徴量の顧客は同一の予測"""

    def test_identical_features_identical_predictions(self, trained_model, sample_customer):
        other = CustomerMetrics(
            subject_id="twin",
            recency=sample_customer.recency,
            frequency=sample_customer.frequency,
            monetary=sample_customer.monetary,
            age=sample_customer.age,
            session_count=sample_customer.session_count,
            avg_session_duration=sample_customer.avg_session_duration,
        )

        assert (trained_model.predict_churn_probability("probe", sample_customer)
                == trained_model.predict_churn_probability("twin", other))
        assert (trained_model.predict_time_to_event("probe")
                == trained_model.predict_time_to_event("twin"))
        assert (trained_model.get_churn_risk_factors("probe")
                == trained_model.get_churn_risk_factors("twin"))


class TestScenarioC:
    """再訓練の失敗とリセット"""

    def test_failed_retrain_keeps_previous_model(self, trained_model, sample_customer):
        before = trained_model.coefficients
        probability = trained_model.predict_churn_probability("probe", sample_customer)

        with pytest.raises(InsufficientDataError):
            trained_model.build_cox_model([])

        assert trained_model.is_trained
        assert trained_model.coefficients == before
        assert trained_model.predict_churn_probability("probe") == probability

    def test_all_censored_retrain_raises(self, trained_model):
        censored = [
            TrainingSample(features=(float(i), 1.0, 10.0, 30.0, 2.0, 5.0), time_to_event=30.0,
                           event_occurred=False)
            for i in range(5)
        ]

        with pytest.raises(InsufficientDataError):
            trained_model.build_cox_model(censored)
        assert trained_model.is_trained

    def test_reset_returns_to_untrained(self, trained_model, sample_customer):
        trained_model.predict_churn_probability("probe", sample_customer)

        trained_model.reset()

        assert not trained_model.is_trained
        with pytest.raises(ModelNotTrainedError):
            trained_model.predict_churn_probability("probe", sample_customer)


class TestCoxSurvivalModel(unittest.TestCase):
    """CoxSurvivalModel の基本動作"""

    def setUp(self):
        rng = np.random.default_rng(11)
        self.records = []
        for i in range(30):
            recency = int(rng.integers(1, 60))
            time_to_event = float(rng.integers(1, 100))
            self.records.append(CustomerMetrics(
                subject_id=f"c{i}",
                recency=recency,
                frequency=int(rng.integers(1, 10)),
                monetary=float(rng.uniform(10.0, 100.0)),
                age=int(rng.integers(20, 60)),
                session_count=float(rng.uniform(1.0, 10.0)),
                avg_session_duration=float(rng.uniform(1.0, 30.0)),
                churned=bool(i % 3 != 0),
                approximate_tenure_days=time_to_event,
            ))
        self.model = CoxSurvivalModel({'max_iter': 50})

    def test_predictions_before_training_raise(self):
        with self.assertRaises(ModelNotTrainedError):
            self.model.predict_churn_probability("c0", self.records[0])
        with self.assertRaises(ModelNotTrainedError):
            self.model.predict_time_to_event("c0", self.records[0])
        with self.assertRaises(ModelNotTrainedError):
            self.model.get_churn_risk_factors("c0", self.records[0])
        with self.assertRaises(ModelNotTrainedError):
            _ = self.model.coefficients
        self.assertIsNone(self.model.fit_result)

    def test_prediction_bounds(self):
        self.model.build_cox_model(self.records)

        for record in self.records:
            probability = self.model.predict_churn_probability(record.subject_id, record)
            self.assertGreaterEqual(probability, 0.0)
            self.assertLessEqual(probability, 1.0)
            self.assertGreaterEqual(self.model.predict_time_to_event(record.subject_id), 0.0)

    def test_survival_curve_monotone(self):
        self.model.build_cox_model(self.records)

        curve = self.model.survival_curve_for("c1", self.records[1])

        self.assertIsInstance(curve, pd.Series)
        self.assertTrue(np.all(curve.values > 0.0))
        self.assertTrue(np.all(curve.values <= 1.0))
        self.assertTrue(np.all(np.diff(curve.values) <= 0.0))
        np.testing.assert_array_equal(curve.index.values, self.model.baseline.time_points)

    def test_reproducible_fit(self):
        other = CoxSurvivalModel({'max_iter': 50})
        first = self.model.build_cox_model(self.records)
        second = other.build_cox_model(self.records)

        self.assertEqual(first.coefficients, second.coefficients)
        np.testing.assert_array_equal(first.baseline.time_points, second.baseline.time_points)
        np.testing.assert_array_equal(first.baseline.cumulative_hazard, second.baseline.cumulative_hazard)
        self.assertEqual(
            self.model.predict_churn_probability("c2", self.records[2]),
            other.predict_churn_probability("c2", self.records[2]),
        )

    def test_unknown_subject_without_features(self):
        self.model.build_cox_model(self.records)

        with self.assertRaises(SubjectNotFoundError):
            self.model.predict_churn_probability("missing")

    def test_cache_hit_and_invalidation(self):
        self.model.build_cox_model(self.records)
        self.model.predict_churn_probability("c3", self.records[3])

        self.assertIn("c3", self.model.cached_subjects)
        self.model.predict_time_to_event("c3")

        self.assertTrue(self.model.invalidate_subject("c3"))
        self.assertNotIn("c3", self.model.cached_subjects)
        self.assertFalse(self.model.invalidate_subject("c3"))

    def test_changed_features_recomputed(self):
        self.model.build_cox_model(self.records)
        first = self.model.predict_churn_probability("c4", self.records[4])

        changed = self.model.predict_churn_probability("c4", self.records[5])

        self.assertEqual(changed, self.model.predict_churn_probability("c5", self.records[5]))
        self.assertEqual(first, self.model.predict_churn_probability("c4", self.records[4]))

    def test_refit_clears_cache(self):
        self.model.build_cox_model(self.records)
        self.model.predict_churn_probability("c6", self.records[6])

        self.model.build_cox_model(self.records)

        self.assertEqual(self.model.cached_subjects, [])
        with self.assertRaises(SubjectNotFoundError):
            self.model.predict_churn_probability("c6")

    def test_cache_size_is_bounded(self):
        model = CoxSurvivalModel({'max_cached_subjects': 3})
        model.build_cox_model(self.records)

        model.score_frame(self.records[:5])

        self.assertEqual(model.cached_subjects, ["c2", "c3", "c4"])
        with self.assertRaises(SubjectNotFoundError):
            model.predict_churn_probability("c0")
        self.assertEqual(
            model.predict_churn_probability("c0", self.records[0]),
            self._reference_probability(self.records[0]),
        )

    def _reference_probability(self, record):
        reference = CoxSurvivalModel()
        reference.build_cox_model(self.records)
        return reference.predict_churn_probability(record.subject_id, record)

    def test_min_samples(self):
        model = CoxSurvivalModel({'min_samples': 50})

        with self.assertRaises(InsufficientDataError):
            model.build_cox_model(self.records)

    def test_score_frame(self):
        self.model.build_cox_model(self.records)

        frame = pd.DataFrame([
            {
                'subject_id': r.subject_id, 'recency': r.recency, 'frequency': r.frequency,
                'monetary': r.monetary, 'age': r.age, 'session_count': r.session_count,
                'avg_session_duration': r.avg_session_duration,
            }
            for r in self.records[:5]
        ])
        scores = self.model.score_frame(frame)

        self.assertEqual(list(scores['subject_id']), [r.subject_id for r in self.records[:5]])
        self.assertTrue(scores['churn_probability'].between(0.0, 1.0).all())
        self.assertEqual(
            scores['churn_probability'].iloc[0],
            self.model.predict_churn_probability("c0"),
        )

    def test_score_frame_with_single_baseline_point(self):
        """イベント時点が1つだけのモデルでも一括予測は失敗しない"""
        model = CoxSurvivalModel()
        records = [
            _customer("s1", 10, churned=True, approximate_tenure_days=5.0),
            _customer("s2", 20, approximate_tenure_days=8.0),
            _customer("s3", 30, approximate_tenure_days=9.0),
        ]
        model.build_cox_model(records)

        scores = model.score_frame(records)

        self.assertEqual(len(model.baseline), 1)
        self.assertEqual(len(scores), 3)
        self.assertTrue(scores['churn_probability'].between(0.0, 1.0).all())
        self.assertTrue(scores['expected_time_to_event'].isna().all())
        self.assertEqual(scores['churn_probability'].iloc[0], model.predict_churn_probability("s1"))

    def test_fit_recorded_in_performance_monitor(self):
        monitor = get_performance_monitor()
        before = len(monitor.get_metrics("cox_model_fit"))

        self.model.build_cox_model(self.records)

        metrics = monitor.get_metrics("cox_model_fit")
        self.assertEqual(len(metrics), before + 1)
        self.assertEqual(metrics[-1].tags['success'], 'True')


def test_concurrent_predictions_never_mix_snapshots(scenario_a_records, mixed_records, sample_customer):
    """再訓練中の予測は、どちらかの訓練結果と完全に一致する"""
    reference_a = CoxSurvivalModel()
    reference_a.build_cox_model(scenario_a_records)
    reference_b = CoxSurvivalModel()
    reference_b.build_cox_model(mixed_records)
    expected = (
        reference_a.predict_churn_probability("probe", sample_customer),
        reference_b.predict_churn_probability("probe", sample_customer),
    )

    model = CoxSurvivalModel()
    model.build_cox_model(scenario_a_records)
    stop = threading.Event()
    errors = []

    def trainer():
        try:
            for i in range(6):
                model.build_cox_model(mixed_records if i % 2 == 0 else scenario_a_records)
        finally:
            stop.set()

    def reader():
        while not stop.is_set():
            probability = model.predict_churn_probability("probe", sample_customer)
            if not any(math.isclose(probability, value, rel_tol=0.0, abs_tol=1e-15) for value in expected):
                errors.append(probability)

    threads = [threading.Thread(target=trainer)] + [threading.Thread(target=reader) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert not errors
    assert model.is_trained
