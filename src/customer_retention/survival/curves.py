"""
Survival curve evaluation for a single subject.

S(t_k) = exp(-H0(t_k) * exp(lp)) on the baseline time points, plus the
summaries derived from it: churn probability 1 - S(t_last), expected time to
event by trapezoidal integration, and per-predictor risk contributions.
"""
from __future__ import annotations

from collections import OrderedDict
from typing import Mapping

import numpy as np

from .baseline import BaselineHazard
from .exceptions import InsufficientDataError
from .optimizer import ETA_CLIP
from .predictors import PREDICTOR_INDEX, PredictorKey, as_predictor
from .samples import FeatureInput, build_feature_vector

# S stays strictly positive even when exp(-H * exp(lp)) underflows
_MIN_SURVIVAL = np.finfo(float).tiny

DEFAULT_EMPTY_CURVE_CHURN_PROBABILITY = 0.5


def linear_predictor(coefficients: Mapping[PredictorKey, float], features: FeatureInput) -> float:
    """Dot product over the predictors present in `coefficients`; absent ones contribute 0."""
    vector = build_feature_vector(features)
    total = 0.0
    for key, coef in coefficients.items():
        total += float(coef) * float(vector[PREDICTOR_INDEX[as_predictor(key)]])
    return total


def survival_curve(linear_predictor: float, baseline: BaselineHazard) -> np.ndarray:
    hazard_ratio = np.exp(np.clip(float(linear_predictor), -ETA_CLIP, ETA_CLIP))
    curve = np.exp(-baseline.cumulative_hazard * hazard_ratio)
    return np.clip(curve, _MIN_SURVIVAL, 1.0)


def churn_probability(curve: np.ndarray, empty_default: float = DEFAULT_EMPTY_CURVE_CHURN_PROBABILITY) -> float:
    """1 - S at the last baseline time point; `empty_default` when the curve is empty."""
    if len(curve) == 0:
        return float(empty_default)
    return float(min(1.0, max(0.0, 1.0 - float(curve[-1]))))


def expected_time_to_event(curve: np.ndarray, baseline: BaselineHazard) -> float:
    """Trapezoidal integral of S over the baseline time points."""
    times = baseline.time_points
    if times.size < 2:
        raise InsufficientDataError(
            f"expected time to event needs at least 2 baseline time points, got {times.size}"
        )
    curve = np.asarray(curve, dtype=float)
    if curve.shape != times.shape:
        raise ValueError("survival curve and baseline time points differ in length")
    return float(np.sum(0.5 * (curve[1:] + curve[:-1]) * np.diff(times)))


def risk_factors(coefficients: Mapping[PredictorKey, float], features: FeatureInput) -> "OrderedDict[str, float]":
    """coefficient * value per predictor, largest absolute contribution first."""
    vector = build_feature_vector(features)
    contributions = [
        (as_predictor(key).value, float(coef) * float(vector[PREDICTOR_INDEX[as_predictor(key)]]))
        for key, coef in coefficients.items()
    ]
    contributions.sort(key=lambda item: abs(item[1]), reverse=True)
    return OrderedDict(contributions)
