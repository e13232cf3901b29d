"""
Evaluation metrics for the churn survival model.

Ranking quality is measured with Harrell's concordance index (lifelines);
churn probabilities are scored as a binary classifier with ROC-AUC, Brier
score and Expected Calibration Error (ECE).
"""
from __future__ import annotations

from typing import Dict, Iterable, Sequence, Union

import numpy as np
from lifelines.utils import concordance_index
from sklearn.metrics import brier_score_loss, roc_auc_score

from .samples import CustomerMetrics, TrainingSample, to_training_samples, training_arrays


def expected_calibration_error(
    probs: Sequence[float], labels: Sequence[int], n_bins: int = 10
) -> float:
    probs = np.asarray(probs, dtype=float)
    labels = np.asarray(labels, dtype=float)
    bins = np.linspace(0.0, 1.0, n_bins + 1)
    # probability 1.0 falls into the last bin
    inds = np.clip(np.digitize(probs, bins) - 1, 0, n_bins - 1)
    ece_val = 0.0
    for b in range(n_bins):
        mask = inds == b
        if not np.any(mask):
            continue
        conf = probs[mask].mean()
        acc = labels[mask].mean()
        w = mask.mean()
        ece_val += w * abs(acc - conf)
    return float(ece_val)


def concordance(
    durations: Sequence[float], events: Sequence[int], risk_scores: Sequence[float]
) -> float:
    """Harrell's C; higher risk should mean an earlier event."""
    return float(
        concordance_index(
            np.asarray(durations, dtype=float),
            -np.asarray(risk_scores, dtype=float),
            np.asarray(events, dtype=int),
        )
    )


def compute_metrics(
    durations: Sequence[float],
    events: Sequence[int],
    churn_probs: Sequence[float],
    risk_scores: Sequence[float],
) -> Dict[str, float]:
    events = np.asarray(events, dtype=int)
    churn_probs = np.asarray(churn_probs, dtype=float)
    out: Dict[str, float] = {}
    # C-index
    try:
        out["c_index"] = concordance(durations, events, risk_scores)
    except Exception:
        out["c_index"] = float("nan")
    # ROC-AUC
    try:
        out["roc_auc"] = float(roc_auc_score(events, churn_probs))
    except Exception:
        out["roc_auc"] = float("nan")
    # Brier
    try:
        out["brier"] = float(brier_score_loss(events, churn_probs))
    except Exception:
        out["brier"] = float("nan")
    # ECE
    try:
        out["ece"] = float(expected_calibration_error(churn_probs, events, n_bins=10))
    except Exception:
        out["ece"] = float("nan")
    return out


def evaluate_model(
    model, samples: Iterable[Union[TrainingSample, CustomerMetrics]]
) -> Dict[str, float]:
    """Score a trained CoxSurvivalModel against labelled samples.

    Predictions use the supplied features directly and never touch the
    model's per-subject curve cache.
    """
    samples = to_training_samples(samples)
    X, times, status = training_arrays(samples)
    score = model.predict_matrix(X)
    metrics = compute_metrics(times, status, score["churn_probability"], score["linear_predictor"])
    metrics["n_samples"] = float(len(samples))
    metrics["n_events"] = float(status.sum())
    return metrics
