"""
Breslow estimator of the baseline cumulative hazard.

Given fitted coefficients, every observed event adds 1 / sum_{j: t_j >= t} exp(x_j.b)
to the running cumulative hazard. Tied events each add their own increment;
one point is kept per distinct event time, holding the value after all ties.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence, Union

import numpy as np
import pandas as pd

from .exceptions import InsufficientDataError
from .optimizer import relative_risk
from .predictors import coefficient_array


@dataclass(frozen=True, eq=False)
class BaselineHazard:
    """Step-function baseline cumulative hazard H0(t) on the observed event times."""
    time_points: np.ndarray
    cumulative_hazard: np.ndarray

    def __post_init__(self):
        times = np.array(self.time_points, dtype=float).reshape(-1)
        hazard = np.array(self.cumulative_hazard, dtype=float).reshape(-1)
        if times.shape != hazard.shape:
            raise ValueError("time_points and cumulative_hazard must have the same length")
        if not (np.all(np.isfinite(times)) and np.all(np.isfinite(hazard))):
            raise ValueError("baseline hazard must be finite")
        if times.size > 1 and np.any(np.diff(times) <= 0):
            raise ValueError("time_points must be strictly ascending")
        if np.any(hazard < 0) or (hazard.size > 1 and np.any(np.diff(hazard) < 0)):
            raise ValueError("cumulative_hazard must be non-negative and non-decreasing")
        times.setflags(write=False)
        hazard.setflags(write=False)
        object.__setattr__(self, "time_points", times)
        object.__setattr__(self, "cumulative_hazard", hazard)

    @classmethod
    def empty(cls) -> "BaselineHazard":
        return cls(np.zeros(0), np.zeros(0))

    def __len__(self) -> int:
        return int(self.time_points.size)

    @property
    def is_empty(self) -> bool:
        return self.time_points.size == 0

    def cumulative_hazard_at(self, t: float) -> float:
        """H0 evaluated as a right-continuous step function (0 before the first event)."""
        idx = int(np.searchsorted(self.time_points, float(t), side="right")) - 1
        if idx < 0:
            return 0.0
        return float(self.cumulative_hazard[idx])

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {"baseline_cumulative_hazard": self.cumulative_hazard},
            index=pd.Index(self.time_points, name="time"),
        )


def estimate_baseline(
    features: np.ndarray,
    times: Sequence[float],
    status: Sequence[int],
    coefficients: Union[np.ndarray, Sequence[float], Mapping[str, float]],
) -> BaselineHazard:
    X = np.asarray(features, dtype=float)
    if X.ndim != 2 or X.shape[0] == 0:
        raise InsufficientDataError("cannot estimate a baseline hazard without samples", n_samples=0)

    if isinstance(coefficients, Mapping):
        beta = coefficient_array(coefficients)
    else:
        beta = np.asarray(coefficients, dtype=float).reshape(-1)
    if beta.shape[0] != X.shape[1]:
        raise ValueError(f"expected {X.shape[1]} coefficients, got {beta.shape[0]}")

    times_arr = np.asarray(times, dtype=float)
    status_arr = np.asarray(status, dtype=int)
    risk = relative_risk(X, beta)

    order = np.argsort(times_arr, kind="mergesort")
    sorted_times = times_arr[order]
    # at_risk_sum[k] = sum of risk over subjects with time >= sorted_times[k]
    at_risk_sum = np.cumsum(risk[order][::-1])[::-1]

    time_points = []
    cumulative = []
    running = 0.0
    for idx in order:
        if status_arr[idx] != 1:
            continue
        t = times_arr[idx]
        risk_sum = float(at_risk_sum[np.searchsorted(sorted_times, t, side="left")])
        if not risk_sum > 0:
            continue
        running += 1.0 / risk_sum
        if time_points and time_points[-1] == t:
            cumulative[-1] = running
        else:
            time_points.append(float(t))
            cumulative.append(running)

    return BaselineHazard(np.asarray(time_points), np.asarray(cumulative))
