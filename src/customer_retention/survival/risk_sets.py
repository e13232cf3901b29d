"""
Risk set construction for the Cox partial likelihood.

A risk set at event time t holds every subject still under observation just
before t, i.e. all i with times[i] >= t. Subjects whose event happens exactly
at t stay in the set (Breslow handling of ties).
"""
from __future__ import annotations

from typing import Dict, FrozenSet, List, Mapping, Sequence, Tuple

import numpy as np


def build_risk_sets(times: Sequence[float], event_occurred: Sequence[bool]) -> Dict[float, FrozenSet[int]]:
    """Map every distinct event time (ascending) to the indices at risk at that time.

    Returns an empty dict when no event was observed; callers must treat that as
    insufficient data.
    """
    times_arr = np.asarray(times, dtype=float).reshape(-1)
    events = np.asarray(event_occurred, dtype=bool).reshape(-1)
    if times_arr.shape != events.shape:
        raise ValueError(
            f"times and event_occurred must have equal length ({times_arr.size} != {events.size})"
        )

    risk_sets: Dict[float, FrozenSet[int]] = {}
    for t in np.unique(times_arr[events]):
        risk_sets[float(t)] = frozenset(np.flatnonzero(times_arr >= t).tolist())
    return risk_sets


def risk_set_strata(
    times: Sequence[float],
    status: Sequence[int],
    risk_sets: Mapping[float, FrozenSet[int]],
) -> List[Tuple[float, np.ndarray, np.ndarray]]:
    """Index arrays per event time: (time, at-risk indices, indices with an event at time)."""
    times_arr = np.asarray(times, dtype=float)
    status_arr = np.asarray(status, dtype=int)
    strata = []
    for t in sorted(risk_sets):
        at_risk = np.fromiter(sorted(risk_sets[t]), dtype=int, count=len(risk_sets[t]))
        events = np.flatnonzero((times_arr == t) & (status_arr == 1))
        if events.size == 0:
            continue
        strata.append((float(t), at_risk, events))
    return strata
