"""
訓練サンプルと特徴量ベクトルの構築

メトリクス層から受け取る顧客ごとの集計値（CustomerMetrics）を、
固定順序の特徴量ベクトルとイベント時間・イベント有無の組に変換する。
"""

import math
from dataclasses import dataclass, field
from typing import Any, Hashable, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .exceptions import InvalidFeatureError
from .predictors import N_PREDICTORS, PREDICTOR_INDEX, PREDICTOR_NAMES, as_predictor


@dataclass(frozen=True)
class TrainingSample:
    """1顧客分の訓練サンプル（不変）"""
    features: Tuple[float, ...]
    time_to_event: float
    event_occurred: bool
    subject_id: Optional[Hashable] = field(default=None, compare=False)

    def __post_init__(self):
        features = tuple(float(v) for v in self.features)
        if len(features) != N_PREDICTORS:
            raise InvalidFeatureError(
                f"特徴量の次元が不正です: {len(features)}（期待値: {N_PREDICTORS}）",
                field="features"
            )
        if not all(math.isfinite(v) for v in features):
            raise InvalidFeatureError("特徴量に非有限値が含まれています", field="features")

        time_to_event = float(self.time_to_event)
        if not math.isfinite(time_to_event) or time_to_event < 0:
            raise InvalidFeatureError(
                f"観測時間は0以上の有限値である必要があります: {self.time_to_event}",
                field="time_to_event"
            )

        object.__setattr__(self, "features", features)
        object.__setattr__(self, "time_to_event", time_to_event)
        object.__setattr__(self, "event_occurred", bool(self.event_occurred))


@dataclass(frozen=True)
class CustomerMetrics:
    """メトリクス層から受け取る顧客ごとの集計値"""
    subject_id: Hashable
    recency: int
    frequency: int
    monetary: float
    age: int
    session_count: float
    avg_session_duration: float
    churned: bool = False
    approximate_tenure_days: float = 0.0

    def feature_vector(self) -> np.ndarray:
        """固定順序の特徴量ベクトル"""
        return np.array([float(getattr(self, name)) for name in PREDICTOR_NAMES], dtype=float)

    def to_training_sample(self) -> TrainingSample:
        return TrainingSample(
            features=tuple(self.feature_vector()),
            time_to_event=self.approximate_tenure_days,
            event_occurred=self.churned,
            subject_id=self.subject_id,
        )


FeatureInput = Union[CustomerMetrics, TrainingSample, Mapping[Any, float], Sequence[float], np.ndarray]


def build_feature_vector(features: FeatureInput) -> np.ndarray:
    """
    各種入力を固定順序の特徴量ベクトルに変換する

    Args:
        features: CustomerMetrics / TrainingSample / 予測子をキーとするマッピング /
            固定順序のシーケンス。マッピングで欠けた予測子は 0 とする

    Returns:
        np.ndarray: 長さ N_PREDICTORS のベクトル
    """
    if isinstance(features, CustomerMetrics):
        vector = features.feature_vector()
    elif isinstance(features, TrainingSample):
        vector = np.asarray(features.features, dtype=float)
    elif isinstance(features, Mapping):
        vector = np.zeros(N_PREDICTORS, dtype=float)
        for key, value in features.items():
            vector[PREDICTOR_INDEX[as_predictor(key)]] = float(value)
    else:
        vector = np.asarray(features, dtype=float).reshape(-1)
        if vector.shape[0] != N_PREDICTORS:
            raise InvalidFeatureError(
                f"特徴量の次元が不正です: {vector.shape[0]}（期待値: {N_PREDICTORS}）",
                field="features"
            )

    if not np.all(np.isfinite(vector)):
        raise InvalidFeatureError("特徴量に非有限値が含まれています", field="features")
    return vector


def to_training_samples(records: Iterable[Union[TrainingSample, CustomerMetrics]]) -> List[TrainingSample]:
    samples = []
    for record in records:
        if isinstance(record, CustomerMetrics):
            samples.append(record.to_training_sample())
        elif isinstance(record, TrainingSample):
            samples.append(record)
        else:
            raise TypeError(f"訓練サンプルとして扱えない型です: {type(record).__name__}")
    return samples


def training_arrays(samples: Sequence[TrainingSample]) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """サンプル列を (特徴量行列[n×p], 観測時間[n], イベント有無 0/1 [n]) に変換する"""
    if not samples:
        return (
            np.zeros((0, N_PREDICTORS), dtype=float),
            np.zeros(0, dtype=float),
            np.zeros(0, dtype=int),
        )
    X = np.array([s.features for s in samples], dtype=float)
    times = np.array([s.time_to_event for s in samples], dtype=float)
    status = np.array([1 if s.event_occurred else 0 for s in samples], dtype=int)
    return X, times, status


_TRUE_STRINGS = frozenset({"true", "1"})
_FALSE_STRINGS = frozenset({"false", "0", ""})


def _event_flag(value: Any) -> bool:
    """`churned` 列の値をイベント有無に変換する（欠損は打ち切り扱い）"""
    if value is None:
        return False
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    elif isinstance(value, (int, float, np.integer, np.floating)):
        if pd.isna(value):
            return False
        if value in (0, 1):
            return bool(value)
    elif pd.api.types.is_scalar(value) and pd.isna(value):
        return False
    raise InvalidFeatureError(f"churned 列の値が不正です: {value!r}", field="churned")


def _int_field(row: Mapping[str, Any], name: str) -> int:
    value = row[name]
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise InvalidFeatureError(f"{name} 列の値が数値ではありません: {value!r}", field=name) from e
    if not math.isfinite(number) or not number.is_integer():
        raise InvalidFeatureError(f"{name} 列の値は整数である必要があります: {value!r}", field=name)
    return int(number)


def records_from_frame(df: pd.DataFrame) -> List[CustomerMetrics]:
    """
    DataFrame を CustomerMetrics のリストに変換する

    `subject_id` 列がない場合はインデックスを顧客IDとして使う。
    `churned` / `approximate_tenure_days` 列は予測用データでは省略できる。
    `churned` は真偽値・0/1・"true"/"false" のみ受け付け、空欄は打ち切りとみなす。
    """
    missing = [name for name in PREDICTOR_NAMES if name not in df.columns]
    if missing:
        raise InvalidFeatureError(f"必須列が不足しています: {missing}", field=missing[0])

    frame = df if "subject_id" in df.columns else df.rename_axis("subject_id").reset_index()

    records = []
    for row in frame.to_dict("records"):
        records.append(CustomerMetrics(
            subject_id=row["subject_id"],
            recency=_int_field(row, "recency"),
            frequency=_int_field(row, "frequency"),
            monetary=float(row["monetary"]),
            age=_int_field(row, "age"),
            session_count=float(row["session_count"]),
            avg_session_duration=float(row["avg_session_duration"]),
            churned=_event_flag(row.get("churned")),
            approximate_tenure_days=float(row.get("approximate_tenure_days", 0.0)),
        ))
    return records
