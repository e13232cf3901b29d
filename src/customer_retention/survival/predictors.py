"""
予測子（特徴量）の定義

Cox モデルが扱う予測子とその固定順序を定義する。特徴量ベクトル・係数ベクトルは
常に PREDICTORS の順序で並ぶ。文字列キーは境界で Predictor に変換し、
未知の名前はその場でエラーにする。
"""

from enum import Enum
from typing import Dict, Mapping, Tuple, Union

import numpy as np


class Predictor(str, Enum):
    """Cox モデルの予測子"""
    RECENCY = "recency"
    FREQUENCY = "frequency"
    MONETARY = "monetary"
    AGE = "age"
    SESSION_COUNT = "session_count"
    AVG_SESSION_DURATION = "avg_session_duration"


PREDICTORS: Tuple[Predictor, ...] = tuple(Predictor)
PREDICTOR_NAMES: Tuple[str, ...] = tuple(p.value for p in PREDICTORS)
PREDICTOR_INDEX: Dict[Predictor, int] = {p: i for i, p in enumerate(PREDICTORS)}
N_PREDICTORS = len(PREDICTORS)

# メトリクス層（キャメルケース）との互換
_ALIASES = {
    "sessionCount": Predictor.SESSION_COUNT,
    "avgSessionDuration": Predictor.AVG_SESSION_DURATION,
}

PredictorKey = Union[Predictor, str]


def as_predictor(key: PredictorKey) -> Predictor:
    """文字列またはPredictorをPredictorに変換する"""
    if isinstance(key, Predictor):
        return key
    if key in _ALIASES:
        return _ALIASES[key]
    try:
        return Predictor(key)
    except ValueError:
        raise ValueError(
            f"未知の予測子です: {key!r}（有効: {', '.join(PREDICTOR_NAMES)}）"
        ) from None


def coefficient_array(coefficients: Mapping[PredictorKey, float]) -> np.ndarray:
    """係数マッピングを固定順序のベクトルに変換する（欠けた予測子は 0）"""
    beta = np.zeros(N_PREDICTORS, dtype=float)
    for key, value in coefficients.items():
        beta[PREDICTOR_INDEX[as_predictor(key)]] = float(value)
    return beta
