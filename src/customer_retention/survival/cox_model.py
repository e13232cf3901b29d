"""
Cox比例ハザードモデル（モデルキャッシュ・公開API）

訓練（リスク集合 → 部分尤度の最適化 → ベースラインハザード推定）と、
顧客ごとの離脱確率・離脱までの期待日数・リスク要因の予測を提供する。

状態は「未訓練」と「訓練済み」の2つ。訓練済みの状態は不変のスナップショット
（係数・ベースラインハザード・そのスナップショット専用の生存曲線キャッシュ）
として保持し、再訓練時は新しいスナップショットへ参照ごと差し替える。
予測処理はスナップショットの参照を1回だけ取得するため、異なる訓練結果の
係数と生存曲線が混ざることはない。
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Hashable, Iterable, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from ..utils.logger import get_logger, log_structured, performance_context
from .baseline import BaselineHazard, estimate_baseline
from .curves import (
    DEFAULT_EMPTY_CURVE_CHURN_PROBABILITY,
    churn_probability,
    expected_time_to_event,
    linear_predictor,
    risk_factors,
    survival_curve,
)
from .exceptions import (
    InsufficientDataError,
    InvalidFeatureError,
    ModelNotTrainedError,
    NumericalError,
    SubjectNotFoundError,
    SurvivalAnalysisError,
)
from .optimizer import PartialLikelihoodOptimizer
from .persistence import dump_arrays, load_arrays
from .predictors import PREDICTOR_NAMES, PREDICTORS, Predictor
from .risk_sets import build_risk_sets
from .samples import (
    CustomerMetrics,
    FeatureInput,
    TrainingSample,
    build_feature_vector,
    records_from_frame,
    to_training_samples,
    training_arrays,
)

logger = get_logger(__name__)

# スナップショットごとの生存曲線キャッシュの上限件数
DEFAULT_MAX_CACHED_SUBJECTS = 100_000


@dataclass
class FitResult:
    """1回の訓練結果の要約"""
    coefficients: Dict[str, float]
    baseline: BaselineHazard
    iterations: int
    converged: bool
    log_likelihood: float
    n_samples: int
    n_events: int
    elapsed_seconds: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'coefficients': dict(self.coefficients),
            'baseline_points': len(self.baseline),
            'iterations': self.iterations,
            'converged': self.converged,
            'log_likelihood': self.log_likelihood,
            'n_samples': self.n_samples,
            'n_events': self.n_events,
            'elapsed_seconds': self.elapsed_seconds,
        }


@dataclass(frozen=True, eq=False)
class _SubjectEntry:
    features: np.ndarray
    linear_predictor: float
    curve: np.ndarray


class ModelSnapshot:
    """1回の訓練で得られた係数・ベースラインと、それに紐づく生存曲線キャッシュ

    キャッシュは max_entries 件を上限とし、超えた分は登録の古い顧客から破棄する
    （破棄された顧客は特徴量を渡せば再計算される）。None なら上限なし。
    """

    def __init__(self, beta: np.ndarray, baseline: BaselineHazard,
                 fit_result: Optional[FitResult] = None,
                 max_entries: Optional[int] = None):
        if max_entries is not None and int(max_entries) < 1:
            raise ValueError("max_entries は1以上で指定してください")
        beta = np.array(beta, dtype=float)
        beta.setflags(write=False)
        self.beta = beta
        self.coefficients: "OrderedDict[Predictor, float]" = OrderedDict(
            (p, float(b)) for p, b in zip(PREDICTORS, beta)
        )
        self.baseline = baseline
        self.fit_result = fit_result
        self.max_entries = int(max_entries) if max_entries is not None else None
        self._entries: "OrderedDict[Hashable, _SubjectEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def get_entry(self, subject_id: Hashable) -> Optional[_SubjectEntry]:
        with self._lock:
            return self._entries.get(subject_id)

    def put_entry(self, subject_id: Hashable, entry: _SubjectEntry) -> _SubjectEntry:
        """キャッシュに登録（同じ特徴量の登録が先にあればそちらを返す）"""
        with self._lock:
            existing = self._entries.get(subject_id)
            if existing is not None and np.array_equal(existing.features, entry.features):
                return existing
            self._entries[subject_id] = entry
            self._entries.move_to_end(subject_id)
            if self.max_entries is not None:
                while len(self._entries) > self.max_entries:
                    self._entries.popitem(last=False)
            return entry

    def drop_entry(self, subject_id: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(subject_id, None) is not None

    def subjects(self) -> List[Hashable]:
        with self._lock:
            return list(self._entries)


class CoxSurvivalModel:
    """Cox比例ハザードモデルによる離脱予測器

    訓練データ: 固定順序の特徴量、観測時間（日数）、イベント有無（離脱=True、打ち切り=False）。
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        初期化

        Args:
            config: 設定辞書（max_iter, tolerance, l2_penalty, singular_jitter,
                max_step_halvings, min_samples, empty_curve_churn_probability,
                max_cached_subjects）
        """
        self.config = config or {}
        self.optimizer = PartialLikelihoodOptimizer(
            max_iter=int(self.config.get('max_iter', 100)),
            tolerance=float(self.config.get('tolerance', 1e-6)),
            l2_penalty=float(self.config.get('l2_penalty', 0.01)),
            singular_jitter=float(self.config.get('singular_jitter', 0.1)),
            max_step_halvings=int(self.config.get('max_step_halvings', 10)),
        )
        self.min_samples = max(1, int(self.config.get('min_samples', 2)))
        self.empty_curve_churn_probability = float(
            self.config.get('empty_curve_churn_probability', DEFAULT_EMPTY_CURVE_CHURN_PROBABILITY)
        )
        if not 0.0 <= self.empty_curve_churn_probability <= 1.0:
            raise ValueError("empty_curve_churn_probability は 0〜1 の範囲で指定してください")
        max_cached = self.config.get('max_cached_subjects', DEFAULT_MAX_CACHED_SUBJECTS)
        self.max_cached_subjects = int(max_cached) if max_cached is not None else None
        if self.max_cached_subjects is not None and self.max_cached_subjects < 1:
            raise ValueError("max_cached_subjects は1以上で指定してください")

        self._snapshot: Optional[ModelSnapshot] = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config_manager) -> "CoxSurvivalModel":
        """ConfigManager の survival セクションから生成"""
        return cls(config_manager.get('survival', {}) or {})

    # ------------------------------------------------------------------
    # 訓練
    # ------------------------------------------------------------------

    def train_snapshot(
        self, samples: Iterable[Union[TrainingSample, CustomerMetrics]]
    ) -> Tuple[ModelSnapshot, FitResult]:
        """
        モデルを訓練してスナップショットを返す（現在の状態は変更しない）

        Raises:
            InsufficientDataError: サンプル不足、またはイベントが1件もない
            NumericalError: 最適化が数値的に失敗した
        """
        samples = to_training_samples(samples)
        n_samples = len(samples)
        if n_samples == 0:
            raise InsufficientDataError("訓練サンプルが空です", n_samples=0)
        if n_samples < self.min_samples:
            raise InsufficientDataError(
                f"訓練サンプルが不足しています: {n_samples}件（最低 {self.min_samples}件）",
                n_samples=n_samples
            )

        X, times, status = training_arrays(samples)
        n_events = int(status.sum())
        risk_sets = build_risk_sets(times, status == 1)
        if not risk_sets:
            raise InsufficientDataError(
                "離脱イベントが1件も観測されていないため訓練できません",
                n_samples=n_samples, n_events=0
            )

        start_time = time.perf_counter()
        with performance_context("cox_model_fit", {'n_samples': str(n_samples)}) as tags:
            result = self.optimizer.fit(X, times, status, risk_sets, PREDICTOR_NAMES)
            baseline = estimate_baseline(X, times, status, result.beta)
            tags['converged'] = str(result.converged)
        elapsed = time.perf_counter() - start_time

        fit_result = FitResult(
            coefficients=dict(result.coefficients),
            baseline=baseline,
            iterations=result.iterations,
            converged=result.converged,
            log_likelihood=result.log_likelihood,
            n_samples=n_samples,
            n_events=n_events,
            elapsed_seconds=elapsed,
        )
        return ModelSnapshot(result.beta, baseline, fit_result, self.max_cached_subjects), fit_result

    def build_cox_model(self, samples: Iterable[Union[TrainingSample, CustomerMetrics]]) -> FitResult:
        """
        モデルを訓練し、訓練結果を一括で差し替える

        失敗した場合は例外を送出し、直前の訓練済み状態はそのまま残る。
        成功した場合、以前の生存曲線キャッシュはすべて破棄される。

        Args:
            samples: 訓練サンプル（TrainingSample または CustomerMetrics）

        Returns:
            FitResult: 訓練結果の要約
        """
        logger.info("Coxモデルの訓練を開始...")
        try:
            snapshot, fit_result = self.train_snapshot(samples)
        except SurvivalAnalysisError as e:
            state = "既存の訓練結果を維持します" if self.is_trained else "モデルは未訓練のままです"
            logger.warning(f"Coxモデルの訓練に失敗しました（{e.error_code.value}）: {e.message}。{state}")
            raise

        self.install_snapshot(snapshot)
        log_structured(
            logger, "INFO", "Coxモデルの訓練が完了しました",
            n_samples=fit_result.n_samples,
            n_events=fit_result.n_events,
            iterations=fit_result.iterations,
            converged=fit_result.converged,
            elapsed=f"{fit_result.elapsed_seconds:.3f}s",
        )
        return fit_result

    def install_snapshot(self, snapshot: ModelSnapshot) -> None:
        """スナップショットを現在の状態として差し替える"""
        with self._lock:
            self._snapshot = snapshot

    def reset(self) -> None:
        """未訓練状態に戻す"""
        with self._lock:
            self._snapshot = None
        logger.info("Coxモデルを未訓練状態にリセットしました")

    # ------------------------------------------------------------------
    # 状態
    # ------------------------------------------------------------------

    @property
    def is_trained(self) -> bool:
        return self._snapshot is not None

    @property
    def coefficients(self) -> "OrderedDict[str, float]":
        snapshot = self._require_snapshot("coefficients")
        return OrderedDict((p.value, c) for p, c in snapshot.coefficients.items())

    @property
    def baseline(self) -> BaselineHazard:
        return self._require_snapshot("baseline").baseline

    @property
    def fit_result(self) -> Optional[FitResult]:
        snapshot = self._snapshot
        return snapshot.fit_result if snapshot is not None else None

    @property
    def cached_subjects(self) -> List[Hashable]:
        snapshot = self._snapshot
        return snapshot.subjects() if snapshot is not None else []

    def invalidate_subject(self, subject_id: Hashable) -> bool:
        """1顧客分の生存曲線キャッシュを破棄する"""
        snapshot = self._snapshot
        return snapshot.drop_entry(subject_id) if snapshot is not None else False

    # ------------------------------------------------------------------
    # 予測
    # ------------------------------------------------------------------

    def predict_churn_probability(self, subject_id: Hashable,
                                  features: Optional[FeatureInput] = None) -> float:
        """
        離脱確率（最終観測時点までに離脱する確率）を予測

        Args:
            subject_id: 顧客ID（生存曲線キャッシュのキー）
            features: 特徴量。キャッシュ済みの顧客なら省略できる

        Returns:
            float: 0〜1 の離脱確率
        """
        snapshot = self._require_snapshot("predict_churn_probability")
        entry = self._subject_entry(snapshot, subject_id, features)
        probability = churn_probability(entry.curve, self.empty_curve_churn_probability)
        if not 0.0 <= probability <= 1.0:
            raise NumericalError(f"離脱確率が範囲外です: {probability}")
        return probability

    def predict_time_to_event(self, subject_id: Hashable,
                              features: Optional[FeatureInput] = None) -> float:
        """
        離脱までの期待日数を予測（生存曲線の台形積分）

        Raises:
            InsufficientDataError: ベースラインの時点が2点未満
        """
        snapshot = self._require_snapshot("predict_time_to_event")
        entry = self._subject_entry(snapshot, subject_id, features)
        expected = expected_time_to_event(entry.curve, snapshot.baseline)
        if not (np.isfinite(expected) and expected >= 0.0):
            raise NumericalError(f"期待日数が不正です: {expected}")
        return expected

    def get_churn_risk_factors(self, subject_id: Hashable,
                               features: Optional[FeatureInput] = None) -> "OrderedDict[str, float]":
        """予測子ごとの寄与（係数×特徴量）を絶対値の大きい順に返す"""
        snapshot = self._require_snapshot("get_churn_risk_factors")
        entry = self._subject_entry(snapshot, subject_id, features)
        return risk_factors(snapshot.coefficients, entry.features)

    def survival_curve_for(self, subject_id: Hashable,
                           features: Optional[FeatureInput] = None) -> pd.Series:
        """生存曲線を時点インデックス付きの Series で返す"""
        snapshot = self._require_snapshot("survival_curve_for")
        entry = self._subject_entry(snapshot, subject_id, features)
        return pd.Series(
            entry.curve,
            index=pd.Index(snapshot.baseline.time_points, name="time"),
            name=str(subject_id),
        )

    def score_frame(self, records: Union[pd.DataFrame, Iterable[CustomerMetrics]]) -> pd.DataFrame:
        """
        複数顧客をまとめて予測し、DataFrame で返す

        ベースラインの時点が2点未満のモデルでは期待日数を計算できないため、
        expected_time_to_event は None になる（離脱確率は通常どおり返す）。
        """
        if isinstance(records, pd.DataFrame):
            records = records_from_frame(records)

        snapshot = self._require_snapshot("score_frame")
        rows = []
        for record in records:
            entry = self._subject_entry(snapshot, record.subject_id, record)
            factors = risk_factors(snapshot.coefficients, entry.features)
            try:
                expected = expected_time_to_event(entry.curve, snapshot.baseline)
            except InsufficientDataError:
                expected = None
            rows.append({
                'subject_id': record.subject_id,
                'linear_predictor': entry.linear_predictor,
                'churn_probability': churn_probability(entry.curve, self.empty_curve_churn_probability),
                'expected_time_to_event': expected,
                'top_risk_factor': next(iter(factors), None),
            })
        return pd.DataFrame(rows, columns=[
            'subject_id', 'linear_predictor', 'churn_probability',
            'expected_time_to_event', 'top_risk_factor',
        ])

    def predict_matrix(self, features: np.ndarray) -> pd.DataFrame:
        """特徴量行列（n×p）から線形予測子と離脱確率を計算（キャッシュは使わない）"""
        snapshot = self._require_snapshot("predict_matrix")
        X = np.asarray(features, dtype=float)
        if X.ndim != 2 or X.shape[1] != len(PREDICTORS):
            raise InvalidFeatureError(f"特徴量行列の形状が不正です: {X.shape}", field="features")
        if not np.all(np.isfinite(X)):
            raise InvalidFeatureError("特徴量に非有限値が含まれています", field="features")

        lp = X @ snapshot.beta
        probabilities = [
            churn_probability(survival_curve(value, snapshot.baseline), self.empty_curve_churn_probability)
            for value in lp
        ]
        return pd.DataFrame({'linear_predictor': lp, 'churn_probability': probabilities})

    def _require_snapshot(self, operation: str) -> ModelSnapshot:
        snapshot = self._snapshot
        if snapshot is None:
            raise ModelNotTrainedError(operation)
        return snapshot

    def _subject_entry(self, snapshot: ModelSnapshot, subject_id: Hashable,
                       features: Optional[FeatureInput]) -> _SubjectEntry:
        cached = snapshot.get_entry(subject_id)
        if features is None:
            if cached is None:
                raise SubjectNotFoundError(subject_id)
            return cached

        vector = build_feature_vector(features)
        if cached is not None and np.array_equal(cached.features, vector):
            return cached

        # 特徴量が変わった顧客は再計算して置き換える
        lp = linear_predictor(snapshot.coefficients, vector)
        entry = _SubjectEntry(
            features=vector,
            linear_predictor=lp,
            curve=survival_curve(lp, snapshot.baseline),
        )
        return snapshot.put_entry(subject_id, entry)

    # ------------------------------------------------------------------
    # 保存・読み込み
    # ------------------------------------------------------------------

    def save_model(self) -> bytes:
        """係数とベースラインハザードをバイト列に保存"""
        snapshot = self._require_snapshot("save_model")
        return dump_arrays(snapshot.beta, snapshot.baseline)

    def load_model(self, data: bytes) -> None:
        """保存済みモデルを読み込み、現在の状態を置き換える"""
        beta, baseline = load_arrays(data)
        self.install_snapshot(ModelSnapshot(beta, baseline, max_entries=self.max_cached_subjects))
        logger.info(f"保存済みCoxモデルを読み込みました（ベースライン {len(baseline)}点）")
