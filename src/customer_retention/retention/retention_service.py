"""
セグメント別の定着評価サービス

顧客セグメントごとに Cox モデルを保持し、離脱確率・離脱までの期待日数・
リスクレベルをまとめて返す。モデルが未訓練・数値計算に失敗した場合は
保守的な既定の離脱確率（0.2）にフォールバックし、その旨を結果に明示する。
"""

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Union

from ..survival.cox_model import CoxSurvivalModel, FitResult
from ..survival.exceptions import (
    InsufficientDataError,
    ModelNotTrainedError,
    NumericalError,
    SurvivalAnalysisError,
)
from ..survival.samples import CustomerMetrics, FeatureInput, TrainingSample
from ..utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_SEGMENT = "default"

# フォールバック対象（回復可能で、既定値で代替してよいもの）
_FALLBACK_ERRORS = (ModelNotTrainedError, NumericalError, InsufficientDataError)


@dataclass
class RetentionAssessment:
    """定着評価結果データクラス"""
    subject_id: Hashable
    segment_id: str
    churn_probability: float
    expected_time_to_event: Optional[float]
    risk_level: str  # 'low', 'medium', 'high'
    top_risk_factors: Dict[str, float] = field(default_factory=dict)
    is_fallback: bool = False
    fallback_reason: Optional[str] = None
    assessed_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'subject_id': self.subject_id,
            'segment_id': self.segment_id,
            'churn_probability': self.churn_probability,
            'expected_time_to_event': self.expected_time_to_event,
            'risk_level': self.risk_level,
            'top_risk_factors': dict(self.top_risk_factors),
            'is_fallback': self.is_fallback,
            'fallback_reason': self.fallback_reason,
            'assessed_at': self.assessed_at.isoformat(),
        }


class RetentionService:
    """
    定着評価サービス

    セグメントIDをキーに Cox モデルを管理する。訓練は呼び出し元のスレッドで
    行い（期限指定時のみワーカースレッドを使う）、予測は常に最新の訓練結果を使う。
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 model_factory: Optional[Callable[[], CoxSurvivalModel]] = None):
        """
        初期化

        Args:
            config: retention 設定辞書（default_churn_probability, risk_thresholds,
                top_factor_count, training_timeout_seconds, survival）
            model_factory: セグメントごとのモデルを生成する関数
        """
        self.config = config or {}
        self.default_churn_probability = float(self.config.get('default_churn_probability', 0.2))
        if not 0.0 <= self.default_churn_probability <= 1.0:
            raise ValueError("default_churn_probability は 0〜1 の範囲で指定してください")

        self.risk_thresholds = self.config.get('risk_thresholds') or {'high': 0.7, 'medium': 0.4}
        self.top_factor_count = int(self.config.get('top_factor_count', 3))
        timeout = self.config.get('training_timeout_seconds')
        self.training_timeout_seconds = float(timeout) if timeout is not None else None

        survival_config = self.config.get('survival') or {}
        self.model_factory = model_factory or (lambda: CoxSurvivalModel(survival_config))

        self._models: Dict[str, CoxSurvivalModel] = {}
        self._lock = Lock()

        logger.info("定着評価サービスが初期化されました")

    @classmethod
    def from_config(cls, config_manager) -> "RetentionService":
        """ConfigManager の retention / survival セクションから生成"""
        config = dict(config_manager.get('retention', {}) or {})
        config['survival'] = config_manager.get('survival', {}) or {}
        return cls(config)

    # ------------------------------------------------------------------
    # モデル管理
    # ------------------------------------------------------------------

    @property
    def segments(self) -> List[str]:
        with self._lock:
            return sorted(self._models)

    def model_for(self, segment_id: str = DEFAULT_SEGMENT) -> Optional[CoxSurvivalModel]:
        with self._lock:
            return self._models.get(segment_id)

    def build_segment_model(
        self,
        segment_id: str,
        records: Iterable[Union[TrainingSample, CustomerMetrics]],
        timeout_seconds: Optional[float] = None,
    ) -> FitResult:
        """
        セグメントのモデルを訓練（既存モデルがあれば再訓練）

        Args:
            segment_id: セグメントID
            records: 訓練データ
            timeout_seconds: 訓練期限（秒）。超過した場合は NumericalError

        Returns:
            FitResult: 訓練結果
        """
        with self._lock:
            model = self._models.get(segment_id)
            if model is None:
                model = self.model_factory()
                self._models[segment_id] = model

        if timeout_seconds is None:
            timeout_seconds = self.training_timeout_seconds

        logger.info(f"セグメント '{segment_id}' のモデルを訓練中...")
        if timeout_seconds is None:
            return model.build_cox_model(records)

        records = list(records)
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"cox-train-{segment_id}")
        try:
            future = executor.submit(model.train_snapshot, records)
            try:
                snapshot, fit_result = future.result(timeout=timeout_seconds)
            except FutureTimeoutError:
                future.cancel()
                logger.warning(
                    f"セグメント '{segment_id}' の訓練が期限 {timeout_seconds}秒 を超過しました。"
                    "既存のモデルを維持します"
                )
                raise NumericalError(
                    f"モデル訓練が期限（{timeout_seconds}秒）を超過しました"
                ) from None
        finally:
            # 期限超過時も完了を待たない（遅れて届いた結果は使われない）
            executor.shutdown(wait=False)

        model.install_snapshot(snapshot)
        logger.info(
            f"セグメント '{segment_id}' のモデル訓練が完了しました "
            f"(n_samples={fit_result.n_samples}, converged={fit_result.converged})"
        )
        return fit_result

    def reset_segment(self, segment_id: str) -> bool:
        """セグメントのモデルを未訓練状態に戻す"""
        model = self.model_for(segment_id)
        if model is None:
            return False
        model.reset()
        return True

    # ------------------------------------------------------------------
    # 予測
    # ------------------------------------------------------------------

    def predict_churn_probability(self, subject_id: Hashable,
                                  features: Optional[FeatureInput] = None,
                                  segment_id: str = DEFAULT_SEGMENT) -> float:
        """離脱確率を予測（失敗時は既定値）"""
        return self.assess(subject_id, features, segment_id).churn_probability

    def predict_time_to_event(self, subject_id: Hashable,
                              features: Optional[FeatureInput] = None,
                              segment_id: str = DEFAULT_SEGMENT) -> Optional[float]:
        """離脱までの期待日数を予測（予測できない場合は None）"""
        return self.assess(subject_id, features, segment_id).expected_time_to_event

    def assess(self, subject_id: Hashable,
               features: Optional[FeatureInput] = None,
               segment_id: str = DEFAULT_SEGMENT) -> RetentionAssessment:
        """
        顧客の定着評価

        Args:
            subject_id: 顧客ID
            features: 特徴量（キャッシュ済みの顧客なら省略可）
            segment_id: セグメントID

        Returns:
            RetentionAssessment: 評価結果
        """
        try:
            model = self._require_model(segment_id)
            probability = model.predict_churn_probability(subject_id, features)
            factors = model.get_churn_risk_factors(subject_id, features)
        except _FALLBACK_ERRORS as e:
            return self._fallback(subject_id, segment_id, e)

        try:
            expected = model.predict_time_to_event(subject_id, features)
        except InsufficientDataError:
            expected = None

        top_factors = dict(list(factors.items())[:self.top_factor_count])
        return RetentionAssessment(
            subject_id=subject_id,
            segment_id=segment_id,
            churn_probability=probability,
            expected_time_to_event=expected,
            risk_level=self.risk_level(probability),
            top_risk_factors=top_factors,
        )

    def assess_many(self, records: Iterable[CustomerMetrics],
                    segment_id: str = DEFAULT_SEGMENT) -> List[RetentionAssessment]:
        return [self.assess(record.subject_id, record, segment_id) for record in records]

    def risk_level(self, probability: float) -> str:
        """離脱確率をリスクレベルに分類"""
        if probability >= float(self.risk_thresholds.get('high', 0.7)):
            return 'high'
        if probability >= float(self.risk_thresholds.get('medium', 0.4)):
            return 'medium'
        return 'low'

    def _require_model(self, segment_id: str) -> CoxSurvivalModel:
        model = self.model_for(segment_id)
        if model is None:
            raise ModelNotTrainedError(f"segment:{segment_id}")
        return model

    def _fallback(self, subject_id: Hashable, segment_id: str,
                  error: SurvivalAnalysisError) -> RetentionAssessment:
        logger.warning(
            f"顧客 '{subject_id}' の離脱確率を予測できません（{error.error_code.value}）。"
            f"既定値 {self.default_churn_probability} を使用します"
        )
        return RetentionAssessment(
            subject_id=subject_id,
            segment_id=segment_id,
            churn_probability=self.default_churn_probability,
            expected_time_to_event=None,
            risk_level=self.risk_level(self.default_churn_probability),
            is_fallback=True,
            fallback_reason=error.error_code.value,
        )
