"""
生存時間分析モジュール

Cox 比例ハザードモデルによる顧客離脱予測を担当するモジュールです。

主要コンポーネント:
- risk_sets: イベント時点ごとのリスク集合
- optimizer: L2正則化付き部分尤度のニュートン・ラフソン最適化
- baseline: Breslow 推定によるベースライン累積ハザード
- curves: 生存曲線・離脱確率・期待日数・リスク要因
- cox_model: 訓練結果のスナップショット管理と予測API
- persistence: 訓練済みモデルの保存・読み込み
- metrics: C-index などの評価指標
"""

from .baseline import BaselineHazard, estimate_baseline
from .cox_model import CoxSurvivalModel, FitResult, ModelSnapshot
from .exceptions import (
    ErrorCode,
    InsufficientDataError,
    InvalidFeatureError,
    ModelNotTrainedError,
    ModelPersistenceError,
    NumericalError,
    SubjectNotFoundError,
    SurvivalAnalysisError,
)
from .optimizer import PartialLikelihoodOptimizer
from .persistence import load_from_path, load_model, save_model, save_to_path
from .predictors import PREDICTOR_NAMES, PREDICTORS, Predictor
from .risk_sets import build_risk_sets
from .samples import CustomerMetrics, TrainingSample, build_feature_vector, records_from_frame

__all__ = [
    'CoxSurvivalModel',
    'FitResult',
    'ModelSnapshot',
    'PartialLikelihoodOptimizer',
    'BaselineHazard',
    'estimate_baseline',
    'build_risk_sets',
    'Predictor',
    'PREDICTORS',
    'PREDICTOR_NAMES',
    'TrainingSample',
    'CustomerMetrics',
    'build_feature_vector',
    'records_from_frame',
    'save_model',
    'load_model',
    'save_to_path',
    'load_from_path',
    'ErrorCode',
    'SurvivalAnalysisError',
    'InsufficientDataError',
    'NumericalError',
    'ModelNotTrainedError',
    'SubjectNotFoundError',
    'InvalidFeatureError',
    'ModelPersistenceError',
]
