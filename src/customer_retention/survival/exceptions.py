"""
生存時間分析エンジンの例外クラス

いずれも呼び出し側で回復可能なエラーとして扱う（再訓練・データ追加・
既定値へのフォールバックなど）。
"""

from enum import Enum
from typing import Any, Dict, Hashable, Optional


class ErrorCode(str, Enum):
    """エラーコード定義"""
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"
    NUMERICAL_ERROR = "NUMERICAL_ERROR"
    MODEL_NOT_TRAINED = "MODEL_NOT_TRAINED"
    SUBJECT_NOT_FOUND = "SUBJECT_NOT_FOUND"
    INVALID_FEATURE = "INVALID_FEATURE"
    MODEL_PERSISTENCE_ERROR = "MODEL_PERSISTENCE_ERROR"


class SurvivalAnalysisError(Exception):
    """生存時間分析の基本例外クラス"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """例外を辞書形式に変換"""
        return {
            "error_code": self.error_code.value,
            "message": self.message,
            "details": self.details
        }


class InsufficientDataError(SurvivalAnalysisError):
    """訓練・推定に必要なデータが不足している"""

    def __init__(
        self,
        message: str,
        n_samples: Optional[int] = None,
        n_events: Optional[int] = None
    ):
        details = {}
        if n_samples is not None:
            details["n_samples"] = n_samples
        if n_events is not None:
            details["n_events"] = n_events

        super().__init__(
            message=message,
            error_code=ErrorCode.INSUFFICIENT_DATA,
            details=details
        )


class NumericalError(SurvivalAnalysisError):
    """情報行列の特異・非有限値・訓練期限超過など数値計算上の失敗"""

    def __init__(self, message: str, iteration: Optional[int] = None):
        details = {}
        if iteration is not None:
            details["iteration"] = iteration

        super().__init__(
            message=message,
            error_code=ErrorCode.NUMERICAL_ERROR,
            details=details
        )


class ModelNotTrainedError(SurvivalAnalysisError):
    """モデル未訓練エラー"""

    def __init__(self, operation: str):
        super().__init__(
            message=f"モデルが訓練されていないため '{operation}' を実行できません",
            error_code=ErrorCode.MODEL_NOT_TRAINED,
            details={"operation": operation}
        )


class SubjectNotFoundError(SurvivalAnalysisError):
    """キャッシュに生存曲線がなく、特徴量も与えられていない"""

    def __init__(self, subject_id: Hashable):
        super().__init__(
            message=f"顧客 '{subject_id}' の生存曲線がキャッシュになく、特徴量も指定されていません",
            error_code=ErrorCode.SUBJECT_NOT_FOUND,
            details={"subject_id": str(subject_id)}
        )


class InvalidFeatureError(SurvivalAnalysisError, ValueError):
    """特徴量・観測時間が不正（非有限値、負の時間など）"""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {}
        if field:
            details["field"] = field

        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_FEATURE,
            details=details
        )


class ModelPersistenceError(SurvivalAnalysisError):
    """保存済みモデルの読み込み失敗"""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            error_code=ErrorCode.MODEL_PERSISTENCE_ERROR
        )
