"""
訓練済みモデルの保存・読み込み

係数ベクトルとベースライン累積ハザードを numpy の .npz アーカイブ
（pickle なし）としてバイト列に書き出す。再起動時に再訓練せずに
予測を再開するためのもの。生存曲線キャッシュは保存しない。
"""

import io
import zipfile
from pathlib import Path
from typing import Tuple, Union

import numpy as np

from ..utils.logger import get_logger
from .baseline import BaselineHazard
from .exceptions import ModelPersistenceError
from .predictors import N_PREDICTORS, PREDICTOR_NAMES

logger = get_logger(__name__)

FORMAT_VERSION = 1


def dump_arrays(beta: np.ndarray, baseline: BaselineHazard) -> bytes:
    """係数とベースラインをバイト列に変換"""
    buffer = io.BytesIO()
    np.savez_compressed(
        buffer,
        format_version=np.array([FORMAT_VERSION], dtype=np.int64),
        predictors=np.array(PREDICTOR_NAMES),
        coefficients=np.asarray(beta, dtype=float),
        time_points=baseline.time_points,
        cumulative_hazard=baseline.cumulative_hazard,
    )
    return buffer.getvalue()


def load_arrays(data: bytes) -> Tuple[np.ndarray, BaselineHazard]:
    """バイト列から係数とベースラインを復元"""
    try:
        with np.load(io.BytesIO(data), allow_pickle=False) as archive:
            version = int(archive["format_version"][0])
            predictors = tuple(str(name) for name in archive["predictors"])
            beta = np.array(archive["coefficients"], dtype=float)
            time_points = np.array(archive["time_points"], dtype=float)
            cumulative_hazard = np.array(archive["cumulative_hazard"], dtype=float)
    except (OSError, ValueError, KeyError, IndexError, AttributeError, TypeError, zipfile.BadZipFile) as e:
        raise ModelPersistenceError(f"保存済みモデルを読み込めません: {e}") from e

    if version != FORMAT_VERSION:
        raise ModelPersistenceError(f"未対応のフォーマットバージョンです: {version}")
    if predictors != PREDICTOR_NAMES:
        raise ModelPersistenceError(f"予測子の構成が一致しません: {predictors}")
    if beta.shape != (N_PREDICTORS,) or not np.all(np.isfinite(beta)):
        raise ModelPersistenceError("係数ベクトルが不正です")

    try:
        baseline = BaselineHazard(time_points, cumulative_hazard)
    except ValueError as e:
        raise ModelPersistenceError(f"ベースラインハザードが不正です: {e}") from e

    return beta, baseline


def save_model(model) -> bytes:
    """CoxSurvivalModel をバイト列に保存"""
    return model.save_model()


def load_model(model, data: bytes) -> None:
    """バイト列から CoxSurvivalModel を復元（現在のスナップショットを置き換える）"""
    model.load_model(data)


def save_to_path(model, path: Union[str, Path]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(model.save_model())
    logger.info(f"モデルを保存しました: {path}")
    return path


def load_from_path(model, path: Union[str, Path]) -> None:
    path = Path(path)
    model.load_model(path.read_bytes())
    logger.info(f"モデルを読み込みました: {path}")
