"""
顧客定着分析システム

取引イベントから導出した顧客ごとの行動指標をもとに、離脱確率・離脱までの
期待日数を予測するメインパッケージです。中核は Cox 比例ハザードモデルによる
生存時間分析エンジンで、割引・リテンション施策の判断材料を提供します。

主要モジュール:
- survival: Cox 比例ハザードモデル（リスク集合・最適化・ベースラインハザード・生存曲線）
- retention: セグメント別モデル管理と保守的フォールバックを備えた定着評価
- utils: 設定管理・ログ管理
"""

__version__ = "0.1.0"
__author__ = "Customer Retention Team"
__email__ = "team@example.com"

from customer_retention.utils.config_manager import ConfigManager
from customer_retention.utils.logger import get_logger

VERSION = __version__

logger = get_logger(__name__)


def get_version() -> str:
    """パッケージバージョンを取得"""
    return __version__


def initialize_system(config_path: str = None) -> ConfigManager:
    """
    システムを初期化

    Args:
        config_path: 設定ファイルのパス（オプション）

    Returns:
        ConfigManager: 設定管理インスタンス
    """
    logger.info(f"顧客定着分析システム v{__version__} を初期化中...")

    config_manager = ConfigManager(config_path)

    logger.info("システムの初期化が完了しました")
    return config_manager


__all__ = [
    "VERSION",
    "get_version",
    "initialize_system",
    "ConfigManager",
    "get_logger",
]
