"""
ユーティリティモジュール

設定管理とログ管理を担当するモジュールです。

主要コンポーネント:
- config_manager: 設定管理
- logger: ログ管理・処理時間計測
"""

from customer_retention.utils.config_manager import (
    ConfigManager,
    get_config_manager,
    reload_config_manager,
)
from customer_retention.utils.logger import (
    get_logger,
    get_performance_monitor,
    performance_context,
    setup_logging,
)

__all__ = [
    "ConfigManager",
    "get_config_manager",
    "reload_config_manager",
    "get_logger",
    "get_performance_monitor",
    "performance_context",
    "setup_logging",
]
