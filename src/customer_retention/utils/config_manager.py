"""
設定管理ユーティリティ

YAML設定ファイルの読み込み、環境変数による上書き、設定の検証を行います。

探索先は `configs/` 配下です:
- `configs/retention_config.yaml` （ベース設定）
- `configs/{ENVIRONMENT}.yaml` （環境別設定）
- `configs/local.yaml` （ローカル設定、オプション）
後に読み込んだファイルほど優先されます。
"""

import hashlib
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from omegaconf import DictConfig, OmegaConf

from customer_retention.utils.logger import get_logger

logger = get_logger(__name__)

# 値の範囲検証ルール: キー -> (最小値, 最大値, 最小値を含むか)
_RANGE_RULES: Dict[str, Tuple[float, float, bool]] = {
    "survival.max_iter": (1, float("inf"), True),
    "survival.tolerance": (0.0, float("inf"), False),
    "survival.l2_penalty": (0.0, float("inf"), True),
    "survival.singular_jitter": (0.0, float("inf"), True),
    "survival.max_step_halvings": (0, float("inf"), True),
    "survival.min_samples": (1, float("inf"), True),
    "survival.empty_curve_churn_probability": (0.0, 1.0, True),
    "retention.default_churn_probability": (0.0, 1.0, True),
    "retention.risk_thresholds.high": (0.0, 1.0, True),
    "retention.risk_thresholds.medium": (0.0, 1.0, True),
}


class ConfigManager:
    """設定管理クラス"""

    ENV_MAPPINGS = {
        "SURVIVAL_MAX_ITER": "survival.max_iter",
        "SURVIVAL_TOLERANCE": "survival.tolerance",
        "SURVIVAL_L2_PENALTY": "survival.l2_penalty",
        "SURVIVAL_MIN_SAMPLES": "survival.min_samples",
        "RETENTION_DEFAULT_CHURN_PROBABILITY": "retention.default_churn_probability",
        "LOG_LEVEL": "logging.level",
    }

    def __init__(self,
                 config_path: Optional[Union[str, Path]] = None,
                 environment: Optional[str] = None):
        """
        設定管理を初期化

        Args:
            config_path: 設定ファイルまたは設定ディレクトリのパス（オプション）
            environment: 環境名（development, testing, production）
        """
        self.config_path = config_path
        self.environment = environment or os.getenv("ENVIRONMENT", "development")
        self.config: Optional[DictConfig] = None
        self.config_hash: Optional[str] = None

        self._load_config()

    def _load_config(self) -> None:
        """設定ファイルを読み込み（環境別設定対応）"""
        base_config: Dict[str, Any] = {}
        for config_file in self._get_config_file_paths():
            if Path(config_file).exists():
                logger.info(f"設定ファイルを読み込み中: {config_file}")

                with open(config_file, 'r', encoding='utf-8') as f:
                    file_config = yaml.safe_load(f) or {}

                base_config = self._deep_merge_dict(base_config, file_config)

        if base_config:
            self.config = OmegaConf.create(base_config)
            logger.info(f"設定ファイルの読み込みが完了しました（環境: {self.environment}）")
        else:
            logger.warning("設定ファイルが見つかりません。デフォルト設定を使用します")
            self.config = OmegaConf.create({})

        self._override_with_env_vars()
        self._update_config_hash()

    def _get_config_file_paths(self) -> List[str]:
        """環境別設定ファイルパスを取得"""
        if self.config_path:
            p = Path(self.config_path)
            if p.is_dir():
                return [
                    str(p / "retention_config.yaml"),
                    str(p / f"{self.environment}.yaml"),
                    str(p / "local.yaml"),
                ]
            return [str(p)]

        return [
            "configs/retention_config.yaml",
            f"configs/{self.environment}.yaml",
            "configs/local.yaml",
        ]

    def _deep_merge_dict(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """辞書の深いマージ"""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge_dict(result[key], value)
            else:
                result[key] = value

        return result

    def _update_config_hash(self) -> None:
        """設定のハッシュ値を更新"""
        config_str = OmegaConf.to_yaml(self.get_config())
        self.config_hash = hashlib.md5(config_str.encode()).hexdigest()

    def get_config_hash(self) -> Optional[str]:
        """設定のハッシュ値を取得"""
        return self.config_hash

    def _override_with_env_vars(self) -> None:
        """環境変数で設定を上書き"""
        for env_var, config_key in self.ENV_MAPPINGS.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                # "100" -> 100, "0.5" -> 0.5 のように YAML の型解釈を使う
                self.set(config_key, yaml.safe_load(env_value))
                logger.debug(f"環境変数 {env_var} で設定を上書き: {config_key}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        設定値を取得

        Args:
            key: 設定キー（ドット記法対応）
            default: デフォルト値

        Returns:
            設定値。DictConfig の場合は通常の dict に変換して返す
        """
        if self.config is None:
            return default

        value = OmegaConf.select(self.config, key, default=default)
        if isinstance(value, DictConfig):
            return OmegaConf.to_container(value, resolve=True)
        return value

    def set(self, key: str, value: Any) -> None:
        """
        設定値を設定

        Args:
            key: 設定キー（ドット記法対応）
            value: 設定値
        """
        if self.config is None:
            self.config = OmegaConf.create({})

        OmegaConf.update(self.config, key, value, merge=True)
        self._update_config_hash()
        logger.debug(f"設定を更新: {key} = {value}")

    def get_config(self) -> DictConfig:
        """全設定を取得"""
        return self.config if self.config is not None else OmegaConf.create({})

    def merge_config(self, other_config: Union[Dict[str, Any], DictConfig]) -> None:
        """
        他の設定をマージ

        Args:
            other_config: マージする設定
        """
        if self.config is None:
            self.config = OmegaConf.create({})

        if isinstance(other_config, dict):
            other_config = OmegaConf.create(other_config)

        self.config = OmegaConf.merge(self.config, other_config)
        self._update_config_hash()

        logger.info("設定をマージしました")

    def validate_config(self) -> bool:
        """
        設定値の範囲を検証

        Returns:
            bool: 設定が有効かどうか
        """
        errors = []

        for key, (lower, upper, inclusive) in _RANGE_RULES.items():
            value = self.get(key)
            if value is None:
                continue
            try:
                number = float(value)
            except (TypeError, ValueError):
                errors.append(f"数値ではありません: {key}={value!r}")
                continue
            below = number < lower if inclusive else number <= lower
            if below or number > upper:
                errors.append(f"範囲外の設定値です: {key}={value}")

        high = self.get("retention.risk_thresholds.high")
        medium = self.get("retention.risk_thresholds.medium")
        if high is not None and medium is not None and float(medium) > float(high):
            errors.append("retention.risk_thresholds.medium は high 以下である必要があります")

        for error in errors:
            logger.error(error)

        if errors:
            return False

        logger.info("設定の検証が完了しました")
        return True

    def save_config(self, output_path: Union[str, Path]) -> None:
        """
        設定をファイルに保存

        Args:
            output_path: 出力ファイルパス
        """
        with open(output_path, 'w', encoding='utf-8') as f:
            f.write(OmegaConf.to_yaml(self.get_config()))

        logger.info(f"設定をファイルに保存しました: {output_path}")


# グローバル設定管理インスタンス
_global_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_path: Optional[Union[str, Path]] = None,
                       environment: Optional[str] = None) -> ConfigManager:
    """
    グローバル設定管理インスタンスを取得

    Args:
        config_path: 設定ファイルのパス（初回のみ使用）
        environment: 環境名（初回のみ使用）

    Returns:
        ConfigManager: 設定管理インスタンス
    """
    global _global_config_manager

    if _global_config_manager is None:
        _global_config_manager = ConfigManager(config_path, environment)

    return _global_config_manager


def reload_config_manager(config_path: Optional[Union[str, Path]] = None,
                          environment: Optional[str] = None) -> ConfigManager:
    """
    設定管理インスタンスを再読み込み

    Args:
        config_path: 設定ファイルのパス
        environment: 環境名

    Returns:
        ConfigManager: 新しい設定管理インスタンス
    """
    global _global_config_manager
    _global_config_manager = ConfigManager(config_path, environment)
    return _global_config_manager
