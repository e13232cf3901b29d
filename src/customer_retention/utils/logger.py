"""
ログ管理ユーティリティ

システム全体で統一されたログ出力を提供します。
構造化ログと、モデル訓練などの処理時間計測機能を含みます。
"""

import json
import os
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from functools import wraps
from typing import Dict, Iterator, List, Optional

from loguru import logger as loguru_logger

# get_logger 呼び出しのたびにハンドラーを張り直さないための設定キー
_configured_key: Optional[tuple] = None
_configure_lock = threading.Lock()


@dataclass
class PerformanceMetric:
    """パフォーマンスメトリクス"""
    name: str
    value: float
    unit: str
    timestamp: datetime
    tags: Dict[str, str]


class PerformanceMonitor:
    """処理時間などのメトリクスをプロセス内に保持する"""

    def __init__(self, max_history: int = 1000):
        self.metrics: List[PerformanceMetric] = []
        self.max_history = max_history
        self._lock = threading.Lock()

    def record_metric(self, name: str, value: float, unit: str = "",
                      tags: Optional[Dict[str, str]] = None) -> PerformanceMetric:
        """メトリクスを記録"""
        metric = PerformanceMetric(
            name=name,
            value=value,
            unit=unit,
            timestamp=datetime.now(),
            tags=tags or {}
        )

        with self._lock:
            self.metrics.append(metric)
            if len(self.metrics) > self.max_history:
                self.metrics = self.metrics[-self.max_history:]

        return metric

    def get_metrics(self, name: Optional[str] = None,
                    since: Optional[datetime] = None) -> List[PerformanceMetric]:
        """メトリクスを取得"""
        with self._lock:
            metrics = self.metrics.copy()

        if name:
            metrics = [m for m in metrics if m.name == name]

        if since:
            metrics = [m for m in metrics if m.timestamp >= since]

        return metrics


# グローバルパフォーマンス監視インスタンス
_performance_monitor = PerformanceMonitor()


def get_performance_monitor() -> PerformanceMonitor:
    """パフォーマンス監視インスタンスを取得"""
    return _performance_monitor


def _format_string(log_format: str) -> str:
    if log_format == "json":
        return (
            "{{"
            '"time": "{time:YYYY-MM-DD HH:mm:ss.SSS}", '
            '"level": "{level}", '
            '"name": "{name}", '
            '"message": "{message}", '
            '"line": {line}'
            "}}"
        )
    return (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    )


def _configure(level: str, log_format: str, log_file: Optional[str]) -> None:
    """loguru のハンドラーを（設定が変わったときだけ）張り直す"""
    global _configured_key

    key = (level, log_format, log_file)
    with _configure_lock:
        if _configured_key == key:
            return

        format_string = _format_string(log_format)

        # 既存のハンドラーを削除
        loguru_logger.remove()

        loguru_logger.add(
            sys.stderr,
            format=format_string,
            level=level,
            colorize=log_format != "json",
            backtrace=True,
            diagnose=False,
        )

        if log_file:
            loguru_logger.add(
                log_file,
                format=format_string,
                level=level,
                rotation="10 MB",
                retention="7 days",
                compression="gz",
            )

        _configured_key = key


def get_logger(name: str, level: Optional[str] = None):
    """
    ログインスタンスを取得

    Args:
        name: ログ名（通常は __name__ を使用）
        level: ログレベル（オプション）

    Returns:
        loguru.Logger: ログインスタンス
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")

    _configure(level, os.getenv("LOG_FORMAT", "text"), os.getenv("LOG_FILE"))

    return loguru_logger.bind(logger_name=name)


def setup_logging(
    level: str = "INFO",
    format_type: str = "text",
    log_file: Optional[str] = None
) -> None:
    """
    ログ設定を初期化

    Args:
        level: ログレベル
        format_type: フォーマットタイプ（text または json）
        log_file: ログファイルパス（オプション）
    """
    os.environ["LOG_LEVEL"] = level
    os.environ["LOG_FORMAT"] = format_type

    if log_file:
        os.environ["LOG_FILE"] = log_file

    _configure(level, format_type, log_file)


@contextmanager
def performance_context(metric_name: str, tags: Optional[Dict[str, str]] = None) -> Iterator[Dict[str, str]]:
    """
    処理時間を計測してメトリクスとして記録するコンテキストマネージャー

    ブロック内で yield された辞書に値を追加すると、記録されるタグに反映される。

    Args:
        metric_name: メトリクス名
        tags: タグ辞書
    """
    metric_tags = (tags or {}).copy()
    start_time = time.perf_counter()
    success = False

    try:
        yield metric_tags
        success = True
    except Exception as e:
        metric_tags['error'] = type(e).__name__
        raise
    finally:
        execution_time = time.perf_counter() - start_time
        metric_tags['success'] = str(success)

        _performance_monitor.record_metric(
            name=metric_name,
            value=execution_time,
            unit="seconds",
            tags=metric_tags
        )


def performance_monitor(metric_name: str, tags: Optional[Dict[str, str]] = None):
    """
    関数の実行時間を記録するデコレータ

    Args:
        metric_name: メトリクス名
        tags: タグ辞書
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            call_tags = (tags or {}).copy()
            call_tags['function'] = func.__name__
            with performance_context(metric_name, call_tags):
                return func(*args, **kwargs)
        return wrapper
    return decorator


def log_structured(logger_instance, level: str, message: str, **kwargs) -> None:
    """
    構造化ログ出力

    Args:
        logger_instance: ロガーインスタンス
        level: ログレベル
        message: メッセージ
        **kwargs: 追加のフィールド
    """
    if os.getenv("LOG_FORMAT") == "json":
        log_message = json.dumps({'message': message, **kwargs}, ensure_ascii=False, default=str)
    else:
        extra_info = ", ".join(f"{k}={v}" for k, v in kwargs.items())
        log_message = f"{message} [{extra_info}]" if extra_info else message

    logger_instance.log(level.upper(), log_message)
