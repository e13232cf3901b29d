"""
顧客定着分析システム - コマンドラインインターフェース

Coxモデルの訓練・予測・設定検証をコマンドラインから実行するためのCLIです。
"""

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

import pandas as pd

from customer_retention import get_version, initialize_system
from customer_retention.utils.logger import get_logger, performance_monitor, setup_logging

logger = get_logger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """コマンドライン引数パーサーを作成"""
    parser = argparse.ArgumentParser(
        prog="customer-retention",
        description="顧客定着分析システム（Cox比例ハザードモデル）",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
使用例:
  customer-retention --version
  customer-retention train --input data/metrics.csv --output outputs/cox_model.npz
  customer-retention predict --model outputs/cox_model.npz --input data/customers.csv
  customer-retention --config configs/retention_config.yaml validate
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"customer-retention {get_version()}"
    )

    parser.add_argument(
        "--config",
        type=str,
        help="設定ファイルのパス"
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="ログレベル"
    )

    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default="text",
        help="ログフォーマット"
    )

    # サブコマンドを追加
    subparsers = parser.add_subparsers(dest="command", help="利用可能なコマンド")

    # 訓練コマンド
    train_parser = subparsers.add_parser("train", help="Coxモデルを訓練")
    train_parser.add_argument(
        "--input",
        required=True,
        help="顧客メトリクスCSV（予測子列・churned・approximate_tenure_days）"
    )
    train_parser.add_argument(
        "--output",
        default="outputs/cox_model.npz",
        help="訓練済みモデルの保存先"
    )

    # 予測コマンド
    predict_parser = subparsers.add_parser("predict", help="離脱確率を予測")
    predict_parser.add_argument(
        "--model",
        required=True,
        help="訓練済みモデルのパス"
    )
    predict_parser.add_argument(
        "--input",
        required=True,
        help="顧客メトリクスCSV"
    )
    predict_parser.add_argument(
        "--output",
        help="出力ファイルのパス（JSON）"
    )

    # 設定検証コマンド
    subparsers.add_parser("validate", help="設定を検証")

    return parser


@performance_monitor("cli_train")
def handle_train_command(args: argparse.Namespace) -> int:
    """訓練コマンドを処理"""
    logger.info(f"訓練を開始: {args.input}")

    try:
        from customer_retention.survival import CoxSurvivalModel, records_from_frame, save_to_path
        from customer_retention.survival.metrics import evaluate_model
        from customer_retention.utils.config_manager import get_config_manager

        config_manager = get_config_manager(args.config)
        model = CoxSurvivalModel.from_config(config_manager)

        records = records_from_frame(pd.read_csv(args.input))
        fit_result = model.build_cox_model(records)

        metrics = evaluate_model(model, records)
        logger.info(
            f"訓練データでの評価: C-index={metrics['c_index']:.3f}, "
            f"ROC-AUC={metrics['roc_auc']:.3f}, Brier={metrics['brier']:.3f}"
        )

        output_path = save_to_path(model, args.output)

        summary = fit_result.to_dict()
        summary['metrics'] = metrics
        summary['model_path'] = str(output_path)
        print(json.dumps(summary, ensure_ascii=False, indent=2))

        if not fit_result.converged:
            logger.warning("最適化が収束しませんでした。最終反復の係数を保存しています")

        logger.info("訓練が完了しました")
        return 0

    except Exception as e:
        logger.error(f"訓練中にエラーが発生しました: {e}")
        return 1


def handle_predict_command(args: argparse.Namespace) -> int:
    """予測コマンドを処理"""
    logger.info(f"離脱確率を予測中: {args.input}")

    try:
        from customer_retention.survival import CoxSurvivalModel, load_from_path
        from customer_retention.utils.config_manager import get_config_manager

        config_manager = get_config_manager(args.config)
        model = CoxSurvivalModel.from_config(config_manager)
        load_from_path(model, args.model)

        scores = model.score_frame(pd.read_csv(args.input))
        prediction_result = scores.to_dict("records")

        # 結果を出力
        if args.output:
            output_path = Path(args.output)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            with open(output_path, 'w', encoding='utf-8') as f:
                json.dump(prediction_result, f, ensure_ascii=False, indent=2, default=str)
            logger.info(f"予測結果を保存しました: {output_path}")
        else:
            print(json.dumps(prediction_result, ensure_ascii=False, indent=2, default=str))

        logger.info(f"予測が完了しました（{len(prediction_result)}件）")
        return 0

    except Exception as e:
        logger.error(f"予測中にエラーが発生しました: {e}")
        return 1


def handle_validate_command(args: argparse.Namespace) -> int:
    """設定検証コマンドを処理"""
    logger.info("設定を検証中...")

    try:
        config_manager = initialize_system(args.config)

        if config_manager.validate_config():
            logger.info("設定の検証が成功しました")
            return 0
        else:
            logger.error("設定の検証が失敗しました")
            return 1

    except Exception as e:
        logger.error(f"設定検証中にエラーが発生しました: {e}")
        return 1


def main(argv: Optional[List[str]] = None) -> int:
    """メイン関数"""
    parser = create_parser()
    args = parser.parse_args(argv)

    # ログ設定を初期化
    setup_logging(level=args.log_level, format_type=args.log_format)

    logger.info(f"顧客定着分析システム v{get_version()} を開始")

    # コマンドを処理
    if args.command == "train":
        return handle_train_command(args)
    elif args.command == "predict":
        return handle_predict_command(args)
    elif args.command == "validate":
        return handle_validate_command(args)
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
