"""
テスト設定ファイル

pytest の共通設定とフィクスチャを定義します。
"""

from pathlib import Path

import numpy as np
import pytest

from customer_retention.survival import CoxSurvivalModel, CustomerMetrics

CONFIG_DIR = Path(__file__).resolve().parents[1] / "configs"


def make_scenario_a_records():
    """最終購入からの日数（recency）だけで離脱が分かれるデータ

    recency が大きい20人は 5〜24日目に離脱、小さい20人は90日目まで離脱なし（打ち切り）。
    """
    records = []
    for i in range(20):
        records.append(CustomerMetrics(
            subject_id=f"high-{i}",
            recency=60 + i,
            frequency=3,
            monetary=50.0,
            age=30,
            session_count=4.0,
            avg_session_duration=12.5,
            churned=True,
            approximate_tenure_days=float(5 + (7 * i) % 20),
        ))
    for i in range(20):
        records.append(CustomerMetrics(
            subject_id=f"low-{i}",
            recency=1 + i,
            frequency=3,
            monetary=50.0,
            age=30,
            session_count=4.0,
            avg_session_duration=12.5,
            churned=False,
            approximate_tenure_days=90.0,
        ))
    return records


def make_mixed_records(n: int = 60, seed: int = 7):
    """全予測子がばらつくデータ（離脱ハザードは recency とともに増加）"""
    rng = np.random.default_rng(seed)
    records = []
    for i in range(n):
        recency = int(rng.integers(1, 90))
        scale = 60.0 * np.exp(-0.02 * (recency - 45))
        event_time = float(np.ceil(rng.exponential(scale)))
        churned = event_time <= 120.0
        records.append(CustomerMetrics(
            subject_id=f"mixed-{i}",
            recency=recency,
            frequency=int(rng.integers(1, 20)),
            monetary=float(rng.uniform(10.0, 200.0)),
            age=int(rng.integers(18, 70)),
            session_count=float(rng.uniform(1.0, 30.0)),
            avg_session_duration=float(rng.uniform(1.0, 60.0)),
            churned=bool(churned),
            approximate_tenure_days=event_time if churned else 120.0,
        ))
    return records


@pytest.fixture
def config_dir():
    """リポジトリ同梱の設定ディレクトリ"""
    return CONFIG_DIR


@pytest.fixture
def scenario_a_records():
    return make_scenario_a_records()


@pytest.fixture
def mixed_records():
    return make_mixed_records()


@pytest.fixture
def trained_model(mixed_records):
    """mixed_records で訓練済みのモデル"""
    model = CoxSurvivalModel()
    model.build_cox_model(mixed_records)
    return model


@pytest.fixture
def sample_customer():
    """予測用のサンプル顧客"""
    return CustomerMetrics(
        subject_id="probe",
        recency=45,
        frequency=5,
        monetary=80.0,
        age=35,
        session_count=10.0,
        avg_session_duration=20.0,
    )
