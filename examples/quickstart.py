#!/usr/bin/env python3
"""
実験エンジン - クイックスタートサンプル

このスクリプトは、A/Bテスト実験エンジンの最小構成サンプルです。
外部サービスは不要で、コピペでそのまま動かせます。

実行方法:
    # プロジェクトルートから実行
    cd /path/to/experimentation-engine
    pip install -e .
    python examples/quickstart.py

流れ:
    1. 実験を作成（2つのバリエーション、コンバージョンメトリクス）
    2. 参加者を割り当て、購入をシミュレーションして記録
    3. 分析と推奨事項、レポートの表示
"""

import logging
import os
import random
import sys

# ============================================
# プロジェクトルートをPythonパスに追加
# （examples/ ディレクトリから実行しても動作するように）
# ============================================
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from src.ab_testing import ExperimentManager, ExperimentStatus  # noqa: E402
from src.config.experiment_config import ExperimentEngineConfig  # noqa: E402


PARTICIPANTS = 2000
CONVERSION_RATES = {"control": 0.10, "green": 0.13}


def build_experiment() -> dict:
    """チェックアウトボタンの色を比較する実験設定"""
    return {
        "id": "checkout_button",
        "name": "Checkout button color",
        "description": "緑のボタンで購入率が上がるか",
        "status": "active",
        "variations": [
            {"id": "control", "name": "Blue", "traffic": 50, "is_control": True,
             "config": {"color": "#1e88e5"}},
            {"id": "green", "name": "Green", "traffic": 50,
             "config": {"color": "#43a047"}},
        ],
        "metrics": [
            {"id": "purchase", "name": "Purchase", "type": "conversion", "goal": "maximize"},
        ],
        "allocation": {"method": "hash"},
        "duration": {"min_sample_size": 1000},
    }


def main():
    """メイン処理: 実験の作成から分析までのデモ"""

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    print("=" * 50)
    print("実験エンジン - クイックスタート")
    print("=" * 50 + "\n")

    # ============================================
    # Step 1: 実験の作成
    # ============================================
    print("Step 1: 実験の作成...")

    manager = ExperimentManager(config=ExperimentEngineConfig(debounce_seconds=1.0))
    experiment = manager.create_experiment(build_experiment())

    estimated = manager.estimate_sample_size(baseline_rate=0.10, minimum_detectable_effect=0.03)
    print(f"  - 実験ID: {experiment.id}")
    print(f"  - バリエーションあたりの必要サンプル数（10% → 13%）: {estimated}\n")

    # ============================================
    # Step 2: 割り当てと記録
    # ============================================
    print("Step 2: 参加者の割り当てと購入の記録...")

    outcome_rng = random.Random(2024)
    for i in range(PARTICIPANTS):
        participant_id = f"user-{i}"
        variation_id = manager.assign(experiment.id, participant_id)
        if variation_id is None:
            continue
        converted = outcome_rng.random() < CONVERSION_RATES[variation_id]
        manager.track(experiment.id, participant_id, "purchase", converted)

    print(f"  - user-0 のボタン設定: {manager.get_variation_config(experiment.id, 'user-0')}\n")

    # ============================================
    # Step 3: 分析と推奨事項
    # ============================================
    print("Step 3: 分析...")

    results = manager.analyze(experiment.id)
    for variation_id, variation in results.variations.items():
        summary = variation.conversions.get("purchase")
        if summary is None:
            continue
        print(
            f"  - {variation_id}: {summary.conversions}/{summary.sample_count} "
            f"({summary.conversion_rate:.1%})"
        )

    for test in results.tests:
        print(
            f"  - {test.variation_id} vs control: p={test.p_value:.4f} "
            f"(補正後 {test.adjusted_p_value:.4f}), 有意={test.is_significant}"
        )

    if results.winner:
        print(f"  - 勝者: {results.winner.variation_id} (信頼度 {results.winner.confidence:.1%})")
    else:
        print("  - 勝者: なし")

    print("\n推奨事項:")
    for recommendation in manager.get_recommendations(experiment.id):
        print(f"  [{recommendation.type.value}] {recommendation.title}")
        print(f"      {recommendation.explanation}")

    # ============================================
    # Step 4: 終了処理
    # ============================================
    manager.set_status(experiment.id, ExperimentStatus.COMPLETED)
    manager.shutdown()

    print("\n" + "=" * 50)
    print("クイックスタート完了")
    print("=" * 50)
    print("\nエンジンのメトリクス（Prometheus形式）:\n")
    print(manager.metrics.export_prometheus_format())


if __name__ == "__main__":
    main()
