# 実験エンジン設定
# 割り当て・記録・分析・保持期間のパラメータを一元管理する

import os
from dataclasses import dataclass


DEFAULT_DEBOUNCE_SECONDS = 10.0
DEFAULT_RETENTION_DAYS = 30
DEFAULT_MAX_EVENT_BUFFER = 10000


@dataclass
class ExperimentEngineConfig:
    """実験エンジンのパラメータ設定

    ExperimentManager と各コンポーネント（台帳・分析器・スケジューラー）が参照する。
    一部の値は環境変数で上書きできる（明示的に指定された値が優先）。

    環境変数:
        EXPERIMENT_DEBOUNCE_SECONDS: 再分析のデバウンス間隔（秒）
        EXPERIMENT_RETENTION_DAYS: イベント・割り当ての保持日数
        EXPERIMENT_MAX_EVENT_BUFFER: イベントバッファの最大件数
        EXPERIMENT_EXACT_T_TEST: "true" / "false"（小標本 t検定でt分布を使うか）

    使用例:
        config = ExperimentEngineConfig()
        config = ExperimentEngineConfig(debounce_seconds=2.0, exact_t_distribution=False)
    """

    # === スケジューリング ===
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS
    """track 呼び出し後、再分析を実行するまでの待機時間（秒）"""

    cleanup_interval_seconds: float = 24 * 60 * 60
    """保持期間スイープの実行間隔（秒、デフォルト1日）"""

    retention_days: int = DEFAULT_RETENTION_DAYS
    """イベント・割り当ての保持日数"""

    # === メトリクス台帳 ===
    max_event_buffer: int = DEFAULT_MAX_EVENT_BUFFER
    """グローバルイベントバッファの上限（超過時は古い順に破棄）"""

    # === 統計分析 ===
    significance_level: float = 0.05
    """有意水準 α（補正後p値と比較）"""

    critical_value: float = 1.96
    """信頼区間の臨界値（大標本近似）"""

    large_sample_df_threshold: int = 30
    """この自由度を超えると t検定に正規近似を使う"""

    exact_t_distribution: bool = True
    """小標本 t検定で scipy のt分布を使うか（False: 指数近似）"""

    max_winner_confidence: float = 0.99
    """勝者の信頼度の上限"""

    # === 実験のデフォルト値 ===
    default_duration_days: int = 14
    """期間未指定時の実験期間（日）"""

    default_min_sample_size: int = 100
    """最小サンプル数未指定時のデフォルト値"""

    def __post_init__(self) -> None:
        """初期化後の処理: 環境変数からデフォルト値を上書き"""
        env_debounce = os.getenv("EXPERIMENT_DEBOUNCE_SECONDS")
        if env_debounce and self.debounce_seconds == DEFAULT_DEBOUNCE_SECONDS:
            self.debounce_seconds = float(env_debounce)

        env_retention = os.getenv("EXPERIMENT_RETENTION_DAYS")
        if env_retention and self.retention_days == DEFAULT_RETENTION_DAYS:
            self.retention_days = int(env_retention)

        env_buffer = os.getenv("EXPERIMENT_MAX_EVENT_BUFFER")
        if env_buffer and self.max_event_buffer == DEFAULT_MAX_EVENT_BUFFER:
            self.max_event_buffer = int(env_buffer)

        env_exact = os.getenv("EXPERIMENT_EXACT_T_TEST")
        if env_exact and env_exact.lower() in ("true", "false") and self.exact_t_distribution:
            self.exact_t_distribution = env_exact.lower() == "true"

    def validate(self) -> None:
        """設定値を検証

        Raises:
            ValueError: 値が範囲外の場合
        """
        if self.debounce_seconds < 0:
            raise ValueError(f"debounce_seconds must be >= 0: {self.debounce_seconds}")

        if self.cleanup_interval_seconds <= 0:
            raise ValueError(
                f"cleanup_interval_seconds must be positive: {self.cleanup_interval_seconds}"
            )

        if self.retention_days <= 0:
            raise ValueError(f"retention_days must be positive: {self.retention_days}")

        if self.max_event_buffer <= 0:
            raise ValueError(f"max_event_buffer must be positive: {self.max_event_buffer}")

        if not (0.0 < self.significance_level < 1.0):
            raise ValueError(
                f"significance_level must be in (0, 1): {self.significance_level}"
            )

        if self.critical_value <= 0:
            raise ValueError(f"critical_value must be positive: {self.critical_value}")

        if not (0.0 < self.max_winner_confidence <= 1.0):
            raise ValueError(
                f"max_winner_confidence must be in (0, 1]: {self.max_winner_confidence}"
            )

        if self.default_min_sample_size <= 0:
            raise ValueError(
                f"default_min_sample_size must be positive: {self.default_min_sample_size}"
            )
