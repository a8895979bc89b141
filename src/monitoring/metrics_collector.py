# src/monitoring/metrics_collector.py
"""メトリクス収集モジュール

実験エンジンの内部状態を計測する。
Prometheus依存なしの簡易実装で、テキストフォーマットへのエクスポートのみ提供する
（外部への送信は行わない）。

収集するメトリクス:
- 割り当て: 割り当て数、スキップ数（理由別）
- 記録: イベント数、イベントハンドラーのエラー数、バッファ内のイベント数
- 分析: 分析回数（トリガー別）、分析時間
- 保持期間: スイープで削除した件数
"""

from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple
import time


class InstrumentType(Enum):
    """メトリクスの種類"""
    COUNTER = "counter"      # 単調増加（例: 割り当て数）
    GAUGE = "gauge"          # 上下する値（例: 実行中の実験数）
    HISTOGRAM = "histogram"  # 分布（例: 分析時間）


class _LabeledMetric:
    """ラベル付きメトリクスの共通部分"""

    instrument_type: InstrumentType

    def __init__(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
    ):
        self.name = name
        self.description = description
        self.labels = labels or []
        self._values: Dict[Tuple[str, ...], float] = {}
        self._lock = Lock()

    def get(self, labels: Optional[Dict[str, str]] = None) -> float:
        """現在の値を取得"""
        label_key = self._get_label_key(labels)
        with self._lock:
            return self._values.get(label_key, 0.0)

    def collect(self) -> List[Tuple[Dict[str, str], float]]:
        """全ての値を収集"""
        with self._lock:
            return [
                (dict(zip(self.labels, label_key)) if self.labels else {}, value)
                for label_key, value in self._values.items()
            ]

    def remove_matching(self, label: str, value: str) -> int:
        """指定ラベルが value に一致する系列を削除

        Returns:
            削除した系列数
        """
        if label not in self.labels:
            return 0
        index = self.labels.index(label)
        with self._lock:
            keys = [k for k in self._values if k[index] == str(value)]
            for key in keys:
                self._drop(key)
        return len(keys)

    def _drop(self, label_key: Tuple[str, ...]) -> None:
        """1系列分の値を削除（ロック保持中に呼ぶ）"""
        del self._values[label_key]

    def _get_label_key(self, labels: Optional[Dict[str, str]]) -> Tuple[str, ...]:
        """ラベル値からキーを生成"""
        if not self.labels:
            return ()
        if labels is None:
            labels = {}
        return tuple(str(labels.get(label, "")) for label in self.labels)

    def _add(self, labels: Optional[Dict[str, str]], value: float) -> None:
        label_key = self._get_label_key(labels)
        with self._lock:
            self._values[label_key] = self._values.get(label_key, 0.0) + value


class Counter(_LabeledMetric):
    """カウンターメトリクス（単調増加）

    使用例:
        counter = Counter("assignments_total", "Assignments", ["experiment_id"])
        counter.inc({"experiment_id": "checkout"})
    """

    instrument_type = InstrumentType.COUNTER

    def inc(
        self,
        labels: Optional[Dict[str, str]] = None,
        value: float = 1.0,
    ) -> None:
        """カウンターをインクリメント

        Raises:
            ValueError: 負の値が指定された場合
        """
        if value < 0:
            raise ValueError("Counter can only be incremented (value must be >= 0)")
        self._add(labels, value)


class Gauge(_LabeledMetric):
    """ゲージメトリクス（上下する値）"""

    instrument_type = InstrumentType.GAUGE

    def set(
        self,
        labels: Optional[Dict[str, str]] = None,
        value: float = 0.0,
    ) -> None:
        label_key = self._get_label_key(labels)
        with self._lock:
            self._values[label_key] = value

    def inc(self, labels: Optional[Dict[str, str]] = None, value: float = 1.0) -> None:
        self._add(labels, value)

    def dec(self, labels: Optional[Dict[str, str]] = None, value: float = 1.0) -> None:
        self._add(labels, -value)


class Histogram(_LabeledMetric):
    """ヒストグラムメトリクス（分布）

    バケット境界を指定して値の分布を追跡する。
    """

    instrument_type = InstrumentType.HISTOGRAM

    # デフォルトのバケット境界（Prometheus標準）
    DEFAULT_BUCKETS = (
        0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0
    )

    def __init__(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[Tuple[float, ...]] = None,
    ):
        super().__init__(name, description, labels)
        self.buckets = tuple(sorted(buckets)) if buckets else self.DEFAULT_BUCKETS
        # label_key -> bucket -> count
        self._bucket_counts: Dict[Tuple[str, ...], Dict[float, int]] = {}
        self._counts: Dict[Tuple[str, ...], int] = {}

    def observe(
        self,
        labels: Optional[Dict[str, str]] = None,
        value: float = 0.0,
    ) -> None:
        """値を観測（_values には合計値を保持する）"""
        label_key = self._get_label_key(labels)

        with self._lock:
            if label_key not in self._bucket_counts:
                self._bucket_counts[label_key] = {b: 0 for b in self.buckets}
                self._values[label_key] = 0.0
                self._counts[label_key] = 0

            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[label_key][bucket] += 1

            self._values[label_key] += value
            self._counts[label_key] += 1

    def get_bucket_counts(self, labels: Optional[Dict[str, str]] = None) -> Dict[float, int]:
        label_key = self._get_label_key(labels)
        with self._lock:
            if label_key not in self._bucket_counts:
                return {b: 0 for b in self.buckets}
            return dict(self._bucket_counts[label_key])

    def get_sum(self, labels: Optional[Dict[str, str]] = None) -> float:
        return self.get(labels)

    def get_count(self, labels: Optional[Dict[str, str]] = None) -> int:
        label_key = self._get_label_key(labels)
        with self._lock:
            return self._counts.get(label_key, 0)

    def collect_distribution(self) -> List[Tuple[Dict[str, str], Dict[str, float]]]:
        """全ての分布を収集

        Returns:
            List of (labels, {"bucket_X": count, ..., "sum": sum, "count": count})
        """
        with self._lock:
            results = []
            for label_key, bucket_counts in self._bucket_counts.items():
                label_dict = dict(zip(self.labels, label_key)) if self.labels else {}
                data = {f"bucket_{bucket}": float(count) for bucket, count in bucket_counts.items()}
                data["bucket_+Inf"] = float(self._counts[label_key])
                data["sum"] = self._values[label_key]
                data["count"] = float(self._counts[label_key])
                results.append((label_dict, data))
            return results

    def _drop(self, label_key: Tuple[str, ...]) -> None:
        super()._drop(label_key)
        self._bucket_counts.pop(label_key, None)
        self._counts.pop(label_key, None)


class MetricsCollector:
    """実験エンジンのメトリクス収集・管理クラス

    ExperimentManager ごとに1つ作成する（グローバルなインスタンスは持たない）。

    使用例:
        collector = MetricsCollector()
        collector.record_assignment("checkout", "variant_a")
        collector.record_analysis("debounce", 0.012)
        metrics_text = collector.export_prometheus_format()
    """

    def __init__(self, prefix: str = "experiment_engine"):
        """
        Args:
            prefix: メトリクス名のプレフィックス
        """
        self.prefix = prefix
        self._counters: Dict[str, Counter] = {}
        self._gauges: Dict[str, Gauge] = {}
        self._histograms: Dict[str, Histogram] = {}
        self._lock = Lock()

        self._init_predefined_metrics()

    def _init_predefined_metrics(self) -> None:
        """エンジンが記録するメトリクスを初期化"""

        # === 割り当て ===

        self.register_counter(
            "assignments_total",
            "Total number of new participant assignments",
            ["experiment_id", "variation_id"],
        )

        self.register_counter(
            "assignments_skipped_total",
            "Assignment requests that returned no variation",
            ["reason"],  # "unknown", "inactive", "criteria", "no_variation"
        )

        # === 記録 ===

        self.register_counter(
            "events_tracked_total",
            "Total number of tracked metric events",
            ["experiment_id"],
        )

        self.register_counter(
            "event_handler_errors_total",
            "Exceptions raised by event subscribers",
        )

        self.register_gauge(
            "ledger_events",
            "Number of events held in the ledger buffer",
        )

        self.register_gauge(
            "active_experiments",
            "Number of experiments in active status",
        )

        # === 分析 ===

        self.register_counter(
            "analyses_total",
            "Total number of experiment analyses",
            ["trigger"],  # "manual", "debounce", "async"
        )

        self.register_histogram(
            "analysis_duration_seconds",
            "Analysis duration in seconds",
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
        )

        # === 保持期間 ===

        self.register_counter(
            "retention_purged_total",
            "Records removed by the retention sweep",
            ["kind"],  # "events", "assignments"
        )

    def register_counter(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
    ) -> Counter:
        """カウンターを登録"""
        counter = Counter(f"{self.prefix}_{name}", description, labels)
        with self._lock:
            self._counters[name] = counter
        return counter

    def register_gauge(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
    ) -> Gauge:
        """ゲージを登録"""
        gauge = Gauge(f"{self.prefix}_{name}", description, labels)
        with self._lock:
            self._gauges[name] = gauge
        return gauge

    def register_histogram(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[Tuple[float, ...]] = None,
    ) -> Histogram:
        """ヒストグラムを登録"""
        histogram = Histogram(f"{self.prefix}_{name}", description, labels, buckets)
        with self._lock:
            self._histograms[name] = histogram
        return histogram

    def get_counter(self, name: str) -> Optional[Counter]:
        with self._lock:
            return self._counters.get(name)

    def get_gauge(self, name: str) -> Optional[Gauge]:
        with self._lock:
            return self._gauges.get(name)

    def get_histogram(self, name: str) -> Optional[Histogram]:
        with self._lock:
            return self._histograms.get(name)

    # === 便利メソッド（定義済みメトリクスへの操作）===

    def record_assignment(self, experiment_id: str, variation_id: str) -> None:
        """新規割り当てを記録"""
        counter = self.get_counter("assignments_total")
        if counter:
            counter.inc({"experiment_id": experiment_id, "variation_id": variation_id})

    def record_assignment_skipped(self, reason: str) -> None:
        """割り当てなしの応答を記録"""
        counter = self.get_counter("assignments_skipped_total")
        if counter:
            counter.inc({"reason": reason})

    def record_event_tracked(self, experiment_id: str) -> None:
        counter = self.get_counter("events_tracked_total")
        if counter:
            counter.inc({"experiment_id": experiment_id})

    def record_handler_error(self) -> None:
        counter = self.get_counter("event_handler_errors_total")
        if counter:
            counter.inc()

    def record_analysis(self, trigger: str, duration_seconds: float) -> None:
        """分析の実行を記録

        Args:
            trigger: "manual", "debounce", "async"
            duration_seconds: 分析にかかった時間（秒）
        """
        counter = self.get_counter("analyses_total")
        if counter:
            counter.inc({"trigger": trigger})

        histogram = self.get_histogram("analysis_duration_seconds")
        if histogram:
            histogram.observe(value=duration_seconds)

    def record_retention_purge(self, kind: str, count: int) -> None:
        counter = self.get_counter("retention_purged_total")
        if counter and count > 0:
            counter.inc({"kind": kind}, float(count))

    def record_ledger_size(self, size: int) -> None:
        gauge = self.get_gauge("ledger_events")
        if gauge:
            gauge.set(value=float(size))

    def record_active_experiments(self, count: int) -> None:
        gauge = self.get_gauge("active_experiments")
        if gauge:
            gauge.set(value=float(count))

    # === エクスポート ===

    def export_prometheus_format(self) -> str:
        """Prometheusテキストフォーマットでエクスポート"""
        lines = []

        with self._lock:
            for metric in list(self._counters.values()) + list(self._gauges.values()):
                lines.append(f"# HELP {metric.name} {metric.description}")
                lines.append(f"# TYPE {metric.name} {metric.instrument_type.value}")
                for labels, value in metric.collect():
                    lines.append(f"{metric.name}{self._format_labels(labels)} {value}")
                lines.append("")

            for histogram in self._histograms.values():
                lines.append(f"# HELP {histogram.name} {histogram.description}")
                lines.append(f"# TYPE {histogram.name} histogram")

                for labels, data in histogram.collect_distribution():
                    base_label_str = self._format_labels(labels)

                    for bucket in histogram.buckets:
                        label_str = self._format_labels({**labels, "le": str(bucket)})
                        count = data.get(f"bucket_{bucket}", 0)
                        lines.append(f"{histogram.name}_bucket{label_str} {count}")

                    inf_label_str = self._format_labels({**labels, "le": "+Inf"})
                    lines.append(f"{histogram.name}_bucket{inf_label_str} {data.get('count', 0)}")
                    lines.append(f"{histogram.name}_sum{base_label_str} {data.get('sum', 0)}")
                    lines.append(f"{histogram.name}_count{base_label_str} {data.get('count', 0)}")
                lines.append("")

        return "\n".join(lines)

    def _format_labels(self, labels: Dict[str, str]) -> str:
        """ラベルをPrometheusフォーマットに変換"""
        if not labels:
            return ""

        parts = []
        for key, value in sorted(labels.items()):
            escaped_value = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
            parts.append(f'{key}="{escaped_value}"')

        return "{" + ",".join(parts) + "}"

    def export_dict(self) -> Dict[str, Any]:
        """辞書形式でエクスポート（デバッグ・レポート用）"""
        result: Dict[str, Any] = {
            "counters": {},
            "gauges": {},
            "histograms": {},
            "exported_at": datetime.now().isoformat(),
        }

        with self._lock:
            for name, counter in self._counters.items():
                result["counters"][name] = [
                    {"labels": labels, "value": value} for labels, value in counter.collect()
                ]

            for name, gauge in self._gauges.items():
                result["gauges"][name] = [
                    {"labels": labels, "value": value} for labels, value in gauge.collect()
                ]

            for name, histogram in self._histograms.items():
                result["histograms"][name] = [
                    {"labels": labels, "data": data}
                    for labels, data in histogram.collect_distribution()
                ]

        return result

    def forget_experiment(self, experiment_id: str) -> int:
        """experiment_id ラベルが一致する系列を全メトリクスから削除

        Returns:
            削除した系列数
        """
        with self._lock:
            metrics: List[_LabeledMetric] = [
                *self._counters.values(),
                *self._gauges.values(),
                *self._histograms.values(),
            ]
        return sum(m.remove_matching("experiment_id", experiment_id) for m in metrics)

    def reset(self) -> None:
        """全メトリクスをリセット"""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()

        self._init_predefined_metrics()


class Stopwatch:
    """経過時間の計測（with 文で使用）

    使用例:
        with Stopwatch() as sw:
            ...
        collector.record_analysis("manual", sw.elapsed)
    """

    def __init__(self) -> None:
        self.started_at = 0.0
        self.elapsed = 0.0

    def __enter__(self) -> "Stopwatch":
        self.started_at = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.elapsed = time.perf_counter() - self.started_at
