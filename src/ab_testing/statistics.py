# 統計計算
"""
分析で使う統計関数

- 集計: 平均・不偏分散・標準誤差・信頼区間（numpy）
- t検定: 数値系メトリクス（Student の t 分布は scipy.stats.t）
- z検定: コンバージョン系メトリクス（Abramowitz-Stegun 近似の正規分布CDF）
- Benjamini-Hochberg 補正
- 必要サンプル数の見積もり（scipy.stats.norm.ppf）
"""

import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
from scipy import stats

from src.ab_testing.models import ConversionSummary, MetricSummary


DEFAULT_CRITICAL_VALUE = 1.96
DEFAULT_DF_THRESHOLD = 30

# Abramowitz & Stegun 7.1.26
_ERF_P = 0.3275911
_ERF_A = (0.254829592, -0.284496736, 1.421413741, -1.453152027, 1.061405429)


@dataclass
class TestOutcome:
    """検定1件分の統計量"""
    __test__ = False  # pytest の収集対象外

    statistic: float
    p_value: float
    effect_size: float
    confidence_interval: Tuple[float, float]


def erf(x: float) -> float:
    """誤差関数の有理近似（最大誤差 1.5e-7）"""
    sign = 1.0 if x >= 0 else -1.0
    x = abs(x)
    t = 1.0 / (1.0 + _ERF_P * x)
    a1, a2, a3, a4, a5 = _ERF_A
    y = 1.0 - (((((a5 * t + a4) * t) + a3) * t + a2) * t + a1) * t * math.exp(-x * x)
    return sign * y


def normal_cdf(x: float) -> float:
    """標準正規分布の累積分布関数"""
    return 0.5 * (1.0 + erf(x / math.sqrt(2.0)))


def two_tailed_normal_p(z: float) -> float:
    return 2.0 * (1.0 - normal_cdf(abs(z)))


def t_test_p_value(
    t_statistic: float,
    degrees_of_freedom: int,
    exact: bool = True,
    df_threshold: int = DEFAULT_DF_THRESHOLD,
) -> float:
    """t統計量の両側p値

    Args:
        t_statistic: t統計量
        degrees_of_freedom: 自由度
        exact: True なら小標本で Student の t 分布を使う。
            False なら min(1, 2·exp(-t²/2)) の粗い近似
        df_threshold: これを超える自由度では正規近似

    Returns:
        p値（0-1）
    """
    t_abs = abs(t_statistic)
    if degrees_of_freedom <= 0:
        return 1.0
    if degrees_of_freedom > df_threshold:
        return two_tailed_normal_p(t_abs)
    if exact:
        return float(min(1.0, 2.0 * stats.t.sf(t_abs, degrees_of_freedom)))
    return min(1.0, 2.0 * math.exp(-0.5 * t_abs * t_abs))


# ============================================================================
# 集計
# ============================================================================


def summarize(
    values: Sequence[float],
    critical_value: float = DEFAULT_CRITICAL_VALUE,
) -> MetricSummary:
    """観測値を集計

    分散は不偏分散（n-1 で除算）。n < 2 の場合は 0。
    """
    data = np.asarray(values, dtype=float)
    n = int(data.size)
    if n == 0:
        return MetricSummary(
            mean=0.0,
            variance=0.0,
            standard_error=0.0,
            confidence_interval=(0.0, 0.0),
            sample_count=0,
        )

    mean = float(data.mean())
    variance = float(data.var(ddof=1)) if n >= 2 else 0.0
    standard_error = math.sqrt(variance / n)
    margin = critical_value * standard_error

    return MetricSummary(
        mean=mean,
        variance=variance,
        standard_error=standard_error,
        confidence_interval=(mean - margin, mean + margin),
        sample_count=n,
    )


def summarize_conversions(
    values: Sequence[float],
    critical_value: float = DEFAULT_CRITICAL_VALUE,
) -> ConversionSummary:
    """コンバージョン数・率・Wald 信頼区間（[0, 1] にクリップ）

    値が 0 より大きい観測をコンバージョンとして数え、観測数を分母とする。
    """
    data = np.asarray(values, dtype=float)
    n = int(data.size)
    if n == 0:
        return ConversionSummary(
            conversions=0,
            conversion_rate=0.0,
            confidence_interval=(0.0, 0.0),
            sample_count=0,
        )

    conversions = int(np.count_nonzero(data > 0))
    rate = conversions / n
    margin = critical_value * math.sqrt(rate * (1.0 - rate) / n)

    return ConversionSummary(
        conversions=conversions,
        conversion_rate=rate,
        confidence_interval=(max(0.0, rate - margin), min(1.0, rate + margin)),
        sample_count=n,
    )


# ============================================================================
# 検定
# ============================================================================


def t_test(
    control: MetricSummary,
    treatment: MetricSummary,
    critical_value: float = DEFAULT_CRITICAL_VALUE,
    exact: bool = True,
    df_threshold: int = DEFAULT_DF_THRESHOLD,
) -> TestOutcome:
    """2群の平均の差の検定

    効果量は Cohen's d（プールした標準偏差で正規化した平均差）。
    """
    mean_diff = treatment.mean - control.mean
    pooled_se = math.sqrt(control.standard_error ** 2 + treatment.standard_error ** 2)
    t_statistic = mean_diff / pooled_se if pooled_se > 0 else 0.0
    degrees_of_freedom = control.sample_count + treatment.sample_count - 2

    p_value = t_test_p_value(t_statistic, degrees_of_freedom, exact, df_threshold)

    effect_size = 0.0
    if degrees_of_freedom > 0:
        pooled_variance = (
            (control.sample_count - 1) * control.variance
            + (treatment.sample_count - 1) * treatment.variance
        ) / degrees_of_freedom
        pooled_std = math.sqrt(pooled_variance)
        if pooled_std > 0:
            effect_size = mean_diff / pooled_std

    margin = critical_value * pooled_se
    return TestOutcome(
        statistic=t_statistic,
        p_value=p_value,
        effect_size=effect_size,
        confidence_interval=(mean_diff - margin, mean_diff + margin),
    )


def z_test(
    control: ConversionSummary,
    treatment: ConversionSummary,
    critical_value: float = DEFAULT_CRITICAL_VALUE,
) -> TestOutcome:
    """2群の比率の差の検定（プールした比率を使用）

    効果量は相対リフト (rate_t - rate_c) / rate_c。
    """
    n_c = control.sample_count
    n_t = treatment.sample_count
    if n_c == 0 or n_t == 0:
        return TestOutcome(statistic=0.0, p_value=1.0, effect_size=0.0, confidence_interval=(0.0, 0.0))

    p_c = control.conversion_rate
    p_t = treatment.conversion_rate
    pooled = (control.conversions + treatment.conversions) / (n_c + n_t)
    se = math.sqrt(pooled * (1.0 - pooled) * (1.0 / n_c + 1.0 / n_t))
    z_statistic = (p_t - p_c) / se if se > 0 else 0.0

    diff = p_t - p_c
    margin = critical_value * se
    return TestOutcome(
        statistic=z_statistic,
        p_value=two_tailed_normal_p(z_statistic),
        effect_size=diff / p_c if p_c > 0 else 0.0,
        confidence_interval=(diff - margin, diff + margin),
    )


def benjamini_hochberg(p_values: Sequence[float]) -> List[float]:
    """Benjamini-Hochberg 法による補正済みp値

    Args:
        p_values: 生のp値（入力順）

    Returns:
        入力と同じ順序の補正済みp値
    """
    m = len(p_values)
    if m == 0:
        return []

    order = sorted(range(m), key=lambda i: p_values[i])
    adjusted = [1.0] * m
    running_min = 1.0
    for rank in range(m, 0, -1):
        index = order[rank - 1]
        candidate = min(1.0, p_values[index] * m / rank)
        running_min = min(running_min, candidate)
        adjusted[index] = running_min
    return adjusted


# ============================================================================
# サンプルサイズ
# ============================================================================


def required_sample_size(
    baseline_rate: float,
    minimum_detectable_effect: float,
    alpha: float = 0.05,
    power: float = 0.8,
) -> int:
    """2比率の検定に必要なバリエーションあたりのサンプル数

    Args:
        baseline_rate: コントロールの想定コンバージョン率（0 < rate < 1）
        minimum_detectable_effect: 検出したい差（絶対値）
        alpha: 有意水準（両側）
        power: 検出力

    Raises:
        ValueError: 入力が範囲外の場合
    """
    if not (0.0 < baseline_rate < 1.0):
        raise ValueError(f"baseline_rate must be within (0, 1), got {baseline_rate}")
    if minimum_detectable_effect <= 0.0:
        raise ValueError(
            f"minimum_detectable_effect must be > 0, got {minimum_detectable_effect}"
        )
    if not (0.0 < alpha < 1.0) or not (0.0 < power < 1.0):
        raise ValueError("alpha and power must be within (0, 1)")

    p1 = baseline_rate
    p2 = min(baseline_rate + minimum_detectable_effect, 0.999)
    if p2 <= p1:
        raise ValueError("baseline_rate + minimum_detectable_effect must stay below 1")

    z_alpha = float(stats.norm.ppf(1.0 - alpha / 2.0))
    z_beta = float(stats.norm.ppf(power))
    p_avg = (p1 + p2) / 2.0

    numerator = (
        z_alpha * math.sqrt(2.0 * p_avg * (1.0 - p_avg))
        + z_beta * math.sqrt(p1 * (1.0 - p1) + p2 * (1.0 - p2))
    ) ** 2
    return int(math.ceil(numerator / (p2 - p1) ** 2))
