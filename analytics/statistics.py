"""
Statistics primitives shared by the analyzers.

Percentages use largest-remainder rounding so every distribution closes on
100. Percentiles follow PERCENTILE_CONT (linear interpolation between the
closest ranks) over weighted value counts. Significance tests come from
scipy.
"""

import math
from typing import Optional, Sequence

import numpy as np
from scipy import stats


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round half away from zero (``round`` in Python rounds half to even)."""
    factor = 10 ** ndigits
    scaled = abs(value) * factor
    rounded = math.floor(scaled + 0.5) / factor
    return math.copysign(rounded, value) if value else 0.0


def format_number(value: float) -> str:
    """Render a number for insight text: ``12.0`` -> ``"12"``, ``12.5`` -> ``"12.5"``."""
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def percentages(counts: Sequence[int], decimals: int = 1) -> list[float]:
    """
    Share of each count in percent, rounded to ``decimals``.

    Uses the largest-remainder method so the result sums to exactly 100
    (at the given precision) whenever the total is positive.
    """
    total = sum(counts)
    if total <= 0:
        return [0.0 for _ in counts]

    scale = 10 ** decimals
    target = 100 * scale
    numerators = [count * target for count in counts]
    floors = [n // total for n in numerators]
    remainders = [n % total for n in numerators]

    missing = target - sum(floors)
    # Largest remainder first; ties resolved by position
    order = sorted(range(len(counts)), key=lambda i: (-remainders[i], i))
    for i in order[:missing]:
        floors[i] += 1

    return [units / scale for units in floors]


def shares(counts: Sequence[float]) -> list[float]:
    """Normalize counts into a distribution summing to 1 (zeros if empty)."""
    total = float(sum(counts))
    if total <= 0:
        return [0.0 for _ in counts]
    return [count / total for count in counts]


def top_share(counts: Sequence[float], top: int) -> float:
    """Mass share of the ``top`` largest counts."""
    total = float(sum(counts))
    if total <= 0:
        return 0.0
    return sum(sorted(counts, reverse=True)[:top]) / total


def weighted_mean(value_counts: Sequence[tuple[float, int]]) -> Optional[float]:
    total = sum(count for _, count in value_counts)
    if total <= 0:
        return None
    return sum(value * count for value, count in value_counts) / total


def weighted_percentiles(
    value_counts: Sequence[tuple[float, int]],
    quantiles: Sequence[float],
) -> list[Optional[float]]:
    """
    Continuous percentiles over ``(value, count)`` pairs.

    Equivalent to ``PERCENTILE_CONT(q)`` over the expanded sample: position
    ``q * (n - 1)``, interpolated between its neighbouring ranks. Returns
    None for every quantile when the sample is empty.
    """
    pairs = sorted((float(v), int(c)) for v, c in value_counts if c > 0)
    if not pairs:
        return [None for _ in quantiles]

    values = np.array([v for v, _ in pairs])
    cumulative = np.cumsum([c for _, c in pairs])
    n = int(cumulative[-1])

    def value_at(rank: int) -> float:
        # Index of the first value whose cumulative count exceeds ``rank``
        return float(values[int(np.searchsorted(cumulative, rank, side="right"))])

    results: list[Optional[float]] = []
    for q in quantiles:
        position = q * (n - 1)
        lower = math.floor(position)
        upper = math.ceil(position)
        low_value = value_at(lower)
        if upper == lower:
            results.append(low_value)
            continue
        high_value = value_at(upper)
        results.append(low_value + (high_value - low_value) * (position - lower))
    return results


def chi_square_uniform(counts: Sequence[float]) -> tuple[float, float]:
    """
    Chi-square goodness of fit of ``counts`` against a uniform distribution.

    Returns ``(chi2, pvalue)``; an empty sample gives ``(0.0, 1.0)``.
    """
    if sum(counts) <= 0 or len(counts) < 2:
        return 0.0, 1.0
    result = stats.chisquare(np.asarray(counts, dtype=float))
    chi2 = float(result.statistic)
    pvalue = float(result.pvalue)
    if not math.isfinite(pvalue):
        pvalue = 1.0
    return chi2, pvalue


def welch_t_test(a: Sequence[float], b: Sequence[float]) -> tuple[float, float]:
    """
    Welch's unequal-variance t-test of ``a`` against ``b``.

    Returns ``(t, pvalue)``. Degenerate samples (fewer than 2 values or no
    variance at all) give ``(0.0, 1.0)``.
    """
    if len(a) < 2 or len(b) < 2:
        return 0.0, 1.0
    result = stats.ttest_ind(np.asarray(a, dtype=float), np.asarray(b, dtype=float), equal_var=False)
    t = float(result.statistic)
    pvalue = float(result.pvalue)
    if not (math.isfinite(t) and math.isfinite(pvalue)):
        return 0.0, 1.0
    return t, pvalue


def two_sided_pvalue(z: float) -> float:
    """Two-sided p-value of a standard normal z-score."""
    return float(2.0 * stats.norm.sf(abs(z)))
