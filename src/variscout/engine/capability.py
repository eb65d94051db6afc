from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Sequence, Set

import numpy as np
import pandas as pd
from scipy import stats

from variscout.engine.spc_types import (
    ConformanceResult,
    GradeCount,
    GradeTier,
    ProbabilityPlotPoint,
    SpecLimits,
    StagedStatsResult,
    StatsResult,
)
from variscout.engine.spc_utils import DataLike, as_frame, numeric_series, to_numeric_value

logger = logging.getLogger(__name__)

NELSON_RULE2_RUN = 9


# =========================
# Capability
# =========================

def _grade_counts(arr: np.ndarray, grades: Sequence[GradeTier]) -> List[GradeCount]:
    counts = {g.label: 0 for g in grades}
    for val in arr:
        tier = next((g for g in grades if val <= g.max), grades[-1])
        counts[tier.label] += 1
    n = len(arr)
    return [
        GradeCount(label=g.label, count=counts[g.label], percentage=(counts[g.label] / n) * 100.0, color=g.color)
        for g in grades
    ]


def calculate_stats(
    values: Iterable,
    usl: Optional[float] = None,
    lsl: Optional[float] = None,
    grades: Optional[Sequence[GradeTier]] = None,
) -> StatsResult:
    """
    Descriptive and capability statistics for one sample.

    - std dev is the sample (n-1) deviation; a single value has std dev 0
    - UCL/LCL are mean +/- 3 sigma (individuals chart)
    - Cp needs both limits, Cpk uses whichever limit(s) are given
    - sigma == 0 yields inf/NaN indices instead of raising
    """
    arr = numeric_series(values).to_numpy(dtype=float)
    n = int(arr.size)
    if n == 0:
        return StatsResult(mean=0.0, std_dev=0.0, ucl=0.0, lcl=0.0, out_of_spec_percentage=0.0)

    mean = float(arr.mean())
    std_dev = float(arr.std(ddof=1)) if n > 1 else 0.0
    sigma = np.float64(std_dev)

    cp: Optional[float] = None
    cpk: Optional[float] = None
    with np.errstate(divide="ignore", invalid="ignore"):
        if usl is not None and lsl is not None:
            cp = float((usl - lsl) / (6 * sigma))
            cpu = float((usl - mean) / (3 * sigma))
            cpl = float((mean - lsl) / (3 * sigma))
            cpk = min(cpu, cpl)
        elif usl is not None:
            cpk = float((usl - mean) / (3 * sigma))
        elif lsl is not None:
            cpk = float((mean - lsl) / (3 * sigma))

    out_mask = np.zeros(n, dtype=bool)
    if usl is not None:
        out_mask |= arr > usl
    if lsl is not None:
        out_mask |= arr < lsl

    return StatsResult(
        mean=mean,
        std_dev=std_dev,
        ucl=mean + 3 * std_dev,
        lcl=mean - 3 * std_dev,
        out_of_spec_percentage=float(out_mask.sum()) / n * 100.0,
        cp=cp,
        cpk=cpk,
        grade_counts=_grade_counts(arr, grades) if grades else None,
        n=n,
    )


def stats_for_specs(values: Iterable, specs: Optional[SpecLimits], grades=None) -> StatsResult:
    specs = specs or SpecLimits()
    return calculate_stats(values, specs.usl, specs.lsl, grades)


def calculate_conformance(values: Iterable, usl: Optional[float] = None, lsl: Optional[float] = None) -> ConformanceResult:
    arr = numeric_series(values).to_numpy(dtype=float)
    fail_usl = int((arr > usl).sum()) if usl is not None else 0
    # a point above USL is only counted once
    below = arr < lsl if lsl is not None else np.zeros(arr.size, dtype=bool)
    if usl is not None:
        below &= ~(arr > usl)
    fail_lsl = int(below.sum())
    total = int(arr.size)
    passed = total - fail_usl - fail_lsl
    return ConformanceResult(
        passed=passed,
        fail_usl=fail_usl,
        fail_lsl=fail_lsl,
        total=total,
        pass_rate=(passed / total) * 100.0 if total > 0 else 0.0,
    )


# =========================
# Probability plot
# =========================

def calculate_probability_plot_data(values: Iterable) -> List[ProbabilityPlotPoint]:
    """
    Normal probability plot points with Benard median ranks, p = (i - 0.3) / (n + 0.4),
    and a 95% band from the standard error of each percentile.
    """
    arr = np.sort(numeric_series(values).to_numpy(dtype=float))
    n = arr.size
    if n == 0:
        return []

    std_dev = float(arr.std(ddof=1)) if n > 1 else 0.0
    if std_dev == 0:
        std_dev = 1.0

    ranks = np.arange(1, n + 1)
    p = (ranks - 0.3) / (n + 0.4)
    pdf = stats.norm.pdf(stats.norm.ppf(p))
    raw_se = np.where(pdf > 0, std_dev * np.sqrt(p * (1 - p) / n) / pdf, 0.0)
    # tiny densities in the tails would blow the band up
    se = np.minimum(raw_se, std_dev * 10)
    z_crit = stats.norm.ppf(0.975)

    return [
        ProbabilityPlotPoint(
            value=float(v),
            expected_percentile=float(pi * 100.0),
            lower_ci=float(v - z_crit * s),
            upper_ci=float(v + z_crit * s),
        )
        for v, pi, s in zip(arr, p, se)
    ]


# =========================
# Staged I-charts
# =========================

_STAGE_NUMBER = re.compile(r"^(stage|phase|batch|period|run)?\s*\d+$", re.IGNORECASE)
_PLAIN_NUMBER = re.compile(r"^\d+(\.\d+)?$")


def determine_stage_order(stage_values: Iterable, mode: str = "auto") -> List[str]:
    """
    Unique stage names in first-seen order.

    In 'auto' mode, labels that are all numbers (or 'Stage 3', 'Batch 12', ...) are
    sorted by their leading number instead.
    """
    unique = list(dict.fromkeys(str(v) for v in stage_values))
    if not unique or mode == "data-order":
        return unique

    if all(_PLAIN_NUMBER.match(s.strip()) or _STAGE_NUMBER.match(s.strip()) for s in unique):
        def _key(s: str) -> int:
            m = re.search(r"\d+", s)
            return int(m.group(0)) if m else 0
        return sorted(unique, key=_key)

    return unique


def _stage_labels(df: pd.DataFrame, stage_col: str) -> pd.Series:
    if stage_col not in df.columns:
        return pd.Series([""] * len(df), index=df.index, dtype=object)
    return df[stage_col].map(lambda v: "" if v is None or (isinstance(v, float) and np.isnan(v)) else str(v))


def sort_data_by_stage(data: DataLike, stage_col: str, stage_order: Sequence[str]) -> pd.DataFrame:
    """Stable sort by stage position; unknown stages go last, original order kept within a stage."""
    df = as_frame(data)
    if df.empty or not stage_order:
        return df.copy()
    positions = {stage: i for i, stage in enumerate(stage_order)}
    key = _stage_labels(df, stage_col).map(lambda s: positions.get(s, len(positions)))
    order = np.argsort(key.to_numpy(), kind="stable")
    return df.iloc[order]


def calculate_stats_by_stage(
    data: DataLike,
    outcome: str,
    stage_col: str,
    specs: Optional[SpecLimits] = None,
    stage_order: Optional[Sequence[str]] = None,
    grades: Optional[Sequence[GradeTier]] = None,
) -> Optional[StagedStatsResult]:
    df = as_frame(data)
    if df.empty:
        return None

    labels = _stage_labels(df, stage_col)
    order = list(stage_order) if stage_order is not None else determine_stage_order(labels)
    if not order:
        return None

    values = df[outcome].map(to_numeric_value) if outcome in df.columns else pd.Series([None] * len(df), index=df.index)
    groups = {stage: [] for stage in order}
    for stage, val in zip(labels, values):
        if val is not None and stage in groups:
            groups[stage].append(val)

    stage_stats = {stage: stats_for_specs(vals, specs, grades) for stage, vals in groups.items() if vals}
    non_empty = [stage for stage in order if stage in stage_stats]
    if not non_empty:
        logger.debug("No numeric '%s' values in any stage of '%s'.", outcome, stage_col)
        return None

    all_values = [v for stage in order for v in groups[stage]]
    return StagedStatsResult(
        stages=stage_stats,
        stage_order=non_empty,
        overall_stats=stats_for_specs(all_values, specs, grades),
    )


# =========================
# Nelson rules
# =========================

def get_nelson_rule2_violations(values: Sequence[float], mean: float) -> Set[int]:
    """Indices of points in a run of 9+ consecutive points on one side of the mean."""
    violations: Set[int] = set()
    n = len(values)
    if n < NELSON_RULE2_RUN:
        return violations

    run_start = 0
    run_side = 0
    for i, value in enumerate(values):
        side = 1 if value > mean else (-1 if value < mean else 0)
        # points on the centre line break the run
        if side == 0 or side != run_side:
            if run_side != 0 and i - run_start >= NELSON_RULE2_RUN:
                violations.update(range(run_start, i))
            run_start = i
            run_side = side

    if run_side != 0 and n - run_start >= NELSON_RULE2_RUN:
        violations.update(range(run_start, n))
    return violations
