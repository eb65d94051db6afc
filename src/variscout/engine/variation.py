from __future__ import annotations

import logging
from typing import Any, Collection, Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from variscout.engine.anova import get_eta_squared
from variscout.engine.capability import calculate_stats
from variscout.engine.spc_types import (
    CategoryStats,
    CellValue,
    DrillLevelVariation,
    DrillVariationResult,
    OptimalFactorResult,
    ProjectedStats,
    SpecLimits,
)
from variscout.engine.spc_utils import DataLike, as_frame, numeric_column
from variscout.engine.thresholds import get_variation_impact_level, get_variation_insight

logger = logging.getLogger(__name__)

# factors explaining less than this (in %) are not suggested as the next drill target
DRILL_SWITCH_THRESHOLD = 5.0


def _py(value: Any) -> CellValue:
    """numpy scalar -> plain Python value so category keys compare like the input cells."""
    return value.item() if isinstance(value, np.generic) else value


# =========================
# Filtering
# =========================

def apply_filters(data: DataLike, filters: Mapping[str, Sequence[CellValue]]) -> pd.DataFrame:
    """Rows whose cell is in the selected values for every factor with a non-empty selection."""
    df = as_frame(data)
    mask = pd.Series(True, index=df.index)
    for col, values in filters.items():
        if not values:
            continue
        if col not in df.columns:
            return df.iloc[0:0]
        mask &= df[col].isin(list(values))
    return df[mask]


# =========================
# Factor ranking
# =========================

def calculate_factor_variations(
    data: DataLike,
    factors: Sequence[str],
    outcome: str,
    exclude_factors: Collection[str] = (),
) -> Dict[str, float]:
    """eta² (as %) of each factor on the current data; factors with no effect are left out."""
    df = as_frame(data)
    if not outcome or len(df) < 2:
        return {}

    excluded = set(exclude_factors)
    variations: Dict[str, float] = {}
    for factor in factors:
        if factor in excluded:
            continue
        eta = get_eta_squared(df, factor, outcome)
        if eta > 0:
            variations[factor] = eta * 100.0
    return variations


def get_next_drill_factor(
    factor_variations: Mapping[str, float],
    current_factor: Optional[str],
    min_threshold: float = DRILL_SWITCH_THRESHOLD,
) -> Optional[str]:
    best_factor: Optional[str] = None
    best_variation = min_threshold
    for factor, variation in factor_variations.items():
        if factor == current_factor:
            continue
        if variation > best_variation:
            best_factor, best_variation = factor, variation
    return best_factor


def _best_value_for_factor(df: pd.DataFrame, factor: str, outcome: str) -> Optional[CellValue]:
    """Category whose mean shift from the overall mean, weighted by its size, is largest."""
    y_all = numeric_column(df, outcome)
    if factor not in df.columns or y_all.notna().sum() == 0:
        return None

    overall_mean = float(y_all.mean())
    mask = y_all.notna() & df[factor].notna()
    if not mask.any():
        return None

    grouped = y_all[mask].groupby(df[factor][mask].to_numpy(), sort=False).agg(["count", "mean"])
    deviation = (grouped["mean"] - overall_mean).abs() * grouped["count"]
    if not (deviation > 0).any():
        return None
    return _py(deviation.idxmax())


def find_optimal_factors(
    data: DataLike,
    factors: Sequence[str],
    outcome: str,
    target_pct: float = 70.0,
    max_factors: int = 3,
) -> List[OptimalFactorResult]:
    """
    Greedy selection of the factors that together isolate `target_pct` of the variation.

    Factors are ranked by eta². Each one explains a share of the variation the previous
    ones left, so the isolated share is 100 * (1 - prod(1 - eta_i²)).
    """
    df = as_frame(data)
    if not outcome or len(df) < 2 or not factors:
        return []

    ranked = []
    for factor in factors:
        eta = get_eta_squared(df, factor, outcome)
        if eta > 0:
            ranked.append((factor, eta * 100.0, _best_value_for_factor(df, factor, outcome)))
    ranked.sort(key=lambda item: item[1], reverse=True)

    selected: List[OptimalFactorResult] = []
    remaining = 100.0
    for factor, pct, best_value in ranked:
        if len(selected) >= max_factors:
            break
        remaining -= remaining * pct / 100.0
        isolated = 100.0 - remaining
        selected.append(OptimalFactorResult(factor=factor, variation_pct=pct, cumulative_pct=isolated, best_value=best_value))
        if isolated >= target_pct:
            break
    return selected


# =========================
# Category breakdown
# =========================

def calculate_category_total_ss(data: DataLike, factor: str, outcome: str) -> Optional[Dict[CellValue, float]]:
    """
    Each category's share (%) of the total sum of squares around the grand mean.

    Unlike eta² this includes the spread inside the category, so the shares add up to 100.
    """
    df = as_frame(data)
    if factor not in df.columns:
        return None
    y_all = numeric_column(df, outcome)
    mask = y_all.notna() & df[factor].notna()
    if not mask.any():
        return None

    y = y_all[mask]
    sq_dev = (y - y.mean()) ** 2
    ss_total = float(sq_dev.sum())
    if ss_total <= 0:
        return None

    per_category = sq_dev.groupby(df[factor][mask].to_numpy(), sort=False).sum()
    return {_py(k): float(v) / ss_total * 100.0 for k, v in per_category.items()}


def get_category_stats(data: DataLike, factor: str, outcome: str) -> Optional[List[CategoryStats]]:
    df = as_frame(data)
    if factor not in df.columns:
        return None
    y_all = numeric_column(df, outcome)
    mask = y_all.notna() & df[factor].notna()
    if not mask.any():
        logger.debug("No usable '%s' values for factor '%s'.", outcome, factor)
        return None

    keys = df[factor][mask].to_numpy()
    grouped = y_all[mask].groupby(keys, sort=False).agg(["count", "mean", "std"])
    contributions = calculate_category_total_ss(df, factor, outcome) or {}

    return [
        CategoryStats(
            value=_py(key),
            count=int(row["count"]),
            mean=float(row["mean"]),
            std_dev=0.0 if pd.isna(row["std"]) else float(row["std"]),
            contribution_pct=contributions.get(_py(key), 0.0),
        )
        for key, row in grouped.iterrows()
    ]


def calculate_projected_stats(
    data: DataLike,
    factor: str,
    outcome: str,
    excluded: Collection[CellValue],
    specs: Optional[SpecLimits] = None,
    current: Optional[Any] = None,
) -> Optional[ProjectedStats]:
    """
    Stats of the outcome if the `excluded` categories of `factor` were fixed or removed.

    Rows with a missing factor value stay in. `current` is any object with `mean`,
    `std_dev` and optionally `cpk` (e.g. a StatsResult) used for the improvement %.
    """
    df = as_frame(data)
    keep = pd.Series(True, index=df.index)
    if factor in df.columns and excluded:
        keep = df[factor].isna() | ~df[factor].isin(list(excluded))

    values = numeric_column(df, outcome)[keep].dropna()
    if len(values) < 2:
        logger.debug("Projection for '%s' leaves %d rows.", factor, len(values))
        return None

    specs = specs or SpecLimits()
    projected = calculate_stats(values, specs.usl, specs.lsl)
    result = ProjectedStats(
        remaining_count=int(len(values)),
        mean=projected.mean,
        std_dev=projected.std_dev,
        cp=projected.cp,
        cpk=projected.cpk,
    )
    if current is None:
        return result

    current_std = getattr(current, "std_dev", None)
    if current_std:
        result.std_dev_reduction_pct = (current_std - projected.std_dev) / current_std * 100.0

    target = specs.center
    current_mean = getattr(current, "mean", None)
    if target is not None and current_mean is not None:
        current_offset = abs(current_mean - target)
        if current_offset > 0:
            result.mean_improvement_pct = (current_offset - abs(projected.mean - target)) / current_offset * 100.0

    current_cpk = getattr(current, "cpk", None)
    if current_cpk and projected.cpk is not None and np.isfinite(projected.cpk):
        result.cpk_improvement_pct = (projected.cpk - current_cpk) / abs(current_cpk) * 100.0

    return result


# =========================
# Drill variation
# =========================

def calculate_drill_variation(
    data: DataLike,
    filters: Mapping[str, Sequence[CellValue]],
    outcome: str,
) -> Optional[DrillVariationResult]:
    """
    Local and cumulative eta² per filter level, with the unfiltered data as a 100% root.

    The cumulative share multiplies: each level explains part of what is left.
    """
    df = as_frame(data)
    if not outcome or len(df) < 2:
        return None

    levels = [DrillLevelVariation(factor=None, values=None, local_variation_pct=100.0, cumulative_variation_pct=100.0)]
    cumulative = 100.0
    current = df
    for factor, values in filters.items():
        if not values:
            continue
        local_pct = get_eta_squared(current, factor, outcome) * 100.0
        cumulative = cumulative * local_pct / 100.0
        levels.append(
            DrillLevelVariation(
                factor=factor,
                values=tuple(values),
                local_variation_pct=local_pct,
                cumulative_variation_pct=cumulative,
            )
        )
        current = apply_filters(current, {factor: values})
        if len(current) < 2:
            break

    return DrillVariationResult(
        levels=levels,
        cumulative_variation_pct=cumulative,
        impact_level=get_variation_impact_level(cumulative),
        insight_text=get_variation_insight(cumulative),
    )
