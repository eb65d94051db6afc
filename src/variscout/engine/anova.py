from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from statsmodels.stats.anova import anova_lm

from variscout.engine.spc_types import ANOVATableRow, AnovaGroup, AnovaResult
from variscout.engine.spc_utils import (
    DataLike,
    as_frame,
    build_anova_rows,
    clean_anova_index,
    find_term,
    numeric_column,
    rename_anova_terms,
    update_anova_f_test,
)

logger = logging.getLogger(__name__)

ALPHA = 0.05
MISSING_GROUP = "Unknown"

# outcome names where a smaller group mean is the desirable one
_LOWER_IS_BETTER = re.compile(r"time|defect|error|reject|delay|cost|waste", re.IGNORECASE)


def _factor_keys(df: pd.DataFrame, factor: str) -> pd.Series:
    if factor not in df.columns:
        return pd.Series([None] * len(df), index=df.index, dtype=object)
    return df[factor].astype(object).where(df[factor].notna(), None)


def get_eta_squared(data: DataLike, factor: str, outcome: str) -> float:
    """
    eta² = SS_between / SS_total for `outcome` grouped by `factor`.

    Non-numeric outcome cells are skipped. Rows with a missing factor value form
    their own group. Returns 0 for constant outcomes or a single group.
    """
    df = as_frame(data)
    y_all = numeric_column(df, outcome)
    mask = y_all.notna()
    y = y_all[mask]
    if y.size < 2:
        return 0.0

    grand_mean = float(y.mean())
    ss_total = float(((y - grand_mean) ** 2).sum())
    if np.isclose(ss_total, 0.0, atol=1e-12):
        return 0.0

    keys = _factor_keys(df, factor)[mask]
    grouped = y.groupby(keys.to_numpy(), sort=False, dropna=False).agg(["count", "mean"])
    ss_between = float((grouped["count"] * (grouped["mean"] - grand_mean) ** 2).sum())
    return float(min(max(ss_between / ss_total, 0.0), 1.0))


def group_data_by_factor(data: DataLike, factor: str, outcome: str) -> Dict[str, List[float]]:
    """Numeric outcome values per factor level, keyed by the level's string form, in first-seen order."""
    df = as_frame(data)
    y_all = numeric_column(df, outcome)
    mask = y_all.notna()
    y = y_all[mask]
    keys = _factor_keys(df, factor)[mask].map(lambda v: MISSING_GROUP if pd.isna(v) else str(v))
    groups: Dict[str, List[float]] = {}
    for key, val in zip(keys, y):
        groups.setdefault(key, []).append(float(val))
    return groups


def _anova_insight(groups: List[AnovaGroup], is_significant: bool, outcome: str) -> str:
    if not is_significant:
        return "No significant difference between groups"
    ordered = sorted(groups, key=lambda g: g.mean)
    best = ordered[0] if _LOWER_IS_BETTER.search(outcome) else ordered[-1]
    return f"{best.name} is best ({best.mean:.1f} avg)"


def calculate_anova(data: DataLike, outcome: str, factor: str, alpha: float = ALPHA) -> Optional[AnovaResult]:
    """
    One-way ANOVA of `outcome` across the levels of `factor`.

    Returns None for fewer than 2 groups, fewer than 3 observations, or when
    there is no within-group variation.
    """
    groups = group_data_by_factor(data, factor, outcome)
    if len(groups) < 2:
        logger.debug("ANOVA skipped for '%s': fewer than 2 groups.", factor)
        return None

    total_n = sum(len(v) for v in groups.values())
    if total_n < 3:
        logger.debug("ANOVA skipped for '%s': only %d observations.", factor, total_n)
        return None

    # 1. Group summaries
    group_stats = [
        AnovaGroup(
            name=name,
            n=len(vals),
            mean=float(np.mean(vals)),
            std_dev=float(np.std(vals, ddof=1)) if len(vals) > 1 else 0.0,
        )
        for name, vals in groups.items()
    ]

    # 2. Fit y ~ C(g) on a long frame under fixed column names
    long_df = pd.DataFrame(
        {
            "y": [v for vals in groups.values() for v in vals],
            "g": [name for name, vals in groups.items() for _ in vals],
        }
    )
    model = smf.ols('Q("y") ~ C(Q("g"))', data=long_df).fit()
    anova = anova_lm(model, typ=2)

    term = find_term(anova, "g")
    ssb = float(anova.loc[term, "sum_sq"])
    ssw = float(anova.loc["Residual", "sum_sq"])
    df_between = len(group_stats) - 1
    df_within = total_n - len(group_stats)

    if df_within <= 0 or ssw <= 1e-12 * (ssb + ssw):
        logger.debug("ANOVA skipped for '%s': no within-group variation.", factor)
        return None

    # 3. F-test from scipy's F distribution
    msb = ssb / df_between
    msw = ssw / df_within
    anova["mean_sq"] = anova["sum_sq"] / anova["df"]
    update_anova_f_test(anova, term, msb, msw, df_between, df_within)
    f_statistic = float(anova.loc[term, "F"])
    p_value = float(anova.loc[term, "PR(>F)"])
    is_significant = p_value < alpha

    sst = ssb + ssw
    eta_squared = ssb / sst if sst > 0 else 0.0

    return AnovaResult(
        groups=group_stats,
        ssb=ssb,
        ssw=ssw,
        df_between=df_between,
        df_within=df_within,
        msb=msb,
        msw=msw,
        f_statistic=f_statistic,
        p_value=p_value,
        is_significant=is_significant,
        eta_squared=eta_squared,
        insight=_anova_insight(group_stats, is_significant, outcome),
        anova_table=build_anova_rows(rename_anova_terms(clean_anova_index(anova), {"g": factor}), ANOVATableRow),
    )
