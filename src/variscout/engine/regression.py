from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from statsmodels.stats.outliers_influence import variance_inflation_factor

from variscout.engine.spc_types import (
    CoefficientResult,
    InteractionStrength,
    LinearFit,
    MultiRegressionResult,
    QuadraticFit,
    RegressionResult,
    RegressionTerm,
    VIFWarning,
)
from variscout.engine.spc_utils import DataLike, as_frame, numeric_column
from variscout.engine.thresholds import strength_rating

logger = logging.getLogger(__name__)

ALPHA = 0.05
INTERACTION_MIN_ROWS = 5

VIF_MODERATE = 5.0
VIF_HIGH = 7.0
VIF_SEVERE = 10.0


# =========================
# Simple regression
# =========================

def _linear_fit(x: np.ndarray, y: np.ndarray) -> LinearFit:
    n = x.size
    x_mean, y_mean = float(x.mean()), float(y.mean())
    ss_xx = float(((x - x_mean) ** 2).sum())
    ss_yy = float(((y - y_mean) ** 2).sum())
    if ss_xx == 0:
        return LinearFit(slope=0.0, intercept=y_mean, r_squared=0.0, p_value=1.0, is_significant=False)

    model = sm.OLS(y, sm.add_constant(x, has_constant="add")).fit()
    intercept, slope = (float(v) for v in model.params)
    ss_res = float(model.ssr)
    r_squared = 1 - ss_res / ss_yy if ss_yy > 0 else 0.0

    perfect_fit = ss_res < 1e-10 and r_squared > 0.999
    se_slope = float(model.bse[1]) if n > 2 else 0.0
    if perfect_fit:
        p_value = 0.0
    elif se_slope > 0 and np.isfinite(model.pvalues[1]):
        p_value = float(model.pvalues[1])
    else:
        p_value = 1.0

    return LinearFit(
        slope=slope,
        intercept=intercept,
        r_squared=r_squared,
        p_value=p_value,
        is_significant=perfect_fit or p_value < ALPHA,
    )


def _quadratic_fit(x: np.ndarray, y: np.ndarray) -> Optional[QuadraticFit]:
    """y = a*x² + b*x + c. None when the design is singular."""
    design = np.column_stack([np.ones_like(x), x, x ** 2])
    if np.linalg.matrix_rank(design) < 3:
        return None

    model = sm.OLS(y, design).fit()
    c, b, a = (float(v) for v in model.params)
    ss_tot = float(((y - y.mean()) ** 2).sum())
    r_squared = 1 - float(model.ssr) / ss_tot if ss_tot > 0 else 0.0

    optimum_x: Optional[float] = None
    optimum_type: Optional[str] = None
    if abs(a) > 1e-10:
        optimum_x = -b / (2 * a)
        optimum_type = "peak" if a < 0 else "valley"
        x_min, x_max = float(x.min()), float(x.max())
        span = x_max - x_min
        # vertex far outside the observed x range is not a usable optimum
        if optimum_x < x_min - span * 0.5 or optimum_x > x_max + span * 0.5:
            optimum_x, optimum_type = None, None

    return QuadraticFit(a=a, b=b, c=c, r_squared=r_squared, optimum_x=optimum_x, optimum_type=optimum_type)


def _regression_insight(linear: LinearFit, quadratic: Optional[QuadraticFit], recommended: str, x_col: str, y_col: str) -> str:
    if recommended == "quadratic" and quadratic is not None and quadratic.optimum_x is not None:
        kind = "Maximum" if quadratic.optimum_type == "peak" else "Minimum"
        return f"{kind} {y_col} at {x_col} ≈ {quadratic.optimum_x:.1f}"
    if recommended == "none":
        return f"No significant relationship between {x_col} and {y_col}"
    effect = "higher" if linear.slope > 0 else "lower"
    return f"Higher {x_col} → {effect} {y_col}"


def calculate_regression(data: DataLike, x_col: str, y_col: str) -> Optional[RegressionResult]:
    """Linear and quadratic fit of `y_col` on `x_col` with a recommended model and an insight."""
    df = as_frame(data)
    xs = numeric_column(df, x_col)
    ys = numeric_column(df, y_col)
    mask = xs.notna() & ys.notna()
    x = xs[mask].to_numpy(dtype=float)
    y = ys[mask].to_numpy(dtype=float)

    if x.size < 3:
        logger.debug("Regression %s ~ %s skipped: %d numeric pairs.", y_col, x_col, x.size)
        return None

    linear = _linear_fit(x, y)
    quadratic = _quadratic_fit(x, y) if x.size >= 4 else None

    if quadratic is not None and quadratic.r_squared > linear.r_squared + 0.05 and quadratic.r_squared >= 0.5:
        recommended = "quadratic"
    elif linear.is_significant:
        recommended = "linear"
    else:
        recommended = "none"

    best_r2 = quadratic.r_squared if (quadratic is not None and recommended == "quadratic") else linear.r_squared

    return RegressionResult(
        x_column=x_col,
        y_column=y_col,
        n=int(x.size),
        points=list(zip(x.tolist(), y.tolist())),
        linear=linear,
        quadratic=quadratic,
        recommended_fit=recommended,
        strength_rating=strength_rating(best_r2),
        insight=_regression_insight(linear, quadratic, recommended, x_col, y_col),
    )


# =========================
# Multiple regression (GLM)
# =========================

def _is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and np.isnan(value):
        return True
    return isinstance(value, str) and value == ""


def _build_design(
    df: pd.DataFrame,
    y_col: str,
    x_cols: Sequence[str],
    categorical: Sequence[str],
    include_interactions: bool,
) -> Optional[Tuple[pd.DataFrame, np.ndarray, List[RegressionTerm]]]:
    continuous = [c for c in x_cols if c not in categorical]
    categories = [c for c in x_cols if c in categorical]

    # 1. Valid rows: finite y and continuous xs, non-empty categoricals
    y_all = numeric_column(df, y_col)
    mask = y_all.notna()
    cont_values: Dict[str, pd.Series] = {}
    for col in continuous:
        cont_values[col] = numeric_column(df, col)
        mask &= cont_values[col].notna()
    for col in categories:
        if col not in df.columns:
            return None
        mask &= ~df[col].map(_is_blank)

    n_valid = int(mask.sum())
    if n_valid < len(x_cols) + 2:
        logger.debug("Multiple regression on '%s' skipped: %d valid rows.", y_col, n_valid)
        return None

    # 2. Continuous, dummy and interaction columns
    columns: Dict[str, np.ndarray] = {}
    terms: List[RegressionTerm] = []
    for col in continuous:
        columns[col] = cont_values[col][mask].to_numpy(dtype=float)
        terms.append(RegressionTerm(columns=(col,), label=col, type="continuous"))

    dummy_levels: Dict[str, Tuple[List[str], str]] = {}
    for col in categories:
        labels = df[col][mask].map(str)
        levels = sorted(labels.unique())
        if len(levels) < 2:
            continue
        reference = levels[0]
        dummy_levels[col] = (levels[1:], reference)
        for level in levels[1:]:
            name = f"{col}_{level}"
            columns[name] = (labels == level).to_numpy(dtype=float)
            terms.append(RegressionTerm(columns=(col,), label=name, type="categorical", level=level, reference_level=reference))

    if include_interactions and len(x_cols) >= 2:
        for i, first in enumerate(continuous):
            for second in continuous[i + 1:]:
                name = f"{first} × {second}"
                columns[name] = columns[first] * columns[second]
                terms.append(RegressionTerm(columns=(first, second), label=name, type="interaction"))
        for cont in continuous:
            for cat, (levels, reference) in dummy_levels.items():
                for level in levels:
                    name = f"{cont} × {cat}_{level}"
                    columns[name] = columns[cont] * columns[f"{cat}_{level}"]
                    terms.append(
                        RegressionTerm(columns=(cont, cat), label=name, type="interaction", level=level, reference_level=reference)
                    )

    design = pd.DataFrame(columns)
    return design, y_all[mask].to_numpy(dtype=float), terms


def _vif_warnings(vifs: List[float], names: List[str]) -> List[VIFWarning]:
    warnings: List[VIFWarning] = []
    for name, vif in zip(names, vifs):
        if vif >= VIF_SEVERE:
            warnings.append(VIFWarning(name, vif, "severe", f"Consider removing {name} or combining with correlated predictors"))
        elif vif >= VIF_HIGH:
            warnings.append(VIFWarning(name, vif, "high", f"{name} is highly correlated with other predictors"))
        elif vif >= VIF_MODERATE:
            warnings.append(VIFWarning(name, vif, "moderate", f"{name} shows some correlation with other predictors"))
    return warnings


def _multi_insight(y_col: str, is_significant: bool, coefficients: List[CoefficientResult], top: List[str], collinear: bool) -> str:
    if not is_significant:
        return f"No significant relationship found for {y_col}"
    significant = [c for c in coefficients if c.is_significant]
    if not significant:
        insight = "Model is significant overall but no individual predictors stand out"
    else:
        strongest = max(significant, key=lambda c: abs(c.standardized))
        direction = "increases" if strongest.coefficient > 0 else "decreases"
        insight = f"{strongest.term} {direction} {y_col} by {abs(strongest.coefficient):.2f} per unit"
        if len(top) > 1:
            insight += f". Top predictors: {', '.join(top[:3])}"
    if collinear:
        insight += " (multicollinearity detected)"
    return insight


def calculate_multiple_regression(
    data: DataLike,
    y_col: str,
    x_cols: Sequence[str],
    categorical_columns: Sequence[str] = (),
    include_interactions: bool = False,
) -> Optional[MultiRegressionResult]:
    """
    OLS fit of y on several predictors.

    Categoricals are reference coded (first sorted level omitted). Optional
    interactions add continuous x continuous and continuous x dummy products.
    """
    df = as_frame(data)
    x_cols = list(x_cols)
    if df.empty or not x_cols:
        return None

    built = _build_design(df, y_col, x_cols, list(categorical_columns), include_interactions)
    if built is None:
        return None
    design, y, terms = built
    n, p = len(y), len(terms)
    if p == 0 or n <= p + 1:
        logger.debug("Multiple regression on '%s' skipped: n=%d, p=%d.", y_col, n, p)
        return None

    exog = sm.add_constant(design, has_constant="add")
    if np.linalg.matrix_rank(exog.to_numpy(dtype=float)) < p + 1:
        logger.info("Multiple regression on '%s' skipped: design matrix is rank deficient.", y_col)
        return None

    # 1. Fit OLS
    with np.errstate(divide="ignore", invalid="ignore"):
        model = sm.OLS(y, exog).fit()

    ss_tot = float(((y - y.mean()) ** 2).sum())
    r_squared = 1 - float(model.ssr) / ss_tot if ss_tot > 0 else 0.0
    adjusted = 1 - (1 - r_squared) * (n - 1) / (n - p - 1)
    mse = float(model.ssr) / (n - p - 1)
    f_statistic = 0.0 if np.isnan(model.fvalue) else float(model.fvalue)
    f_pvalue = float(model.f_pvalue) if np.isfinite(model.f_pvalue) else 1.0
    is_significant = f_pvalue < ALPHA

    # 2. Coefficients with standardized betas
    y_sd = float(np.std(y, ddof=1))
    coefficients: List[CoefficientResult] = []
    for term in terms:
        name = term.label
        coef = float(model.params[name])
        se = float(model.bse[name]) if np.isfinite(model.bse[name]) else 0.0
        t_stat = coef / se if se > 0 else 0.0
        p_value = float(model.pvalues[name]) if se > 0 and np.isfinite(model.pvalues[name]) else 1.0
        x_sd = float(design[name].std(ddof=1))
        standardized = coef * x_sd / y_sd if (y_sd > 0 and x_sd > 0) else 0.0
        coefficients.append(
            CoefficientResult(
                term=name,
                coefficient=coef,
                std_error=se,
                t_statistic=t_stat,
                p_value=p_value,
                is_significant=p_value < ALPHA,
                standardized=standardized,
                term_info=term,
            )
        )

    # 3. VIF (only meaningful with 2+ predictors)
    vifs: List[float] = []
    if p >= 2:
        exog_arr = exog.to_numpy(dtype=float)
        with np.errstate(divide="ignore", invalid="ignore"):
            vifs = [float(variance_inflation_factor(exog_arr, j)) for j in range(1, p + 1)]
        vifs = [np.inf if np.isnan(v) else v for v in vifs]
        for coef_row, vif in zip(coefficients, vifs):
            coef_row.vif = vif

    vif_warnings = _vif_warnings(vifs, [t.label for t in terms])
    has_collinearity = any(w.severity == "severe" for w in vif_warnings)

    top_predictors = [
        c.term for c in sorted((c for c in coefficients if c.is_significant), key=lambda c: abs(c.standardized), reverse=True)
    ][:5]

    return MultiRegressionResult(
        y_column=y_col,
        x_columns=x_cols,
        terms=terms,
        n=n,
        p=p,
        r_squared=r_squared,
        adjusted_r_squared=adjusted,
        f_statistic=f_statistic,
        p_value=f_pvalue,
        is_significant=is_significant,
        rmse=float(np.sqrt(mse)),
        intercept=float(model.params["const"]),
        coefficients=coefficients,
        vif_warnings=vif_warnings,
        has_collinearity=has_collinearity,
        insight=_multi_insight(y_col, is_significant, coefficients, top_predictors, has_collinearity),
        top_predictors=top_predictors,
        strength_rating=strength_rating(adjusted),
    )


# =========================
# Factor interactions
# =========================

def get_interaction_strength(data: DataLike, factor_a: str, factor_b: str, outcome: str) -> Optional[InteractionStrength]:
    """
    How much an A x B interaction adds on top of the main effects of two factors.

    delta R² = R²(A * B) - R²(A + B); the p-value is the nested-model F-test and
    the standardized beta is sqrt(delta R²).
    """
    df = as_frame(data)
    if factor_a not in df.columns or factor_b not in df.columns:
        return None

    y = numeric_column(df, outcome)
    mask = y.notna() & df[factor_a].notna() & df[factor_b].notna()
    work = pd.DataFrame(
        {
            "y": y[mask].to_numpy(dtype=float),
            "a": df[factor_a][mask].map(str).to_numpy(),
            "b": df[factor_b][mask].map(str).to_numpy(),
        }
    )
    if len(work) < INTERACTION_MIN_ROWS or work["a"].nunique() < 2 or work["b"].nunique() < 2:
        return None

    with np.errstate(divide="ignore", invalid="ignore"):
        main = smf.ols("y ~ C(a) + C(b)", data=work).fit()
        full = smf.ols("y ~ C(a) * C(b)", data=work).fit()

    delta = max(0.0, float(full.rsquared) - float(main.rsquared)) if np.isfinite(full.rsquared) else 0.0
    df_diff = float(main.df_resid - full.df_resid)
    if full.df_resid > 0 and df_diff > 0 and full.ssr > 0:
        with np.errstate(divide="ignore", invalid="ignore"):
            _, p_value, _ = full.compare_f_test(main)
        p_value = float(p_value) if np.isfinite(p_value) else 1.0
    else:
        logger.debug("Interaction %s x %s: no residual degrees of freedom for the F-test.", factor_a, factor_b)
        p_value = 1.0

    return InteractionStrength(
        factor_a=factor_a,
        factor_b=factor_b,
        delta_r_squared=delta,
        p_value=p_value,
        standardized_beta=float(np.sqrt(delta)),
    )
