# gage_rr.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from statsmodels.stats.anova import anova_lm

from variscout.engine.spc_types import (
    ANOVATableRow,
    GageRRInteraction,
    GageRRResult,
    VarianceComponentRow,
)
from variscout.engine.spc_utils import (
    DataLike,
    as_frame,
    build_anova_rows,
    clean_anova_index,
    design_diagnostics,
    find_term,
    get_ms_df,
    is_balanced_and_complete,
    rename_anova_terms,
    shapiro_safe,
    update_anova_f_test,
    validate_dataframe,
)
from variscout.engine.thresholds import GRR_VERDICT_TEXT, classify_grr

logger = logging.getLogger(__name__)

STUDY_VAR_MULTIPLIER = 6.0
NDC_FACTOR = 1.41


def _sqrt_nn(x: float) -> float:
    return float(np.sqrt(max(0.0, x)))


def _variance_component_rows(
    vc_map: Dict[str, float],
    operator_col: str,
    part_col: str,
    tolerance: Optional[float],
) -> List[VarianceComponentRow]:
    """Minitab-style component table: contribution on variances, study variation on sigmas."""
    var_repeat = vc_map["Repeatability"]
    var_op = vc_map[operator_col]
    var_int = vc_map[f"{part_col}:{operator_col}"]
    var_part = vc_map[part_col]
    var_repro = var_op + var_int
    var_grr = var_repeat + var_repro
    var_total = var_grr + var_part
    sigma_total = _sqrt_nn(var_total)

    def row(source: str, var_i: float, fixed_pct: Optional[float] = None) -> VarianceComponentRow:
        sigma_i = _sqrt_nn(var_i)
        pct_tol = (STUDY_VAR_MULTIPLIER * sigma_i) / float(tolerance) * 100.0 if tolerance else None
        return VarianceComponentRow(
            source,
            var_i,
            sigma_i,
            STUDY_VAR_MULTIPLIER * sigma_i,
            fixed_pct if fixed_pct is not None else ((var_i / var_total * 100.0) if var_total > 0 else 0.0),
            fixed_pct if fixed_pct is not None else ((sigma_i / sigma_total * 100.0) if sigma_total > 0 else 0.0),
            pct_tol,
        )

    return [
        row("Total Gage R&R", var_grr),
        row("Repeatability", var_repeat),
        row("Reproducibility", var_repro),
        row(f"Reproducibility: {operator_col}", var_op),
        row(f"Reproducibility: {part_col}:{operator_col}", var_int),
        row(f"Part-to-Part ({part_col})", var_part),
        row("Total Variation", var_total, fixed_pct=100.0),
    ]


def calculate_gage_rr(
    data: DataLike,
    part_col: str,
    operator_col: str,
    measurement_col: str,
    tolerance: Optional[float] = None,
) -> Optional[GageRRResult]:
    """
    Crossed Gage R&R (ANOVA method) with Part, Operator and Part x Operator as random effects.

    Returns None unless all three columns are present and there are at least
    2 parts, 2 operators and 2 replicates per cell.
    """
    warnings: List[str] = []
    frame = as_frame(data)
    missing = [c for c in (part_col, operator_col, measurement_col) if c not in frame.columns]
    if missing:
        logger.debug("Gage R&R skipped: missing column(s) %s.", missing)
        return None
    df2 = validate_dataframe(frame, measurement_col, [part_col, operator_col])

    part, op, y = part_col, operator_col, measurement_col
    n_parts = int(df2[part].nunique())
    n_ops = int(df2[op].nunique())
    if n_parts < 2 or n_ops < 2:
        logger.debug("Gage R&R skipped: %d parts, %d operators.", n_parts, n_ops)
        return None

    design_diag = design_diagnostics(df2, [part, op])
    n_reps = int(design_diag["replicate_dist"]["min"])
    if n_reps < 2:
        logger.debug("Gage R&R skipped: a part/operator cell has fewer than 2 replicates.")
        return None

    diag: Dict[str, Any] = {"design": design_diag}
    if not is_balanced_and_complete(design_diag):
        warnings.append(
            f"Unbalanced or incomplete design detected. Variance components use the minimum of {n_reps} replicates per cell."
        )

    # 1. Fit the full crossed model under fixed column names
    fit_df = pd.DataFrame({"part": df2[part], "op": df2[op], "y": df2[y]})
    formula = 'Q("y") ~ C(Q("part")) + C(Q("op")) + C(Q("part")):C(Q("op"))'
    model = smf.ols(formula, data=fit_df).fit()
    anova = anova_lm(model, typ=2)

    term_part = find_term(anova, "part")
    term_op = find_term(anova, "op")
    term_int = find_term(anova, ["part", "op"])
    term_res = "Residual"

    ms_part, df_part = get_ms_df(anova, term_part)
    ms_op, df_op = get_ms_df(anova, term_op)
    ms_int, df_int = get_ms_df(anova, term_int)
    ms_res, df_res = get_ms_df(anova, term_res)

    # 2. Random-effects F-tests: main effects against the interaction
    update_anova_f_test(anova, term_part, ms_part, ms_int, df_part, df_int)
    update_anova_f_test(anova, term_op, ms_op, ms_int, df_op, df_int)
    update_anova_f_test(anova, term_int, ms_int, ms_res, df_int, df_res)

    anova_rows = build_anova_rows(rename_anova_terms(clean_anova_index(anova), {"part": part, "op": op}), ANOVATableRow)

    # 3. Expected mean squares
    var_repeat = max(ms_res, 0.0)
    var_int = max((ms_int - ms_res) / n_reps, 0.0)
    var_op = max((ms_op - ms_int) / (n_parts * n_reps), 0.0)
    var_part = max((ms_part - ms_int) / (n_ops * n_reps), 0.0)

    var_repro = var_op + var_int
    var_grr = var_repeat + var_repro
    var_total = var_part + var_grr

    sigma_total = _sqrt_nn(var_total)
    sigma_part = _sqrt_nn(var_part)
    sigma_grr = _sqrt_nn(var_grr)

    def pct_sv(var_i: float) -> float:
        return (_sqrt_nn(var_i) / sigma_total * 100.0) if sigma_total > 0 else 0.0

    pct_grr = pct_sv(var_grr)
    verdict = classify_grr(pct_grr)

    if var_part == 0.0:
        warnings.append("Part-to-Part variation is zero. Check that the study parts span the process range.")

    pct_tolerance = None
    if tolerance is not None and tolerance > 0:
        pct_tolerance = STUDY_VAR_MULTIPLIER * sigma_grr / float(tolerance) * 100.0

    # 4. Part x Operator cell means
    cells = df2.groupby([part, op], observed=True, sort=False)[y].mean()
    interaction_data = [GageRRInteraction(str(p), str(o), float(m)) for (p, o), m in cells.items()]

    diag["residual_normality_pvalue"] = shapiro_safe(model.resid)
    vc_map = {
        "Repeatability": var_repeat,
        op: var_op,
        f"{part}:{op}": var_int,
        part: var_part,
    }

    return GageRRResult(
        part_count=n_parts,
        operator_count=n_ops,
        replicates=n_reps,
        total_measurements=int(len(df2)),
        var_part=var_part,
        var_operator=var_op,
        var_interaction=var_int,
        var_repeatability=var_repeat,
        var_reproducibility=var_repro,
        var_grr=var_grr,
        var_total=var_total,
        pct_part=pct_sv(var_part),
        pct_repeatability=pct_sv(var_repeat),
        pct_reproducibility=pct_sv(var_repro),
        pct_grr=pct_grr,
        pct_tolerance=pct_tolerance,
        ndc=NDC_FACTOR * (sigma_part / sigma_grr) if sigma_grr > 0 else 0.0,
        verdict=verdict,
        verdict_text=GRR_VERDICT_TEXT[verdict],
        interaction_data=interaction_data,
        anova_table=anova_rows,
        var_components=_variance_component_rows(vc_map, op, part, tolerance if tolerance and tolerance > 0 else None),
        diagnostics=diag,
        warnings=warnings,
    )
