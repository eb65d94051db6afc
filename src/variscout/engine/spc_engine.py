# spc_engine.py

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from variscout.engine.anova import calculate_anova
from variscout.engine.capability import stats_for_specs
from variscout.engine.drill_path import compute_drill_path
from variscout.engine.navigation import FILTER, filter_stack_to_filters
from variscout.engine.spc_types import AnovaResult, FilterAction, InvestigationResult, SpecLimits
from variscout.engine.spc_utils import DataLike, as_frame, numeric_outcome
from variscout.engine.thresholds import DEFAULT_CPK_THRESHOLDS, CpkThresholds, classify_cpk
from variscout.engine.time_factors import augment_with_time_columns
from variscout.engine.variation import apply_filters, calculate_factor_variations, find_optimal_factors

logger = logging.getLogger(__name__)


# =========================
# Config
# =========================

@dataclass
class AnalysisConfig:
    outcome: str
    factors: List[str]
    usl: Optional[float] = None
    lsl: Optional[float] = None
    target: Optional[float] = None
    cpk_thresholds: CpkThresholds = field(default_factory=lambda: DEFAULT_CPK_THRESHOLDS)
    target_pct: float = 70.0
    max_factors: int = 3
    alpha: float = 0.05
    time_column: Optional[str] = None

    def __post_init__(self):
        if not self.outcome:
            raise ValueError("outcome column is required.")
        self.factors = list(self.factors)
        if self.outcome in self.factors:
            raise ValueError("outcome column cannot also be a factor.")
        if len(set(self.factors)) != len(self.factors):
            raise ValueError("factor columns must be unique.")
        if self.usl is not None and self.lsl is not None and self.usl <= self.lsl:
            raise ValueError("usl must be greater than lsl.")
        if not (0 < self.target_pct <= 100):
            raise ValueError("target_pct must be in (0, 100].")
        if self.max_factors < 1:
            raise ValueError("max_factors must be at least 1.")
        if not (0 < self.alpha < 1):
            raise ValueError("alpha must be between 0 and 1.")
        if self.time_column is not None and self.time_column == self.outcome:
            raise ValueError("time column cannot be the outcome.")

    @property
    def specs(self) -> SpecLimits:
        return SpecLimits(usl=self.usl, lsl=self.lsl, target=self.target)


# =========================
# Public API
# =========================

def run_investigation(
    data: DataLike,
    config: AnalysisConfig,
    filter_stack: Sequence[FilterAction] = (),
) -> InvestigationResult:
    """
    One pass of a variation investigation.

    Overall capability and the optimal factor set are computed on the full data.
    The drill path replays `filter_stack`. ANOVA and factor variations describe the
    data that remains after the active filters. Time factors derived from
    `config.time_column` join the configured factors.
    """
    warnings: List[str] = []
    df = as_frame(data)

    required = [config.outcome] + config.factors + ([config.time_column] if config.time_column else [])
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise KeyError(f"Columns missing from dataframe: {', '.join(missing)}.")

    factors = list(config.factors)
    if config.time_column:
        df, created = augment_with_time_columns(df, config.time_column)
        factors += [c for c in created if c not in factors]
        if not created:
            warnings.append(f"No dates could be parsed from '{config.time_column}'; no time factors were added.")

    # 1. Overall capability
    specs = config.specs
    values = numeric_outcome(df, config.outcome)
    skipped = len(df) - len(values)
    if skipped:
        warnings.append(f"{skipped} row(s) have a non-numeric '{config.outcome}' and were skipped.")
    overall = stats_for_specs(values, specs) if len(values) else None
    if not specs.has_limits:
        warnings.append("No specification limits set; Cp and Cpk are not computed.")
    if overall is not None and overall.cpk is not None:
        health = classify_cpk(overall.cpk, config.cpk_thresholds)
        if health == "critical":
            warnings.append(
                f"Overall Cpk {overall.cpk:.2f} is below the critical threshold of {config.cpk_thresholds.critical}."
            )

    # 2. Drill path and the current level
    path = compute_drill_path(df, filter_stack, config.outcome, specs)
    current = apply_filters(df, filter_stack_to_filters(filter_stack))
    if filter_stack and len(current) < 2:
        warnings.append("Active filters leave fewer than 2 rows; statistics for the current level are unavailable.")

    drilled = [a.factor for a in filter_stack if a.type == FILTER and a.factor]

    # 3. Factor ranking and per-factor ANOVA
    optimal = find_optimal_factors(df, factors, config.outcome, config.target_pct, config.max_factors)
    variations = calculate_factor_variations(current, factors, config.outcome, drilled)
    anova: Dict[str, Optional[AnovaResult]] = {
        factor: calculate_anova(current, config.outcome, factor, alpha=config.alpha) for factor in factors
    }

    logger.info(
        "Investigation on '%s': %d rows, %d drill steps, %d optimal factors.",
        config.outcome,
        len(df),
        len(path.steps),
        len(optimal),
    )

    return InvestigationResult(
        config=config,
        overall_stats=overall,
        drill_path=path,
        optimal_factors=optimal,
        anova=anova,
        factor_variations=variations,
        current_data=current,
        warnings=warnings,
    )
