# spc_types.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd

CellValue = Union[str, int, float]


# =========================
# Inputs
# =========================

@dataclass(frozen=True)
class SpecLimits:
    usl: Optional[float] = None
    lsl: Optional[float] = None
    target: Optional[float] = None

    def __post_init__(self):
        if self.usl is not None and self.lsl is not None and self.usl <= self.lsl:
            raise ValueError("USL must be greater than LSL.")

    @property
    def has_limits(self) -> bool:
        return self.usl is not None or self.lsl is not None

    @property
    def tolerance(self) -> Optional[float]:
        if self.usl is not None and self.lsl is not None:
            return float(self.usl - self.lsl)
        return None

    @property
    def center(self) -> Optional[float]:
        """Explicit target, else the spec midpoint when both limits exist."""
        if self.target is not None:
            return float(self.target)
        if self.usl is not None and self.lsl is not None:
            return (self.usl + self.lsl) / 2.0
        return None


@dataclass(frozen=True)
class GradeTier:
    max: float
    label: str
    color: str = ""


@dataclass(frozen=True)
class FilterAction:
    """One entry of the drill navigation stack. Only 'filter' actions narrow the data."""
    type: str
    source: str
    values: Tuple[CellValue, ...]
    id: str
    timestamp: float
    label: str
    factor: Optional[str] = None
    row_index: Optional[int] = None


# =========================
# Capability
# =========================

@dataclass
class GradeCount:
    label: str
    count: int
    percentage: float
    color: str


@dataclass
class StatsResult:
    mean: float
    std_dev: float
    ucl: float
    lcl: float
    out_of_spec_percentage: float
    cp: Optional[float] = None
    cpk: Optional[float] = None
    grade_counts: Optional[List[GradeCount]] = None
    n: int = 0


@dataclass
class ConformanceResult:
    passed: int
    fail_usl: int
    fail_lsl: int
    total: int
    pass_rate: float


@dataclass
class ProbabilityPlotPoint:
    value: float
    expected_percentile: float
    lower_ci: float
    upper_ci: float


@dataclass
class StagedStatsResult:
    stages: Dict[str, StatsResult]
    stage_order: List[str]
    overall_stats: StatsResult


# =========================
# ANOVA / regression
# =========================

@dataclass
class ANOVATableRow:
    term: str
    df: float
    ss: float
    ms: float
    f: Optional[float]
    p: Optional[float]


@dataclass
class AnovaGroup:
    name: str
    n: int
    mean: float
    std_dev: float


@dataclass
class AnovaResult:
    groups: List[AnovaGroup]
    ssb: float
    ssw: float
    df_between: int
    df_within: int
    msb: float
    msw: float
    f_statistic: float
    p_value: float
    is_significant: bool
    eta_squared: float
    insight: str
    anova_table: List[ANOVATableRow] = field(default_factory=list)


@dataclass
class LinearFit:
    slope: float
    intercept: float
    r_squared: float
    p_value: float
    is_significant: bool


@dataclass
class QuadraticFit:
    a: float
    b: float
    c: float
    r_squared: float
    optimum_x: Optional[float]
    optimum_type: Optional[str]


@dataclass
class RegressionResult:
    x_column: str
    y_column: str
    n: int
    points: List[Tuple[float, float]]
    linear: LinearFit
    quadratic: Optional[QuadraticFit]
    recommended_fit: str
    strength_rating: int
    insight: str


@dataclass
class RegressionTerm:
    columns: Tuple[str, ...]
    label: str
    type: str
    level: Optional[str] = None
    reference_level: Optional[str] = None


@dataclass
class CoefficientResult:
    term: str
    coefficient: float
    std_error: float
    t_statistic: float
    p_value: float
    is_significant: bool
    standardized: float
    term_info: RegressionTerm
    vif: Optional[float] = None


@dataclass
class VIFWarning:
    term: str
    vif: float
    severity: str
    suggestion: str


@dataclass
class MultiRegressionResult:
    y_column: str
    x_columns: List[str]
    terms: List[RegressionTerm]
    n: int
    p: int
    r_squared: float
    adjusted_r_squared: float
    f_statistic: float
    p_value: float
    is_significant: bool
    rmse: float
    intercept: float
    coefficients: List[CoefficientResult]
    vif_warnings: List[VIFWarning]
    has_collinearity: bool
    insight: str
    top_predictors: List[str]
    strength_rating: int


@dataclass
class InteractionStrength:
    factor_a: str
    factor_b: str
    delta_r_squared: float
    p_value: float
    standardized_beta: float


# =========================
# Gage R&R
# =========================

@dataclass
class VarianceComponentRow:
    source: str
    var_comp: float
    std_dev: float
    variability: float
    pct_contribution: float
    pct_study_var: float
    pct_tolerance: Optional[float]


@dataclass
class GageRRInteraction:
    part: str
    operator: str
    mean: float


@dataclass
class GageRRResult:
    part_count: int
    operator_count: int
    replicates: int
    total_measurements: int
    var_part: float
    var_operator: float
    var_interaction: float
    var_repeatability: float
    var_reproducibility: float
    var_grr: float
    var_total: float
    pct_part: float
    pct_repeatability: float
    pct_reproducibility: float
    pct_grr: float
    pct_tolerance: Optional[float]
    ndc: float
    verdict: str
    verdict_text: str
    interaction_data: List[GageRRInteraction]
    anova_table: List[ANOVATableRow]
    var_components: List[VarianceComponentRow]
    diagnostics: Dict[str, Any]
    warnings: List[str]


# =========================
# Variation / drill path
# =========================

@dataclass
class CategoryStats:
    value: CellValue
    count: int
    mean: float
    std_dev: float
    contribution_pct: float


@dataclass
class ProjectedStats:
    remaining_count: int
    mean: float
    std_dev: float
    cp: Optional[float] = None
    cpk: Optional[float] = None
    mean_improvement_pct: Optional[float] = None
    std_dev_reduction_pct: Optional[float] = None
    cpk_improvement_pct: Optional[float] = None


@dataclass
class OptimalFactorResult:
    factor: str
    variation_pct: float
    cumulative_pct: float
    best_value: Optional[CellValue] = None


@dataclass
class DrillLevelVariation:
    factor: Optional[str]
    values: Optional[Tuple[CellValue, ...]]
    local_variation_pct: float
    cumulative_variation_pct: float


@dataclass
class DrillVariationResult:
    levels: List[DrillLevelVariation]
    cumulative_variation_pct: float
    impact_level: str
    insight_text: str


@dataclass
class DrillStep:
    factor: str
    values: Tuple[CellValue, ...]
    label: str
    timestamp: float
    eta_squared: float
    cumulative_eta_squared: float
    mean_before: float
    mean_after: float
    cpk_before: Optional[float]
    cpk_after: Optional[float]
    count_before: int
    count_after: int


@dataclass
class DrillPath:
    steps: List[DrillStep] = field(default_factory=list)
    cumulative_variation_pct: Optional[float] = None


@dataclass
class NarrativeStep:
    step: DrillStep
    annotation: Optional[str] = None


@dataclass
class MindmapNode:
    factor: str
    eta_squared: float
    state: str
    is_suggested: bool
    display_name: Optional[str] = None
    filtered_value: Optional[str] = None
    category_data: Optional[List[CategoryStats]] = None


@dataclass
class MindmapState:
    nodes: List[MindmapNode]
    drill_trail: List[str]
    cumulative_variation_pct: Optional[float]
    drill_path: DrillPath
    interaction_edges: Optional[List[InteractionStrength]] = None


# =========================
# Multi-channel performance
# =========================

@dataclass
class ChannelResult:
    id: str
    label: str
    n: int
    mean: float
    std_dev: float
    min: float
    max: float
    health: str
    out_of_spec_percentage: float
    values: List[float]
    cp: Optional[float] = None
    cpk: Optional[float] = None


@dataclass
class PerformanceSummary:
    total_channels: int
    health_counts: Dict[str, int]
    mean_cpk: float
    min_cpk: float
    max_cpk: float
    std_dev_cpk: float
    needs_attention_count: int


@dataclass
class ChannelPerformanceData:
    channels: List[ChannelResult]
    summary: PerformanceSummary
    specs: SpecLimits


@dataclass
class CapabilityControlLimits:
    mean: float
    std_dev: float
    ucl: float
    lcl: float
    n: int


@dataclass
class CapabilityControlStatus:
    in_control: bool
    nelson_rule2_violation: bool


# =========================
# Investigation bundle
# =========================

@dataclass
class InvestigationResult:
    config: Any
    overall_stats: Optional[StatsResult]
    drill_path: DrillPath
    optimal_factors: List[OptimalFactorResult]
    anova: Dict[str, Optional[AnovaResult]]
    factor_variations: Dict[str, float]
    current_data: pd.DataFrame
    warnings: List[str]
