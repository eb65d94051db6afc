from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import math


# =========================
# Cpk
# =========================

@dataclass(frozen=True)
class CpkThresholds:
    critical: float = 1.0
    warning: float = 1.33
    capable: float = 1.67

    def __post_init__(self):
        if not (0 < self.critical < self.warning < self.capable):
            raise ValueError(
                "Cpk thresholds must satisfy 0 < critical < warning < capable "
                f"(got {self.critical}, {self.warning}, {self.capable})."
            )


DEFAULT_CPK_THRESHOLDS = CpkThresholds()


def classify_cpk(cpk: Optional[float], thresholds: CpkThresholds = DEFAULT_CPK_THRESHOLDS) -> str:
    """Health bucket for a Cpk value. Missing or NaN Cpk is treated as critical."""
    if cpk is None or math.isnan(cpk):
        return "critical"
    if cpk < thresholds.critical:
        return "critical"
    if cpk < thresholds.warning:
        return "warning"
    if cpk < thresholds.capable:
        return "capable"
    return "excellent"


# =========================
# Effect size / measurement system
# =========================

ETA_SQUARED_MEDIUM = 0.06
ETA_SQUARED_LARGE = 0.14


def classify_eta_squared(eta_squared: float) -> str:
    if eta_squared < ETA_SQUARED_MEDIUM:
        return "small"
    if eta_squared <= ETA_SQUARED_LARGE:
        return "medium"
    return "large"


GRR_EXCELLENT = 10.0
GRR_MARGINAL = 30.0

GRR_VERDICT_TEXT = {
    "excellent": "Measurement system is acceptable",
    "marginal": "May be acceptable depending on application",
    "unacceptable": "Measurement system needs improvement",
}


def classify_grr(pct_grr: float) -> str:
    """AIAG bands: <10 excellent, 10-30 marginal, >30 unacceptable."""
    if pct_grr < GRR_EXCELLENT:
        return "excellent"
    if pct_grr <= GRR_MARGINAL:
        return "marginal"
    return "unacceptable"


# =========================
# Drill variation
# =========================

VARIATION_THRESHOLDS = {
    "HIGH_IMPACT": 50.0,
    "MODERATE_IMPACT": 30.0,
}


def get_variation_impact_level(variation_pct: float) -> str:
    if variation_pct >= VARIATION_THRESHOLDS["HIGH_IMPACT"]:
        return "high"
    if variation_pct >= VARIATION_THRESHOLDS["MODERATE_IMPACT"]:
        return "moderate"
    return "low"


def get_variation_insight(variation_pct: float) -> str:
    level = get_variation_impact_level(variation_pct)
    if level == "high":
        return "Fix this combination to address more than half of your quality problems"
    if level == "moderate":
        return "This combination explains a meaningful share of variation and is worth investigating"
    return "Explore other factors: this combination explains little of the variation"


def should_highlight_drill(variation_pct: float) -> bool:
    return variation_pct >= VARIATION_THRESHOLDS["HIGH_IMPACT"]


# =========================
# Model fit
# =========================

def strength_rating(r_squared: float) -> int:
    """1-5 star rating for an R² (or adjusted R²) value."""
    if r_squared >= 0.9:
        return 5
    if r_squared >= 0.7:
        return 4
    if r_squared >= 0.5:
        return 3
    if r_squared >= 0.3:
        return 2
    return 1
