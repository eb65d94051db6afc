from typing import List, Tuple

from variscout.engine.spc_types import DrillPath, GageRRResult
from variscout.engine.thresholds import get_variation_impact_level, get_variation_insight

IMPACT_NOTE_TYPE = {"high": "success", "moderate": "info", "low": "warning"}


def get_variation_impact_analysis(result: GageRRResult) -> List[Tuple[str, str]]:
    """Returns a list of (type, message) tuples for the impact analysis."""
    impacts = []

    def get_contrib(source_name_exact=None, source_name_part=None):
        for r in result.var_components:
            if source_name_exact and r.source == source_name_exact:
                return r.pct_contribution
            if source_name_part and source_name_part in r.source:
                return r.pct_contribution
        return 0.0

    pct_grr = get_contrib(source_name_exact="Total Gage R&R")
    pct_repeat = get_contrib(source_name_exact="Repeatability")
    pct_repro = get_contrib(source_name_exact="Reproducibility")
    pct_part = get_contrib(source_name_part="Part-to-Part")

    # A. Measurement system vs. part variation
    if pct_part > pct_grr:
        impacts.append(("success",
                        f"Most Impactful Factor: Part-to-Part Variation ({pct_part:.1f}% of variance). "
                        "The measurement system can tell the study parts apart."
                        ))
    else:
        impacts.append(("error",
                        f"Most Impactful Factor: Measurement System Variation (Gage R&R) ({pct_grr:.1f}% of variance). "
                        "The gage adds more noise than the real differences between the parts."
                        ))

    # B. Repeatability vs. reproducibility
    if pct_grr > 0.1:
        impacts.append(("info", "Breakdown of Measurement Error:"))
        if pct_repeat > pct_repro:
            impacts.append(("info",
                            f"- Repeatability is the dominant source ({pct_repeat:.1f}% vs {pct_repro:.1f}%). "
                            "Look at the gage itself and the consistency of the method."
                            ))
        else:
            impacts.append(("info",
                            f"- Reproducibility is the dominant source ({pct_repro:.1f}% vs {pct_repeat:.1f}%). "
                            "Look at operator differences in training and technique."
                            ))

    # C. Resolution
    if result.var_grr > 0 and result.ndc < 5:
        impacts.append(("warning",
                        f"Number of distinct categories is {result.ndc:.1f}; at least 5 are needed to monitor the process."
                        ))

    return impacts


def get_drill_path_notes(path: DrillPath) -> List[Tuple[str, str]]:
    """(type, message) lines narrating each drill step and the overall result."""
    notes = []
    for i, step in enumerate(path.steps, start=1):
        msg = (
            f"Step {i}: {step.label or step.factor} explains {step.eta_squared * 100:.1f}% of the remaining variation "
            f"(cumulative {step.cumulative_eta_squared * 100:.1f}%). "
            f"Mean {step.mean_before:.2f} -> {step.mean_after:.2f}, n {step.count_before} -> {step.count_after}."
        )
        if step.cpk_before is not None and step.cpk_after is not None:
            msg += f" Cpk {step.cpk_before:.2f} -> {step.cpk_after:.2f}."
        notes.append(("info", msg))

    if path.cumulative_variation_pct is not None:
        level = get_variation_impact_level(path.cumulative_variation_pct)
        notes.append((IMPACT_NOTE_TYPE[level],
                      f"{path.cumulative_variation_pct:.1f}% of the original variation is isolated. "
                      f"{get_variation_insight(path.cumulative_variation_pct)}."
                      ))
    return notes
