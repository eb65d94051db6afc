from __future__ import annotations

import logging
from typing import List, Mapping, Optional, Sequence

import pandas as pd

from variscout.engine.anova import get_eta_squared
from variscout.engine.capability import stats_for_specs
from variscout.engine.navigation import FILTER
from variscout.engine.spc_types import DrillPath, DrillStep, FilterAction, NarrativeStep, SpecLimits, StatsResult
from variscout.engine.spc_utils import DataLike, as_frame, numeric_outcome
from variscout.engine.variation import apply_filters

logger = logging.getLogger(__name__)


def _outcome_stats(df: pd.DataFrame, outcome: str, specs: Optional[SpecLimits]) -> Optional[StatsResult]:
    values = numeric_outcome(df, outcome)
    if values.empty:
        return None
    return stats_for_specs(values, specs)


def compute_drill_path(
    rows: DataLike,
    filter_stack: Sequence[FilterAction],
    outcome: Optional[str],
    specs: Optional[SpecLimits] = None,
) -> DrillPath:
    """
    Replay the filter stack over the raw rows and attribute variation to each step.

    For each filter action (in stack order, highlights skipped) the factor's eta² and
    the before-stats are taken on the data that is left *before* the filter is
    applied. The cumulative eta² is the running product, so it never increases.
    Degenerate input gives an empty path rather than an error.
    """
    df = as_frame(rows)
    if not outcome or len(df) < 2 or not filter_stack:
        return DrillPath()

    steps: List[DrillStep] = []
    current = df
    cumulative = 1.0

    for action in filter_stack:
        if action.type != FILTER or action.factor is None:
            continue
        if len(current) < 2:
            logger.debug("Drill path stopped before '%s': %d rows left.", action.factor, len(current))
            break

        factor = action.factor
        # 1. Effect size and before-stats on the current level
        eta_squared = get_eta_squared(current, factor, outcome)
        before = _outcome_stats(current, outcome, specs)

        # 2. Narrow to the selected values
        next_data = apply_filters(current, {factor: action.values})
        after = _outcome_stats(next_data, outcome, specs)

        cumulative *= eta_squared
        steps.append(
            DrillStep(
                factor=factor,
                values=tuple(action.values),
                label=action.label,
                timestamp=action.timestamp,
                eta_squared=eta_squared,
                cumulative_eta_squared=cumulative,
                mean_before=before.mean if before else 0.0,
                mean_after=after.mean if after else 0.0,
                cpk_before=before.cpk if before else None,
                cpk_after=after.cpk if after else None,
                count_before=int(len(current)),
                count_after=int(len(next_data)),
            )
        )
        current = next_data

    cumulative_pct = steps[-1].cumulative_eta_squared * 100.0 if steps else None
    return DrillPath(steps=steps, cumulative_variation_pct=cumulative_pct)


def narrate_drill_path(path: DrillPath, annotations: Optional[Mapping[int, str]] = None) -> List[NarrativeStep]:
    """Pair each step with the analyst's note for that step index, if any."""
    annotations = annotations or {}
    return [NarrativeStep(step=step, annotation=annotations.get(i) or None) for i, step in enumerate(path.steps)]
