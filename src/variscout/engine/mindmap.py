from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional, Sequence

import pandas as pd

from variscout.engine.anova import get_eta_squared
from variscout.engine.drill_path import compute_drill_path
from variscout.engine.navigation import FILTER, filter_stack_to_filters
from variscout.engine.regression import INTERACTION_MIN_ROWS, get_interaction_strength
from variscout.engine.spc_types import FilterAction, InteractionStrength, MindmapNode, MindmapState, SpecLimits
from variscout.engine.spc_utils import DataLike, as_frame
from variscout.engine.variation import apply_filters, get_category_stats

logger = logging.getLogger(__name__)

SUGGEST_MIN_ETA = 0.05
EXHAUSTED_MAX_ETA = 0.01
EXHAUSTED_MIN_ROWS = 3


def compute_interaction_edges(data: pd.DataFrame, factors: Sequence[str], outcome: str) -> List[InteractionStrength]:
    edges: List[InteractionStrength] = []
    for i, factor_a in enumerate(factors):
        for factor_b in factors[i + 1:]:
            result = get_interaction_strength(data, factor_a, factor_b, outcome)
            if result is not None:
                edges.append(result)
    return edges


def _filtered_value(action: FilterAction) -> str:
    if len(action.values) <= 2:
        return ", ".join(str(v) for v in action.values)
    return f"{action.values[0]} +{len(action.values) - 1}"


def compute_mindmap_state(
    data: DataLike,
    factors: Sequence[str],
    outcome: Optional[str],
    filter_stack: Sequence[FilterAction],
    specs: Optional[SpecLimits] = None,
    column_aliases: Optional[Mapping[str, str]] = None,
    include_interactions: bool = False,
) -> MindmapState:
    """
    Investigation mindmap: one node per factor on the currently filtered data.

    Drilled factors are 'active' and keep the eta² they had when drilled. Others are
    'available' unless the data is nearly used up or the factor explains <1%. The
    undrilled factor with the largest eta² above 5% is flagged as the suggestion.
    """
    df = as_frame(data)
    factors = list(factors)
    aliases = column_aliases or {}

    path = compute_drill_path(df, filter_stack, outcome, specs)
    filtered = apply_filters(df, filter_stack_to_filters(filter_stack))
    drilled = {a.factor for a in filter_stack if a.type == FILTER and a.factor}
    trail = [step.factor for step in path.steps]

    if not outcome or len(filtered) < 2:
        nodes = [MindmapNode(factor=f, eta_squared=0.0, state="exhausted", is_suggested=False, display_name=aliases.get(f) or None) for f in factors]
        return MindmapState(nodes=nodes, drill_trail=trail, cumulative_variation_pct=path.cumulative_variation_pct, drill_path=path)

    # 1. eta² per factor
    eta_map: Dict[str, float] = {}
    for factor in factors:
        if factor in drilled:
            step = next((s for s in path.steps if s.factor == factor), None)
            eta_map[factor] = step.eta_squared if step else 0.0
        else:
            eta_map[factor] = get_eta_squared(filtered, factor, outcome)

    # 2. Suggested next factor
    suggested: Optional[str] = None
    best = 0.0
    for factor in factors:
        eta = eta_map[factor]
        if factor not in drilled and eta > best and eta > SUGGEST_MIN_ETA:
            best, suggested = eta, factor

    # 3. Nodes
    nodes: List[MindmapNode] = []
    for factor in factors:
        is_drilled = factor in drilled
        eta = eta_map[factor]
        filtered_value = None
        category_data = None
        if is_drilled:
            action = next(a for a in filter_stack if a.type == FILTER and a.factor == factor)
            filtered_value = _filtered_value(action)
            state = "active"
        else:
            category_data = get_category_stats(filtered, factor, outcome)
            state = "exhausted" if (len(filtered) < EXHAUSTED_MIN_ROWS or eta < EXHAUSTED_MAX_ETA) else "available"

        nodes.append(
            MindmapNode(
                factor=factor,
                eta_squared=eta,
                state=state,
                is_suggested=factor == suggested,
                display_name=aliases.get(factor) or None,
                filtered_value=filtered_value,
                category_data=category_data,
            )
        )

    edges = None
    if include_interactions:
        if len(filtered) < INTERACTION_MIN_ROWS or len(factors) < 2:
            edges = []
        else:
            edges = compute_interaction_edges(filtered, factors, outcome)
        logger.debug("Computed %d interaction edges.", len(edges))

    return MindmapState(
        nodes=nodes,
        drill_trail=trail,
        cumulative_variation_pct=path.cumulative_variation_pct,
        drill_path=path,
        interaction_edges=edges,
    )
