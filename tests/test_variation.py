# tests/test_variation.py

import math

import numpy as np
import pandas as pd
import pytest

from variscout.engine.spc_types import SpecLimits
from variscout.engine.variation import (
    apply_filters,
    calculate_category_total_ss,
    calculate_drill_variation,
    calculate_factor_variations,
    calculate_projected_stats,
    find_optimal_factors,
    get_category_stats,
    get_next_drill_factor,
)

MACHINE_SHIFT_ROWS = [
    {"Machine": "A", "Shift": "Morning", "Value": 10},
    {"Machine": "A", "Shift": "Morning", "Value": 11},
    {"Machine": "A", "Shift": "Afternoon", "Value": 9},
    {"Machine": "A", "Shift": "Afternoon", "Value": 12},
    {"Machine": "B", "Shift": "Morning", "Value": 20},
    {"Machine": "B", "Shift": "Morning", "Value": 19},
    {"Machine": "B", "Shift": "Afternoon", "Value": 21},
    {"Machine": "B", "Shift": "Afternoon", "Value": 18},
]

# Machine C is the worst performer
WEIGHT_ROWS = [
    {"Machine": "A", "Weight": 99},
    {"Machine": "A", "Weight": 100},
    {"Machine": "A", "Weight": 101},
    {"Machine": "A", "Weight": 100},
    {"Machine": "B", "Weight": 98},
    {"Machine": "B", "Weight": 100},
    {"Machine": "B", "Weight": 102},
    {"Machine": "B", "Weight": 100},
    {"Machine": "C", "Weight": 105},
    {"Machine": "C", "Weight": 110},
    {"Machine": "C", "Weight": 115},
    {"Machine": "C", "Weight": 110},
]


def generate_factor_data(effects: dict, n_reps: int = 4, noise: float = 0.5, seed: int = 1) -> pd.DataFrame:
    """Fully crossed factors with additive level effects plus normal noise."""
    rng = np.random.default_rng(seed)
    names = list(effects)
    grids = np.meshgrid(*[np.arange(len(effects[n])) for n in names], indexing="ij")
    cells = np.stack([g.ravel() for g in grids], axis=1)
    records = []
    for cell in cells:
        base = sum(effects[n][i] for n, i in zip(names, cell))
        for _ in range(n_reps):
            record = {n: f"{n[0]}{i}" for n, i in zip(names, cell)}
            record["y"] = 50.0 + base + rng.normal(0, noise)
            records.append(record)
    return pd.DataFrame(records)


# =========================
# Filtering
# =========================

def test_apply_filters_keeps_order():
    df = pd.DataFrame(MACHINE_SHIFT_ROWS)
    out = apply_filters(df, {"Machine": ["A"], "Shift": []})
    assert out.index.tolist() == [0, 1, 2, 3]
    assert out["Value"].tolist() == [10, 11, 9, 12]


def test_apply_filters_multiple_factors():
    out = apply_filters(MACHINE_SHIFT_ROWS, {"Machine": ["B"], "Shift": ["Afternoon"]})
    assert out["Value"].tolist() == [21, 18]


def test_apply_filters_unknown_column_is_empty():
    assert apply_filters(MACHINE_SHIFT_ROWS, {"Line": ["X"]}).empty


# =========================
# Factor ranking
# =========================

def test_factor_variations_drop_zero_effect_factors():
    variations = calculate_factor_variations(MACHINE_SHIFT_ROWS, ["Machine", "Shift"], "Value")
    assert list(variations) == ["Machine"]
    assert variations["Machine"] == pytest.approx(162 / 172 * 100)

    assert calculate_factor_variations(MACHINE_SHIFT_ROWS, ["Machine"], "Value", exclude_factors=["Machine"]) == {}
    assert calculate_factor_variations(MACHINE_SHIFT_ROWS[:1], ["Machine"], "Value") == {}


def test_next_drill_factor():
    assert get_next_drill_factor({"a": 10.0, "b": 20.0}, None) == "b"
    assert get_next_drill_factor({"a": 10.0, "b": 20.0}, "b") == "a"
    assert get_next_drill_factor({"Machine": 94.0, "Shift": 3.0}, "Machine") is None


def test_optimal_factors_stop_at_target():
    result = find_optimal_factors(MACHINE_SHIFT_ROWS, ["Shift", "Machine"], "Value")
    assert [r.factor for r in result] == ["Machine"]
    assert result[0].cumulative_pct == pytest.approx(162 / 172 * 100)
    assert result[0].best_value in ("A", "B")


def test_optimal_factors_multiply_remaining_variation():
    df = generate_factor_data({"Line": [0, 6], "Shift": [0, 3], "Crew": [0, 1.5]})
    result = find_optimal_factors(df, ["Crew", "Shift", "Line"], "y", target_pct=99.0, max_factors=3)

    assert [r.factor for r in result] == ["Line", "Shift", "Crew"]
    pcts = [r.variation_pct for r in result]
    assert pcts == sorted(pcts, reverse=True)

    remaining = 1.0
    for r in result:
        remaining *= 1 - r.variation_pct / 100.0
        assert r.cumulative_pct == pytest.approx(100.0 * (1 - remaining))


def test_optimal_factors_respect_max_factors():
    df = generate_factor_data({"Line": [0, 6], "Shift": [0, 3], "Crew": [0, 1.5]})
    result = find_optimal_factors(df, ["Crew", "Shift", "Line"], "y", target_pct=100.0, max_factors=2)
    assert len(result) == 2


def test_optimal_factors_best_value_is_largest_weighted_shift():
    rows = [{"Line": "L1", "y": 10}] * 6 + [{"Line": "L2", "y": 11}] * 6 + [{"Line": "L3", "y": 30}] * 2
    rows = [dict(r, y=r["y"] + (0.1 if i % 2 else -0.1)) for i, r in enumerate(rows)]
    result = find_optimal_factors(rows, ["Line"], "y")
    assert result[0].best_value == "L3"


def test_optimal_factors_empty_inputs():
    assert find_optimal_factors([], ["Machine"], "Value") == []
    assert find_optimal_factors(MACHINE_SHIFT_ROWS, [], "Value") == []


# =========================
# Category breakdown
# =========================

def test_category_total_ss_shares_sum_to_100():
    shares = calculate_category_total_ss(MACHINE_SHIFT_ROWS, "Machine", "Value")
    assert shares == {"A": pytest.approx(50.0), "B": pytest.approx(50.0)}

    shares = calculate_category_total_ss(WEIGHT_ROWS, "Machine", "Weight")
    assert sum(shares.values()) == pytest.approx(100.0)
    assert shares["C"] > shares["A"]


def test_category_stats():
    stats = get_category_stats(MACHINE_SHIFT_ROWS, "Machine", "Value")
    by_value = {s.value: s for s in stats}

    assert by_value["A"].count == 4
    assert by_value["A"].mean == pytest.approx(10.5)
    assert by_value["A"].std_dev == pytest.approx(math.sqrt(5 / 3))
    assert by_value["B"].contribution_pct == pytest.approx(50.0)


def test_category_stats_without_data():
    assert get_category_stats(MACHINE_SHIFT_ROWS, "Line", "Value") is None
    assert get_category_stats([{"Machine": "A", "Value": "x"}], "Machine", "Value") is None


# =========================
# Projected stats
# =========================

def test_projected_mean_and_std_after_exclusion():
    result = calculate_projected_stats(WEIGHT_ROWS, "Machine", "Weight", {"C"})
    assert result.remaining_count == 8
    assert result.mean == pytest.approx(100.0, abs=0.5)
    assert result.std_dev < 2
    assert result.cpk is None


def test_projected_capability_with_specs():
    both = calculate_projected_stats(WEIGHT_ROWS, "Machine", "Weight", {"C"}, SpecLimits(usl=115, lsl=85, target=100))
    assert both.cp is not None
    assert both.cpk > 1.0

    usl_only = calculate_projected_stats(WEIGHT_ROWS, "Machine", "Weight", {"C"}, SpecLimits(usl=115))
    assert usl_only.cp is None
    assert usl_only.cpk is not None

    lsl_only = calculate_projected_stats(WEIGHT_ROWS, "Machine", "Weight", {"C"}, SpecLimits(lsl=85))
    assert lsl_only.cp is None
    assert lsl_only.cpk is not None


def test_projected_improvement_percentages():
    specs = SpecLimits(usl=120, lsl=80, target=100)
    current = {"mean": 103.5, "std_dev": 5.5, "cpk": 0.8}
    current = type("Current", (), current)()

    result = calculate_projected_stats(WEIGHT_ROWS, "Machine", "Weight", {"C"}, specs, current)
    assert result.std_dev_reduction_pct > 0
    assert result.mean_improvement_pct > 0
    assert result.cpk_improvement_pct > 0


def test_projected_stats_with_a_stats_result_as_current():
    from variscout.engine.capability import calculate_stats

    current = calculate_stats([r["Weight"] for r in WEIGHT_ROWS])
    result = calculate_projected_stats(WEIGHT_ROWS, "Machine", "Weight", {"C"}, None, current)
    assert result.std_dev_reduction_pct > 0
    assert result.cpk is None
    assert result.cpk_improvement_pct is None
    assert result.mean_improvement_pct is None


def test_projected_multiple_exclusions():
    result = calculate_projected_stats(WEIGHT_ROWS, "Machine", "Weight", {"B", "C"})
    assert result.remaining_count == 4
    assert result.mean == pytest.approx(100.0)


def test_projected_returns_none_when_too_little_remains():
    assert calculate_projected_stats(WEIGHT_ROWS, "Machine", "Weight", {"A", "B", "C"}) is None
    small = [{"Machine": "A", "Weight": 100}, {"Machine": "B", "Weight": 110}]
    assert calculate_projected_stats(small, "Machine", "Weight", {"A"}) is None


def test_projected_keeps_rows_with_missing_factor():
    rows = [
        {"Machine": "A", "Weight": 100},
        {"Machine": "A", "Weight": 100},
        {"Machine": None, "Weight": 150},
        {"Machine": float("nan"), "Weight": 150},
        {"Weight": 150},
    ]
    result = calculate_projected_stats(rows, "Machine", "Weight", {"A"})
    assert result.remaining_count == 3


def test_projected_mean_improvement_uses_spec_midpoint():
    rows = [
        {"Machine": "A", "Weight": 100},
        {"Machine": "A", "Weight": 100},
        {"Machine": "B", "Weight": 120},
        {"Machine": "B", "Weight": 120},
    ]
    current = type("Current", (), {"mean": 110.0, "std_dev": 10.0})()
    result = calculate_projected_stats(rows, "Machine", "Weight", {"B"}, SpecLimits(usl=120, lsl=80), current)
    assert result.mean_improvement_pct == pytest.approx(100.0)


def test_projected_std_dev_can_get_worse():
    rows = [
        {"Machine": "A", "Weight": 100},
        {"Machine": "A", "Weight": 100},
        {"Machine": "B", "Weight": 90},
        {"Machine": "B", "Weight": 110},
    ]
    current = type("Current", (), {"mean": 100.0, "std_dev": 5.0})()
    result = calculate_projected_stats(rows, "Machine", "Weight", {"A"}, None, current)
    assert result.std_dev_reduction_pct < 0


def test_projected_no_exclusions_and_numeric_categories():
    assert calculate_projected_stats(WEIGHT_ROWS, "Machine", "Weight", set()).remaining_count == 12

    rows = [{"Line": 1, "Output": 100}, {"Line": 1, "Output": 100}, {"Line": 2, "Output": 200}, {"Line": 2, "Output": 200}]
    result = calculate_projected_stats(rows, "Line", "Output", {2})
    assert result.remaining_count == 2
    assert result.mean == 100


# =========================
# Drill variation
# =========================

def test_drill_variation_levels():
    result = calculate_drill_variation(MACHINE_SHIFT_ROWS, {"Machine": ["A"], "Shift": ["Morning"]}, "Value")

    assert [lvl.factor for lvl in result.levels] == [None, "Machine", "Shift"]
    assert result.levels[0].cumulative_variation_pct == 100.0
    assert result.levels[1].local_variation_pct == pytest.approx(162 / 172 * 100)
    # within machine A both shifts average 10.5
    assert result.levels[2].local_variation_pct == pytest.approx(0.0, abs=1e-9)
    assert result.cumulative_variation_pct == pytest.approx(0.0, abs=1e-9)
    assert result.impact_level == "low"


def test_drill_variation_single_level_is_high_impact():
    result = calculate_drill_variation(MACHINE_SHIFT_ROWS, {"Machine": ["A"]}, "Value")
    assert result.cumulative_variation_pct == pytest.approx(162 / 172 * 100)
    assert result.impact_level == "high"
    assert "more than half" in result.insight_text


def test_drill_variation_insufficient_data():
    assert calculate_drill_variation(MACHINE_SHIFT_ROWS[:1], {"Machine": ["A"]}, "Value") is None
    assert calculate_drill_variation(MACHINE_SHIFT_ROWS, {"Machine": ["A"]}, "") is None
