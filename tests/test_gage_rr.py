# tests/test_gage_rr.py

from itertools import product

import numpy as np
import pandas as pd
import pytest

from variscout.engine.gage_rr import calculate_gage_rr

# =========================
# Synthetic Data Generator
# =========================

def generate_gage_study(
    n_parts: int = 10,
    operator_effects=(-0.3, 0.0, 0.3),
    n_reps: int = 3,
    part_spread: float = 3.0,
    repeatability: float = 0.2,
    seed: int = 42,
) -> pd.DataFrame:
    """
    Crossed Part x Operator study with known effects.

    Part effects are evenly spaced over [-part_spread, part_spread] so the
    part variance is fixed; only repeatability is random.
    """
    rng = np.random.default_rng(seed)
    part_effects = np.linspace(-part_spread, part_spread, n_parts)
    records = []
    for (p, part_eff), (o, op_eff) in product(enumerate(part_effects), enumerate(operator_effects)):
        for _ in range(n_reps):
            records.append(
                {
                    "Part": f"P{p + 1}",
                    "Operator": f"Op{o + 1}",
                    "Measurement": 10.0 + part_eff + op_eff + rng.normal(0, repeatability),
                }
            )
    return pd.DataFrame(records)


def true_part_variance(n_parts: int = 10, part_spread: float = 3.0) -> float:
    return float(np.var(np.linspace(-part_spread, part_spread, n_parts), ddof=1))


# =========================
# Tests
# =========================

def test_balanced_study_recovers_variance_components():
    df = generate_gage_study()
    result = calculate_gage_rr(df, "Part", "Operator", "Measurement")

    assert result is not None
    assert result.part_count == 10
    assert result.operator_count == 3
    assert result.replicates == 3
    assert result.total_measurements == 90
    assert result.warnings == []

    part_var = true_part_variance()
    assert part_var * 0.85 <= result.var_part <= part_var * 1.15
    assert 0.02 <= result.var_operator <= 0.2
    assert 0.02 <= result.var_repeatability <= 0.07

    assert result.var_reproducibility == pytest.approx(result.var_operator + result.var_interaction)
    assert result.var_grr == pytest.approx(result.var_repeatability + result.var_reproducibility)
    assert result.var_total == pytest.approx(result.var_grr + result.var_part)


def test_balanced_study_verdict_and_ndc():
    result = calculate_gage_rr(generate_gage_study(), "Part", "Operator", "Measurement")

    assert 10.0 <= result.pct_grr <= 30.0
    assert result.verdict == "marginal"
    assert result.verdict_text == "May be acceptable depending on application"
    assert result.ndc == pytest.approx(1.41 * np.sqrt(result.var_part) / np.sqrt(result.var_grr))
    assert result.ndc > 5
    assert result.pct_tolerance is None


def test_variance_component_table():
    result = calculate_gage_rr(generate_gage_study(), "Part", "Operator", "Measurement", tolerance=20.0)

    sources = [r.source for r in result.var_components]
    assert sources == [
        "Total Gage R&R",
        "Repeatability",
        "Reproducibility",
        "Reproducibility: Operator",
        "Reproducibility: Part:Operator",
        "Part-to-Part (Part)",
        "Total Variation",
    ]
    rows = {r.source: r for r in result.var_components}
    assert rows["Total Variation"].pct_contribution == 100.0
    assert rows["Total Variation"].pct_study_var == 100.0
    assert rows["Total Gage R&R"].pct_contribution + rows["Part-to-Part (Part)"].pct_contribution == pytest.approx(100.0)
    assert rows["Total Gage R&R"].pct_study_var == pytest.approx(result.pct_grr)
    assert rows["Repeatability"].variability == pytest.approx(6 * rows["Repeatability"].std_dev)
    assert all(r.pct_tolerance is not None for r in result.var_components)


def test_percent_tolerance():
    result = calculate_gage_rr(generate_gage_study(), "Part", "Operator", "Measurement", tolerance=20.0)
    assert result.pct_tolerance == pytest.approx(6 * np.sqrt(result.var_grr) / 20.0 * 100)


def test_excellent_gage():
    df = generate_gage_study(operator_effects=(0.0, 0.0, 0.0), repeatability=0.02)
    result = calculate_gage_rr(df, "Part", "Operator", "Measurement")
    assert result.pct_grr < 10.0
    assert result.verdict == "excellent"


def test_anova_table_uses_random_model_f_tests():
    result = calculate_gage_rr(generate_gage_study(), "Part", "Operator", "Measurement")
    rows = {r.term: r for r in result.anova_table}

    assert set(rows) == {"Part", "Operator", "Part:Operator", "Residual"}
    assert rows["Part"].df == 9
    assert rows["Operator"].df == 2
    assert rows["Part:Operator"].df == 18
    assert rows["Residual"].df == 60
    # main effects are tested against the interaction mean square
    assert rows["Part"].f == pytest.approx(rows["Part"].ms / rows["Part:Operator"].ms)
    assert rows["Operator"].f == pytest.approx(rows["Operator"].ms / rows["Part:Operator"].ms)
    assert rows["Part:Operator"].f == pytest.approx(rows["Part:Operator"].ms / rows["Residual"].ms)
    assert rows["Residual"].f is None


def test_interaction_means_and_diagnostics():
    result = calculate_gage_rr(generate_gage_study(), "Part", "Operator", "Measurement")
    assert len(result.interaction_data) == 30
    cells = {(c.part, c.operator): c.mean for c in result.interaction_data}
    df = generate_gage_study()
    expected = df[(df["Part"] == "P1") & (df["Operator"] == "Op1")]["Measurement"].mean()
    assert cells[("P1", "Op1")] == pytest.approx(expected)
    assert result.diagnostics["design"]["actual_cells"] == 30
    assert result.diagnostics["residual_normality_pvalue"] is not None


def test_unbalanced_design_warns_and_uses_minimum_replicates():
    df = generate_gage_study().iloc[:-1]
    result = calculate_gage_rr(df, "Part", "Operator", "Measurement")

    assert result is not None
    assert result.replicates == 2
    assert any("Unbalanced" in w for w in result.warnings)


def test_non_numeric_measurements_are_dropped():
    df = generate_gage_study().astype({"Measurement": object})
    df.loc[0, "Measurement"] = "bad"
    result = calculate_gage_rr(df, "Part", "Operator", "Measurement")
    assert result.total_measurements == 89


def test_insufficient_designs_return_none():
    assert calculate_gage_rr(generate_gage_study(n_reps=1), "Part", "Operator", "Measurement") is None
    assert calculate_gage_rr(generate_gage_study(operator_effects=(0.0,)), "Part", "Operator", "Measurement") is None
    assert calculate_gage_rr(generate_gage_study(n_parts=1), "Part", "Operator", "Measurement") is None


def test_missing_column_returns_none():
    df = generate_gage_study()
    assert calculate_gage_rr(df, "Part", "Appraiser", "Measurement") is None
    assert calculate_gage_rr(df, "Part", "Operator", "Diameter") is None
    assert calculate_gage_rr([], "Part", "Operator", "Measurement") is None


def test_quoted_column_names():
    df = generate_gage_study().rename(columns={"Operator": 'Appraiser "B"', "Measurement": 'Diameter "mm"'})
    result = calculate_gage_rr(df, "Part", 'Appraiser "B"', 'Diameter "mm"')
    baseline = calculate_gage_rr(generate_gage_study(), "Part", "Operator", "Measurement")

    assert result is not None
    assert result.pct_grr == pytest.approx(baseline.pct_grr)
    terms = [r.term for r in result.anova_table]
    assert terms == ["Part", 'Appraiser "B"', 'Part:Appraiser "B"', "Residual"]
    assert 'Reproducibility: Appraiser "B"' in [r.source for r in result.var_components]
