from typing import Optional

from fpdf import FPDF
from fpdf.enums import XPos, YPos

from variscout.engine.spc_types import GageRRResult, InvestigationResult
from variscout.reporting.analysis_notes import get_drill_path_notes, get_variation_impact_analysis

# core fonts are latin-1 only
_REPLACEMENTS = {
    "≈": "~",
    "→": "->",
    "η": "eta",
    "–": "-",
    "—": "-",
    "≥": ">=",
    "≤": "<=",
}

NOTE_COLORS = {
    "success": (0, 100, 0),
    "error": (150, 0, 0),
    "warning": (180, 90, 0),
}


def _txt(value) -> str:
    text = str(value)
    for src, dst in _REPLACEMENTS.items():
        text = text.replace(src, dst)
    return text.encode("latin-1", "replace").decode("latin-1")


def _fmt(value, spec: str) -> str:
    return "N/A" if value is None else format(value, spec)


class _ReportPDF(FPDF):
    title_text = "Variation Analysis Report"

    def header(self):
        self.set_font("Helvetica", "B", 15)
        self.cell(0, 10, self.title_text, border=0, new_x=XPos.LMARGIN, new_y=YPos.NEXT, align="C")
        self.ln(5)

    def footer(self):
        self.set_y(-15)
        self.set_font("Helvetica", "I", 8)
        self.cell(0, 10, f"Page {self.page_no()}", border=0, align="C")

    def section(self, title: str):
        self.set_font("Helvetica", "B", 12)
        self.cell(0, 10, _txt(title), border=0, new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        self.set_font("Helvetica", size=8)

    def table_header(self, cols, widths):
        for h, w in zip(cols, widths):
            self.cell(w, 7, _txt(h), border=1, align="C")
        self.ln()

    def table_row(self, cells, widths, aligns):
        for text, w, align in zip(cells, widths, aligns):
            self.cell(w, 6, _txt(text), border=1, align=align)
        self.ln()

    def notes(self, notes):
        self.set_font("Helvetica", size=9)
        for type_, msg in notes:
            self.set_text_color(*NOTE_COLORS.get(type_, (0, 0, 0)))
            self.multi_cell(0, 5, _txt(msg), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
            self.ln(1)
        self.set_text_color(0, 0, 0)
        self.ln(5)


def _anova_table(pdf: _ReportPDF, rows):
    cols = ["Source", "DF", "SS", "MS", "F", "p-value"]
    col_widths = [60, 15, 30, 30, 20, 20]
    pdf.table_header(cols, col_widths)
    for r in rows:
        pdf.table_row(
            [r.term, f"{r.df:.0f}", f"{r.ss:.4g}", f"{r.ms:.4g}", _fmt(r.f, ".3f"), _fmt(r.p, ".4f")],
            col_widths,
            ["L", "C", "R", "R", "R", "R"],
        )
    pdf.ln(5)


def _investigation_sections(pdf: _ReportPDF, result: InvestigationResult):
    config = result.config

    # 1. Summary Metrics
    pdf.section("Summary Metrics")
    pdf.set_font("Helvetica", size=10)
    stats = result.overall_stats
    if stats is None:
        pdf.cell(0, 10, _txt(f"No numeric values in '{config.outcome}'."), border=1, new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    else:
        pdf.cell(45, 10, f"n: {stats.n}", border=1)
        pdf.cell(45, 10, f"Mean: {stats.mean:.4g}", border=1)
        pdf.cell(45, 10, f"Std Dev: {stats.std_dev:.4g}", border=1)
        pdf.cell(45, 10, f"Out of spec: {stats.out_of_spec_percentage:.1f}%", border=1)
        pdf.ln()
        pdf.cell(45, 10, f"UCL: {stats.ucl:.4g}", border=1)
        pdf.cell(45, 10, f"LCL: {stats.lcl:.4g}", border=1)
        pdf.cell(45, 10, f"Cp: {_fmt(stats.cp, '.2f')}", border=1)
        pdf.cell(45, 10, f"Cpk: {_fmt(stats.cpk, '.2f')}", border=1)
        pdf.ln(15)

    if result.warnings:
        pdf.notes([("warning", w) for w in result.warnings])

    # 2. Drill Path
    path = result.drill_path
    if path.steps:
        pdf.section("Drill Path")
        cols = ["Step", "Filter", "eta2", "Cum. eta2", "Mean", "Cpk", "n"]
        col_widths = [12, 58, 20, 22, 30, 28, 20]
        pdf.table_header(cols, col_widths)
        for i, step in enumerate(path.steps, start=1):
            pdf.table_row(
                [
                    str(i),
                    step.label or step.factor,
                    f"{step.eta_squared * 100:.1f}%",
                    f"{step.cumulative_eta_squared * 100:.1f}%",
                    f"{step.mean_before:.3g} -> {step.mean_after:.3g}",
                    f"{_fmt(step.cpk_before, '.2f')} -> {_fmt(step.cpk_after, '.2f')}",
                    f"{step.count_before} -> {step.count_after}",
                ],
                col_widths,
                ["C", "L", "R", "R", "C", "C", "C"],
            )
        pdf.ln(5)
        pdf.notes(get_drill_path_notes(path))

    # 3. Optimal Factors
    if result.optimal_factors:
        pdf.section("Factors Explaining the Most Variation")
        cols = ["Factor", "Variation %", "Cumulative %", "Best Value"]
        col_widths = [70, 35, 35, 50]
        pdf.table_header(cols, col_widths)
        for f in result.optimal_factors:
            pdf.table_row(
                [f.factor, f"{f.variation_pct:.1f}", f"{f.cumulative_pct:.1f}", _fmt(f.best_value, "")],
                col_widths,
                ["L", "R", "R", "L"],
            )
        pdf.ln(5)

    # 4. ANOVA by factor
    for factor, anova in result.anova.items():
        if anova is None:
            continue
        pdf.section(f"ANOVA: {factor}")
        pdf.set_font("Helvetica", size=9)
        pdf.multi_cell(
            0, 5,
            _txt(f"eta2 = {anova.eta_squared:.3f}, F = {anova.f_statistic:.3f}, p = {anova.p_value:.4f}. {anova.insight}"),
            new_x=XPos.LMARGIN, new_y=YPos.NEXT,
        )
        pdf.set_font("Helvetica", size=8)
        _anova_table(pdf, anova.anova_table)


def _gage_sections(pdf: _ReportPDF, result: GageRRResult):
    pdf.section("Gage R&R")
    pdf.set_font("Helvetica", size=10)
    pdf.cell(60, 10, f"Gage R&R (%SV): {result.pct_grr:.2f}%", border=1)
    pdf.cell(60, 10, f"Gage R&R (%Tol): {result.pct_tolerance:.2f}%" if result.pct_tolerance is not None else "Gage R&R (%Tol): N/A", border=1)
    pdf.cell(60, 10, f"ndc: {result.ndc:.1f}", border=1)
    pdf.ln(15)

    pdf.multi_cell(0, 10, _txt(f"Interpretation: {result.verdict_text}"), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.ln(5)

    # Variance components
    pdf.section("Variance Components")
    cols = ["Source", "Var Comp", "Variability (6*SD)", "% Contrib", "% Study Var", "% Tol"]
    col_widths = [50, 25, 30, 25, 25, 25]
    pdf.table_header(cols, col_widths)
    for r in result.var_components:
        pdf.table_row(
            [
                r.source,
                f"{r.var_comp:.4g}",
                f"{r.variability:.4g}",
                f"{r.pct_contribution:.1f}",
                f"{r.pct_study_var:.1f}",
                _fmt(r.pct_tolerance, ".1f"),
            ],
            col_widths,
            ["L", "R", "R", "R", "R", "R"],
        )
    pdf.ln(5)

    pdf.notes(get_variation_impact_analysis(result) + [("warning", w) for w in result.warnings])

    pdf.section("Gage R&R ANOVA Table")
    _anova_table(pdf, result.anova_table)


def create_pdf_report(result: Optional[InvestigationResult] = None, gage: Optional[GageRRResult] = None) -> bytes:
    """Render an investigation and/or a Gage R&R study as a PDF document."""
    if result is None and gage is None:
        raise ValueError("Nothing to report: pass an investigation result, a Gage R&R result, or both.")

    pdf = _ReportPDF()
    if result is None:
        pdf.title_text = "Gage R&R Report"
    pdf.add_page()
    pdf.set_font("Helvetica", size=10)

    if result is not None:
        _investigation_sections(pdf, result)
    if gage is not None:
        if result is not None:
            pdf.add_page()
        _gage_sections(pdf, gage)

    return bytes(pdf.output())


def save_pdf_report(result: Optional[InvestigationResult], output_path: str, gage: Optional[GageRRResult] = None):
    """Generates and saves the PDF report to a file."""
    pdf_bytes = create_pdf_report(result, gage)
    with open(output_path, "wb") as f:
        f.write(pdf_bytes)
