"""
Tests for HTML report system in analysis/report.py.

Covers section rendering (Table, Figure, Text), format parsing, ReportBuilder
assembly, the make_gt helper, and the shared convergence section.

Run: uv run pytest tests/test_report.py -v
"""

import base64
import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import polars as pl
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.report import (
    FigureSection,
    ReportBuilder,
    TableSection,
    TextSection,
    _decimals_from_fmt,
    convergence_section,
    make_gt,
)

# ── _decimals_from_fmt() ─────────────────────────────────────────────────────


class TestDecimalsFromFmt:
    """Extract decimal count from format spec."""

    def test_three_decimals(self):
        assert _decimals_from_fmt(".3f") == 3

    def test_one_decimal_with_comma(self):
        assert _decimals_from_fmt(",.1f") == 1

    def test_signed(self):
        assert _decimals_from_fmt("+.3f") == 3

    def test_no_match_returns_zero(self):
        assert _decimals_from_fmt("d") == 0


# ── Sections ─────────────────────────────────────────────────────────────────


class TestTableSection:
    def test_render_basic(self):
        html = TableSection(id="t1", title="Title", html="<table></table>").render()
        assert '<div class="table-container" id="t1">' in html
        assert "<table></table>" in html

    def test_render_with_caption(self):
        html = TableSection(id="t1", title="T", html="<table/>", caption="Note").render()
        assert '<p class="caption">Note</p>' in html

    def test_frozen(self):
        section = TableSection(id="t1", title="T", html="")
        with pytest.raises(AttributeError):
            section.title = "Other"  # type: ignore[misc]


class TestFigureSection:
    def test_render_basic(self):
        html = FigureSection(id="f1", title="Fig", image_data="AAAA").render()
        assert 'src="data:image/png;base64,AAAA"' in html
        assert 'alt="Fig"' in html

    def test_from_file(self, tmp_path):
        path = tmp_path / "plot.png"
        path.write_bytes(b"\x89PNG fake")
        section = FigureSection.from_file("f1", "Fig", path, caption="Cap")
        assert base64.b64decode(section.image_data) == b"\x89PNG fake"
        assert section.caption == "Cap"

    def test_from_figure(self):
        fig, ax = plt.subplots()
        ax.plot([0, 1], [0, 1])
        section = FigureSection.from_figure("f1", "Fig", fig, dpi=50)
        plt.close(fig)
        assert base64.b64decode(section.image_data).startswith(b"\x89PNG")


class TestTextSection:
    def test_render_basic(self):
        html = TextSection(id="x1", title="Text", html="<p>Hello</p>").render()
        assert '<div class="text-container" id="x1">' in html
        assert "<p>Hello</p>" in html


# ── ReportBuilder ────────────────────────────────────────────────────────────


class TestReportBuilder:
    """Assembles sections into a single HTML file."""

    def test_has_sections(self):
        report = ReportBuilder(title="Test")
        assert report.has_sections is False
        report.add(TextSection(id="s1", title="S1", html="<p>Hi</p>"))
        assert report.has_sections is True
        assert report.n_sections == 1

    def test_render_contains_title_and_survey(self):
        report = ReportBuilder(title="Flood Groups", survey="2013")
        report.add(TextSection(id="s1", title="Section One", html="<p>Content</p>"))
        html = report.render()
        assert "Flood Groups" in html
        assert "Survey: <strong>2013</strong>" in html

    def test_render_contains_toc(self):
        report = ReportBuilder(title="Test")
        report.add(TextSection(id="intro", title="Introduction", html="<p>Hi</p>"))
        report.add(TextSection(id="body", title="Body", html="<p>Main</p>"))
        html = report.render()
        assert 'href="#intro"' in html
        assert 'href="#body"' in html

    def test_render_section_ordering(self):
        report = ReportBuilder(title="Test")
        report.add(TextSection(id="a", title="First", html="<p>1</p>"))
        report.add(TextSection(id="b", title="Second", html="<p>2</p>"))
        html = report.render()
        assert html.index("First") < html.index("Second")

    def test_headings_numbered_in_order(self):
        report = ReportBuilder(title="Test")
        report.add(TextSection(id="a", title="First", html="<p>1</p>"))
        report.add(TextSection(id="b", title="Second", html="<p>2</p>"))
        html = report.render()
        assert "<h2>1. First</h2>" in html
        assert "<h2>2. Second</h2>" in html

    def test_section_ids_unique(self):
        report = ReportBuilder(title="Test")
        report.add(TextSection(id="intro", title="Introduction", html="<p>Hi</p>"))
        assert report.render().count('id="intro"') == 1

    def test_run_facts_on_one_line(self):
        report = ReportBuilder(title="Test", survey="2013", elapsed_display="4.0s")
        report.add(TextSection(id="s1", title="S", html="<p>Hi</p>"))
        html = report.render()
        start = html.index('<p class="run-line">')
        line = html[start : html.index("</p>", start)]
        assert "Survey: <strong>2013</strong>" in line
        assert "Run time: 4.0s" in line
        assert "\n" not in line

    def test_render_includes_git_hash(self):
        report = ReportBuilder(title="Test", git_hash="abcdef12" * 5)
        report.add(TextSection(id="s1", title="S", html="<p>Hi</p>"))
        assert "<code>abcdef12</code>" in report.render()

    def test_render_no_git_hash_when_unknown(self):
        report = ReportBuilder(title="Test", git_hash="unknown")
        report.add(TextSection(id="s1", title="S", html="<p>Hi</p>"))
        assert "Git:" not in report.render()

    def test_render_elapsed(self):
        report = ReportBuilder(title="Test", elapsed_display="2m 15s")
        report.add(TextSection(id="s1", title="S", html="<p>Hi</p>"))
        assert "Run time: 2m 15s" in report.render()

    def test_write_creates_file(self, tmp_path):
        report = ReportBuilder(title="Test")
        report.add(TextSection(id="s1", title="S", html="<p>Hi</p>"))
        path = tmp_path / "report.html"
        report.write(path)
        content = path.read_text()
        assert content.startswith("<!DOCTYPE html>")
        assert "</html>" in content


# ── make_gt() ────────────────────────────────────────────────────────────────


class TestMakeGt:
    """great_tables helper for APA-style tables."""

    def test_returns_html_string(self):
        html = make_gt(pl.DataFrame({"a": [1, 2], "b": [3, 4]}), title="Test Table")
        assert isinstance(html, str)
        assert "Test Table" in html

    def test_rejects_non_polars(self):
        with pytest.raises(TypeError, match="polars DataFrame"):
            make_gt({"a": [1]}, title="Bad")

    def test_subtitle_and_source_note(self):
        html = make_gt(pl.DataFrame({"x": [1]}), title="T", subtitle="Sub", source_note="Src")
        assert "Sub" in html
        assert "Src" in html

    def test_column_labels(self):
        html = make_gt(pl.DataFrame({"n_plots": [3]}), column_labels={"n_plots": "Plots"})
        assert "Plots" in html

    def test_number_formats_applied(self):
        html = make_gt(pl.DataFrame({"value": [1.23456]}), number_formats={"value": ".2f"})
        assert "1.23" in html

    def test_format_for_missing_column_ignored(self):
        html = make_gt(pl.DataFrame({"x": [1.0]}), number_formats={"y": ".2f"})
        assert isinstance(html, str)


# ── convergence_section() ────────────────────────────────────────────────────


@pytest.fixture
def convergence() -> dict:
    return {
        "n_params": 120,
        "pct_rhat_fail": 0.0,
        "pct_ess_fail": 2.5,
        "pct_geweke_fail": 4.2,
        "divergences": 0,
        "all_ok": False,
        "sampling_time": 95.4,
        "from_cache": False,
    }


class TestConvergenceSection:
    def test_failed_checks_reported(self, convergence):
        section = convergence_section(convergence, "stem")
        assert section.id == "convergence-stem"
        assert "Some convergence checks failed." in section.html
        assert "2.5%" in section.html

    def test_sampling_time(self, convergence):
        assert "95 seconds" in convergence_section(convergence, "stem").html

    def test_cached(self, convergence):
        convergence |= {"from_cache": True, "all_ok": True}
        html = convergence_section(convergence, "stem").html
        assert "loaded from cache" in html
        assert "All convergence checks passed." in html

    def test_model_name_in_title(self, convergence):
        section = convergence_section(convergence, "ssvs", "flood_stems_ssvs")
        assert section.title.startswith("flood_stems_ssvs")
