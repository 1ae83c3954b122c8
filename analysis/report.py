"""HTML reports for the pipeline phases.

A phase adds sections to the ReportBuilder its RunContext owns; on exit the
builder writes one self-contained HTML file (images inlined as base64, tables
rendered with great_tables) next to the phase's data and plots.

Section types:
  - TableSection: HTML from make_gt().
  - FigureSection: PNG loaded from disk or captured from a live figure.
  - TextSection: free HTML, used for model statements and diagnostics.

Usage:
    report = ReportBuilder(title="Flood Groups", survey="2013")
    report.add(TableSection(id="groups", title="Flood Groups", html=make_gt(df)))
    report.add(FigureSection.from_file("dendrogram", "Dendrogram", path))
    report.write(Path("report.html"))
"""

from __future__ import annotations

import base64
import io
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

from jinja2 import Environment

# ── Section Types ─────────────────────────────────────────────────────────────


def _wrap(css_class: str, id: str, body: str, caption: str | None) -> str:
    parts = [f'<div class="{css_class}" id="{id}">', body]
    if caption:
        parts.append(f'<p class="caption">{caption}</p>')
    parts.append("</div>")
    return "\n".join(parts)


@dataclass(frozen=True)
class TableSection:
    """A table section containing pre-rendered HTML (typically from great_tables)."""

    id: str
    title: str
    html: str
    caption: str | None = None

    def render(self) -> str:
        return _wrap("table-container", self.id, self.html, self.caption)


@dataclass(frozen=True)
class FigureSection:
    """A figure section with a base64-embedded PNG image."""

    id: str
    title: str
    image_data: str  # base64-encoded PNG
    caption: str | None = None

    @classmethod
    def from_file(
        cls,
        id: str,
        title: str,
        path: Path,
        caption: str | None = None,
    ) -> FigureSection:
        """Create a FigureSection from a PNG file on disk."""
        b64 = base64.b64encode(path.read_bytes()).decode("ascii")
        return cls(id=id, title=title, image_data=b64, caption=caption)

    @classmethod
    def from_figure(
        cls,
        id: str,
        title: str,
        fig: object,
        caption: str | None = None,
        dpi: int = 150,
    ) -> FigureSection:
        """Create a FigureSection from an in-memory matplotlib Figure."""
        buf = io.BytesIO()
        fig.savefig(buf, format="png", dpi=dpi, bbox_inches="tight", facecolor="white")  # type: ignore[union-attr]
        b64 = base64.b64encode(buf.getvalue()).decode("ascii")
        return cls(id=id, title=title, image_data=b64, caption=caption)

    def render(self) -> str:
        img = f'<img src="data:image/png;base64,{self.image_data}" alt="{self.title}" />'
        return _wrap("figure-container", self.id, img, self.caption)


@dataclass(frozen=True)
class TextSection:
    """A raw HTML text block."""

    id: str
    title: str
    html: str
    caption: str | None = None

    def render(self) -> str:
        return _wrap("text-container", self.id, self.html, self.caption)


SectionType = TableSection | FigureSection | TextSection


# ── make_gt Helper ────────────────────────────────────────────────────────────


# APA rules: heavy top and bottom borders, a light rule under the column labels
GT_OPTIONS = {
    "table_border_top_style": "solid",
    "table_border_top_width": "2px",
    "table_border_top_color": "#000000",
    "table_border_bottom_style": "solid",
    "table_border_bottom_width": "2px",
    "table_border_bottom_color": "#000000",
    "column_labels_border_bottom_style": "solid",
    "column_labels_border_bottom_width": "1px",
    "column_labels_border_bottom_color": "#000000",
    "table_width": "100%",
    "table_font_size": "13px",
    "heading_title_font_size": "15px",
    "source_notes_font_size": "11px",
}


def make_gt(
    df: object,
    title: str | None = None,
    subtitle: str | None = None,
    column_labels: dict[str, str] | None = None,
    number_formats: dict[str, str] | None = None,
    source_note: str | None = None,
) -> str:
    """Render a polars DataFrame as an APA-styled great_tables HTML string.

    Args:
        df: A polars DataFrame to display.
        title: Table title (bold, above table).
        subtitle: Subtitle (below title, smaller).
        column_labels: Mapping of column name -> display label.
        number_formats: Mapping of column name -> Python format spec (e.g. ".3f").
        source_note: Footnote text below the table.

    Raises:
        TypeError: If df is not a polars DataFrame.
    """
    import great_tables as gt_mod
    import polars as pl

    if not isinstance(df, pl.DataFrame):
        msg = f"make_gt expects a polars DataFrame, got {type(df).__name__}"
        raise TypeError(msg)

    tbl = gt_mod.GT(df)

    if title:
        tbl = tbl.tab_header(title=title, subtitle=subtitle)

    if column_labels:
        tbl = tbl.cols_label(**column_labels)

    for col_name, fmt in (number_formats or {}).items():
        if col_name in df.columns:
            tbl = tbl.fmt_number(
                columns=col_name,
                decimals=_decimals_from_fmt(fmt),
                use_seps="," in fmt,
            )

    if source_note:
        tbl = tbl.tab_source_note(source_note)

    return tbl.tab_options(**GT_OPTIONS).as_raw_html(inline_css=True)


def _decimals_from_fmt(fmt: str) -> int:
    """Extract decimal count from a format spec like '.3f' or ',.1f'."""
    m = re.search(r"\.(\d+)f", fmt)
    return int(m.group(1)) if m else 0


def convergence_section(convergence: dict, model_id: str, model_name: str = "") -> TextSection:
    """Text section for a convergence_summary() dict, shared by every model report."""
    status = (
        "All convergence checks passed."
        if convergence.get("all_ok", False)
        else "Some convergence checks failed."
    )
    if convergence.get("from_cache"):
        source = "Posterior loaded from cache."
    else:
        source = f"Sampling time: {convergence.get('sampling_time', 0):.0f} seconds."
    html = (
        f"<p><strong>{status}</strong> {source}</p>"
        f"<p>{convergence['n_params']} parameters checked. "
        f"R-hat above threshold: {convergence['pct_rhat_fail']:.1f}%; "
        f"bulk ESS below threshold: {convergence['pct_ess_fail']:.1f}%; "
        f"|Geweke z| above threshold: {convergence['pct_geweke_fail']:.1f}%. "
        f"Divergences: {convergence['divergences']}.</p>"
    )
    title = f"{model_name}: Convergence Diagnostics" if model_name else "Convergence Diagnostics"
    return TextSection(id=f"convergence-{model_id}", title=title, html=html)


# ── ReportBuilder ─────────────────────────────────────────────────────────────


@dataclass
class ReportBuilder:
    """Assembles report sections into a single self-contained HTML file."""

    title: str = "Analysis Report"
    survey: str = ""
    git_hash: str = ""
    elapsed_display: str = ""
    _sections: list[tuple[str, SectionType]] = field(default_factory=list)

    def add(self, section: SectionType) -> None:
        """Append a titled section to the report."""
        self._sections.append((section.title, section))

    @property
    def has_sections(self) -> bool:
        return len(self._sections) > 0

    @property
    def n_sections(self) -> int:
        return len(self._sections)

    def render(self) -> str:
        """Render all sections into a complete HTML document."""
        sections = [
            {"id": section.id, "title": title, "content": section.render()}
            for title, section in self._sections
        ]
        now = datetime.now(ZoneInfo("Australia/Melbourne")).strftime("%Y-%m-%d %H:%M %Z")
        return _get_template().render(
            title=self.title,
            survey=self.survey,
            git_hash=self.git_hash,
            elapsed=self.elapsed_display,
            generated_at=now,
            sections=sections,
            css=REPORT_CSS,
        )

    def write(self, path: Path) -> None:
        """Render and write the HTML report to disk."""
        path.write_text(self.render(), encoding="utf-8")


# ── Template & CSS ────────────────────────────────────────────────────────────


REPORT_CSS = """\
body {
  font: 14px/1.5 "Helvetica Neue", Arial, sans-serif;
  color: #1b1b1b;
  max-width: 1000px;
  margin: 0 auto;
  padding: 20px 28px;
}
h1 { font-size: 22px; color: #3b5d3a; margin: 0 0 4px; }
p.run-line { font-size: 12px; color: #555; margin: 0 0 20px; }
p.run-line span + span::before { content: " | "; color: #aaa; }
ol.contents { font-size: 13px; background: #f4f6f2; padding: 12px 12px 12px 36px; }
ol.contents a { color: #2f6b3a; }
[id] { scroll-margin-top: 3em; }
section { margin: 32px 0; }
section h2 { font-size: 17px; border-bottom: 2px solid #3b5d3a; padding-bottom: 3px; }
.table-container { overflow-x: auto; }
.figure-container { text-align: center; }
.figure-container img { max-width: 100%; }
.text-container pre { background: #f7f7f7; padding: 8px; font-size: 12px; overflow-x: auto; }
.caption { font-size: 12px; color: #666; font-style: italic; text-align: center; }
@media print {
  ol.contents { display: none; }
  section { break-inside: avoid; }
}"""

# Contents links target each section's container div
REPORT_TEMPLATE = """\
<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8" />
<title>{{ title }}</title>
<style>{{ css }}</style>
</head>
<body>
<h1>{{ title }}</h1>
<p class="run-line">
{%- if survey %}<span>Survey: <strong>{{ survey }}</strong></span>{% endif -%}
<span>Generated: {{ generated_at }}</span>
{%- if elapsed %}<span>Run time: {{ elapsed }}</span>{% endif -%}
{%- if git_hash and git_hash != "unknown" %}\
<span>Git: <code>{{ git_hash[:8] }}</code></span>{% endif -%}
</p>
<ol class="contents">
{%- for s in sections %}
<li><a href="#{{ s.id }}">{{ s.title }}</a></li>
{%- endfor %}
</ol>
{% for s in sections %}
<section>
<h2>{{ loop.index }}. {{ s.title }}</h2>
{{ s.content }}
</section>
{% endfor %}
</body>
</html>"""


def _get_template():
    return Environment(autoescape=False).from_string(REPORT_TEMPLATE)
