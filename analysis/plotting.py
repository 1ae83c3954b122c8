"""Shared figure helpers: page sizes, PDF/PNG output, convex hulls.

Publication figures are written as single-page PDFs sized to an ISO A-series
page, so they drop into reports and appendices without rescaling. Report
figures are PNGs embedded by FigureSection.
"""

import math
import re
from dataclasses import dataclass
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
from scipy.spatial import ConvexHull, QhullError

# Long side of A0 in mm: an A0 sheet has area 1 m^2 and sides in ratio sqrt(2)
A0_LONG_MM = 1000 * 2 ** 0.25
MAX_A_SIZE = 10
MM_PER_UNIT = {"mm": 1.0, "cm": 10.0, "in": 25.4}

FLOOD_GROUP_COLORS = {1: "#d4a017", 2: "#4a90b8", 3: "#1d3f7a"}
FLOOD_GROUP_LABELS = {1: "Rarely flooded", 2: "Intermittently flooded", 3: "Frequently flooded"}


@dataclass(frozen=True)
class PageSize:
    width: float
    height: float
    units: str

    def inches(self) -> tuple[float, float]:
        factor = MM_PER_UNIT[self.units] / MM_PER_UNIT["in"]
        return self.width * factor, self.height * factor


def pagesize(size: str = "A4", orientation: str = "portrait", units: str = "in") -> PageSize:
    """Dimensions of an ISO A-series page.

    Sides are rounded to whole millimetres before unit conversion, so A4 is
    exactly 210 x 297 mm.

    Args:
        size: "A0" through "A10" (case-insensitive).
        orientation: "portrait" (taller than wide) or "landscape".
        units: "mm", "cm", or "in".

    Raises:
        ValueError: For an unknown size, orientation, or unit.
    """
    m = re.fullmatch(r"[Aa](\d{1,2})", size)
    if m is None or int(m.group(1)) > MAX_A_SIZE:
        msg = f"Unknown page size {size!r}. Supported: A0 to A{MAX_A_SIZE}"
        raise ValueError(msg)
    if units not in MM_PER_UNIT:
        msg = f"Unknown units {units!r}. Supported: {', '.join(MM_PER_UNIT)}"
        raise ValueError(msg)
    long = A0_LONG_MM * 2 ** (-int(m.group(1)) / 2)
    short = long / math.sqrt(2)
    match orientation:
        case "portrait":
            w, h = round(short), round(long)
        case "landscape":
            w, h = round(long), round(short)
        case _:
            msg = f"Unknown orientation {orientation!r}. Supported: portrait, landscape"
            raise ValueError(msg)
    factor = MM_PER_UNIT[units]
    return PageSize(width=w / factor, height=h / factor, units=units)


def save_pdf(
    fig: plt.Figure,
    path: Path,
    size: str = "A4",
    orientation: str = "landscape",
) -> PageSize:
    """Resize *fig* to a full page and write it as a single-page PDF."""
    page = pagesize(size, orientation, units="in")
    fig.set_size_inches(*page.inches())
    fig.savefig(path, format="pdf", bbox_inches=None, facecolor="white")
    plt.close(fig)
    print(f"  Saved: {path.name} ({size} {orientation})")
    return page


def save_fig(fig: plt.Figure, path: Path, dpi: int = 150) -> None:
    fig.savefig(path, dpi=dpi, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    print(f"  Saved: {path.name}")


def convex_hull(points: np.ndarray) -> np.ndarray:
    """Vertices of the convex hull of 2-D points, closed (first == last).

    Fewer than three points, or collinear points, have no area; the points
    themselves are returned so the caller can still draw them as a line.
    """
    points = np.asarray(points, dtype=np.float64)
    if len(points) < 3:
        return points
    try:
        hull = ConvexHull(points)
    except QhullError:
        return points
    vertices = points[hull.vertices]
    return np.vstack([vertices, vertices[:1]])


def plot_hulls(
    ax: plt.Axes,
    scores: np.ndarray,
    groups: np.ndarray,
    colors: dict[int, str] = FLOOD_GROUP_COLORS,
    labels: dict[int, str] = FLOOD_GROUP_LABELS,
) -> None:
    """Scatter 2-D scores and outline each group with its convex hull."""
    for g in sorted(set(groups.tolist())):
        mask = groups == g
        pts = scores[mask]
        color = colors.get(g, "#777777")
        ax.scatter(
            pts[:, 0],
            pts[:, 1],
            s=28,
            color=color,
            edgecolor="white",
            linewidth=0.5,
            label=labels.get(g, f"Group {g}"),
            zorder=3,
        )
        hull = convex_hull(pts)
        if len(hull) >= 3:
            ax.fill(hull[:, 0], hull[:, 1], color=color, alpha=0.15, zorder=1)
            ax.plot(hull[:, 0], hull[:, 1], color=color, linewidth=1, zorder=2)
