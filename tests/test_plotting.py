"""
Tests for figure helpers in analysis/plotting.py: ISO page sizes, PDF output,
and convex hulls.

Run: uv run pytest tests/test_plotting.py -v
"""

import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.plotting import convex_hull, pagesize, plot_hulls, save_pdf

# ── pagesize() ───────────────────────────────────────────────────────────────


class TestPagesize:
    def test_a4_portrait_mm(self):
        page = pagesize("A4", "portrait", units="mm")
        assert (page.width, page.height) == (210, 297)

    def test_a4_landscape_mm(self):
        page = pagesize("A4", "landscape", units="mm")
        assert (page.width, page.height) == (297, 210)

    def test_a0(self):
        page = pagesize("A0", units="mm")
        assert (page.width, page.height) == (841, 1189)

    def test_a3(self):
        page = pagesize("a3", units="mm")
        assert (page.width, page.height) == (297, 420)

    def test_inches(self):
        page = pagesize("A4", "portrait", units="in")
        assert page.width == pytest.approx(210 / 25.4)
        assert page.height == pytest.approx(297 / 25.4)

    def test_centimetres(self):
        page = pagesize("A4", "portrait", units="cm")
        assert (page.width, page.height) == pytest.approx((21.0, 29.7))

    def test_inches_method(self):
        page = pagesize("A4", "portrait", units="mm")
        assert page.inches() == pytest.approx((210 / 25.4, 297 / 25.4))

    @pytest.mark.parametrize("size", ["B4", "A11", "Letter", "A"])
    def test_unknown_size(self, size):
        with pytest.raises(ValueError, match="Unknown page size"):
            pagesize(size)

    def test_unknown_units(self):
        with pytest.raises(ValueError, match="Unknown units"):
            pagesize("A4", units="pt")

    def test_unknown_orientation(self):
        with pytest.raises(ValueError, match="Unknown orientation"):
            pagesize("A4", "sideways")


class TestSavePdf:
    def test_writes_page_sized_pdf(self, tmp_path):
        fig, ax = plt.subplots()
        ax.plot([0, 1], [1, 0])
        path = tmp_path / "fig.pdf"
        page = save_pdf(fig, path, size="A4", orientation="landscape")
        assert path.read_bytes().startswith(b"%PDF")
        assert page.inches() == pytest.approx((297 / 25.4, 210 / 25.4))


# ── Convex hulls ─────────────────────────────────────────────────────────────


class TestConvexHull:
    def test_square_with_interior_point(self):
        pts = np.array([[0, 0], [1, 0], [1, 1], [0, 1], [0.5, 0.5]], dtype=float)
        hull = convex_hull(pts)
        assert len(hull) == 5  # four corners, closed
        np.testing.assert_array_equal(hull[0], hull[-1])
        assert not any(np.allclose(p, [0.5, 0.5]) for p in hull)

    def test_two_points_returned_as_is(self):
        pts = np.array([[0.0, 0.0], [1.0, 1.0]])
        np.testing.assert_array_equal(convex_hull(pts), pts)

    def test_collinear_points(self):
        pts = np.array([[0.0, 0.0], [1.0, 1.0], [2.0, 2.0]])
        np.testing.assert_array_equal(convex_hull(pts), pts)


class TestPlotHulls:
    def test_one_legend_entry_per_group(self):
        rng = np.random.default_rng(0)
        scores = rng.normal(size=(12, 2))
        groups = np.repeat([1, 2, 3], 4)
        fig, ax = plt.subplots()
        plot_hulls(ax, scores, groups)
        _, labels = ax.get_legend_handles_labels()
        plt.close(fig)
        assert len(labels) == 3
