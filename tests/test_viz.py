import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

from jqtl.commands import EffectPlotData
from jqtl.cross import GeneticMap, GeneticMarker, SexAwareGeneticMap
from jqtl.scan import IntervalType, ScanOneInterval, ScanOneThreshold
from jqtl.viz import Visualizer, _chromosome_offsets


SCANONE = pd.DataFrame({
    "chr": [1, 1, 1, "X", "X"],
    "pos": [0.0, 10.0, 25.0, 5.0, 30.0],
    "bp": [1.0, 3.5, 2.0, 0.5, 4.2],
    "hr": [0.3, 0.4, 2.2, 1.0, 0.1],
})


@pytest.fixture
def ax():
    fig, ax = plt.subplots()
    yield ax
    plt.close(fig)


def sex_agnostic(chromosome, markers):
    return SexAwareGeneticMap(chromosome, GeneticMap([GeneticMarker(n, chromosome, p) for n, p in markers]))


def test_chromosome_offsets():
    offsets = _chromosome_offsets(SCANONE, chr_gap=10)
    assert offsets == {"1": 0.0, "X": 30.0}


def test_plots_need_axes():
    with pytest.raises(ValueError):
        Visualizer().plot_scanone(SCANONE)


def test_plot_scanone(ax):
    thresholds = [ScanOneThreshold(0.05, 3.0), ScanOneThreshold(0.1, 2.5, 2.8)]
    intervals = [ScanOneInterval(IntervalType.LOD_DROP, (0.0, 1.0), (10.0, 3.5), (25.0, 2.0), 1.5, "1"),
                 ScanOneInterval(IntervalType.LOD_DROP, (0.0, 1.0), (1.0, 3.5), (2.0, 2.0), 1.5, "7")]
    Visualizer().plot_scanone(SCANONE, thresholds=thresholds, intervals=intervals, ax=ax)
    assert len(ax.get_lines()) >= 4
    assert [t.get_text() for t in ax.get_xticklabels()] == ["1", "X"]
    assert ax.get_title() == "Scanone"


def test_plot_scantwo(ax):
    map_frame = pd.DataFrame({"chr": ["1", "1", "2"], "pos": [0.0, 10.0, 5.0]}, index=["a", "b", "c"])
    upper = np.arange(9, dtype=float).reshape(3, 3)
    Visualizer().plot_scantwo(upper, upper.T, map_frame, title="two", ax=ax)
    image = ax.get_images()[0].get_array()
    assert image[0, 1] == upper[0, 1]
    assert image[1, 0] == upper.T[1, 0]
    assert np.ma.is_masked(image[0, 0]) or np.isnan(image[0, 0])
    with pytest.raises(ValueError):
        Visualizer().plot_scantwo(np.zeros((0, 0)), np.zeros((0, 0)), map_frame, ax=ax)


def test_plot_effect(ax):
    means = pd.DataFrame({"female": [100.0, 101.0], "male": [102.0, 104.0]}, index=["AA", "AB"])
    effects = EffectPlotData("D1M2", "DXM1", means, means * 0 + 1)
    Visualizer().plot_effect(effects, "bp", ax=ax)
    assert ax.get_xlabel() == "D1M2"
    assert [t.get_text() for t in ax.get_legend().get_texts()] == ["DXM1.female", "DXM1.male"]


def test_plot_scatter_drops_missing_points(ax):
    Visualizer().plot_scatter([0, 1, np.nan, 2], [1.0, 2.0, 3.0, np.nan],
                              groups=["female", "male", "male", "female"], jitter=0.1, ax=ax)
    assert sum(len(c.get_offsets()) for c in ax.collections) == 2


def test_plot_maps(ax):
    maps = [sex_agnostic("1", [("a", 0.0), ("b", 12.0)]), sex_agnostic("X", [("c", 0.0), ("d", 30.0)])]
    Visualizer().plot_genetic_map(maps, show_names=True, ax=ax)
    assert [t.get_text() for t in ax.get_xticklabels()] == ["1", "X"]


def test_plot_compare_maps(ax):
    old = [sex_agnostic("1", [("a", 0.0), ("b", 12.0)]), sex_agnostic("2", [("c", 0.0)])]
    new = [sex_agnostic("1", [("a", 0.0), ("b", 15.0)])]
    Visualizer().plot_compare_maps(old, new, ax=ax)
    segments = ax.collections[-1].get_segments()
    assert len(segments) == 2
    assert segments[1][1][1] == 15.0


def test_plot_rf(ax):
    rf = np.full((5, 5), 0.25)
    Visualizer().plot_rf(rf, [3, 2], ["1", "X"], ax=ax)
    assert [t.get_text() for t in ax.get_xticklabels()] == ["1", "X"]
    with pytest.raises(ValueError):
        Visualizer().plot_rf(rf, [3, 3], ax=ax)


def test_plot_rf_reads_rf_below_and_lod_above_the_diagonal(ax):
    # tight linkage in both halves: rf 0.05 below, LOD 20 above
    rf = np.where(np.tril(np.ones((4, 4)), k=-1) == 1, 0.05, 20.0)
    np.fill_diagonal(rf, np.nan)
    Visualizer().plot_rf(rf, [2, 2], max_lod=12, ax=ax)
    image = ax.get_images()[0].get_array()
    assert image[1, 0] == pytest.approx(0.9)
    assert image[0, 1] == pytest.approx(1.0)


def test_plot_geno_flags_errors(ax):
    genotypes = pd.DataFrame([[0, 1], [2, np.nan]], columns=["m1", "m2"])
    error_lods = pd.DataFrame([[0.0, 5.0], [1.0, 0.0]], columns=["m1", "m2"])
    Visualizer().plot_geno(genotypes, error_lods, cutoff=4, categories=("AA", "AB", "BB"), ax=ax)
    flagged = ax.collections[-1].get_offsets()
    assert flagged.tolist() == [[1, 0]]
