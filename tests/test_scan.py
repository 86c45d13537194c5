import numpy as np
import pandas as pd
import pytest

from jqtl.cross import GeneticMarker
from jqtl.scan import (
    AbsoluteConfidenceFilter,
    ConfidenceThresholdState,
    IntervalType,
    MarkerIndexPair,
    MarkerRelativeConfidenceFilter,
    ModelToOptimize,
    PhenotypeDistribution,
    ScanCommandBuilder,
    ScanMethod,
    ScanOneIntervalCommandBuilder,
    ScanOneResult,
    ScanOneSummaryBuilder,
    ScanResultFilter,
    ScanTwoResult,
    ScanTwoSignificanceType,
    ScanTwoSummaryBuilder,
    ScanType,
)


SCANONE_FRAME = pd.DataFrame({
    "chr": ["1", "1", "1", "X", "X"],
    "pos": [0.0, 10.0, 25.0, 0.0, 30.0],
    "lod": [1.0, 3.5, 2.0, 0.5, 4.2],
}, index=["D1M1", "D1M2", "D1M3", "DXM1", "DXM2"])

PERMUTATIONS_SUMMARY = "summary(fake.f2.scan.permutations, c(0.05, 0.1))"


def scan_builder(cross):
    builder = ScanCommandBuilder(cross, ScanType.SCANONE)
    builder.chromosome_names = ["1", "X"]
    builder.phenotype_indices = [0]
    builder.scan_result_name = " fake.f2.scan "
    return builder


@pytest.fixture
def scanone(fake_r, fake_cross):
    fake_r.set("fake.f2.scan", SCANONE_FRAME.copy())
    fake_r.set('attr(fake.f2.scan, "pheno.col")', np.array([1]))
    return ScanOneResult(fake_r, "fake.f2.scan", fake_cross)


def with_permutations(fake_r):
    fake_r.set('exists("fake.f2.scan.permutations")', [True])
    fake_r.set_inherits("fake.f2.scan.permutations", "scanoneperm")


def test_scanone_command_with_covariates(fake_cross):
    builder = scan_builder(fake_cross)
    builder.additive_phenotype_covariates = ["sex"]
    builder.additive_genotype_covariates = [GeneticMarker("D1M2", "1", 10.0)]
    assert builder.command_without_permutations() == (
        'fake.f2.scan <- scanone(cross=fake.f2, '
        'addcovar=cbind(fake.f2$pheno[, "sex"],fake.f2$geno$"1"$data[,2]), '
        'chr=c("1", "X"), pheno.col=c(1), model="normal", method="em")'
    )


def test_unknown_covariate_markers_are_left_out(fake_cross):
    builder = scan_builder(fake_cross)
    builder.interactive_genotype_covariates = [GeneticMarker("nope", "1", 0.0)]
    assert "intcovar=cbind()" in builder.command_without_permutations()


def test_scanone_commands_with_permutations(fake_cross):
    builder = scan_builder(fake_cross)
    builder.phenotype_distribution = PhenotypeDistribution.TWO_PART_SPIKES_DOWN
    builder.scan_method = ScanMethod.HALEY_KNOTT_REGRESSION
    builder.maximum_iterations = 100
    builder.number_of_permutations = 1000
    builder.separate_x_permutations = True
    scan, attribute, permutations = builder.commands()
    assert 'model="2part", upper=FALSE, method="hk")' in scan
    assert "maxit" not in scan
    assert attribute == 'attr(fake.f2.scan, "pheno.col") <- c(1)'
    assert permutations.startswith("fake.f2.scan.permutations <- scanone(")
    assert permutations.endswith("n.perm=1000, perm.Xsp=TRUE, verbose=FALSE)")


def test_scantwo_command(fake_cross):
    builder = scan_builder(fake_cross)
    builder.scan_type = ScanType.SCANTWO
    builder.phenotype_indices = [0, 2]
    builder.maximum_iterations = 50
    command = builder.command_without_permutations()
    assert command.startswith("fake.f2.scan <- scantwo(")
    assert "maxit=50" in command
    assert 'use="complete.obs"' in command
    assert command.endswith("incl.markers=FALSE, clean.output=FALSE)")


def test_invalid_scan_messages(fake_cross):
    assert ScanCommandBuilder().invalid_command_message() == "Command requires a cross to scan"
    builder = scan_builder(fake_cross)
    builder.chromosome_names = []
    assert "chromosome" in builder.invalid_command_message()
    builder = scan_builder(fake_cross)
    builder.scan_type = ScanType.SCANTWO
    builder.phenotype_distribution = PhenotypeDistribution.OTHER
    assert "scantwo compatible phenotype distribution" in builder.invalid_command_message()
    builder = scan_builder(fake_cross)
    builder.scan_result_name = "  "
    assert builder.invalid_assignment_command_message() == "Scan result name required"


def test_negative_permutations_are_rejected(fake_r, fake_cross):
    builder = scan_builder(fake_cross)
    builder.number_of_permutations = -5
    assert builder.invalid_command_message() == "Number of permutations cannot be negative"
    with pytest.raises(ValueError, match="cannot be negative"):
        builder.run(fake_r)
    assert fake_r.history == []


def test_run_records_the_scan(fake_r, fake_cross):
    result = scan_builder(fake_cross).run(fake_r)
    assert isinstance(result, ScanOneResult)
    assert result.accessor == "fake.f2.scan"
    assert fake_r.history[0].startswith("# One QTL Genome Scan of fake.f2")
    assert fake_r.history[1].startswith("fake.f2.scan <- scanone(")
    with pytest.raises(ValueError):
        ScanCommandBuilder(fake_cross).run(fake_r)


def test_scanone_result_columns(scanone):
    assert scanone.lod_column_names() == ["bp"]
    assert scanone.lod_column_index("bp") == 0
    assert scanone.scanned_phenotype_names() == ["bp"]
    assert scanone.phenotype_for_column("lod") == "bp"
    assert scanone.chromosomes() == ["1", "X"]
    assert [len(run) for run in scanone.markers_per_chromosome()] == [3, 2]
    with pytest.raises(ValueError):
        scanone.lod_scores("unknown")


def test_maximum_lod_per_chromosome(scanone):
    peaks = scanone.maximum_lod_per_chromosome()
    assert peaks["marker"].tolist() == ["D1M2", "DXM2"]
    assert peaks["lod"].tolist() == [3.5, 4.2]


def test_thresholds_need_permutations(scanone):
    assert not scanone.permutations_exist()
    assert scanone.calculate_thresholds([0.05]) is None


def test_thresholds(fake_r, scanone):
    with_permutations(fake_r)
    fake_r.set("typeof(fake.f2.scan.permutations)", ["double"])
    fake_r.set(PERMUTATIONS_SUMMARY + "[,1]", np.array([3.1, 2.7]))
    thresholds = scanone.calculate_thresholds([0.05, 0.1])
    assert [t.autosome_lod for t in thresholds] == [3.1, 2.7]
    assert not thresholds[0].x_separate
    assert thresholds[0].lod == 3.1


def test_thresholds_with_separate_x(fake_r, scanone):
    with_permutations(fake_r)
    fake_r.set("typeof(fake.f2.scan.permutations)", ["list"])
    fake_r.set_names("fake.f2.scan.permutations", ["A", "X"])
    fake_r.set(PERMUTATIONS_SUMMARY + '$"A"[,1]', np.array([3.1, 2.7]))
    fake_r.set(PERMUTATIONS_SUMMARY + '$"X"[,1]', np.array([3.6, 3.0]))
    thresholds = scanone.calculate_thresholds([0.05, 0.1])
    assert thresholds[1].x_lod == 3.0
    with pytest.raises(ValueError):
        thresholds[0].lod


def test_permutations_of_the_wrong_class(fake_r, scanone):
    fake_r.set('exists("fake.f2.scan.permutations")', [True])
    assert not scanone.permutations_exist()


def test_scanone_summary_with_p_values(fake_r, scanone):
    with_permutations(fake_r)
    temporary = "fake.f2.scan.temp_summary_scanone"
    fake_r.set(f"rownames({temporary})", ["D1M2", "DXM2"])
    fake_r.set(f"{temporary}[,3]", np.array([3.5, 4.2]))
    fake_r.set(f"{temporary}[,4]", np.array([0.01, 0.002]))
    builder = ScanOneSummaryBuilder(scanone, ConfidenceThresholdState.ALPHA_THRESHOLD, threshold_value=0.05)
    assert builder.summary_command(True) == (
        'summary(fake.f2.scan, format="onepheno", lodcolumn=1, alpha=0.05, '
        'perms=fake.f2.scan.permutations, pvalues=TRUE)'
    )
    frame = builder.create_summary().to_frame()
    assert frame.columns.tolist() == ["marker", "chr", "pos", "lod", "pvalue"]
    assert frame["marker"].tolist() == ["D1M2", "DXM2"]
    assert frame["pos"].tolist() == [10.0, 30.0]
    assert frame["pvalue"].tolist() == [0.01, 0.002]
    assert f"rm({temporary})" in fake_r.executed


def test_empty_scanone_summary(fake_r, scanone):
    builder = ScanOneSummaryBuilder(scanone, ConfidenceThresholdState.LOD_SCORE_THRESHOLD, threshold_value=10)
    summary = builder.create_summary()
    assert len(summary) == 0
    assert summary.to_frame().columns.tolist() == ["marker", "chr", "pos", "lod"]


def test_intervals(fake_r, scanone):
    builder = ScanOneIntervalCommandBuilder(scanone, 0, ["1", "X"], IntervalType.BAYESIAN_CREDIBLE)
    first, second = builder.commands()
    assert first == 'bayesint(results=fake.f2.scan, prob=0.95, lodcolumn=1, chr="1")'
    fake_r.set(first, SCANONE_FRAME.iloc[:3].copy())
    intervals = builder.intervals(fake_r)
    assert len(intervals) == 1
    record = intervals[0].to_record()
    assert record["chr"] == "1"
    assert record["peak_pos"] == 10.0
    assert record["right_lod"] == 2.0
    assert record["constraint"] == 0.95


def test_invalid_intervals(scanone):
    builder = ScanOneIntervalCommandBuilder(scanone, 0, ["1"], IntervalType.LOD_DROP, drop=0)
    assert builder.invalid_message() == "LOD drop must be positive"
    assert builder.commands() == []


@pytest.fixture
def scantwo(fake_r, fake_cross):
    fake_r.set('attr(fake.f2.two, "pheno.col")', np.array([1]))
    fake_r.set("fake.f2.two$lod", np.array([
        [1.0, 2.0, 3.0],
        [5.0, 1.5, 2.5],
        [6.0, 7.0, 4.0],
    ]))
    fake_r.set("fake.f2.two$map", pd.DataFrame({
        "chr": ["1", "1", "2"],
        "pos": [0.0, 10.0, 5.0],
        "xchr": [False, False, False],
    }, index=["a", "b", "c"]))
    return ScanTwoResult(fake_r, "fake.f2.two", fake_cross)


def test_scantwo_significance(scantwo):
    assert scantwo.full_lod(MarkerIndexPair(0, 1)) == 5.0
    assert scantwo.additive_lod(MarkerIndexPair(0, 1)) == 2.0
    assert scantwo.max_scanone_per_chromosome().tolist() == [1.5, 4.0]
    fv1 = scantwo.significance_values(ScanTwoSignificanceType.FULL_VERSUS_SCANONE_LOD)
    assert fv1["lod"].tolist() == [3.5, 2.0, 3.0]
    assert fv1["marker2"].tolist() == ["b", "c", "c"]
    assert scantwo.significance_value(MarkerIndexPair(1, 2),
                                      ScanTwoSignificanceType.FULL_VERSUS_ADDITIVE_LOD) == 4.5


def test_scantwo_significance_matrix(scantwo):
    matrix = scantwo.significance_matrix(ScanTwoSignificanceType.FULL_LOD)
    assert np.isnan(matrix[0, 0])
    assert matrix[0, 2] == matrix[2, 0] == 6.0


def test_marker_index_pair_order():
    assert MarkerIndexPair(0, 3) < MarkerIndexPair(1, 2)
    with pytest.raises(ValueError):
        MarkerIndexPair(2, 1)


def test_scantwo_summary(fake_r, scantwo):
    builder = ScanTwoSummaryBuilder(scantwo, ConfidenceThresholdState.LOD_SCORE_THRESHOLD,
                                    [6, 4, 5, 4, 2], ModelToOptimize.BEST)
    assert builder.summary_command(False) == (
        'summary(fake.f2.two, what="best", thresholds=c(6.0, 4.0, 5.0, 4.0, 2.0))'
    )
    fake_r.set("fake.f2.two.temp_summary_scantwo", pd.DataFrame(
        [["1", "2", 0.0, 5.0, 6.0, 2.0, 3.0, 10.0, 5.0, 3.0, 1.0]],
        columns=["chr1", "chr2", "pos1f", "pos2f", "lod.full", "lod.fv1", "lod.int",
                 "pos1a", "pos2a", "lod.add", "lod.av1"],
    ))
    frame = builder.create_summary().to_frame()
    row = frame.iloc[0]
    assert (row["marker1"], row["marker2"]) == ("a", "c")
    assert (row["add.marker1"], row["add.marker2"]) == ("b", "c")
    assert row["lod.int"] == 3.0
    assert row["lod.av1"] == 1.0


def test_malformed_scantwo_summary_is_empty(fake_r, scantwo):
    fake_r.set("fake.f2.two.temp_summary_scantwo", pd.DataFrame({"chr1": ["1"]}))
    assert len(ScanTwoSummaryBuilder(scantwo).create_summary()) == 0


FILTER_FRAME = pd.DataFrame({
    "chr": ["1", "1", "1", "1", "2", "2"],
    "pos": [0.0, 5.0, 10.0, 40.0, 0.0, 20.0],
    "lod": [2.0, 3.0, 2.5, 1.0, 0.5, 4.0],
})


def test_chromosome_maxima_filter():
    scan_filter = ScanResultFilter()
    scan_filter.relative_state = MarkerRelativeConfidenceFilter.CHROMOSOME_MAXIMA_FILTER
    assert scan_filter.apply(FILTER_FRAME).index.tolist() == [1, 5]


def test_local_maxima_then_lod_filter():
    events = []
    scan_filter = ScanResultFilter()
    scan_filter.add_listener(lambda name, old, new: events.append(name))
    scan_filter.relative_state = MarkerRelativeConfidenceFilter.LOCAL_MAXIMA_WITH_MINIMUM_SPACING_FILTER
    scan_filter.relative_value = 10.0
    assert scan_filter.apply(FILTER_FRAME).index.tolist() == [1, 3, 4, 5]
    scan_filter.absolute_state = AbsoluteConfidenceFilter.LOD_SCORE_FILTER
    scan_filter.absolute_value = 1.5
    assert scan_filter.apply(FILTER_FRAME).index.tolist() == [1, 5]
    assert events == ["relative_state", "relative_value", "absolute_state", "absolute_value"]


def test_filter_values_are_kept_per_state():
    scan_filter = ScanResultFilter()
    scan_filter.absolute_state = AbsoluteConfidenceFilter.LOD_SCORE_FILTER
    scan_filter.absolute_value = 3.0
    scan_filter.absolute_state = AbsoluteConfidenceFilter.ALPHA_VALUE_FILTER
    assert scan_filter.absolute_value == 0.0
    scan_filter.absolute_value = 0.05
    scan_filter.absolute_state = AbsoluteConfidenceFilter.LOD_SCORE_FILTER
    assert scan_filter.absolute_value == 3.0


def test_alpha_filter():
    scan_filter = ScanResultFilter({AbsoluteConfidenceFilter.ALPHA_VALUE_FILTER: 0.05})
    scan_filter.absolute_state = AbsoluteConfidenceFilter.ALPHA_VALUE_FILTER
    assert len(scan_filter.apply(FILTER_FRAME)) == len(FILTER_FRAME)
    with_p = FILTER_FRAME.assign(pvalue=[0.5, 0.01, 0.2, 0.9, 0.9, 0.04])
    assert scan_filter.apply(with_p).index.tolist() == [1, 5]
