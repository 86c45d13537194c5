import numpy as np
import pytest

from jqtl.commands import (
    EFFECT_PLOT_TEMP,
    CalcGenoprobCommandBuilder,
    CrossFileFormat,
    EffectPlotCommandBuilder,
    EstimateMapCommandBuilder,
    EstimateRfCommandBuilder,
    JittermapCommandBuilder,
    LoadCrossCommandBuilder,
    MapFunction,
    SimGenoCommandBuilder,
    SimulateCrossCommandBuilder,
    SimulatedQtl,
    SimulateMapCommandBuilder,
    StepWidth,
    run_command,
)
from jqtl.cross import CrossSubtype
from jqtl.r import RError


def test_load_cross_command(tmp_path):
    data_file = tmp_path / "hyper.csv"
    data_file.write_text("bp,sex\n")
    builder = LoadCrossCommandBuilder(str(data_file), "hyper", CrossFileFormat.ROTATED_COMMA_DELIMITED,
                                      genotypes=["A", "H", "B"], na_strings=["-", "NA"])
    assert builder.invalid_message() is None
    assert builder.get_command() == (
        f'hyper <- read.cross(format="csvr", file="{data_file}", genotypes=c("A", "H", "B"), '
        f'na.strings=c("-", "NA"), convertXdata=TRUE)'
    )


def test_load_cross_without_a_name_is_not_assigned(tmp_path):
    data_file = tmp_path / "hyper.csv"
    data_file.write_text("")
    command = LoadCrossCommandBuilder(str(data_file), genotypes=None, na_strings=None).get_command()
    assert command.startswith("read.cross(")
    assert "genotypes" not in command


def test_load_cross_requires_an_existing_file(tmp_path):
    assert LoadCrossCommandBuilder().invalid_message() == "Command requires a cross data file"
    assert LoadCrossCommandBuilder().get_command() is None
    message = LoadCrossCommandBuilder(str(tmp_path / "missing.csv")).invalid_message()
    assert message.startswith("Cross data file not found")


def test_map_function_lookup():
    assert MapFunction.from_r_string("c-f") == MapFunction.CARTER_FALCONER
    assert str(MapFunction.KOSAMBI) == "Kosambi"
    with pytest.raises(ValueError):
        MapFunction.from_r_string("unknown")
    with pytest.raises(ValueError):
        CrossFileFormat.from_r_string("tsv")


def test_simulate_map_command():
    builder = SimulateMapCommandBuilder([100, 50], 5, include_x_chromosome=False)
    assert builder.get_command() == (
        "sim.map(len=c(100.0, 50.0), n.mar=5, anchor.tel=FALSE, include.x=FALSE, "
        "sex.sp=FALSE, eq.spacing=FALSE)"
    )
    assert SimulateMapCommandBuilder([100, 0]).invalid_message() == "Chromosome lengths must be positive"
    assert SimulateMapCommandBuilder([], 5).get_command() is None


def test_simulate_cross_command_with_qtls():
    builder = SimulateCrossCommandBuilder(
        "sim.map.1", "sim.cross", number_of_individuals=250, cross_type=CrossSubtype.F2,
        map_function=MapFunction.KOSAMBI,
        simulated_qtls=[SimulatedQtl(1, 50, 0.8, 0.2, 9.0), SimulatedQtl(4, 10, 0.5, 0.0)])
    assert builder.get_command() == (
        "sim.cross <- sim.cross(sim.map.1, model=rbind(c(1, 50.0, 0.8, 0.2), c(4, 10.0, 0.5, 0.0)), "
        'n.ind=250, type="f2", error.prob=0.0, missing.prob=0.0, partial.missing.prob=0.0, '
        'm=0.0, p=0.0, map.function="kosambi")'
    )


def test_simulate_backcross_uses_one_effect():
    builder = SimulateCrossCommandBuilder(cross_type=CrossSubtype.BACK_CROSS,
                                          simulated_qtls=[SimulatedQtl(2, 30, 1.0, 5.0, 5.0)])
    assert "model=rbind(c(2, 30.0, 1.0))" in builder.get_command()
    assert SimulateCrossCommandBuilder(number_of_individuals=0).get_command() is None


def test_calc_genoprob(fake_r, fake_cross):
    builder = CalcGenoprobCommandBuilder(fake_cross, step=1, map_function=MapFunction.KOSAMBI,
                                         step_width=StepWidth.VARIABLE)
    builder.run(fake_r)
    assert fake_r.history == [
        "# calculating genotype probabilities with calc.genoprob",
        'fake.f2 <- calc.genoprob(fake.f2, step=1.0, off.end=0.0, error.prob=0.0001, '
        'map.function="kosambi", stepwidth="variable")',
    ]


def test_sim_geno(fake_cross):
    command = SimGenoCommandBuilder(fake_cross, n_draws=64, step=2.5).get_command()
    assert command.startswith("fake.f2 <- sim.geno(fake.f2, n.draws=64, step=2.5,")
    assert SimGenoCommandBuilder(fake_cross, n_draws=0).invalid_message() == "Number of imputations must be positive"


def test_calc_genoprob_rejects_bad_parameters(fake_r, fake_cross):
    with pytest.raises(ValueError, match="Genotyping error rate"):
        CalcGenoprobCommandBuilder(fake_cross, error_prob=1.5).run(fake_r)
    assert CalcGenoprobCommandBuilder(None).get_command() is None
    assert fake_r.history == []


def test_estimate_map_leaves_defaults_out(fake_cross):
    assert EstimateMapCommandBuilder(fake_cross).get_command() == "fake.f2.newmap <- est.map(fake.f2)"
    builder = EstimateMapCommandBuilder(fake_cross, MapFunction.MORGAN, m=3, maxit=100,
                                        sex_specific=False, result_name="mymap")
    assert builder.get_command() == (
        'mymap <- est.map(fake.f2, map.function="morgan", m=3.0, maxit=100, sex.sp=FALSE)'
    )


def test_estimate_rf(fake_r, fake_cross):
    assert EstimateRfCommandBuilder(fake_cross).get_command() == "fake.f2 <- est.rf(fake.f2)"
    assert EstimateRfCommandBuilder(fake_cross, tol=0.01).get_command() == "fake.f2 <- est.rf(fake.f2, tol=0.01)"
    assert EstimateRfCommandBuilder.recombination_fractions(fake_cross) is None
    fake_r.set_inherits("fake.f2$rf", "matrix")
    fake_r.set("fake.f2$rf", np.eye(5))
    assert EstimateRfCommandBuilder.recombination_fractions(fake_cross).shape == (5, 5)


def test_jittermap(fake_cross):
    assert JittermapCommandBuilder(fake_cross).get_command() == "fake.f2 <- jittermap(fake.f2, amount=1e-06)"
    assert JittermapCommandBuilder(fake_cross, amount=0).get_command() is None


def test_single_marker_effects(fake_r, fake_cross):
    builder = EffectPlotCommandBuilder(fake_cross, 0, "D1M2")
    assert builder.get_command() == 'effectplot(cross=fake.f2, pheno.col=1, mname1="D1M2", draw=FALSE)'
    fake_r.set(f"{EFFECT_PLOT_TEMP}$Means", np.array([101.0, 103.5, 99.0]))
    fake_r.set(f"{EFFECT_PLOT_TEMP}$SEs", np.array([1.0, 0.5, 1.2]))
    fake_r.set(f"names({EFFECT_PLOT_TEMP}$Means)", ["D1M2.AA", "D1M2.AB", "D1M2.BB"])
    effects = builder.extract_effects(fake_r)
    assert effects.main_category == "D1M2"
    assert effects.line_category is None
    assert effects.means.index.tolist() == ["AA", "AB", "BB"]
    assert effects.standard_errors["D1M2"].tolist() == [1.0, 0.5, 1.2]
    assert f"rm({EFFECT_PLOT_TEMP})" in fake_r.executed


def test_two_marker_effects(fake_r, fake_cross):
    builder = EffectPlotCommandBuilder(fake_cross, 0, "D1M2", "DXM1")
    means = f"{EFFECT_PLOT_TEMP}$Means"
    errors = f"{EFFECT_PLOT_TEMP}$SEs"
    fake_r.set(means, np.array([[100.0, 101.0], [102.0, 104.0]]))
    fake_r.set(errors, np.ones((2, 2)))
    fake_r.set_inherits(means, "matrix")
    for accessor in (means, errors):
        fake_r.set(f"rownames({accessor})", ["D1M2.AA", "D1M2.AB"])
        fake_r.set(f"colnames({accessor})", ["DXM1.female", "DXM1.male"])
    effects = builder.extract_effects(fake_r)
    assert effects.line_category == "DXM1"
    assert effects.means.loc["AB", "male"] == 104.0


def test_effects_with_mismatched_names(fake_r, fake_cross):
    builder = EffectPlotCommandBuilder(fake_cross, 0, "D1M2")
    fake_r.set(f"{EFFECT_PLOT_TEMP}$Means", np.array([1.0, 2.0]))
    fake_r.set(f"{EFFECT_PLOT_TEMP}$SEs", np.array([1.0, 2.0]))
    fake_r.set(f"names({EFFECT_PLOT_TEMP}$Means)", ["D1M2.AA", "D1M3.AB"])
    assert builder.extract_effects(fake_r) is None


def test_effects_need_a_marker(fake_r, fake_cross):
    with pytest.raises(ValueError):
        EffectPlotCommandBuilder(fake_cross, 0).extract_effects(fake_r)


def test_run_command(fake_r):
    run_command(fake_r, "x <- 1", comment="set x")
    assert fake_r.history == ["# set x", "x <- 1"]
    with pytest.raises(ValueError, match="bad input"):
        run_command(fake_r, None, invalid_message="bad input")
    fake_r.fail("stop()", "boom")
    with pytest.raises(RError):
        run_command(fake_r, "stop()")
