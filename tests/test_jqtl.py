import os
from argparse import Namespace
from contextlib import nullcontext

import pytest

from jqtl.cross import GeneticMarker
from jqtl.fit import FitQtlCommand
from jqtl.jqtl import (
    find_scan,
    main,
    nearest_marker,
    parse_marker,
    parse_simulated_qtl,
    parse_terms,
    phenotype_index,
    run_fit,
    save_project,
    threshold_options,
)
from jqtl.scan import ConfidenceThresholdState, ScanOneResult, ScanTwoResult


def test_phenotype_index(fake_cross):
    assert phenotype_index(fake_cross, None) == 0
    assert phenotype_index(fake_cross, "pgm") == 2
    with pytest.raises(ValueError, match="not found"):
        phenotype_index(fake_cross, "weight")


def test_phenotype_index_needs_a_numeric_phenotype(fake_r, fake_cross):
    fake_r.values["fake.f2$pheno"] = fake_r.values["fake.f2$pheno"].drop(columns=["bp"])
    fake_r.set_names("fake.f2$pheno", ["sex", "pgm"])
    with pytest.raises(ValueError, match="no numeric phenotype"):
        phenotype_index(fake_cross, None)


def test_parse_marker(fake_cross):
    assert parse_marker(fake_cross, "D1M3").position_cm == 25.0
    location = parse_marker(fake_cross, "X@12.5")
    assert (location.name, location.chromosome, location.position_cm) == ("X@12.5", "X", 12.5)
    with pytest.raises(ValueError):
        parse_marker(fake_cross, "7@10")
    with pytest.raises(ValueError, match="expected chr@pos"):
        parse_marker(fake_cross, "1@middle")
    with pytest.raises(ValueError, match="not found"):
        parse_marker(fake_cross, "D5M1")


def test_parse_terms(fake_cross):
    markers = [GeneticMarker("D1M2", "1", 10.0), GeneticMarker("DXM2", "X", 30.0)]
    predictors = parse_terms(fake_cross, markers, ["Q1*Q2", "sex", "q2*pgm"])
    assert FitQtlCommand(fake_cross, predictors, "bp").formula() == "y~Q1*Q2+sex+Q2*pgm"
    additive = parse_terms(fake_cross, markers, None)
    assert FitQtlCommand(fake_cross, additive, "bp").formula() == "y~Q1+Q2"
    with pytest.raises(ValueError, match="only 2 QTL"):
        parse_terms(fake_cross, markers, ["Q3"])
    with pytest.raises(ValueError, match="Unknown term"):
        parse_terms(fake_cross, markers, ["Q1*weight"])


def test_parse_simulated_qtl():
    qtl = parse_simulated_qtl("2, 45.5, 0.8, 0.2")
    assert (qtl.chromosome_number, qtl.position_cm, qtl.effect_one, qtl.effect_two) == (2, 45.5, 0.8, 0.2)
    with pytest.raises(ValueError):
        parse_simulated_qtl("1,2")


def test_threshold_options():
    assert threshold_options(Namespace(alpha=0.05, lod_threshold=None)) == \
        (ConfidenceThresholdState.ALPHA_THRESHOLD, 0.05)
    assert threshold_options(Namespace(alpha=None, lod_threshold=3.0)) == \
        (ConfidenceThresholdState.LOD_SCORE_THRESHOLD, 3.0)
    assert threshold_options(Namespace(alpha=None, lod_threshold=None)) == \
        (ConfidenceThresholdState.NO_THRESHOLD, None)


def test_find_scan(fake_r, fake_cross):
    with pytest.raises(ValueError, match="run `jqtl scan` first"):
        find_scan(fake_cross, None, ScanOneResult)
    fake_r.set(
        'Filter(function(.n) inherits(get(.n, envir = globalenv()), "scantwo"), ls(envir = globalenv()))',
        ["fake.f2.scantwo.bp", "fake.f2.scantwo.hr"])
    assert find_scan(fake_cross, None, ScanTwoResult).accessor == "fake.f2.scantwo.hr"
    assert find_scan(fake_cross, "scantwo.bp", ScanTwoResult).accessor == "fake.f2.scantwo.bp"
    with pytest.raises(ValueError, match="not found"):
        find_scan(fake_cross, "other", ScanTwoResult)


class _Project:
    def save(self, path):
        return path


@pytest.mark.parametrize("save_to, project, expected", [
    ("new.jqtl", "old.jqtl", "new.jqtl"),
    (None, "old.jqtl", "old.jqtl"),
    (None, None, os.path.join("out", "bp.jqtl")),
])
def test_save_project_target(save_to, project, expected):
    args = Namespace(save_project=save_to, project=project, out_dir="out", out_name="bp")
    assert save_project(args, _Project()) == expected


@pytest.mark.parametrize("text, expected", [
    ("D1M3", "D1M3"),
    ("1@12", "D1M2"),
    ("X@100", "DXM2"),
])
def test_nearest_marker_has_genotypes(fake_cross, text, expected):
    marker = nearest_marker(fake_cross, text)
    assert marker.name == expected
    genotypes = fake_cross.chromosome(marker.chromosome).genotypes()
    assert len(genotypes[marker.name]) == 4


def test_fit_with_a_blank_name_writes_nothing(monkeypatch, fake_r, fake_cross, tmp_path):
    saved = []
    project = Namespace(save=saved.append)
    monkeypatch.setattr("jqtl.jqtl.open_session", lambda args: nullcontext(fake_r))
    monkeypatch.setattr("jqtl.jqtl.load_cross", lambda args, r: (project, fake_cross))
    args = Namespace(basket=None, qtl=["D1M2"], term=None, pheno="bp", name="   ", no_dropone=False,
                     ests=False, out_dir=str(tmp_path), out_name="fit", save_project=None, project=None)
    run_fit(args)
    assert fake_r.history[-1].startswith("fitqtl(")
    assert saved == []
    assert list(tmp_path.iterdir()) == []


def test_permutation_progress_has_its_own_flag(monkeypatch, tmp_path):
    parsed = []
    monkeypatch.setattr("jqtl.jqtl.run_scan", parsed.append)
    monkeypatch.setattr("sys.argv", ["jqtl", "scan", "--cross", "hyper.csv", "--n_perm", "10",
                                     "--verbose_perm", "--out_dir", str(tmp_path)])
    main()
    assert parsed[0].verbose_perm
    assert not parsed[0].verbose
