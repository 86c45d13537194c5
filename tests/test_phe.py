import math

import numpy as np
import pytest

from jqtl.cross import Phenotype
from jqtl.phe import STAT_COLUMNS, category_counts, summarize_phenotype, summarize_phenotypes


def test_numeric_summary():
	values = [float(v) for v in np.linspace(90, 110, 20)] + [None]
	stat = summarize_phenotype(Phenotype("bp", values, "real"))
	assert stat["trait"] == "bp"
	assert stat["count"] == 21
	assert stat["missing"] == 1
	assert stat["mean"] == pytest.approx(100.0)
	assert stat["median"] == pytest.approx(100.0)
	assert stat["min"] == 90.0
	assert 0 <= stat["shapiro_p"] <= 1
	assert not math.isnan(stat["normaltest_stat"])


def test_small_samples_skip_normality_tests():
	stat = summarize_phenotype(Phenotype("x", [1, 2], "integer"))
	assert math.isnan(stat["shapiro_p"])
	assert math.isnan(stat["normaltest_p"])
	assert math.isnan(stat["skew"])


def test_categorical_summary():
	phenotype = Phenotype("sex", [0, 1, 1, None], "categorical", ("female", "male"))
	assert category_counts(phenotype) == {"female": 1, "male": 2, None: 1}
	stat = summarize_phenotype(phenotype)
	assert stat["missing"] == 1
	assert stat["unique"] == 2
	assert stat["categories"] == "female=1; male=2"


def test_summarize_cross_phenotypes(fake_cross):
	frame = summarize_phenotypes(fake_cross)
	assert frame.columns.tolist() == STAT_COLUMNS
	assert frame["trait"].tolist() == ["bp", "sex", "pgm"]
	assert frame.loc[0, "missing"] == 1
	assert frame.loc[1, "categories"] == "female=2; male=2"


def test_summarize_selected_phenotypes(fake_cross):
	assert summarize_phenotypes(fake_cross, ["pgm"])["trait"].tolist() == ["pgm"]
	with pytest.raises(ValueError, match="nope"):
		summarize_phenotypes(fake_cross, ["bp", "nope"])
