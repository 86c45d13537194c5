import math
from typing import List, Optional

import numpy as np
import pandas as pd
from scipy import stats as sstats

from jqtl.cross import Cross, Phenotype
from jqtl.log import logger


STAT_COLUMNS = [
	"trait", "kind", "count", "non_missing", "missing", "missing_rate",
	"mean", "std", "cv", "min", "q1", "median", "q3", "iqr", "mad", "mad_scaled", "max",
	"unique", "skew", "kurtosis",
	"normaltest_stat", "normaltest_p", "shapiro_stat", "shapiro_p", "jb_stat", "jb_p",
	"categories",
]


def _test_or_nan(test, values):
	try:
		stat, p = test(values)
		return float(stat), float(p)
	except (ValueError, FloatingPointError) as e:
		logger.debug(f"{test.__name__} failed: {e}")
		return float("nan"), float("nan")


def _summarize_series(s: pd.Series) -> dict:
	s_num = pd.to_numeric(s, errors="coerce")
	n = int(s_num.shape[0])
	n_miss = int(s_num.isna().sum())
	n_notna = n - n_miss
	desc = s_num.describe(percentiles=[0.25, 0.5, 0.75])
	mean = float(desc["mean"]) if "mean" in desc and not math.isnan(desc["mean"]) else float("nan")
	std = float(desc["std"]) if "std" in desc and not math.isnan(desc["std"]) else float("nan")
	uniq = int(s_num.nunique(dropna=True))
	skew = float(s_num.skew()) if n_notna > 2 else float("nan")
	kurt = float(s_num.kurt()) if n_notna > 3 else float("nan")

	s_clean = s_num.dropna()
	n_clean = int(s_clean.shape[0])
	iqr = float((s_clean.quantile(0.75) - s_clean.quantile(0.25))) if n_clean >= 2 else float("nan")
	mad = float((s_clean - s_clean.median()).abs().median()) if n_clean >= 1 else float("nan")
	mad_scaled = float(1.4826 * mad) if not math.isnan(mad) else float("nan")
	cv = float(std / abs(mean)) if (not math.isnan(std) and not math.isnan(mean) and abs(mean) > 1e-12) else float("nan")

	# D'Agostino's K^2 requires n >= 8
	normaltest_stat, normaltest_p = _test_or_nan(sstats.normaltest, s_clean.values) if n_clean >= 8 else (float("nan"), float("nan"))
	# Shapiro-Wilk: 3 <= n <= 5000
	shapiro_stat, shapiro_p = _test_or_nan(sstats.shapiro, s_clean.values) if 3 <= n_clean <= 5000 else (float("nan"), float("nan"))
	jb_stat, jb_p = _test_or_nan(sstats.jarque_bera, s_clean.values) if n_clean >= 2 else (float("nan"), float("nan"))

	return {
		"count": n,
		"non_missing": n_notna,
		"missing": n_miss,
		"missing_rate": (n_miss / n) if n > 0 else float("nan"),
		"mean": mean,
		"std": std,
		"cv": cv,
		"min": float(desc.get("min", float("nan"))),
		"q1": float(desc.get("25%", float("nan"))),
		"median": float(desc.get("50%", float("nan"))),
		"q3": float(desc.get("75%", float("nan"))),
		"iqr": iqr,
		"mad": mad,
		"mad_scaled": mad_scaled,
		"max": float(desc.get("max", float("nan"))),
		"unique": uniq,
		"skew": skew,
		"kurtosis": kurt,
		"normaltest_stat": normaltest_stat,
		"normaltest_p": normaltest_p,
		"shapiro_stat": shapiro_stat,
		"shapiro_p": shapiro_p,
		"jb_stat": jb_stat,
		"jb_p": jb_p,
	}


def category_counts(phenotype: Phenotype) -> dict:
	"""Individuals per category label, in category order; missing values are counted under None."""
	counts = {label: 0 for label in phenotype.categories or ()}
	for label in phenotype.labels():
		counts[label] = counts.get(label, 0) + 1
	return counts


def _summarize_categorical(phenotype: Phenotype) -> dict:
	labels = phenotype.labels()
	n = len(labels)
	n_miss = sum(1 for label in labels if label is None)
	counts = category_counts(phenotype)
	return {
		"count": n,
		"non_missing": n - n_miss,
		"missing": n_miss,
		"missing_rate": (n_miss / n) if n > 0 else float("nan"),
		"unique": len([c for c in counts if c is not None]),
		"categories": "; ".join(f"{label}={count}" for label, count in counts.items() if label is not None),
	}


def summarize_phenotype(phenotype: Phenotype) -> dict:
	if phenotype.is_categorical:
		stat = _summarize_categorical(phenotype)
	else:
		values = pd.Series([np.nan if v is None else v for v in phenotype.values], dtype="float64")
		stat = _summarize_series(values)
	return {"trait": phenotype.name, "kind": phenotype.kind, **stat}


def summarize_phenotypes(cross: Cross, names: Optional[List[str]] = None) -> pd.DataFrame:
	"""
	Statistics for the phenotypes of a cross, one row per phenotype.

	Numeric phenotypes get descriptive statistics and normality tests,
	categorical ones the number of individuals per category.

	:param cross: the cross
	:param names: phenotype names to summarize, all phenotypes by default
	:return: DataFrame with STAT_COLUMNS
	"""
	phenotypes = cross.phenotypes()
	if names:
		known = {p.name: p for p in phenotypes}
		missing = [name for name in names if name not in known]
		if missing:
			raise ValueError(f"Phenotypes not found in cross {cross.name}: {missing}")
		phenotypes = [known[name] for name in names]
	logger.info(f"Summarizing {len(phenotypes)} phenotypes of cross {cross.name}")
	rows = [summarize_phenotype(p) for p in phenotypes]
	return pd.DataFrame(rows, columns=STAT_COLUMNS)
