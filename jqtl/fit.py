from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from jqtl.cross import Cross, GeneticMarker
from jqtl.log import logger
from jqtl.r import RInterface, RObject, RSyntaxError, as_list, r_assign, r_bool, r_call, r_string, r_vector, to_r_identifier


class FitPredictor:
    """One term of a fitqtl formula: interacting markers and/or phenotype covariates."""

    def __init__(self, interacting_phenotypes: Sequence[str] = (),
                 interacting_markers: Sequence[GeneticMarker] = ()):
        self.interacting_phenotypes = list(interacting_phenotypes)
        self.interacting_markers = list(interacting_markers)

    def __str__(self):
        terms = [marker.name for marker in self.interacting_markers] + list(self.interacting_phenotypes)
        return "*".join(terms)

    def __repr__(self):
        return f"FitPredictor({self})"


class MakeQtlCommand:
    def __init__(self, cross: Cross, markers: Sequence[GeneticMarker]):
        self.cross = cross
        self.markers = list(markers)

    def get_command(self) -> str:
        return r_call("makeqtl", [
            ("cross", self.cross.accessor),
            ("chr", r_vector([str(m.chromosome) for m in self.markers])),
            ("pos", r_vector([float(m.position_cm) for m in self.markers])),
        ])


class FitQtlCommand:
    """
    fitqtl(...) for a list of predictors.

    Markers are numbered Q1..Qn in the order they first appear among the
    predictors, so `y~Q1*Q2+sex` reads as "the first two markers interact, sex is
    an additive covariate".
    """

    def __init__(self, cross: Optional[Cross] = None, predictors: Sequence[FitPredictor] = (),
                 phenotype_name: Optional[str] = None, result_name: Optional[str] = None,
                 drop_one: bool = True, get_estimates: bool = False):
        self.cross = cross
        self.predictors = list(predictors)
        self.phenotype_name = phenotype_name
        self.result_name = result_name
        self.drop_one = drop_one
        self.get_estimates = get_estimates

    def unique_markers(self) -> List[GeneticMarker]:
        markers: List[GeneticMarker] = []
        for predictor in self.predictors:
            for marker in predictor.interacting_markers:
                if marker not in markers:
                    markers.append(marker)
        return markers

    def formula(self) -> str:
        markers = self.unique_markers()
        terms = []
        for predictor in self.predictors:
            term = "*".join(f"Q{markers.index(m) + 1}" for m in predictor.interacting_markers)
            if predictor.interacting_markers and predictor.interacting_phenotypes:
                term += "*"
            term += "*".join(predictor.interacting_phenotypes)
            terms.append(term)
        return "y~" + "+".join(terms)

    @property
    def result_accessor(self) -> Optional[str]:
        if self.cross is None or not self.result_name:
            return None
        try:
            return f"{self.cross.accessor}.{to_r_identifier(self.result_name)}"
        except RSyntaxError as e:
            logger.debug(f"ignoring fitqtl result name: {e}")
            return None

    def invalid_message(self) -> Optional[str]:
        if self.cross is None:
            return "Fit requires a cross"
        if not self.phenotype_name:
            return "Fit requires a phenotype"
        if not self.predictors:
            return "Fit requires at least one predictor"
        if not self.unique_markers():
            return "Fit requires at least one QTL marker"
        return None

    def get_command(self) -> Optional[str]:
        if self.invalid_message() is not None:
            return None
        command = r_call("fitqtl", [
            ("cross", self.cross.accessor),
            ("pheno.col", r_string(self.phenotype_name)),
            ("qtl", MakeQtlCommand(self.cross, self.unique_markers()).get_command()),
            ("formula", self.formula()),
            ("covar", f"{self.cross.accessor}$pheno"),
            ("dropone", r_bool(self.drop_one)),
            ("get.ests", r_bool(self.get_estimates)),
        ])
        accessor = self.result_accessor
        if accessor is None:
            return command
        return r_assign(accessor, command)

    def run(self, r: RInterface) -> Optional["FitQtlResult"]:
        message = self.invalid_message()
        if message is not None:
            raise ValueError(message)
        r.insert_comment(f"fitting QTL model {self.formula()} for {self.phenotype_name}")
        r.evaluate_no_return(self.get_command())
        if self.result_accessor is None:
            return None
        return FitQtlResult(r, self.result_accessor, self.cross)


class AnovaTable:
    def __init__(self, row_names: Sequence[str], column_names: Sequence[str], data):
        self.row_names = list(row_names)
        self.column_names = list(column_names)
        self.data = np.asarray(data, dtype=np.float64).reshape(len(self.row_names), len(self.column_names))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.data, index=self.row_names, columns=self.column_names)


class FitQtlResult(RObject):
    r_class = "fitqtl"

    def __init__(self, r_interface: RInterface, accessor: str, parent_cross: Optional[Cross] = None):
        super().__init__(r_interface, accessor)
        self.parent_cross = parent_cross

    def _anova_table(self, component: str) -> Optional[AnovaTable]:
        if component not in self.names():
            return None
        accessor = f"{self.accessor}${component}"
        rows = [str(n) for n in as_list(self.r.evaluate(f"rownames({accessor})"))]
        columns = [str(n) for n in as_list(self.r.evaluate(f"colnames({accessor})"))]
        return AnovaTable(rows, columns, self.r.evaluate(accessor))

    def full_results(self) -> Optional[AnovaTable]:
        return self._anova_table("result.full")

    def drop_one_term_results(self) -> Optional[AnovaTable]:
        return self._anova_table("result.drop")

    def estimates(self) -> Optional[pd.Series]:
        if "ests" not in self.names():
            return None
        accessor = f"{self.accessor}$ests$ests"
        values = np.atleast_1d(np.asarray(self.r.evaluate(accessor), dtype=np.float64))
        names = [str(n) for n in as_list(self.r.evaluate(f"names({accessor})"))]
        return pd.Series(values, index=names if len(names) == len(values) else None, name="estimate")
