import os
import re
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from jqtl.cross import Cross, CrossSubtype, GenotypeProbabilityMethod
from jqtl.log import logger
from jqtl.r import (
    RError,
    RInterface,
    as_list,
    r_assign,
    r_bool,
    r_call,
    r_number,
    r_string,
    r_vector,
)


class MapFunction(Enum):
    HALDANE = ("haldane", "Haldane")
    KOSAMBI = ("kosambi", "Kosambi")
    CARTER_FALCONER = ("c-f", "Carter-Falconer")
    MORGAN = ("morgan", "Morgan")

    def __init__(self, r_string_value, description):
        self.r_string_value = r_string_value
        self.description = description

    def __str__(self):
        return self.description

    @classmethod
    def from_r_string(cls, value: str) -> "MapFunction":
        for function in cls:
            if function.r_string_value == value:
                return function
        raise ValueError(f"Unknown map function: {value}. Use one of: haldane, kosambi, c-f, morgan")


class StepWidth(Enum):
    FIXED = "fixed"
    VARIABLE = "variable"


class CrossFileFormat(Enum):
    COMMA_DELIMITED = ("csv", "Comma-Delimited")
    ROTATED_COMMA_DELIMITED = ("csvr", "Rotated Comma-Delimited")

    def __init__(self, r_string_value, description):
        self.r_string_value = r_string_value
        self.description = description

    @classmethod
    def from_r_string(cls, value: str) -> "CrossFileFormat":
        for fmt in cls:
            if fmt.r_string_value == value:
                return fmt
        raise ValueError(f"Unknown cross file format: {value}. Use 'csv' or 'csvr'")


def _assign_if_named(name: Optional[str], command: str) -> str:
    if name is None or not name.strip():
        return command
    return r_assign(name.strip(), command)


class LoadCrossCommandBuilder:
    """Build a read.cross(...) command for a csv or rotated csv file."""

    def __init__(self, data_file: Optional[str] = None, cross_name: str = "",
                 file_format: CrossFileFormat = CrossFileFormat.COMMA_DELIMITED,
                 genotypes: Sequence[str] = ("A", "H", "B", "D", "C"),
                 na_strings: Sequence[str] = ("-",), convert_x_data: bool = True):
        self.data_file = data_file
        self.cross_name = cross_name
        self.file_format = file_format
        self.genotypes = list(genotypes) if genotypes is not None else None
        self.na_strings = list(na_strings) if na_strings is not None else None
        self.convert_x_data = convert_x_data

    def invalid_message(self) -> Optional[str]:
        if self.data_file is None:
            return "Command requires a cross data file"
        if not os.path.isfile(self.data_file):
            return f"Cross data file not found: {self.data_file}"
        return None

    def get_command(self) -> Optional[str]:
        if self.data_file is None:
            return None
        parameters = []
        if self.file_format is not None:
            parameters.append(("format", r_string(self.file_format.r_string_value)))
        parameters.append(("file", r_string(os.path.abspath(self.data_file))))
        if self.genotypes is not None:
            parameters.append(("genotypes", r_vector(self.genotypes)))
        if self.na_strings is not None:
            parameters.append(("na.strings", r_vector(self.na_strings)))
        parameters.append(("convertXdata", r_bool(self.convert_x_data)))
        return _assign_if_named(self.cross_name, r_call("read.cross", parameters))


class SimulateMapCommandBuilder:
    def __init__(self, chromosome_lengths: Sequence[float] = (100.0,) * 5,
                 markers_per_chromosome: int = 10, include_telomere_markers: bool = False,
                 include_x_chromosome: bool = True, sex_specific: bool = False,
                 equal_spacing: bool = False):
        self.chromosome_lengths = [float(length) for length in chromosome_lengths]
        self.markers_per_chromosome = markers_per_chromosome
        self.include_telomere_markers = include_telomere_markers
        self.include_x_chromosome = include_x_chromosome
        self.sex_specific = sex_specific
        self.equal_spacing = equal_spacing

    def invalid_message(self) -> Optional[str]:
        if not self.chromosome_lengths:
            return "Map simulation requires at least one chromosome length"
        if any(length <= 0 for length in self.chromosome_lengths):
            return "Chromosome lengths must be positive"
        if self.markers_per_chromosome < 1:
            return "Map simulation requires at least one marker per chromosome"
        return None

    def get_command(self) -> Optional[str]:
        if self.invalid_message() is not None:
            return None
        return r_call("sim.map", [
            ("len", r_vector(self.chromosome_lengths)),
            ("n.mar", str(int(self.markers_per_chromosome))),
            ("anchor.tel", r_bool(self.include_telomere_markers)),
            ("include.x", r_bool(self.include_x_chromosome)),
            ("sex.sp", r_bool(self.sex_specific)),
            ("eq.spacing", r_bool(self.equal_spacing)),
        ])


class SimulatedQtl:
    def __init__(self, chromosome_number: int = 1, position_cm: float = 0.0,
                 effect_one: float = 0.0, effect_two: float = 0.0, effect_three: float = 0.0):
        self.chromosome_number = chromosome_number
        self.position_cm = float(position_cm)
        self.effect_one = float(effect_one)
        self.effect_two = float(effect_two)
        self.effect_three = float(effect_three)

    def __repr__(self):
        return (f"SimulatedQtl({self.chromosome_number}, {self.position_cm}, "
                f"{self.effect_one}, {self.effect_two}, {self.effect_three})")


class SimulateCrossCommandBuilder:
    def __init__(self, map_accessor: Optional[str] = None, cross_name: Optional[str] = None,
                 number_of_individuals: int = 100, cross_type: CrossSubtype = CrossSubtype.F2,
                 map_function: MapFunction = MapFunction.HALDANE,
                 genotyping_error_rate: float = 0.0, missing_genotype_rate: float = 0.0,
                 partially_informative_rate: float = 0.0, interference_parameter: float = 0.0,
                 probability_of_no_interference: float = 0.0,
                 simulated_qtls: Sequence[SimulatedQtl] = ()):
        self.map_accessor = map_accessor
        self.cross_name = cross_name
        self.number_of_individuals = number_of_individuals
        self.cross_type = cross_type
        self.map_function = map_function
        self.genotyping_error_rate = genotyping_error_rate
        self.missing_genotype_rate = missing_genotype_rate
        self.partially_informative_rate = partially_informative_rate
        self.interference_parameter = interference_parameter
        self.probability_of_no_interference = probability_of_no_interference
        self.simulated_qtls = list(simulated_qtls)

    def _model(self) -> str:
        rows = []
        for qtl in self.simulated_qtls:
            values = [r_number(int(qtl.chromosome_number)), r_number(qtl.position_cm), r_number(qtl.effect_one)]
            if self.cross_type in (CrossSubtype.F2, CrossSubtype.FOUR_WAY):
                values.append(r_number(qtl.effect_two))
                if self.cross_type == CrossSubtype.FOUR_WAY:
                    values.append(r_number(qtl.effect_three))
            rows.append("c(" + ", ".join(values) + ")")
        return "rbind(" + ", ".join(rows) + ")"

    def invalid_message(self) -> Optional[str]:
        if self.cross_type is None:
            return "Cross simulation requires a cross type"
        if self.number_of_individuals < 1:
            return "Cross simulation requires at least one individual"
        return None

    def get_command(self) -> Optional[str]:
        if self.invalid_message() is not None:
            return None
        parameters = []
        if self.map_accessor is not None and self.map_accessor.strip():
            parameters.append((None, self.map_accessor.strip()))
        if self.simulated_qtls:
            parameters.append(("model", self._model()))
        parameters.extend([
            ("n.ind", r_number(int(self.number_of_individuals))),
            ("type", r_string(self.cross_type.type_string)),
            ("error.prob", r_number(float(self.genotyping_error_rate))),
            ("missing.prob", r_number(float(self.missing_genotype_rate))),
            ("partial.missing.prob", r_number(float(self.partially_informative_rate))),
            ("m", r_number(float(self.interference_parameter))),
            ("p", r_number(float(self.probability_of_no_interference))),
            ("map.function", r_string(self.map_function.r_string_value)),
        ])
        return _assign_if_named(self.cross_name, r_call("sim.cross", parameters))


# ------------------------
# genotype probabilities
# ------------------------

ERROR_PROB_DEFAULT = 0.0001
OFF_END_DEFAULT = 0.0
STEP_DEFAULT = 2.0
N_DRAWS_DEFAULT = 16


class CalcGenoprobCommandBuilder:
    """cross <- calc.genoprob(cross, ...) or, with n_draws, cross <- sim.geno(cross, ...)."""

    method = GenotypeProbabilityMethod.CALC_GENOPROB

    def __init__(self, cross: Optional[Cross] = None, step: float = STEP_DEFAULT,
                 off_end: float = OFF_END_DEFAULT, error_prob: float = ERROR_PROB_DEFAULT,
                 map_function: MapFunction = MapFunction.HALDANE,
                 step_width: StepWidth = StepWidth.FIXED):
        self.cross = cross
        self.step = step
        self.off_end = off_end
        self.error_prob = error_prob
        self.map_function = map_function
        self.step_width = step_width

    def invalid_message(self) -> Optional[str]:
        if self.cross is None:
            return "Command requires a cross"
        if self.step < 0:
            return "Step size must not be negative"
        if self.off_end < 0:
            return "Off-end distance must not be negative"
        if not 0 <= self.error_prob < 1:
            return "Genotyping error rate must be in [0, 1)"
        return None

    def _extra_parameters(self) -> list:
        return []

    def get_command(self) -> Optional[str]:
        if self.invalid_message() is not None:
            return None
        parameters = [(None, self.cross.accessor)]
        parameters.extend(self._extra_parameters())
        parameters.extend([
            ("step", r_number(float(self.step))),
            ("off.end", r_number(float(self.off_end))),
            ("error.prob", r_number(float(self.error_prob))),
            ("map.function", r_string(self.map_function.r_string_value)),
            ("stepwidth", r_string(self.step_width.value)),
        ])
        return r_assign(self.cross.accessor, r_call(self.method.function_name, parameters))

    def run(self, r: RInterface):
        message = self.invalid_message()
        if message is not None:
            raise ValueError(message)
        r.insert_comment(f"calculating genotype probabilities with {self.method.function_name}")
        r.evaluate_no_return(self.get_command())
        self.cross.refresh()


class SimGenoCommandBuilder(CalcGenoprobCommandBuilder):
    method = GenotypeProbabilityMethod.SIM_GENO

    def __init__(self, cross: Optional[Cross] = None, n_draws: int = N_DRAWS_DEFAULT, **kwargs):
        super().__init__(cross, **kwargs)
        self.n_draws = n_draws

    def invalid_message(self) -> Optional[str]:
        if self.n_draws is None or self.n_draws < 1:
            return "Number of imputations must be positive"
        return super().invalid_message()

    def _extra_parameters(self) -> list:
        return [("n.draws", r_number(int(self.n_draws)))]


# ------------------------
# map estimation
# ------------------------

MAXIT_DEFAULT = 4000
TOL_DEFAULT = 1e-4


class EstimateMapCommandBuilder:
    """`<cross>.newmap <- est.map(cross, ...)`, defaults are left out of the command."""

    def __init__(self, cross: Optional[Cross] = None, map_function: MapFunction = MapFunction.HALDANE,
                 m: float = 0.0, p: float = 0.0, maxit: int = MAXIT_DEFAULT,
                 tol: float = TOL_DEFAULT, sex_specific: bool = True, result_name: Optional[str] = None):
        self.cross = cross
        self.map_function = map_function
        self.m = m
        self.p = p
        self.maxit = maxit
        self.tol = tol
        self.sex_specific = sex_specific
        self.result_name = result_name

    @property
    def result_accessor(self) -> Optional[str]:
        if self.result_name:
            return self.result_name
        if self.cross is None:
            return None
        return f"{self.cross.accessor}.newmap"

    def get_command(self) -> Optional[str]:
        if self.cross is None:
            return None
        parameters = [(None, self.cross.accessor)]
        if self.map_function != MapFunction.HALDANE:
            parameters.append(("map.function", r_string(self.map_function.r_string_value)))
        if self.m != 0:
            parameters.append(("m", r_number(float(self.m))))
        if self.p != 0:
            parameters.append(("p", r_number(float(self.p))))
        if self.maxit != MAXIT_DEFAULT:
            parameters.append(("maxit", r_number(int(self.maxit))))
        if self.tol != TOL_DEFAULT:
            parameters.append(("tol", r_number(float(self.tol))))
        if not self.sex_specific:
            parameters.append(("sex.sp", r_bool(False)))
        return r_assign(self.result_accessor, r_call("est.map", parameters))


class EstimateRfCommandBuilder:
    def __init__(self, cross: Optional[Cross] = None, maxit: int = MAXIT_DEFAULT, tol: float = TOL_DEFAULT):
        self.cross = cross
        self.maxit = maxit
        self.tol = tol

    def get_command(self) -> Optional[str]:
        if self.cross is None:
            return None
        parameters = [(None, self.cross.accessor)]
        if self.maxit != MAXIT_DEFAULT:
            parameters.append(("maxit", r_number(int(self.maxit))))
        if self.tol != TOL_DEFAULT:
            parameters.append(("tol", r_number(float(self.tol))))
        return r_assign(self.cross.accessor, r_call("est.rf", parameters))

    @staticmethod
    def recombination_fractions(cross: Cross) -> Optional[np.ndarray]:
        """
        The `cross$rf` matrix: recombination fractions in the lower triangle, LOD
        scores in the upper one. None when est.rf has not been run.
        """
        accessor = f"{cross.accessor}$rf"
        if not cross.r.inherits(accessor, "matrix"):
            return None
        return np.asarray(cross.r.evaluate(accessor), dtype=np.float64)


class JittermapCommandBuilder:
    """Move markers sitting on the same position apart."""

    def __init__(self, cross: Optional[Cross] = None, amount: float = 1e-6):
        self.cross = cross
        self.amount = amount

    def get_command(self) -> Optional[str]:
        if self.cross is None or self.amount <= 0:
            return None
        return r_assign(self.cross.accessor, r_call("jittermap", [
            (None, self.cross.accessor),
            ("amount", r_number(float(self.amount))),
        ]))


# ------------------------
# effect plots
# ------------------------

EFFECT_PLOT_TEMP = "temp.effect.plot.data"
_EFFECT_NAME = re.compile(r"(.*)\.(.*)")


class EffectPlotData:
    """
    Means and standard errors of a phenotype per genotype.

    `means` and `standard_errors` are indexed by the first marker's genotypes (the
    points), with one column per second-marker genotype (the lines), or a single
    column for a one-marker plot.
    """

    def __init__(self, main_category: str, line_category: Optional[str],
                 means: pd.DataFrame, standard_errors: pd.DataFrame):
        self.main_category = main_category
        self.line_category = line_category
        self.means = means
        self.standard_errors = standard_errors


def _split_effect_names(names: List[str]):
    category = None
    points = []
    for name in names:
        match = _EFFECT_NAME.fullmatch(name)
        if match is None:
            logger.error(f"effect name does not match the <category>.<genotype> pattern: {name}")
            return None, None
        if category is None:
            category = match.group(1)
        elif category != match.group(1):
            logger.error(f"inconsistent effect categories: {category} and {match.group(1)}")
            return None, None
        points.append(match.group(2))
    return category, points


class EffectPlotCommandBuilder:
    def __init__(self, cross: Optional[Cross] = None, phenotype_index: int = 0,
                 marker_one: Optional[str] = None, marker_two: Optional[str] = None):
        self.cross = cross
        self.phenotype_index = phenotype_index
        self.marker_one = marker_one
        self.marker_two = marker_two

    def get_command(self) -> Optional[str]:
        if self.cross is None or self.marker_one is None or self.phenotype_index < 0:
            return None
        parameters = [
            ("cross", self.cross.accessor),
            ("pheno.col", r_number(self.phenotype_index + 1)),
            ("mname1", r_string(self.marker_one)),
        ]
        if self.marker_two is not None:
            parameters.append(("mname2", r_string(self.marker_two)))
        parameters.append(("draw", r_bool(False)))
        return r_call("effectplot", parameters)

    def extract_effects(self, r: RInterface) -> Optional[EffectPlotData]:
        command = self.get_command()
        if command is None:
            raise ValueError("Effect plot requires a cross, a phenotype and at least one marker")
        r.evaluate_no_return(r_assign(EFFECT_PLOT_TEMP, command), silent=True)
        try:
            return self._read_effects(r)
        finally:
            r.evaluate_no_return(f"rm({EFFECT_PLOT_TEMP})", silent=True)

    @staticmethod
    def _read_effects(r: RInterface) -> Optional[EffectPlotData]:
        means_accessor = f"{EFFECT_PLOT_TEMP}$Means"
        errors_accessor = f"{EFFECT_PLOT_TEMP}$SEs"
        means = np.asarray(r.evaluate(means_accessor), dtype=np.float64)
        errors = np.asarray(r.evaluate(errors_accessor), dtype=np.float64)

        if r.inherits(means_accessor, "matrix"):
            row_names = [str(n) for n in as_list(r.evaluate(f"rownames({means_accessor})"))]
            column_names = [str(n) for n in as_list(r.evaluate(f"colnames({means_accessor})"))]
            error_rows = [str(n) for n in as_list(r.evaluate(f"rownames({errors_accessor})"))]
            error_columns = [str(n) for n in as_list(r.evaluate(f"colnames({errors_accessor})"))]
            if row_names != error_rows or column_names != error_columns:
                logger.error("effect plot means and standard errors are not labeled the same way")
                return None
            main_category, points = _split_effect_names(row_names)
            line_category, lines = _split_effect_names(column_names)
            if main_category is None or line_category is None:
                return None
            return EffectPlotData(
                main_category, line_category,
                pd.DataFrame(means, index=points, columns=lines),
                pd.DataFrame(errors, index=points, columns=lines),
            )

        names = [str(n) for n in as_list(r.evaluate(f"names({means_accessor})"))]
        main_category, points = _split_effect_names(names)
        if main_category is None:
            return None
        return EffectPlotData(
            main_category, None,
            pd.DataFrame({main_category: means.ravel()}, index=points),
            pd.DataFrame({main_category: errors.ravel()}, index=points),
        )


def run_command(r: RInterface, command: Optional[str], comment: Optional[str] = None,
                invalid_message: Optional[str] = None):
    """Run a builder command, raising ValueError when the builder rejected its inputs."""
    if command is None:
        raise ValueError(invalid_message or "Invalid command parameters")
    if comment:
        r.insert_comment(comment)
    try:
        r.evaluate_no_return(command)
    except RError as e:
        logger.error(f"R command failed: {e.message}")
        raise
