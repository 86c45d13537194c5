"""
Genome scans: building scanone/scantwo commands and reading their results.
"""
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from jqtl.cross import Cross, GeneticMap, GeneticMarker, GeneticMarkerPair
from jqtl.log import logger
from jqtl.r import (
    RInterface,
    RObject,
    as_list,
    as_scalar,
    column_expression,
    r_assign,
    r_bool,
    r_call,
    r_number,
    r_string,
    r_vector,
)


PERMUTATION_SUFFIX = ".permutations"
PHENOTYPE_INDICES_PARAMETER = "pheno.col"


class PhenotypeDistribution(Enum):
    NORMAL = ("normal", "Normal", None)
    BINARY = ("binary", "Binary", None)
    TWO_PART_SPIKES_UP = ("2part", "Two Part (Spikes Up)", True)
    TWO_PART_SPIKES_DOWN = ("2part", "Two Part (Spikes Down)", False)
    OTHER = ("np", "Other (Non-Parametric)", None)

    def __init__(self, model, description, upper):
        self.model = model
        self.description = description
        self.upper = upper

    def __str__(self):
        return self.description


class ScanMethod(Enum):
    EM_ALGORITHM = ("em", "EM Algorithm (Maximum Likelihood)")
    MULTIPLE_IMPUTATION = ("imp", "Multiple Imputation")
    HALEY_KNOTT_REGRESSION = ("hk", "Haley-Knott Regression")
    EXTENDED_HALEY_KNOTT_METHOD = ("ehk", "Extended Haley-Knott Method")
    MARKER_REGRESSION = ("mr", "Marker Regression (Drop Missing Genotypes)")
    MARKER_REGRESSION_IMPUTATION = ("mr-imp", "Marker Regression (Fill Using Single Imputation)")
    MARKER_REGRESSION_VITERBI = ("mr-argmax", "Marker Regression (Fill Using Viterbi Algorithm)")

    def __init__(self, r_value, description):
        self.r_value = r_value
        self.description = description

    def __str__(self):
        return self.description

    @classmethod
    def from_r_value(cls, value: str) -> "ScanMethod":
        for method in cls:
            if method.r_value == value:
                return method
        raise ValueError(f"Unknown scan method: {value}")


class ScanType(Enum):
    SCANONE = ("scanone", "One QTL Genome Scan")
    SCANTWO = ("scantwo", "Two QTL Genome Scan")

    def __init__(self, r_method, description):
        self.r_method = r_method
        self.description = description

    def __str__(self):
        return self.description

    @property
    def supported_distributions(self) -> Tuple[PhenotypeDistribution, ...]:
        if self == ScanType.SCANONE:
            return tuple(PhenotypeDistribution)
        return PhenotypeDistribution.NORMAL, PhenotypeDistribution.BINARY

    @property
    def supported_methods(self) -> Tuple[ScanMethod, ...]:
        if self == ScanType.SCANONE:
            return tuple(ScanMethod)
        return (ScanMethod.EM_ALGORITHM, ScanMethod.MULTIPLE_IMPUTATION,
                ScanMethod.HALEY_KNOTT_REGRESSION, ScanMethod.MARKER_REGRESSION,
                ScanMethod.MARKER_REGRESSION_IMPUTATION, ScanMethod.MARKER_REGRESSION_VITERBI)


class ConfidenceThresholdState(Enum):
    NO_THRESHOLD = "No Threshold"
    LOD_SCORE_THRESHOLD = "LOD Score Threshold"
    ALPHA_THRESHOLD = "Alpha Threshold"


class ScanTwoSignificanceType(Enum):
    FULL_LOD = "Full Model"
    ADDITIVE_LOD = "Additive Model"
    FULL_VERSUS_ADDITIVE_LOD = "Full vs. Additive"
    FULL_VERSUS_SCANONE_LOD = "Full vs. One QTL"
    ADDITIVE_VERSUS_SCANONE_LOD = "Additive vs. One QTL"

    def __str__(self):
        return self.value


class ModelToOptimize(Enum):
    BEST = ("best", "Full and Additive Models (Best)")
    FULL = ("full", "Full Model")
    ADDITIVE = ("add", "Additive Model")
    INTERACTIVE = ("int", "Interactive Model")

    def __init__(self, r_value, description):
        self.r_value = r_value
        self.description = description

    def __str__(self):
        return self.description


class IntervalType(Enum):
    BAYESIAN_CREDIBLE = ("bayesint", "Bayesian Credible Interval")
    LOD_DROP = ("lodint", "LOD Drop Interval")

    def __init__(self, r_method, description):
        self.r_method = r_method
        self.description = description


# ------------------------
# command building
# ------------------------

class ScanCommandBuilder:
    """Collects scan options and turns them into scanone/scantwo commands."""

    def __init__(self, cross: Optional[Cross] = None, scan_type: ScanType = ScanType.SCANONE):
        self.cross = cross
        self.scan_type = scan_type
        self.chromosome_names: List[str] = []
        self.phenotype_indices: List[int] = []
        self.phenotype_distribution: Optional[PhenotypeDistribution] = PhenotypeDistribution.NORMAL
        self.scan_method: Optional[ScanMethod] = ScanMethod.EM_ALGORITHM
        self.additive_phenotype_covariates: List[str] = []
        self.additive_genotype_covariates: List[GeneticMarker] = []
        self.interactive_phenotype_covariates: List[str] = []
        self.interactive_genotype_covariates: List[GeneticMarker] = []
        self.use_missing_phenotypes = False
        self.convergence_tolerance: Optional[float] = None
        self.maximum_iterations: Optional[int] = None
        self.number_of_permutations: Optional[int] = None
        self.separate_x_permutations = False
        self.verbose_permutations = False
        self.use_all_markers = False
        self.clean_output = False
        self.scan_result_name: Optional[str] = None

    @property
    def result_name(self) -> Optional[str]:
        if self.scan_result_name is None:
            return None
        return self.scan_result_name.strip()

    def _covariates_expression(self, phenotype_covariates: Sequence[str],
                               genotype_covariates: Sequence[GeneticMarker]) -> str:
        # eg. cbind(fake.f2$pheno[, "sex"], fake.f2$geno$"X"$data[,3])
        cross = self.cross
        terms = [f"{cross.accessor}$pheno[, {r_string(name)}]" for name in phenotype_covariates]
        expression = "cbind(" + ",".join(terms)

        genotype_terms = []
        any_errors = False
        for marker in genotype_covariates:
            chromosome_index = cross.index_of_chromosome(marker.chromosome)
            if chromosome_index < 0:
                logger.error(f"Failed to find chromosome for: {marker}")
                any_errors = True
                break
            chromosome = cross.chromosomes()[chromosome_index]
            marker_index = chromosome.genetic_map().any_map.index_of(marker.name)
            if marker_index < 0:
                logger.error(f"Failed to find marker for: {marker}")
                any_errors = True
                break
            genotype_terms.append(column_expression(chromosome.data_accessor, marker_index))

        if not any_errors and genotype_terms:
            if terms:
                expression += ","
            expression += ",".join(genotype_terms)
        return expression + ")"

    def _parameters(self) -> list:
        parameters = []
        if self.cross is not None:
            parameters.append(("cross", self.cross.accessor))
            if self.additive_phenotype_covariates or self.additive_genotype_covariates:
                parameters.append(("addcovar", self._covariates_expression(
                    self.additive_phenotype_covariates, self.additive_genotype_covariates)))
            if self.interactive_phenotype_covariates or self.interactive_genotype_covariates:
                parameters.append(("intcovar", self._covariates_expression(
                    self.interactive_phenotype_covariates, self.interactive_genotype_covariates)))

        if self.chromosome_names:
            parameters.append(("chr", r_vector([str(c) for c in self.chromosome_names])))
        if self.phenotype_indices:
            parameters.append((PHENOTYPE_INDICES_PARAMETER, r_vector([int(i) + 1 for i in self.phenotype_indices])))

        distribution = self.phenotype_distribution
        if distribution is not None:
            parameters.append(("model", r_string(distribution.model)))
            if distribution.upper is not None:
                parameters.append(("upper", r_bool(distribution.upper)))

        method = self.scan_method
        if method is not None:
            parameters.append(("method", r_string(method.r_value)))
            iterative = method in (ScanMethod.EM_ALGORITHM, ScanMethod.EXTENDED_HALEY_KNOTT_METHOD)
            if self.maximum_iterations is not None and iterative:
                parameters.append(("maxit", r_number(int(self.maximum_iterations))))
            if self.convergence_tolerance is not None and iterative:
                parameters.append(("tol", r_number(float(self.convergence_tolerance))))

        if len(self.phenotype_indices) > 1:
            use = "all.obs" if self.use_missing_phenotypes else "complete.obs"
            parameters.append(("use", r_string(use)))

        if self.scan_type == ScanType.SCANTWO:
            parameters.append(("incl.markers", r_bool(self.use_all_markers)))
            parameters.append(("clean.output", r_bool(self.clean_output)))
        return parameters

    def command_without_permutations(self) -> str:
        command = r_call(self.scan_type.r_method, self._parameters())
        if not self.result_name:
            return command
        return r_assign(self.result_name, command)

    def command_with_permutations(self) -> Optional[str]:
        if not self.number_of_permutations:
            return None
        parameters = self._parameters()
        parameters.append(("n.perm", str(int(self.number_of_permutations))))
        if self.scan_type == ScanType.SCANONE:
            parameters.append(("perm.Xsp", r_bool(self.separate_x_permutations)))
        parameters.append(("verbose", r_bool(self.verbose_permutations)))
        command = r_call(self.scan_type.r_method, parameters)
        if not self.result_name:
            return command
        return r_assign(self.result_name + PERMUTATION_SUFFIX, command)

    def phenotype_attribute_command(self) -> Optional[str]:
        if self.result_name is None or not self.phenotype_indices:
            return None
        target = r_call("attr", [(None, self.result_name), (None, r_string(PHENOTYPE_INDICES_PARAMETER))])
        return r_assign(target, r_vector([int(i) + 1 for i in self.phenotype_indices]))

    def invalid_command_message(self) -> Optional[str]:
        if self.cross is None:
            return "Command requires a cross to scan"
        if not self.cross.accessor:
            return "Could not find a name for the selected cross"
        if self.phenotype_distribution is None:
            return "Command requires a phenotype distribution"
        if self.phenotype_distribution != PhenotypeDistribution.OTHER and self.scan_method is None:
            return "Command requires a scan method"
        if not self.chromosome_names:
            return "Command requires that at least one chromosome is selected"
        if not self.phenotype_indices:
            return "Command requires that at least one phenotype is selected"
        if self.number_of_permutations is not None and self.number_of_permutations < 0:
            return "Number of permutations cannot be negative"
        if self.phenotype_distribution not in self.scan_type.supported_distributions:
            return f"Command requires a {self.scan_type.r_method} compatible phenotype distribution"
        if self.scan_method is not None and self.scan_method not in self.scan_type.supported_methods:
            return f"Command requires a {self.scan_type.r_method} compatible scan method"
        return None

    def invalid_assignment_command_message(self) -> Optional[str]:
        message = self.invalid_command_message()
        if message is not None:
            return message
        if not self.result_name:
            return "Scan result name required"
        return None

    def commands(self) -> List[str]:
        commands = [self.command_without_permutations()]
        attribute_command = self.phenotype_attribute_command()
        if attribute_command is not None:
            commands.append(attribute_command)
        permutations_command = self.command_with_permutations()
        if permutations_command is not None:
            commands.append(permutations_command)
        return commands

    def run(self, r: RInterface) -> "ScanResult":
        """
        Run the scan (and its permutations) and wrap the result.

        :param r: the R interface to run the commands with
        """
        message = self.invalid_assignment_command_message()
        if message is not None:
            raise ValueError(message)
        r.insert_comment(f"{self.scan_type.description} of {self.cross.accessor}: {self.result_name}")
        if self.number_of_permutations:
            logger.info(f"Running {self.number_of_permutations} permutations, this may take a while...")
        for command in self.commands():
            r.evaluate_no_return(command)
        if self.scan_type == ScanType.SCANONE:
            return ScanOneResult(r, self.result_name, self.cross)
        return ScanTwoResult(r, self.result_name, self.cross)


# ------------------------
# results
# ------------------------

LOD_PREFIXES = ("lod.p.", "lod.mu.", "lod.p.mu.")


class ScanResult(RObject):
    r_class = None
    permutation_class = None

    def __init__(self, r_interface: RInterface, accessor: str, parent_cross: Optional[Cross] = None):
        super().__init__(r_interface, accessor)
        self.parent_cross = parent_cross

    @property
    def permutations_accessor(self) -> str:
        return self.accessor + PERMUTATION_SUFFIX

    def permutations_exist(self) -> bool:
        if not self.r.exists(self.permutations_accessor):
            return False
        if self.r.inherits(self.permutations_accessor, self.permutation_class):
            return True
        logger.warning(f'R object "{self.permutations_accessor}" exists, '
                       f'but isn\'t the expected type "{self.permutation_class}"')
        return False

    def scanned_phenotype_indices(self) -> List[int]:
        command = r_call("attr", [(None, self.accessor), (None, r_string(PHENOTYPE_INDICES_PARAMETER))])
        value = self.r.evaluate(command)
        if value is None:
            logger.warning(f"cant get scanned phenotype since {command} is null")
            return []
        return [int(i) - 1 for i in as_list(value)]

    def scanned_phenotype_names(self) -> List[str]:
        if self.parent_cross is None:
            return []
        all_names = self.parent_cross.phenotype_names()
        names = []
        for index in self.scanned_phenotype_indices():
            if not 0 <= index < len(all_names):
                logger.warning("phenotype index is out of bounds... returning an empty list")
                return []
            names.append(all_names[index])
        return names

    def phenotype_for_column(self, column_name: str) -> Optional[str]:
        names = self.scanned_phenotype_names()
        if len(names) == 1:
            return names[0]
        if column_name in names:
            return column_name
        for name in names:
            if any(column_name == prefix + name for prefix in LOD_PREFIXES):
                return name
        logger.warning(f"failed to find a phenotype to match column name: {column_name}")
        return None


class ScanOneThreshold:
    def __init__(self, alpha: float, autosome_lod: float, x_lod: Optional[float] = None):
        self.alpha = alpha
        self.autosome_lod = autosome_lod
        self.x_lod = x_lod

    @property
    def x_separate(self) -> bool:
        return self.x_lod is not None

    @property
    def lod(self) -> float:
        if self.x_separate:
            raise ValueError("Autosome and X chromosome thresholds are separate")
        return self.autosome_lod

    def __repr__(self):
        return f"ScanOneThreshold(alpha={self.alpha}, autosome_lod={self.autosome_lod}, x_lod={self.x_lod})"


class ScanOneResult(ScanResult):
    r_class = "scanone"
    permutation_class = "scanoneperm"
    COLUMNS_BEFORE_LOD = 2

    def __init__(self, r_interface: RInterface, accessor: str, parent_cross: Optional[Cross] = None):
        super().__init__(r_interface, accessor, parent_cross)
        self._frame: Optional[pd.DataFrame] = None

    def frame(self) -> pd.DataFrame:
        """The scanone table: marker names as index, then chr, pos and the LOD columns."""
        if self._frame is None:
            frame = self.r.evaluate(self.accessor)
            if not isinstance(frame, pd.DataFrame) or len(frame.columns) <= self.COLUMNS_BEFORE_LOD:
                raise ValueError(f"failed to read significance value columns for: {self.accessor}")
            frame = frame.copy()
            frame["chr"] = frame["chr"].astype(str)
            self._frame = frame
        return self._frame

    def lod_column_names(self) -> List[str]:
        columns = [str(c) for c in self.frame().columns[self.COLUMNS_BEFORE_LOD:]]
        if len(columns) == 1:
            indices = self.scanned_phenotype_indices()
            if len(indices) == 1:
                names = self.scanned_phenotype_names()
                if names:
                    return names
            logger.warning(f"cant return a single phenotype name since {len(indices)} were scanned")
        return columns

    def lod_column_index(self, lod_column: str) -> int:
        names = self.lod_column_names()
        return names.index(lod_column) if lod_column in names else -1

    def _checked_lod_index(self, lod_column: Optional[str]) -> int:
        if lod_column is None:
            return 0
        index = self.lod_column_index(lod_column)
        if index < 0:
            raise ValueError(f"unknown LOD column name: {lod_column}")
        return index

    def markers(self) -> List[GeneticMarker]:
        frame = self.frame()
        return [GeneticMarker(str(name), chromosome, position)
                for name, chromosome, position in zip(frame.index, frame["chr"], frame["pos"])]

    def marker_map(self) -> Dict[str, GeneticMarker]:
        return {marker.name: marker for marker in self.markers()}

    def lod_scores(self, lod_column: Optional[str] = None) -> np.ndarray:
        index = self._checked_lod_index(lod_column)
        return self.frame().iloc[:, index + self.COLUMNS_BEFORE_LOD].to_numpy(dtype=np.float64)

    def significance_frame(self, lod_column: Optional[str] = None) -> pd.DataFrame:
        frame = self.frame()
        return pd.DataFrame({
            "marker": [str(name) for name in frame.index],
            "chr": frame["chr"].to_numpy(),
            "pos": frame["pos"].to_numpy(dtype=np.float64),
            "lod": self.lod_scores(lod_column),
        })

    def chromosomes(self) -> List[str]:
        return list(dict.fromkeys(self.frame()["chr"]))

    def markers_per_chromosome(self) -> List[List[GeneticMarker]]:
        runs: List[List[GeneticMarker]] = []
        previous = None
        for marker in self.markers():
            if previous is None or marker.chromosome != previous.chromosome:
                runs.append([])
            runs[-1].append(marker)
            previous = marker
        return runs

    def x_chromosome_separate(self) -> bool:
        perm_type = as_scalar(self.r.evaluate(f"typeof({self.permutations_accessor})"))
        if perm_type != "list":
            return False
        names = self.r.names(self.permutations_accessor)
        if len(names) == 2 and set(names) == {"A", "X"}:
            logger.debug(f"{self.permutations_accessor} uses separate permutations for the X chromosome")
            return True
        raise RuntimeError(f"failed to determine internal structure of: {self.permutations_accessor}")

    def _thresholds_from_summary(self, summary_command: str, lod_index: int) -> np.ndarray:
        values = self.r.evaluate(column_expression(summary_command, lod_index))
        return np.atleast_1d(np.asarray(values, dtype=np.float64))

    def calculate_thresholds(self, alphas: Sequence[float],
                             lod_column: Optional[str] = None) -> Optional[List[ScanOneThreshold]]:
        """
        LOD thresholds for the given significance levels, read from the permutations.

        :param alphas: significance levels, eg. [0.05, 0.1]
        :param lod_column: LOD column name, the first one when None
        """
        lod_index = self._checked_lod_index(lod_column)
        if not self.permutations_exist():
            logger.warning(f"can't calculate thresholds for {self.accessor} since permutations have not been run")
            return None
        summary_command = r_call("summary", [(None, self.permutations_accessor), (None, r_vector(list(alphas)))])
        if self.x_chromosome_separate():
            autosome = self._thresholds_from_summary(summary_command + '$"A"', lod_index)
            x_chromosome = self._thresholds_from_summary(summary_command + '$"X"', lod_index)
            if len(autosome) != len(x_chromosome):
                logger.warning("autosome & x threshold lengths dont match")
                return None
            if len(autosome) != len(alphas):
                logger.warning("threshold lengths don't match alpha length")
                return None
            return [ScanOneThreshold(a, auto, x) for a, auto, x in zip(alphas, autosome, x_chromosome)]

        lods = self._thresholds_from_summary(summary_command, lod_index)
        if len(lods) != len(alphas):
            logger.warning("thresholds length doesn't match alpha length")
            return None
        return [ScanOneThreshold(a, lod) for a, lod in zip(alphas, lods)]

    def maximum_lod_per_chromosome(self, lod_column: Optional[str] = None) -> pd.DataFrame:
        frame = self.significance_frame(lod_column)
        peaks = frame.loc[frame.groupby("chr", sort=False)["lod"].idxmax()]
        return peaks.reset_index(drop=True)


class ScanOneSummaryRow:
    def __init__(self, marker: Optional[GeneticMarker], lod: float, p_value: float = 0.0):
        self.marker = marker
        self.lod = lod
        self.p_value = p_value


class ScanOneSummary:
    def __init__(self, rows: Sequence[ScanOneSummaryRow], p_values_valid: bool):
        self.rows = list(rows)
        self.p_values_valid = p_values_valid

    def __len__(self):
        return len(self.rows)

    def to_frame(self) -> pd.DataFrame:
        records = []
        for row in self.rows:
            record = {
                "marker": row.marker.name if row.marker else None,
                "chr": row.marker.chromosome if row.marker else None,
                "pos": row.marker.position_cm if row.marker else np.nan,
                "lod": row.lod,
            }
            if self.p_values_valid:
                record["pvalue"] = row.p_value
            records.append(record)
        columns = ["marker", "chr", "pos", "lod"] + (["pvalue"] if self.p_values_valid else [])
        return pd.DataFrame(records, columns=columns)


class ScanOneSummaryBuilder:
    TEMPORARY_SUFFIX = ".temp_summary_scanone"

    def __init__(self, result: ScanOneResult,
                 threshold_state: ConfidenceThresholdState = ConfidenceThresholdState.NO_THRESHOLD,
                 lod_column: Optional[str] = None, threshold_value: float = 0.0):
        self.result = result
        self.threshold_state = threshold_state
        self.lod_column = lod_column
        self.threshold_value = threshold_value

    def _lod_index(self) -> int:
        if self.lod_column is None:
            return 0
        return self.result.lod_column_index(self.lod_column)

    def summary_command(self, show_p_values: bool) -> str:
        parameters = [
            (None, self.result.accessor),
            ("format", r_string("onepheno")),
            ("lodcolumn", r_number(self._lod_index() + 1)),
        ]
        if self.threshold_state == ConfidenceThresholdState.ALPHA_THRESHOLD:
            parameters.append(("alpha", r_number(float(self.threshold_value))))
        elif self.threshold_state == ConfidenceThresholdState.LOD_SCORE_THRESHOLD:
            parameters.append(("threshold", r_number(float(self.threshold_value))))
        if show_p_values:
            parameters.append(("perms", self.result.permutations_accessor))
            parameters.append(("pvalues", r_bool(True)))
        return r_call("summary", parameters)

    def create_summary(self) -> ScanOneSummary:
        r = self.result.r
        show_p_values = self.result.permutations_exist()
        temporary = self.result.accessor + self.TEMPORARY_SUFFIX
        r.evaluate_no_return(r_assign(temporary, self.summary_command(show_p_values)), silent=True)
        try:
            return self._extract(r, temporary, show_p_values)
        finally:
            r.evaluate_no_return(f"rm({temporary})", silent=True)

    def _extract(self, r: RInterface, temporary: str, show_p_values: bool) -> ScanOneSummary:
        marker_names = [str(n) for n in as_list(r.evaluate(f"rownames({temporary})"))]
        if not marker_names:
            return ScanOneSummary([], show_p_values)

        lod_index = self._lod_index()
        if show_p_values:
            lod_index *= 2
        lod_index += ScanOneResult.COLUMNS_BEFORE_LOD
        lods = np.atleast_1d(np.asarray(r.evaluate(column_expression(temporary, lod_index)), dtype=np.float64))
        if len(lods) != len(marker_names):
            raise ValueError("marker name length doesn't match the lod score length for the scanone summary")
        p_values = None
        if show_p_values:
            p_values = np.atleast_1d(np.asarray(r.evaluate(column_expression(temporary, lod_index + 1)),
                                                dtype=np.float64))
            if len(p_values) != len(lods):
                raise ValueError("lod score length doesn't match the pvalue length for the scanone summary")

        markers = self.result.marker_map()
        rows = [ScanOneSummaryRow(markers.get(name), float(lods[i]), 0.0 if p_values is None else float(p_values[i]))
                for i, name in enumerate(marker_names)]
        return ScanOneSummary(rows, show_p_values)


class ScanOneInterval:
    """An interval around a LOD peak; left, peak and right are (position_cm, lod) points."""

    def __init__(self, interval_type: IntervalType, left: Tuple[float, float], peak: Tuple[float, float],
                 right: Tuple[float, float], constraint: float, chromosome: str):
        self.interval_type = interval_type
        self.left = left
        self.peak = peak
        self.right = right
        self.constraint = constraint
        self.chromosome = chromosome

    def __repr__(self):
        return (f"ScanOneInterval({self.interval_type.r_method}, chr={self.chromosome}, "
                f"left={self.left}, peak={self.peak}, right={self.right})")

    def to_record(self) -> dict:
        return {
            "chr": self.chromosome,
            "type": self.interval_type.r_method,
            "constraint": self.constraint,
            "left_pos": self.left[0],
            "left_lod": self.left[1],
            "peak_pos": self.peak[0],
            "peak_lod": self.peak[1],
            "right_pos": self.right[0],
            "right_lod": self.right[1],
        }


class ScanOneIntervalCommandBuilder:
    DEFAULT_COVERAGE = 0.95
    DEFAULT_DROP = 1.5

    def __init__(self, result: Optional[ScanOneResult] = None, lod_column_index: int = 0,
                 chromosomes: Sequence[str] = (), interval_type: IntervalType = IntervalType.BAYESIAN_CREDIBLE,
                 coverage: float = DEFAULT_COVERAGE, drop: float = DEFAULT_DROP):
        self.result = result
        self.lod_column_index = lod_column_index
        self.chromosomes = list(chromosomes)
        self.interval_type = interval_type
        self.coverage = coverage
        self.drop = drop

    @property
    def constraint(self) -> float:
        if self.interval_type == IntervalType.BAYESIAN_CREDIBLE:
            return self.coverage
        return self.drop

    def invalid_message(self) -> Optional[str]:
        if self.result is None:
            return "Interval requires a scanone result"
        if self.lod_column_index < 0:
            return "Interval requires a LOD column"
        if self.interval_type == IntervalType.BAYESIAN_CREDIBLE and not 0 < self.coverage < 1:
            return "Coverage probability must be between 0 and 1"
        if self.interval_type == IntervalType.LOD_DROP and not self.drop > 0:
            return "LOD drop must be positive"
        return None

    def commands(self) -> List[str]:
        if self.invalid_message() is not None:
            return []
        commands = []
        for chromosome in self.chromosomes:
            parameters = [("results", self.result.accessor)]
            if self.interval_type == IntervalType.BAYESIAN_CREDIBLE:
                parameters.append(("prob", r_number(float(self.coverage))))
            else:
                parameters.append(("drop", r_number(float(self.drop))))
            parameters.append(("lodcolumn", r_number(self.lod_column_index + 1)))
            parameters.append(("chr", r_string(chromosome)))
            commands.append(r_call(self.interval_type.r_method, parameters))
        return commands

    def interval(self, r: RInterface, command: str) -> Optional[ScanOneInterval]:
        frame = r.evaluate(command)
        if not isinstance(frame, pd.DataFrame) or len(frame.columns) <= self.lod_column_index + 2:
            logger.warning(f"unexpected interval result for: {command}")
            return None
        chromosomes = [str(c) for c in frame.iloc[:, 0]]
        positions = frame.iloc[:, 1].to_numpy(dtype=np.float64)
        lods = frame.iloc[:, self.lod_column_index + 2].to_numpy(dtype=np.float64)
        if len(chromosomes) != 3 or len(positions) != 3 or len(lods) != 3:
            logger.warning(f"expected 3 interval points but got {len(positions)} for: {command}")
            return None
        points = [(float(p), float(lod)) for p, lod in zip(positions, lods)]
        return ScanOneInterval(self.interval_type, points[0], points[1], points[2],
                               self.constraint, chromosomes[0])

    def intervals(self, r: RInterface) -> List[ScanOneInterval]:
        intervals = []
        for command in self.commands():
            interval = self.interval(r, command)
            if interval is not None:
                intervals.append(interval)
        return intervals


class MarkerIndexPair:
    def __init__(self, lesser: int, greater: int):
        if lesser >= greater:
            raise ValueError(f"the given lesser index ({lesser}) is larger than the given greater index ({greater})")
        self.lesser = lesser
        self.greater = greater

    def __eq__(self, other):
        return isinstance(other, MarkerIndexPair) and (self.lesser, self.greater) == (other.lesser, other.greater)

    def __lt__(self, other):
        return (self.lesser, self.greater) < (other.lesser, other.greater)

    def __hash__(self):
        return hash((self.lesser, self.greater))

    def __repr__(self):
        return f"MarkerIndexPair({self.lesser}, {self.greater})"


class ScanTwoGeneticMarker(GeneticMarker):
    def __init__(self, name: str, chromosome: str, position_cm: float, is_x_chromosome: bool):
        super().__init__(name, chromosome, position_cm)
        self.is_x_chromosome = is_x_chromosome


class ScanTwoResult(ScanResult):
    r_class = "scantwo"
    permutation_class = "scantwoperm"

    def __init__(self, r_interface: RInterface, accessor: str, parent_cross: Optional[Cross] = None):
        super().__init__(r_interface, accessor, parent_cross)
        self.lod_accessor = accessor + "$lod"
        self.map_accessor = accessor + "$map"
        self.scanone_x_accessor = accessor + "$scanoneX"
        self._single_phenotype: Optional[bool] = None
        self._lod_cache: Dict[str, np.ndarray] = {}
        self._scanone_x_cache: Dict[str, np.ndarray] = {}
        self._max_scanone_cache: Dict[int, np.ndarray] = {}
        self._markers: Optional[List[ScanTwoGeneticMarker]] = None

    def __lt__(self, other):
        return self.accessor < other.accessor

    @property
    def single_phenotype_scanned(self) -> bool:
        if self._single_phenotype is None:
            self._single_phenotype = len(self.scanned_phenotype_indices()) == 1
        return self._single_phenotype

    def lod_matrix(self, phenotype_index: int = 0) -> np.ndarray:
        """Full model LODs below the diagonal, additive model LODs above it."""
        accessor = self.lod_accessor
        if not self.single_phenotype_scanned:
            accessor = f"{self.lod_accessor}[ , , {phenotype_index + 1}]"
        if accessor not in self._lod_cache:
            matrix = np.asarray(self.r.evaluate(accessor), dtype=np.float64)
            if matrix.ndim != 2 or matrix.shape[0] == 0:
                logger.warning("scantwo LOD scores are empty")
                matrix = np.zeros((0, 0))
            elif matrix.shape[0] != matrix.shape[1]:
                logger.warning(f"scantwo rows are different than scantwo columns: "
                               f"cols={matrix.shape[1]}, rows={matrix.shape[0]}")
                matrix = np.zeros((0, 0))
            self._lod_cache[accessor] = matrix
        return self._lod_cache[accessor]

    def scanone_x(self, phenotype_index: int = 0) -> np.ndarray:
        accessor = self.scanone_x_accessor
        if not self.single_phenotype_scanned:
            accessor = f"{self.scanone_x_accessor}[ , {phenotype_index + 1}]"
        if accessor not in self._scanone_x_cache:
            values = np.asarray(self.r.evaluate(accessor), dtype=np.float64)
            if values.ndim == 2:
                values = values[:, 0]
            self._scanone_x_cache[accessor] = np.atleast_1d(values)
        return self._scanone_x_cache[accessor]

    def map_frame(self) -> pd.DataFrame:
        frame = self.r.evaluate(self.map_accessor)
        if not isinstance(frame, pd.DataFrame):
            raise ValueError(f"{self.map_accessor} is not a data frame")
        return frame

    def markers(self) -> List[ScanTwoGeneticMarker]:
        if self._markers is None:
            frame = self.map_frame()
            names = [str(n) for n in frame.index]
            chromosomes = [str(c) for c in frame["chr"]]
            positions = frame["pos"].to_numpy(dtype=np.float64)
            x_flags = [bool(x) for x in frame["xchr"]] if "xchr" in frame.columns else [False] * len(names)
            if not len(names) == len(positions) == len(chromosomes) == len(x_flags):
                logger.warning("marker value arrays have different lengths")
                self._markers = []
            else:
                self._markers = [ScanTwoGeneticMarker(n, c, p, x)
                                 for n, c, p, x in zip(names, chromosomes, positions, x_flags)]
        return self._markers

    def chromosomes(self) -> List[str]:
        return list(dict.fromkeys(marker.chromosome for marker in self.markers()))

    def markers_per_chromosome(self) -> List[List[ScanTwoGeneticMarker]]:
        groups: Dict[str, List[ScanTwoGeneticMarker]] = {}
        for marker in self.markers():
            groups.setdefault(marker.chromosome, []).append(marker)
        return list(groups.values())

    def chromosome_marker_map(self) -> Dict[str, List[GeneticMarker]]:
        return {group[0].chromosome: list(group) for group in self.markers_per_chromosome()}

    def marker_chromosome_indices(self) -> np.ndarray:
        indices = []
        for chromosome_index, group in enumerate(self.markers_per_chromosome()):
            indices.extend([chromosome_index] * len(group))
        return np.array(indices, dtype=np.int64)

    def scanone_lods(self, phenotype_index: int = 0) -> np.ndarray:
        """One-QTL LOD per marker: the diagonal, or scanoneX on the X chromosome."""
        markers = self.markers()
        lods = np.diag(self.lod_matrix(phenotype_index)).copy()
        x_flags = np.array([m.is_x_chromosome for m in markers], dtype=bool)
        if x_flags.any():
            lods[x_flags] = self.scanone_x(phenotype_index)[x_flags]
        return lods

    def max_scanone_per_chromosome(self, phenotype_index: int = 0) -> np.ndarray:
        if phenotype_index not in self._max_scanone_cache:
            groups = self.markers_per_chromosome()
            maxima = np.zeros(len(groups))
            lods = self.scanone_lods(phenotype_index)
            for marker_index, chromosome_index in enumerate(self.marker_chromosome_indices()):
                if lods[marker_index] > maxima[chromosome_index]:
                    maxima[chromosome_index] = lods[marker_index]
            self._max_scanone_cache[phenotype_index] = maxima
        return self._max_scanone_cache[phenotype_index]

    def full_lod(self, pair: MarkerIndexPair, phenotype_index: int = 0) -> float:
        return float(self.lod_matrix(phenotype_index)[pair.greater, pair.lesser])

    def additive_lod(self, pair: MarkerIndexPair, phenotype_index: int = 0) -> float:
        return float(self.lod_matrix(phenotype_index)[pair.lesser, pair.greater])

    def _max_scanone(self, pair: MarkerIndexPair, phenotype_index: int) -> float:
        chromosome_indices = self.marker_chromosome_indices()
        maxima = self.max_scanone_per_chromosome(phenotype_index)
        return max(maxima[chromosome_indices[pair.lesser]], maxima[chromosome_indices[pair.greater]])

    def significance_value(self, pair: MarkerIndexPair, significance_type: ScanTwoSignificanceType,
                           phenotype_index: int = 0) -> float:
        full = self.full_lod(pair, phenotype_index)
        additive = self.additive_lod(pair, phenotype_index)
        if significance_type == ScanTwoSignificanceType.FULL_LOD:
            return full
        if significance_type == ScanTwoSignificanceType.ADDITIVE_LOD:
            return additive
        if significance_type == ScanTwoSignificanceType.FULL_VERSUS_ADDITIVE_LOD:
            return full - additive
        if significance_type == ScanTwoSignificanceType.FULL_VERSUS_SCANONE_LOD:
            return max(0.0, full - self._max_scanone(pair, phenotype_index))
        if significance_type == ScanTwoSignificanceType.ADDITIVE_VERSUS_SCANONE_LOD:
            return max(0.0, additive - self._max_scanone(pair, phenotype_index))
        raise ValueError(f"unknown value type: {significance_type}")

    def significance_values(self, significance_type: ScanTwoSignificanceType,
                            phenotype_index: int = 0) -> pd.DataFrame:
        """One row per marker pair (lesser index first) with the chosen LOD."""
        markers = self.markers()
        matrix = self.lod_matrix(phenotype_index)
        columns = ["marker1", "chr1", "pos1", "marker2", "chr2", "pos2", "lod"]
        if matrix.shape[0] == 0 or matrix.shape[0] != len(markers):
            return pd.DataFrame(columns=columns)

        lesser, greater = np.triu_indices(len(markers), k=1)
        full = matrix[greater, lesser]
        additive = matrix[lesser, greater]
        if significance_type == ScanTwoSignificanceType.FULL_LOD:
            lod = full
        elif significance_type == ScanTwoSignificanceType.ADDITIVE_LOD:
            lod = additive
        elif significance_type == ScanTwoSignificanceType.FULL_VERSUS_ADDITIVE_LOD:
            lod = full - additive
        else:
            chromosome_indices = self.marker_chromosome_indices()
            maxima = self.max_scanone_per_chromosome(phenotype_index)
            max_scanone = np.maximum(maxima[chromosome_indices[lesser]], maxima[chromosome_indices[greater]])
            base = full if significance_type == ScanTwoSignificanceType.FULL_VERSUS_SCANONE_LOD else additive
            lod = np.maximum(0.0, base - max_scanone)

        return pd.DataFrame({
            "marker1": [markers[i].name for i in lesser],
            "chr1": [markers[i].chromosome for i in lesser],
            "pos1": [markers[i].position_cm for i in lesser],
            "marker2": [markers[i].name for i in greater],
            "chr2": [markers[i].chromosome for i in greater],
            "pos2": [markers[i].position_cm for i in greater],
            "lod": lod,
        }, columns=columns)

    def significance_matrix(self, significance_type: ScanTwoSignificanceType,
                            phenotype_index: int = 0) -> np.ndarray:
        """Symmetric marker x marker matrix of the chosen LOD, NaN on the diagonal."""
        n = len(self.markers())
        matrix = np.full((n, n), np.nan)
        values = self.significance_values(significance_type, phenotype_index)
        if len(values) == 0:
            return matrix
        lesser, greater = np.triu_indices(n, k=1)
        lod = values["lod"].to_numpy(dtype=np.float64)
        matrix[lesser, greater] = lod
        matrix[greater, lesser] = lod
        return matrix


class ScanTwoSummaryRow:
    def __init__(self, full_pair: GeneticMarkerPair, full_lod: float, full_p: float,
                 full_vs_one_lod: float, full_vs_one_p: float, interactive_lod: float,
                 interactive_p: float, additive_pair: GeneticMarkerPair, additive_lod: float,
                 additive_p: float, additive_vs_one_lod: float, additive_vs_one_p: float):
        self.full_pair = full_pair
        self.full_lod = full_lod
        self.full_p = full_p
        self.full_vs_one_lod = full_vs_one_lod
        self.full_vs_one_p = full_vs_one_p
        self.interactive_lod = interactive_lod
        self.interactive_p = interactive_p
        self.additive_pair = additive_pair
        self.additive_lod = additive_lod
        self.additive_p = additive_p
        self.additive_vs_one_lod = additive_vs_one_lod
        self.additive_vs_one_p = additive_vs_one_p


class ScanTwoSummary:
    def __init__(self, model: ModelToOptimize, rows: Sequence[ScanTwoSummaryRow]):
        self.model = model
        self.rows = list(rows)

    def __len__(self):
        return len(self.rows)

    def to_frame(self) -> pd.DataFrame:
        records = []
        for row in self.rows:
            records.append({
                "marker1": row.full_pair.marker_one.name if row.full_pair.marker_one else None,
                "marker2": row.full_pair.marker_two.name if row.full_pair.marker_two else None,
                "chr1": row.full_pair.marker_one.chromosome if row.full_pair.marker_one else None,
                "chr2": row.full_pair.marker_two.chromosome if row.full_pair.marker_two else None,
                "lod.full": row.full_lod,
                "pval.full": row.full_p,
                "lod.fv1": row.full_vs_one_lod,
                "pval.fv1": row.full_vs_one_p,
                "lod.int": row.interactive_lod,
                "pval.int": row.interactive_p,
                "add.marker1": row.additive_pair.marker_one.name if row.additive_pair.marker_one else None,
                "add.marker2": row.additive_pair.marker_two.name if row.additive_pair.marker_two else None,
                "lod.add": row.additive_lod,
                "pval.add": row.additive_p,
                "lod.av1": row.additive_vs_one_lod,
                "pval.av1": row.additive_vs_one_p,
            })
        return pd.DataFrame(records)


class ScanTwoSummaryBuilder:
    TEMPORARY_SUFFIX = ".temp_summary_scantwo"

    def __init__(self, result: ScanTwoResult,
                 threshold_state: ConfidenceThresholdState = ConfidenceThresholdState.NO_THRESHOLD,
                 threshold_values: Optional[Sequence[float]] = None,
                 model: ModelToOptimize = ModelToOptimize.BEST, phenotype_index: int = -1,
                 calculate_p_values: bool = False):
        self.result = result
        self.threshold_state = threshold_state
        self.threshold_values = list(threshold_values) if threshold_values is not None else None
        self.model = model
        self.phenotype_index = phenotype_index
        self.calculate_p_values = calculate_p_values

    def summary_command(self, permutations_exist: bool) -> str:
        parameters = [(None, self.result.accessor), ("what", r_string(self.model.r_value))]
        if self.threshold_values is not None:
            values = r_vector([float(v) for v in self.threshold_values])
            if self.threshold_state == ConfidenceThresholdState.ALPHA_THRESHOLD:
                if permutations_exist:
                    parameters.append(("alphas", values))
                else:
                    logger.warning("cannot use alpha thresholds since permutations were not calculated")
            elif self.threshold_state == ConfidenceThresholdState.LOD_SCORE_THRESHOLD:
                parameters.append(("thresholds", values))
        if permutations_exist:
            parameters.append(("perms", self.result.permutations_accessor))
            if self.calculate_p_values:
                parameters.append(("pvalues", r_bool(True)))
        if self.phenotype_index >= 0:
            parameters.append(("lodcolumn", str(self.phenotype_index + 1)))
        return r_call("summary", parameters)

    def create_summary(self) -> ScanTwoSummary:
        r = self.result.r
        permutations_exist = self.result.permutations_exist()
        temporary = self.result.accessor + self.TEMPORARY_SUFFIX
        r.evaluate_no_return(r_assign(temporary, self.summary_command(permutations_exist)), silent=True)
        try:
            return self._extract(r, temporary, self.calculate_p_values and permutations_exist)
        finally:
            r.evaluate_no_return(f"rm({temporary})", silent=True)

    def _extract(self, r: RInterface, temporary: str, extract_p_values: bool) -> ScanTwoSummary:
        try:
            frame = r.evaluate(temporary)
            if not isinstance(frame, pd.DataFrame) or len(frame) == 0:
                return ScanTwoSummary(self.model, [])
            maps = {chromosome: GeneticMap(markers)
                    for chromosome, markers in self.result.chromosome_marker_map().items()}
            cursor = [0]

            def next_column(as_text=False):
                column = frame.iloc[:, cursor[0]]
                cursor[0] += 1
                if as_text:
                    return [str(v) for v in column]
                return column.to_numpy(dtype=np.float64)

            def next_lod_and_p():
                lod = next_column()
                p = next_column() if extract_p_values else np.zeros(len(lod))
                return lod, p

            def pairs(first_positions, second_positions):
                return [GeneticMarkerPair(maps[c1].closest_marker(p1), maps[c2].closest_marker(p2))
                        for c1, c2, p1, p2 in zip(first_chromosomes, second_chromosomes,
                                                  first_positions, second_positions)]

            first_chromosomes = next_column(as_text=True)
            second_chromosomes = next_column(as_text=True)
            full_pairs = pairs(next_column(), next_column())
            full_lod, full_p = next_lod_and_p()
            fv1_lod, fv1_p = next_lod_and_p()
            int_lod, int_p = next_lod_and_p()
            if self.model == ModelToOptimize.BEST:
                additive_pairs = pairs(next_column(), next_column())
            else:
                additive_pairs = full_pairs
            add_lod, add_p = next_lod_and_p()
            av1_lod, av1_p = next_lod_and_p()

            rows = [ScanTwoSummaryRow(full_pairs[i], full_lod[i], full_p[i], fv1_lod[i], fv1_p[i],
                                      int_lod[i], int_p[i], additive_pairs[i], add_lod[i], add_p[i],
                                      av1_lod[i], av1_p[i])
                    for i in range(len(full_pairs))]
            return ScanTwoSummary(self.model, rows)
        except (KeyError, IndexError, ValueError) as e:
            logger.warning(f"Caught an exception trying to extract a scantwo summary: {e}")
            return ScanTwoSummary(self.model, [])


# ------------------------
# filtering
# ------------------------

class AbsoluteConfidenceFilter(Enum):
    NO_ABSOLUTE_CONFIDENCE_FILTER = "No Absolute Filtering"
    LOD_SCORE_FILTER = "Minimum LOD Score"
    ALPHA_VALUE_FILTER = "Alpha Value (Maximum p-value)"


class MarkerRelativeConfidenceFilter(Enum):
    NO_MARKER_RELATIVE_CONFIDENCE_FILTER = "No Marker Relative Filtering"
    LOCAL_MAXIMA_WITH_MINIMUM_SPACING_FILTER = "Show Local Maxima With Minimum Marker Spacing (cM)"
    CHROMOSOME_MAXIMA_FILTER = "Show Chromosome Maxima"


class ScanResultFilter:
    """
    Filters applied to scan tables. Each filter state remembers its own value.

    Listeners are called as `listener(property_name, old_value, new_value)`.
    """

    def __init__(self, absolute_values: Optional[Dict[AbsoluteConfidenceFilter, float]] = None,
                 relative_values: Optional[Dict[MarkerRelativeConfidenceFilter, float]] = None):
        self._absolute_state = AbsoluteConfidenceFilter.NO_ABSOLUTE_CONFIDENCE_FILTER
        self._relative_state = MarkerRelativeConfidenceFilter.NO_MARKER_RELATIVE_CONFIDENCE_FILTER
        self._absolute_values = dict(absolute_values or {})
        self._relative_values = dict(relative_values or {})
        self._listeners = []

    def add_listener(self, listener):
        self._listeners.append(listener)

    def remove_listener(self, listener):
        self._listeners.remove(listener)

    def _fire(self, name, old, new):
        for listener in list(self._listeners):
            listener(name, old, new)

    @property
    def absolute_state(self) -> AbsoluteConfidenceFilter:
        return self._absolute_state

    @absolute_state.setter
    def absolute_state(self, state: AbsoluteConfidenceFilter):
        old, self._absolute_state = self._absolute_state, state
        self._fire("absolute_state", old, state)

    @property
    def absolute_value(self) -> float:
        if self._absolute_state is None:
            return 0.0
        return self._absolute_values.get(self._absolute_state, 0.0)

    @absolute_value.setter
    def absolute_value(self, value: float):
        old = self.absolute_value
        if self._absolute_state is not None:
            self._absolute_values[self._absolute_state] = value
        self._fire("absolute_value", old, value)

    @property
    def relative_state(self) -> MarkerRelativeConfidenceFilter:
        return self._relative_state

    @relative_state.setter
    def relative_state(self, state: MarkerRelativeConfidenceFilter):
        old, self._relative_state = self._relative_state, state
        self._fire("relative_state", old, state)

    @property
    def relative_value(self) -> float:
        if self._relative_state is None:
            return 0.0
        return self._relative_values.get(self._relative_state, 0.0)

    @relative_value.setter
    def relative_value(self, value: float):
        old = self.relative_value
        if self._relative_state is not None:
            self._relative_values[self._relative_state] = value
        self._fire("relative_value", old, value)

    @staticmethod
    def _local_maxima(positions: np.ndarray, lods: np.ndarray, spacing: float) -> np.ndarray:
        """Greedy peak picking: the highest LOD wins, neighbours closer than `spacing` cM are dropped."""
        keep = np.zeros(len(lods), dtype=bool)
        for i in np.argsort(-lods, kind="stable"):
            if np.all(np.abs(positions[keep] - positions[i]) >= spacing):
                keep[i] = True
        return keep

    def apply(self, frame: pd.DataFrame) -> pd.DataFrame:
        """
        Filter a table with `chr`, `pos`, `lod` and optionally `pvalue` columns.

        Marker relative filters pick the peaks first, absolute filters then drop the
        peaks that are not significant enough. Row order is kept.
        """
        result = frame
        relative = self._relative_state
        if relative != MarkerRelativeConfidenceFilter.NO_MARKER_RELATIVE_CONFIDENCE_FILTER and len(result):
            chromosomes = result["chr"].astype(str).to_numpy()
            positions = result["pos"].to_numpy(dtype=np.float64)
            lods = result["lod"].to_numpy(dtype=np.float64)
            keep = np.zeros(len(result), dtype=bool)
            for chromosome in dict.fromkeys(chromosomes):
                rows = np.flatnonzero(chromosomes == chromosome)
                if relative == MarkerRelativeConfidenceFilter.CHROMOSOME_MAXIMA_FILTER:
                    keep[rows[np.argmax(lods[rows])]] = True
                else:
                    keep[rows] = self._local_maxima(positions[rows], lods[rows], self.relative_value)
            result = result[keep]

        absolute = self._absolute_state
        if absolute == AbsoluteConfidenceFilter.LOD_SCORE_FILTER:
            result = result[result["lod"] >= self.absolute_value]
        elif absolute == AbsoluteConfidenceFilter.ALPHA_VALUE_FILTER:
            if "pvalue" in result.columns:
                result = result[result["pvalue"] <= self.absolute_value]
            else:
                logger.warning("cannot filter on alpha value since the table has no p-values")
        return result
