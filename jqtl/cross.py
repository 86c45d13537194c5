from enum import Enum
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from jqtl.log import logger
from jqtl.r import RInterface, RObject, as_list, as_scalar, r_assign, r_call, r_string


GENO_COMPONENT = "$geno"
PHENO_COMPONENT = "$pheno"


class MarkerStringFormat(Enum):
    FULL_DESCRIPTION = "Marker Name and Position"
    NAME_ONLY = "Marker Name Only"
    POSITION_ONLY = "Position Only"

    def __str__(self):
        return self.value


class GeneticMarker:
    """A named marker at a position (cM) on a chromosome."""

    def __init__(self, name: str, chromosome: Optional[str], position_cm: float):
        self.name = name
        self.chromosome = chromosome
        self.position_cm = float(position_cm)

    def __eq__(self, other):
        if not isinstance(other, GeneticMarker):
            return False
        return self.name == other.name and self.chromosome == other.chromosome

    def __hash__(self):
        return hash(self.name)

    def __repr__(self):
        return f"GeneticMarker({self.name!r}, {self.chromosome!r}, {self.position_cm!r})"

    def __str__(self):
        return self.to_string(MarkerStringFormat.FULL_DESCRIPTION)

    def to_string(self, fmt: MarkerStringFormat = MarkerStringFormat.FULL_DESCRIPTION) -> str:
        if fmt == MarkerStringFormat.FULL_DESCRIPTION:
            return f"{self.name}({self.to_string(MarkerStringFormat.POSITION_ONLY)})"
        if fmt == MarkerStringFormat.NAME_ONLY:
            return self.name
        if fmt == MarkerStringFormat.POSITION_ONLY:
            if self.chromosome is None:
                return f"{self.position_cm} cM"
            return f"Chr{self.chromosome}@{self.position_cm} cM"
        raise ValueError(f"Unknown marker format type: {fmt}")


class GeneticMarkerPair:
    def __init__(self, marker_one: GeneticMarker, marker_two: GeneticMarker):
        self.marker_one = marker_one
        self.marker_two = marker_two

    def __eq__(self, other):
        return (isinstance(other, GeneticMarkerPair)
                and self.marker_one == other.marker_one
                and self.marker_two == other.marker_two)

    def __hash__(self):
        return hash((self.marker_one, self.marker_two))

    def __repr__(self):
        return f"GeneticMarkerPair({self.marker_one!r}, {self.marker_two!r})"

    def __str__(self):
        return f"{self.marker_one} x {self.marker_two}"


class GeneticMap:
    """Ordered markers of one chromosome."""

    def __init__(self, markers: Sequence[GeneticMarker]):
        self.markers: List[GeneticMarker] = list(markers)

    def __len__(self):
        return len(self.markers)

    def __iter__(self):
        return iter(self.markers)

    @property
    def marker_names(self) -> List[str]:
        return [m.name for m in self.markers]

    @property
    def positions(self) -> np.ndarray:
        return np.array([m.position_cm for m in self.markers], dtype=np.float64)

    @property
    def extent_cm(self) -> float:
        if len(self.markers) < 2:
            return 0.0
        return self.markers[-1].position_cm - self.markers[0].position_cm

    def index_of(self, marker_name: str) -> int:
        for i, marker in enumerate(self.markers):
            if marker.name == marker_name:
                return i
        return -1

    def closest_marker(self, position_cm: float) -> Optional[GeneticMarker]:
        if not self.markers:
            return None
        distances = np.abs(self.positions - position_cm)
        return self.markers[int(np.argmin(distances))]


def _read_map(r: RInterface, accessor: str, chromosome: str) -> "SexAwareGeneticMap":
    if r.inherits(accessor, "matrix"):
        # sex specific: first row female, second row male
        values = np.asarray(r.evaluate(accessor), dtype=np.float64)
        names = as_list(r.evaluate(f"colnames({accessor})"))
        female = GeneticMap([GeneticMarker(n, chromosome, values[0, i]) for i, n in enumerate(names)])
        male = GeneticMap([GeneticMarker(n, chromosome, values[1, i]) for i, n in enumerate(names)])
        return SexAwareGeneticMap(chromosome, female=female, male=male)
    positions = as_list(r.evaluate(accessor))
    names = r.names(accessor)
    agnostic = GeneticMap([GeneticMarker(n, chromosome, p) for n, p in zip(names, positions)])
    return SexAwareGeneticMap(chromosome, sex_agnostic=agnostic)


class SexAwareGeneticMap:
    def __init__(self, chromosome: str, sex_agnostic: Optional[GeneticMap] = None,
                 female: Optional[GeneticMap] = None, male: Optional[GeneticMap] = None):
        self.chromosome = chromosome
        self.sex_agnostic = sex_agnostic
        self.female = female
        self.male = male

    @property
    def is_sex_specific(self) -> bool:
        return self.sex_agnostic is None

    @property
    def any_map(self) -> GeneticMap:
        if self.is_sex_specific:
            return self.female
        return self.sex_agnostic

    @staticmethod
    def extract_maps(map_object: RObject) -> List["SexAwareGeneticMap"]:
        """Read every chromosome of an R/qtl `map` object (eg. the output of est.map)."""
        maps = []
        for chromosome in map_object.names():
            accessor = f"{map_object.accessor}${r_string(chromosome)}"
            maps.append(_read_map(map_object.r, accessor, chromosome))
        return maps


class CrossSubtype(Enum):
    F2 = ("f2", "Intercross", ("AA", "AB", "BB", "Not BB", "Not AA"))
    BACK_CROSS = ("bc", "Backcross", ("AA", "AB"))
    FOUR_WAY = ("4way", "Four-Way Cross",
                ("AC", "BC", "AD", "BD", "A, AC or AD", "B, BC or BD",
                 "C, AC or BC", "D, AD or BD", "AC or BD", "AD or BC"))

    def __init__(self, type_string, description, genotype_categories):
        self.type_string = type_string
        self.description = description
        self.genotype_categories = genotype_categories

    def __str__(self):
        return self.description

    @classmethod
    def from_type_string(cls, type_string: str) -> "CrossSubtype":
        for subtype in cls:
            if subtype.type_string == type_string:
                return subtype
        raise ValueError(f"Unknown cross type: {type_string}. Use one of: f2, bc, 4way")


class AssumedCategoricalPhenotype(Enum):
    """Phenotype columns R/qtl treats as categorical even when coded 0/1."""
    PATERNAL_GRANDMOTHER = ("pgm", ("(?x?)x(AxB)", "(?x?)x(BxA)"))
    SEX = ("sex", ("female", "male"))

    def __init__(self, column_header, category_names):
        self.column_header = column_header
        self.category_names = category_names

    @classmethod
    def for_header(cls, header: str) -> Optional["AssumedCategoricalPhenotype"]:
        for pheno in cls:
            if pheno.column_header.lower() == str(header).lower():
                return pheno
        return None


class GenotypeProbabilityMethod(Enum):
    CALC_GENOPROB = ("prob", "calc.genoprob")
    SIM_GENO = ("draws", "sim.geno")

    def __init__(self, component, function_name):
        self.component = component
        self.function_name = function_name


class Phenotype:
    """
    One phenotype column.

    Categorical phenotypes store category indices in `values` and the labels in
    `categories`, the others store the numbers (None for missing).
    """

    def __init__(self, name: str, values: list, kind: str, categories: Optional[Sequence] = None):
        self.name = name
        self.values = values
        self.kind = kind
        self.categories = tuple(categories) if categories is not None else None

    def __repr__(self):
        return f"Phenotype({self.name!r}, kind={self.kind!r}, n={len(self.values)})"

    @property
    def is_categorical(self) -> bool:
        return self.kind == "categorical"

    def labels(self) -> list:
        if not self.is_categorical:
            return list(self.values)
        labels = []
        for value in self.values:
            if value is None or not 0 <= value < len(self.categories):
                labels.append(None)
            else:
                labels.append(self.categories[value])
        return labels

    def codes_for(self, assumed: AssumedCategoricalPhenotype) -> List[Optional[int]]:
        """Codes in the fixed category order of an assumed categorical phenotype."""
        fixed = [c.lower() for c in assumed.category_names]
        codes = []
        for label in self.labels():
            if label is None:
                codes.append(None)
            elif isinstance(label, str):
                lowered = label.lower()
                codes.append(fixed.index(lowered) if lowered in fixed else None)
            else:
                codes.append(int(label))
        return codes


def _phenotype_from_series(name: str, column: pd.Series, r_class: Optional[str] = None) -> Optional[Phenotype]:
    """Type one `cross$pheno` column; `r_class` is its R class, None when unknown."""
    if r_class in ("factor", "character") or not pd.api.types.is_numeric_dtype(column.dtype):
        categories: list = []
        values = []
        for label in column:
            # NA is a category of its own
            label = None if pd.isna(label) else label
            if label not in categories:
                categories.append(label)
            values.append(categories.index(label))
        return Phenotype(name, values, "categorical", categories)

    assumed = AssumedCategoricalPhenotype.for_header(name)
    if assumed is not None:
        values = [None if pd.isna(v) else int(v) for v in column]
        return Phenotype(name, values, "categorical", assumed.category_names)
    if r_class == "integer" or (r_class is None and np.issubdtype(column.dtype, np.integer)):
        return Phenotype(name, [None if pd.isna(v) else int(v) for v in column], "integer")
    if np.issubdtype(column.dtype, np.floating):
        return Phenotype(name, [None if np.isnan(v) else float(v) for v in column], "real")
    logger.error(f"Don't know how to translate phenotype '{name}' of type {column.dtype}")
    return None


class CrossChromosome(RObject):
    def __init__(self, cross: "Cross", name: str):
        super().__init__(cross.r, f"{cross.accessor}{GENO_COMPONENT}${r_string(name)}")
        self.cross = cross
        self.name = name
        self._map: Optional[SexAwareGeneticMap] = None

    @property
    def data_accessor(self) -> str:
        return f"{self.accessor}$data"

    @property
    def errorlod_accessor(self) -> str:
        return f"{self.accessor}$errorlod"

    def is_x_chromosome(self) -> bool:
        return self.inherits("X") or self.inherits("x")

    def genetic_map(self) -> SexAwareGeneticMap:
        if self._map is None:
            self._map = _read_map(self.r, f"{self.accessor}$map", self.name)
        return self._map

    def marker_names(self) -> List[str]:
        return [str(n) for n in as_list(self.r.evaluate(f"colnames({self.data_accessor})"))]

    def genotypes(self) -> pd.DataFrame:
        """
        Genotype codes (0 based, NaN for missing) with one column per marker.

        Codes index `cross.subtype.genotype_categories`.
        """
        categories = self.cross.subtype.genotype_categories
        data = np.asarray(self.r.evaluate(self.data_accessor), dtype=np.float64)
        if data.ndim == 1:
            data = data.reshape(-1, 1)
        codes = data - 1
        codes[(codes < 0) | (codes > len(categories) - 1)] = np.nan

        if self.is_x_chromosome():
            sex = self.cross.assumed_categorical_phenotype(AssumedCategoricalPhenotype.SEX)
            pgm = self.cross.assumed_categorical_phenotype(AssumedCategoricalPhenotype.PATERNAL_GRANDMOTHER)
            sex_codes = sex.codes_for(AssumedCategoricalPhenotype.SEX) if sex is not None else None
            pgm_codes = (pgm.codes_for(AssumedCategoricalPhenotype.PATERNAL_GRANDMOTHER)
                         if pgm is not None else None)
            if sex_codes is not None:
                for i, sex_code in enumerate(sex_codes):
                    if sex_code is None:
                        logger.warning(f"sex data is missing for individual #: {i}")
                    elif sex_code == 1:
                        # hemizygous males are stored as the second genotype
                        codes[i, codes[i] == 1] = 2
                    elif sex_code == 0 and pgm_codes is not None and pgm_codes[i] == 1:
                        codes[i, codes[i] == 0] = 2

        return pd.DataFrame(codes, columns=self.marker_names())

    def error_lods_exist(self) -> bool:
        return self.r.inherits(self.errorlod_accessor, "matrix")

    def error_lods(self) -> Optional[pd.DataFrame]:
        if not self.error_lods_exist():
            return None
        values = np.asarray(self.r.evaluate(self.errorlod_accessor), dtype=np.float64)
        if values.ndim == 1:
            values = values.reshape(-1, 1)
        return pd.DataFrame(values, columns=self.marker_names())


class Cross(RObject):
    """A cross object in the R workspace."""

    def __init__(self, r_interface: RInterface, accessor: str):
        super().__init__(r_interface, accessor)
        self.qtl_baskets: Dict[str, "QtlBasket"] = {}
        self._subtype: Optional[CrossSubtype] = None
        self._chromosomes: Optional[List[CrossChromosome]] = None
        self._phenotypes: Optional[List[Phenotype]] = None

    @property
    def name(self) -> str:
        return self.accessor

    def refresh(self):
        """Forget cached state after the R object was modified."""
        self._subtype = None
        self._chromosomes = None
        self._phenotypes = None

    @property
    def subtype(self) -> Optional[CrossSubtype]:
        if self._subtype is None:
            for subtype in CrossSubtype:
                if self.inherits(subtype.type_string):
                    self._subtype = subtype
                    break
        return self._subtype

    # phenotypes

    def phenotype_names(self) -> List[str]:
        return self.r.names(self.accessor + PHENO_COMPONENT)

    def phenotype_frame(self) -> pd.DataFrame:
        frame = self.r.evaluate(self.accessor + PHENO_COMPONENT)
        if not isinstance(frame, pd.DataFrame):
            raise ValueError(f"{self.accessor}$pheno is not a data frame")
        return frame

    def phenotype_classes(self) -> List[str]:
        """The R class of each `cross$pheno` column."""
        return [str(c) for c in as_list(self.r.evaluate(
            f"unname(vapply({self.accessor}{PHENO_COMPONENT}, function(.c) class(.c)[1], \"\"))"))]

    def phenotypes(self) -> List[Phenotype]:
        if self._phenotypes is None:
            frame = self.phenotype_frame()
            classes = self.phenotype_classes()
            if len(classes) != len(frame.columns):
                classes = [None] * len(frame.columns)
            phenotypes = []
            for name, r_class in zip(frame.columns, classes):
                phenotype = _phenotype_from_series(str(name), frame[name], r_class)
                if phenotype is not None:
                    phenotypes.append(phenotype)
            self._phenotypes = phenotypes
        return self._phenotypes

    def phenotype(self, name: str) -> Optional[Phenotype]:
        for phenotype in self.phenotypes():
            if phenotype.name == name:
                return phenotype
        return None

    def assumed_categorical_phenotype(self, assumed: AssumedCategoricalPhenotype) -> Optional[Phenotype]:
        for phenotype in self.phenotypes():
            if phenotype.name.lower() == assumed.column_header:
                return phenotype
        return None

    # genotypes

    def chromosome_names(self) -> List[str]:
        return self.r.names(self.accessor + GENO_COMPONENT)

    def chromosomes(self) -> List[CrossChromosome]:
        if self._chromosomes is None:
            self._chromosomes = [CrossChromosome(self, name) for name in self.chromosome_names()]
        return self._chromosomes

    def index_of_chromosome(self, name: str) -> int:
        for i, chromosome in enumerate(self.chromosomes()):
            if chromosome.name == name:
                return i
        return -1

    def chromosome(self, name: str) -> CrossChromosome:
        index = self.index_of_chromosome(name)
        if index < 0:
            raise ValueError(f"Chromosome '{name}' not found in cross {self.accessor}")
        return self.chromosomes()[index]

    def find_marker(self, marker_name: str) -> Optional[GeneticMarker]:
        for chromosome in self.chromosomes():
            genetic_map = chromosome.genetic_map().any_map
            index = genetic_map.index_of(marker_name)
            if index >= 0:
                return genetic_map.markers[index]
        return None

    def number_of_individuals(self) -> int:
        return int(as_scalar(self.r.evaluate(f"nind({self.accessor})")))

    def number_of_chromosomes(self) -> int:
        return int(as_scalar(self.r.evaluate(f"nchr({self.accessor})")))

    def number_of_phenotypes(self) -> int:
        return int(as_scalar(self.r.evaluate(f"nphe({self.accessor})")))

    def number_of_markers(self) -> List[int]:
        return [int(n) for n in as_list(self.r.evaluate(f"nmar({self.accessor})"))]

    def genotype_probability_method_used(self, method: GenotypeProbabilityMethod) -> bool:
        components = self.r.names(f"{self.accessor}{GENO_COMPONENT}[[1]]")
        return method.component in components

    def calculate_error_lods(self):
        self.r.insert_comment("calculating error LOD values")
        self.r.evaluate_no_return(r_assign(self.accessor, r_call("calc.errorlod", [(None, self.accessor)])))
        self.refresh()

    def error_lods_exist(self) -> bool:
        chromosomes = self.chromosomes()
        if not chromosomes:
            return False
        return chromosomes[0].error_lods_exist()

    # results owned by this cross

    def _owned_objects(self, r_class: str) -> List[str]:
        prefix = self.accessor + "."
        return [name for name in self.r.top_level_objects_of_class(r_class) if name.startswith(prefix)]

    def scanone_results(self) -> list:
        from jqtl.scan import ScanOneResult
        return [ScanOneResult(self.r, name, self) for name in self._owned_objects("scanone")]

    def scantwo_results(self) -> list:
        from jqtl.scan import ScanTwoResult
        return [ScanTwoResult(self.r, name, self) for name in self._owned_objects("scantwo")]

    def fitqtl_results(self) -> list:
        from jqtl.fit import FitQtlResult
        return [FitQtlResult(self.r, name, self) for name in self._owned_objects("fitqtl")]


class CrossSummary:
    """The output of R/qtl's summary(cross)."""

    TYPE_DESCRIPTIONS = {"bc": "Backcross", "f2": "F2 Intercross"}

    def __init__(self, cross_type: str, number_of_individuals: int,
                 markers_per_chromosome: Dict[str, int], missing_genotype_ratio: float,
                 genotype_ratios: Dict[str, float], missing_phenotype_ratios: Dict[str, float],
                 autosomes: List[str], x_chromosome: Optional[str]):
        self.cross_type = cross_type
        self.number_of_individuals = number_of_individuals
        self.markers_per_chromosome = markers_per_chromosome
        self.missing_genotype_ratio = missing_genotype_ratio
        self.genotype_ratios = genotype_ratios
        self.missing_phenotype_ratios = missing_phenotype_ratios
        self.autosomes = autosomes
        self.x_chromosome = x_chromosome

    @staticmethod
    def percent(ratio: float) -> str:
        return f"{ratio * 100:.1f}"

    @property
    def cross_type_description(self) -> str:
        return self.TYPE_DESCRIPTIONS.get(self.cross_type, "4-Way Cross")

    @classmethod
    def from_cross(cls, cross: Cross) -> "CrossSummary":
        command = f"summary({cross.accessor})"
        summary = cross.r.evaluate(command)
        parts = list(summary.values()) if isinstance(summary, dict) else list(summary)
        if len(parts) < 10:
            raise ValueError(f"Unexpected cross summary with {len(parts)} components")

        def named(index):
            names = [str(n) for n in as_list(cross.r.evaluate(f"names({command}[[{index + 1}]])"))]
            values = as_list(parts[index])
            return {name: value for name, value in zip(names, values)}

        x_chromosome = as_list(parts[9])
        return cls(
            cross_type=str(as_scalar(parts[0])),
            number_of_individuals=int(as_scalar(parts[1])),
            markers_per_chromosome={k: int(v) for k, v in named(4).items()},
            missing_genotype_ratio=float(as_scalar(parts[5])),
            genotype_ratios={k: float(v) for k, v in named(6).items()},
            missing_phenotype_ratios={k: float(v) for k, v in named(7).items()},
            autosomes=[str(c) for c in as_list(parts[8])],
            x_chromosome=str(x_chromosome[0]) if x_chromosome else None,
        )

    def to_frame(self) -> pd.DataFrame:
        rows = [
            ("Cross type", self.cross_type_description),
            ("Number of individuals", str(self.number_of_individuals)),
            ("Number of markers", str(sum(self.markers_per_chromosome.values()))),
            ("Percent genotyped", self.percent(1 - self.missing_genotype_ratio)),
        ]
        for genotype, ratio in self.genotype_ratios.items():
            rows.append((f"Genotype {genotype} (%)", self.percent(ratio)))
        for chromosome, count in self.markers_per_chromosome.items():
            rows.append((f"Markers on chromosome {chromosome}", str(count)))
        for phenotype, ratio in self.missing_phenotype_ratios.items():
            rows.append((f"Phenotype {phenotype} missing (%)", self.percent(ratio)))
        rows.append(("Autosomes", " ".join(self.autosomes)))
        rows.append(("X chromosome", self.x_chromosome or ""))
        return pd.DataFrame(rows, columns=["item", "value"])

    def describe(self) -> str:
        return "\n".join(f"{item}: {value}" for item, value in self.to_frame().itertuples(index=False))
