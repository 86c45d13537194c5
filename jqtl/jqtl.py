from jqtl.basket import MarkerPairQtlBasketItem, QtlBasket, SingleMarkerQtlBasketItem
from jqtl.commands import (
    CalcGenoprobCommandBuilder,
    CrossFileFormat,
    EffectPlotCommandBuilder,
    EstimateMapCommandBuilder,
    EstimateRfCommandBuilder,
    LoadCrossCommandBuilder,
    MapFunction,
    SimGenoCommandBuilder,
    SimulateCrossCommandBuilder,
    SimulateMapCommandBuilder,
    SimulatedQtl,
    StepWidth,
    run_command,
)
from jqtl.config import load_config
from jqtl.cross import Cross, CrossSubtype, CrossSummary, GeneticMarker, GeneticMarkerPair, SexAwareGeneticMap
from jqtl.fit import FitPredictor, FitQtlCommand
from jqtl.log import logger, set_verbose
from jqtl.phe import summarize_phenotypes
from jqtl.project import PROJECT_EXTENSION, QtlProject
from jqtl.r import RObject, RSession, r_assign, to_r_identifier
from jqtl.report import QtlReport
from jqtl.scan import (
    ConfidenceThresholdState,
    IntervalType,
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
from jqtl.viz import Visualizer

import argparse
import os
from typing import List, Optional, Tuple

import matplotlib.pyplot as plt
import pandas as pd


__version__ = "1.0.0"

DISTRIBUTIONS = {
    "normal": PhenotypeDistribution.NORMAL,
    "binary": PhenotypeDistribution.BINARY,
    "2part-up": PhenotypeDistribution.TWO_PART_SPIKES_UP,
    "2part-down": PhenotypeDistribution.TWO_PART_SPIKES_DOWN,
    "np": PhenotypeDistribution.OTHER,
}
SIGNIFICANCE_TYPES = {
    "full": ScanTwoSignificanceType.FULL_LOD,
    "add": ScanTwoSignificanceType.ADDITIVE_LOD,
    "int": ScanTwoSignificanceType.FULL_VERSUS_ADDITIVE_LOD,
    "fv1": ScanTwoSignificanceType.FULL_VERSUS_SCANONE_LOD,
    "av1": ScanTwoSignificanceType.ADDITIVE_VERSUS_SCANONE_LOD,
}
MODELS = {model.r_value: model for model in ModelToOptimize}
INTERVAL_TYPES = {"bayes": IntervalType.BAYESIAN_CREDIBLE, "lod": IntervalType.LOD_DROP}


# ------------------------
# Helpers
# ------------------------

def open_session(args) -> RSession:
    r_exec = getattr(args, "r_exec", None) or load_config().r_exec
    return RSession(r_exec).start()


def load_cross(args, r) -> Tuple[QtlProject, Cross]:
    """The project and cross named by --project/--cross_name, or a cross read from --cross."""
    if getattr(args, "project", None):
        project = QtlProject.load(r, args.project)
        if args.cross_name:
            return project, project.cross(args.cross_name)
        crosses = project.crosses()
        if len(crosses) != 1:
            raise ValueError(f"--cross_name is required, project has {len(crosses)} crosses: "
                             f"{[c.name for c in crosses]}")
        return project, crosses[0]

    if not getattr(args, "cross", None):
        raise ValueError("Either --cross or --project must be provided.")
    cross_name = to_r_identifier(args.cross_name or os.path.splitext(os.path.basename(args.cross))[0])
    builder = LoadCrossCommandBuilder(
        data_file=os.path.expanduser(args.cross),
        cross_name=cross_name,
        file_format=CrossFileFormat.from_r_string(args.format),
        genotypes=args.genotypes,
        na_strings=args.na_strings,
        convert_x_data=not args.no_convert_x,
    )
    message = builder.invalid_message()
    if message is not None:
        raise FileNotFoundError(message)
    logger.info(f"Loading cross data from {args.cross}...")
    run_command(r, builder.get_command(), f"loading cross data from {os.path.basename(args.cross)}")
    project = QtlProject(r, name=cross_name)
    return project, project.cross(cross_name)


def save_project(args, project: QtlProject) -> str:
    """Save to --save_project, else back to --project, else to <out_dir>/<out_name>.jqtl."""
    path = getattr(args, "save_project", None) or getattr(args, "project", None)
    if not path:
        path = os.path.join(args.out_dir, args.out_name + PROJECT_EXTENSION)
    return project.save(path)


def output_path(args, suffix: str) -> str:
    return os.path.join(args.out_dir, f"{args.out_name}.{suffix}")


def save_figure(args, fig):
    path = output_path(args, args.fig_format)
    plt.tight_layout()
    fig.savefig(path, dpi=300, bbox_inches="tight")
    plt.close(fig)
    logger.info(f"Figure saved to: {path}")


def phenotype_index(cross: Cross, name: Optional[str]) -> int:
    names = cross.phenotype_names()
    if name is None:
        for i, phenotype_name in enumerate(names):
            phenotype = cross.phenotype(phenotype_name)
            if phenotype is not None and not phenotype.is_categorical:
                return i
        raise ValueError(f"Cross {cross.name} has no numeric phenotype, use --pheno")
    if name not in names:
        raise ValueError(f"Phenotype '{name}' not found, available phenotypes: {names}")
    return names.index(name)


def parse_marker(cross: Cross, text: str) -> GeneticMarker:
    """A marker name, or a `chr@pos` location."""
    if "@" in text:
        chromosome, position = text.split("@", 1)
        cross.chromosome(chromosome)
        try:
            position_cm = float(position)
        except ValueError:
            raise ValueError(f"Invalid marker location '{text}', expected chr@pos")
        return GeneticMarker(f"{chromosome}@{position_cm:g}", chromosome, position_cm)
    marker = cross.find_marker(text)
    if marker is None:
        raise ValueError(f"Marker '{text}' not found in cross {cross.name}")
    return marker


def nearest_marker(cross: Cross, text: str) -> GeneticMarker:
    """Like parse_marker, but a `chr@pos` location resolves to the closest genotyped marker."""
    marker = parse_marker(cross, text)
    if "@" not in text:
        return marker
    closest = cross.chromosome(marker.chromosome).genetic_map().any_map.closest_marker(marker.position_cm)
    if closest is None:
        raise ValueError(f"Chromosome {marker.chromosome} has no markers")
    logger.info(f"Using marker {closest.name} closest to {text}")
    return closest


def find_scan(cross: Cross, name: Optional[str], cls):
    results = cross.scanone_results() if cls is ScanOneResult else cross.scantwo_results()
    if not results:
        raise ValueError(f"Cross {cross.name} has no {cls.r_class} results, run `jqtl scan` first")
    if name is None:
        return results[-1]
    for result in results:
        if result.accessor in (name, f"{cross.accessor}.{name}"):
            return result
    raise ValueError(f"{cls.r_class} result '{name}' not found, available: {[r.accessor for r in results]}")


def threshold_options(args) -> Tuple[ConfidenceThresholdState, Optional[float]]:
    if args.alpha is not None:
        return ConfidenceThresholdState.ALPHA_THRESHOLD, args.alpha
    if args.lod_threshold is not None:
        return ConfidenceThresholdState.LOD_SCORE_THRESHOLD, args.lod_threshold
    return ConfidenceThresholdState.NO_THRESHOLD, None


def scanone_summary(result: ScanOneResult, args, lod_column: Optional[str] = None):
    state, value = threshold_options(args)
    if state == ConfidenceThresholdState.ALPHA_THRESHOLD and not result.permutations_exist():
        logger.warning("--alpha needs permutations, summarizing without a threshold")
        state, value = ConfidenceThresholdState.NO_THRESHOLD, None
    return ScanOneSummaryBuilder(result, state, lod_column, value or 0.0).create_summary()


def scantwo_summary(result: ScanTwoResult, args):
    state, value = threshold_options(args)
    return ScanTwoSummaryBuilder(
        result, state, None if value is None else [value] * 5,
        model=MODELS[args.what], calculate_p_values=args.pvalues,
    ).create_summary()


def add_input_arguments(parser: argparse.ArgumentParser, out_name: str):
    group = parser.add_argument_group("input")
    group.add_argument("--cross", type=str, help="Path to cross data file (R/qtl csv or csvr format)")
    group.add_argument("--format", type=str, default="csv", choices=["csv", "csvr"], help="Cross file format (default: %(default)s)")
    group.add_argument("--genotypes", type=str, nargs="+", default=["A", "H", "B", "D", "C"], help="Genotype codes in the cross file (default: %(default)s)")
    group.add_argument("--na_strings", type=str, nargs="+", default=["-"], help="Missing value codes (default: %(default)s)")
    group.add_argument("--no_convert_x", action="store_true", help="Do not convert X chromosome genotype data")
    group.add_argument("--project", type=str, help="Path to a saved jqtl project")
    group.add_argument("--cross_name", type=str, help="Cross name (default: the file name, or the only cross of the project)")
    add_output_arguments(parser, out_name)


def add_output_arguments(parser: argparse.ArgumentParser, out_name: str):
    config = load_config()
    group = parser.add_argument_group("output")
    group.add_argument("--out_dir", type=str, default=config.out_dir, help="Output directory (default: %(default)s)")
    group.add_argument("--out_name", type=str, default=out_name, help="Output file name prefix (default: %(default)s)")
    group.add_argument("--save_project", type=str, help="Save the project here (default: back to --project, or <out_dir>/<out_name>.jqtl)")
    group.add_argument("--r_exec", type=str, default=config.r_exec, help="R executable (default: %(default)s)")
    group.add_argument("--verbose", action="store_true", help="Log every R command")


def add_figure_arguments(parser: argparse.ArgumentParser):
    config = load_config()
    parser.add_argument("--width", type=float, default=config.fig_width, help="Figure width (default: %(default)s)")
    parser.add_argument("--height", type=float, default=config.fig_height, help="Figure height (default: %(default)s)")
    parser.add_argument("--fig_format", type=str, default=config.fig_format, help="Output format, e.g., pdf or png (default: %(default)s)")
    parser.add_argument("--title", type=str, help="Figure title")


def add_threshold_arguments(parser: argparse.ArgumentParser):
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--alpha", type=float, help="Summary significance level (needs permutations)")
    group.add_argument("--lod_threshold", type=float, help="Summary LOD threshold")


# ------------------------
# Subcommands
# ------------------------

def run_summary(args):
    """Process summary subcommand."""
    logger.info("Starting summary subcommand...")
    with open_session(args) as r:
        _, cross = load_cross(args, r)
        summary = CrossSummary.from_cross(cross)
        for line in summary.describe().splitlines():
            logger.info(line)
        summary.to_frame().to_csv(output_path(args, "summary.csv"), index=False)
        logger.info(f"Cross summary saved to: {output_path(args, 'summary.csv')}")
        stats = summarize_phenotypes(cross)
        stats.to_csv(output_path(args, "phenotypes.tsv"), sep="\t", index=False)
        logger.info(f"Phenotype statistics saved to: {output_path(args, 'phenotypes.tsv')}")
    logger.info("Done!")


def parse_simulated_qtl(text: str) -> SimulatedQtl:
    parts = [p.strip() for p in text.split(",")]
    if not 3 <= len(parts) <= 5:
        raise ValueError(f"Invalid --qtl '{text}', expected chr,pos,effect1[,effect2[,effect3]]")
    values = [float(p) for p in parts[1:]]
    return SimulatedQtl(int(parts[0]), *values)


def run_simulate(args):
    """Process simulate subcommand."""
    logger.info("Starting simulate subcommand...")
    cross_name = to_r_identifier(args.cross_name)
    map_name = cross_name + ".simmap"
    map_builder = SimulateMapCommandBuilder(
        chromosome_lengths=args.lengths,
        markers_per_chromosome=args.n_mar,
        include_telomere_markers=args.anchor_tel,
        include_x_chromosome=not args.no_x,
        sex_specific=args.sex_specific,
        equal_spacing=args.eq_spacing,
    )
    cross_builder = SimulateCrossCommandBuilder(
        map_accessor=map_name,
        cross_name=cross_name,
        number_of_individuals=args.n_ind,
        cross_type=CrossSubtype.from_type_string(args.type),
        map_function=MapFunction.from_r_string(args.map_function),
        genotyping_error_rate=args.error_prob,
        missing_genotype_rate=args.missing_prob,
        partially_informative_rate=args.partial_missing_prob,
        interference_parameter=args.m,
        probability_of_no_interference=args.p,
        simulated_qtls=[parse_simulated_qtl(q) for q in args.qtl or []],
    )
    with open_session(args) as r:
        map_command = map_builder.get_command()
        run_command(r, None if map_command is None else r_assign(map_name, map_command),
                    "simulating a genetic map", map_builder.invalid_message())
        run_command(r, cross_builder.get_command(), f"simulating cross {cross_name}",
                    cross_builder.invalid_message())
        project = QtlProject(r, name=cross_name)
        cross = project.cross(cross_name)
        logger.info(f"Simulated {cross.number_of_individuals()} individuals "
                    f"on {cross.number_of_chromosomes()} chromosomes")
        save_project(args, project)
    logger.info("Done!")


def run_genoprob(args):
    """Process genoprob subcommand."""
    logger.info("Starting genoprob subcommand...")
    options = dict(
        step=args.step,
        off_end=args.off_end,
        error_prob=args.error_prob,
        map_function=MapFunction.from_r_string(args.map_function),
        step_width=StepWidth(args.stepwidth),
    )
    with open_session(args) as r:
        project, cross = load_cross(args, r)
        if args.method == "sim.geno":
            builder = SimGenoCommandBuilder(cross, n_draws=args.n_draws, **options)
        else:
            builder = CalcGenoprobCommandBuilder(cross, **options)
        logger.info(f"Running {builder.method.function_name} on {cross.name}...")
        builder.run(r)
        save_project(args, project)
    logger.info("Done!")


def run_scan(args):
    """Process scan subcommand."""
    logger.info("Starting scan subcommand...")
    scan_type = ScanType.SCANONE if args.type == "scanone" else ScanType.SCANTWO
    with open_session(args) as r:
        project, cross = load_cross(args, r)
        builder = ScanCommandBuilder(cross, scan_type)
        builder.chromosome_names = args.chr or cross.chromosome_names()
        if args.pheno:
            builder.phenotype_indices = [phenotype_index(cross, name) for name in args.pheno]
        else:
            builder.phenotype_indices = [phenotype_index(cross, None)]
        builder.phenotype_distribution = DISTRIBUTIONS[args.distribution]
        builder.scan_method = None if builder.phenotype_distribution == PhenotypeDistribution.OTHER \
            else ScanMethod.from_r_value(args.method)

        for covariate in args.addcovar or []:
            if covariate in cross.phenotype_names():
                builder.additive_phenotype_covariates.append(covariate)
            else:
                builder.additive_genotype_covariates.append(parse_marker(cross, covariate))
        for covariate in args.intcovar or []:
            if covariate in cross.phenotype_names():
                builder.interactive_phenotype_covariates.append(covariate)
            else:
                builder.interactive_genotype_covariates.append(parse_marker(cross, covariate))

        builder.use_missing_phenotypes = args.use_all_obs
        builder.convergence_tolerance = args.tol
        builder.maximum_iterations = args.maxit
        builder.number_of_permutations = args.n_perm
        builder.separate_x_permutations = args.perm_xsp
        builder.verbose_permutations = args.verbose_perm
        builder.use_all_markers = args.incl_markers
        builder.clean_output = args.clean_output
        name = args.name or f"{scan_type.r_method}.{'.'.join(cross.phenotype_names()[i] for i in builder.phenotype_indices)}"
        builder.scan_result_name = f"{cross.accessor}.{to_r_identifier(name)}"

        logger.info(f"Running {scan_type.r_method} ({builder.scan_result_name})...")
        result = builder.run(r)

        if isinstance(result, ScanOneResult):
            result.frame().to_csv(output_path(args, "scanone.csv"), index_label="marker")
            for lod_column in result.lod_column_names():
                table = scanone_summary(result, args, lod_column).to_frame()
                scan_filter = ScanResultFilter()
                if args.chr_max:
                    scan_filter.relative_state = MarkerRelativeConfidenceFilter.CHROMOSOME_MAXIMA_FILTER
                elif args.min_spacing is not None:
                    scan_filter.relative_state = MarkerRelativeConfidenceFilter.LOCAL_MAXIMA_WITH_MINIMUM_SPACING_FILTER
                    scan_filter.relative_value = args.min_spacing
                table = scan_filter.apply(table)
                path = output_path(args, f"{to_r_identifier(lod_column)}.summary.csv")
                table.to_csv(path, index=False)
                logger.info(f"{len(table)} loci in scanone summary, saved to: {path}")
            thresholds = result.calculate_thresholds(args.alphas) if args.n_perm else None
            for threshold in thresholds or []:
                logger.info(f"{threshold}")
        else:
            for i in range(len(builder.phenotype_indices)):
                table = result.significance_values(ScanTwoSignificanceType.FULL_LOD, i)
                table.to_csv(output_path(args, f"scantwo.{i + 1}.csv"), index=False)
            summary = scantwo_summary(result, args).to_frame()
            summary.to_csv(output_path(args, "summary.csv"), index=False)
            logger.info(f"{len(summary)} marker pairs in scantwo summary, saved to: {output_path(args, 'summary.csv')}")
        save_project(args, project)
    logger.info("Done!")


def run_interval(args):
    """Process interval subcommand."""
    logger.info("Starting interval subcommand...")
    with open_session(args) as r:
        _, cross = load_cross(args, r)
        result = find_scan(cross, args.scan, ScanOneResult)
        lod_index = 0 if args.lod_column is None else result.lod_column_index(args.lod_column)
        if lod_index < 0:
            raise ValueError(f"LOD column '{args.lod_column}' not found, available: {result.lod_column_names()}")
        chromosomes = args.chr
        if not chromosomes:
            peaks = result.maximum_lod_per_chromosome(args.lod_column)
            chromosomes = list(peaks["chr"]) if args.min_lod is None \
                else list(peaks.loc[peaks["lod"] >= args.min_lod, "chr"])
        builder = ScanOneIntervalCommandBuilder(
            result, lod_index, chromosomes, INTERVAL_TYPES[args.type], coverage=args.prob, drop=args.drop)
        message = builder.invalid_message()
        if message is not None:
            raise ValueError(message)
        intervals = builder.intervals(r)
        table = pd.DataFrame([interval.to_record() for interval in intervals])
        table.to_csv(output_path(args, "intervals.csv"), index=False)
        logger.info(f"{len(intervals)} intervals saved to: {output_path(args, 'intervals.csv')}")
    logger.info("Done!")


def parse_terms(cross: Cross, markers: List[GeneticMarker], terms: Optional[List[str]]) -> List[FitPredictor]:
    """`Q1*Q2`, `Q1*sex` or `sex` terms; every QTL as an additive term by default."""
    if not terms:
        return [FitPredictor(interacting_markers=[marker]) for marker in markers]
    predictors = []
    phenotype_names = cross.phenotype_names()
    for term in terms:
        term_markers, term_phenotypes = [], []
        for token in [t.strip() for t in term.split("*") if t.strip()]:
            if token[0] in "Qq" and token[1:].isdigit():
                index = int(token[1:]) - 1
                if not 0 <= index < len(markers):
                    raise ValueError(f"Term '{term}' refers to {token} but only {len(markers)} QTL were given")
                term_markers.append(markers[index])
            elif token in phenotype_names:
                term_phenotypes.append(token)
            else:
                raise ValueError(f"Unknown term '{token}' in '{term}', use Q<n> or a phenotype name")
        predictors.append(FitPredictor(term_phenotypes, term_markers))
    return predictors


def run_fit(args):
    """Process fit subcommand."""
    logger.info("Starting fit subcommand...")
    with open_session(args) as r:
        project, cross = load_cross(args, r)
        if args.basket:
            basket = cross.qtl_baskets.get(args.basket)
            if basket is None:
                raise ValueError(f"Basket '{args.basket}' not found in cross {cross.name}")
            predictors = basket.fit_predictors()
        else:
            if not args.qtl:
                raise ValueError("Either --qtl or --basket must be provided.")
            markers = [parse_marker(cross, q) for q in args.qtl]
            predictors = parse_terms(cross, markers, args.term)
        pheno = cross.phenotype_names()[phenotype_index(cross, args.pheno)]
        command = FitQtlCommand(cross, predictors, pheno, args.name or f"fit.{pheno}",
                                drop_one=not args.no_dropone, get_estimates=args.ests)
        logger.info(f"Fitting {command.formula()} for {pheno}...")
        result = command.run(r)
        if result is None:
            logger.error(f"Fit result name '{args.name}' is blank, the fit was run but not kept")
            return
        for label, table in (("full", result.full_results()), ("drop", result.drop_one_term_results())):
            if table is not None:
                table.to_frame().to_csv(output_path(args, f"fit.{label}.csv"))
                logger.info(f"fitqtl {label} table saved to: {output_path(args, f'fit.{label}.csv')}")
        estimates = result.estimates()
        if estimates is not None:
            estimates.to_csv(output_path(args, "fit.ests.csv"))
        save_project(args, project)
    logger.info("Done!")


def run_basket(args):
    """Process basket subcommand."""
    logger.info("Starting basket subcommand...")
    with open_session(args) as r:
        project, cross = load_cross(args, r)
        basket = cross.qtl_baskets.get(args.basket)
        if basket is None:
            basket = QtlBasket(cross, args.basket)
            cross.qtl_baskets[args.basket] = basket
            logger.info(f"Created basket {args.basket}")
        for text in args.add or []:
            names = text.split(":")
            if len(names) == 1:
                basket.add(SingleMarkerQtlBasketItem(parse_marker(cross, names[0]), args.comment))
            elif len(names) == 2:
                pair = GeneticMarkerPair(parse_marker(cross, names[0]), parse_marker(cross, names[1]))
                basket.add(MarkerPairQtlBasketItem(pair, args.comment))
            else:
                raise ValueError(f"Invalid basket item '{text}', expected MARKER or MARKER1:MARKER2")
        for index in sorted(args.remove or [], reverse=True):
            if not 0 <= index < len(basket):
                raise ValueError(f"No basket item at index {index}, basket has {len(basket)} items")
            basket.remove_at(index)
        table = basket.to_frame()
        table.to_csv(output_path(args, "basket.csv"), index_label="index")
        logger.info(f"Basket {basket.name} has {len(basket)} items, saved to: {output_path(args, 'basket.csv')}")
        save_project(args, project)
    logger.info("Done!")


def run_estmap(args):
    """Process estmap subcommand."""
    logger.info("Starting estmap subcommand...")
    with open_session(args) as r:
        project, cross = load_cross(args, r)
        builder = EstimateMapCommandBuilder(
            cross, MapFunction.from_r_string(args.map_function), m=args.m, p=args.p,
            maxit=args.maxit, tol=args.tol, sex_specific=not args.no_sex_sp,
        )
        logger.info("Estimating the genetic map, this may take a while...")
        run_command(r, builder.get_command(), f"estimating the genetic map of {cross.name}",
                    "Map estimation requires a cross")
        new_maps = SexAwareGeneticMap.extract_maps(RObject(r, builder.result_accessor))
        old_maps = [chromosome.genetic_map() for chromosome in cross.chromosomes()]
        fig = plt.figure(figsize=(args.width, args.height))
        Visualizer().plot_compare_maps(old_maps, new_maps, title=args.title, ax=fig.add_subplot(111))
        save_figure(args, fig)
        save_project(args, project)
    logger.info("Done!")


def run_export(args):
    """Process export subcommand."""
    logger.info("Starting export subcommand...")
    with open_session(args) as r:
        project = QtlProject.load(r, args.project)
        path = args.script or output_path(args, "R")
        project.export_r_script(path)
    logger.info("Done!")


def run_report(args):
    """Process report subcommand."""
    logger.info("Initializing QTL report generation...")
    with open_session(args) as r:
        _, cross = load_cross(args, r)
        scanone = {}
        for result in cross.scanone_results():
            for lod_column in result.lod_column_names():
                scanone[f"{result.accessor}.{lod_column}"] = scanone_summary(result, args, lod_column)
        scantwo = {result.accessor: scantwo_summary(result, args) for result in cross.scantwo_results()}
        output = QtlReport().render(cross, scanone, scantwo, out_dir=args.out_dir, out_name=args.out_name)
    logger.info(f"Report saved to {output}")
    logger.info("Done!")


# ------------------------
# Plots
# ------------------------

def plot_scanone(args):
    """Scanone LOD curves"""
    logger.info("Starting plot subcommand...")
    with open_session(args) as r:
        _, cross = load_cross(args, r)
        result = find_scan(cross, args.scan, ScanOneResult)
        frame = result.frame()
        lod_columns = list(frame.columns[ScanOneResult.COLUMNS_BEFORE_LOD:])
        if args.lod_columns:
            names = result.lod_column_names()
            lod_columns = [lod_columns[names.index(c)] for c in args.lod_columns if c in names]
            if not lod_columns:
                raise ValueError(f"None of --lod_columns found, available: {names}")
        thresholds = result.calculate_thresholds(args.alphas) if args.alphas else None
        intervals = None
        if args.interval:
            peaks = result.maximum_lod_per_chromosome()
            chromosomes = list(peaks.loc[peaks["lod"] >= (args.min_lod or 0), "chr"])
            intervals = ScanOneIntervalCommandBuilder(result, 0, chromosomes, INTERVAL_TYPES[args.interval]).intervals(r)
        fig = plt.figure(figsize=(args.width, args.height))
        Visualizer().plot_scanone(frame, lod_columns, thresholds, intervals, chr_gap=args.chr_gap,
                                  title=args.title, ax=fig.add_subplot(111))
        save_figure(args, fig)
    logger.info("Plotting completed!")


def plot_scantwo(args):
    """Scantwo heat map"""
    logger.info("Starting plot subcommand...")
    with open_session(args) as r:
        _, cross = load_cross(args, r)
        result = find_scan(cross, args.scan, ScanTwoResult)
        upper_type, lower_type = SIGNIFICANCE_TYPES[args.upper], SIGNIFICANCE_TYPES[args.lower]
        index = args.pheno_index - 1
        fig = plt.figure(figsize=(args.width, args.height))
        Visualizer().plot_scantwo(
            result.significance_matrix(upper_type, index), result.significance_matrix(lower_type, index),
            result.map_frame(), upper_label=str(upper_type), lower_label=str(lower_type),
            title=args.title, ax=fig.add_subplot(111))
        save_figure(args, fig)
    logger.info("Plotting completed!")


def plot_effect(args):
    """Effect plot"""
    logger.info("Starting plot subcommand...")
    with open_session(args) as r:
        _, cross = load_cross(args, r)
        index = phenotype_index(cross, args.pheno)
        builder = EffectPlotCommandBuilder(cross, index, args.marker1, args.marker2)
        effects = builder.extract_effects(r)
        if effects is None:
            raise ValueError("Could not read the effect plot data from R")
        effects.means.to_csv(output_path(args, "means.csv"))
        effects.standard_errors.to_csv(output_path(args, "se.csv"))
        fig = plt.figure(figsize=(args.width, args.height))
        Visualizer().plot_effect(effects, phenotype_name=cross.phenotype_names()[index],
                                 title=args.title, ax=fig.add_subplot(111))
        save_figure(args, fig)
    logger.info("Plotting completed!")


def plot_scatter(args):
    """Phenotype scatter plot"""
    logger.info("Starting plot subcommand...")
    with open_session(args) as r:
        _, cross = load_cross(args, r)
        y_name = cross.phenotype_names()[phenotype_index(cross, args.y)]
        y = cross.phenotype(y_name).values
        if args.marker:
            marker = nearest_marker(cross, args.marker)
            genotypes = cross.chromosome(marker.chromosome).genotypes()
            x, x_label, jitter = genotypes[marker.name].to_numpy(), f"{marker.name} genotype", 0.15
        else:
            if args.x is None:
                raise ValueError("Either --x or --marker must be provided.")
            phenotype = cross.phenotype(args.x)
            if phenotype is None:
                raise ValueError(f"Phenotype '{args.x}' not found")
            x, x_label, jitter = phenotype.values, args.x, 0.0
        groups = None
        if args.group:
            group = cross.phenotype(args.group)
            if group is None:
                raise ValueError(f"Phenotype '{args.group}' not found")
            groups = group.labels()
        x = [float("nan") if v is None else v for v in x]
        y = [float("nan") if v is None else v for v in y]
        fig = plt.figure(figsize=(args.width, args.height))
        Visualizer().plot_scatter(x, y, groups, xlabel=x_label, ylabel=y_name, jitter=jitter,
                                  title=args.title, ax=fig.add_subplot(111))
        save_figure(args, fig)
    logger.info("Plotting completed!")


def plot_map(args):
    """Genetic map"""
    logger.info("Starting plot subcommand...")
    with open_session(args) as r:
        _, cross = load_cross(args, r)
        maps = [chromosome.genetic_map() for chromosome in cross.chromosomes()]
        fig = plt.figure(figsize=(args.width, args.height))
        ax = fig.add_subplot(111)
        if args.compare:
            new_maps = SexAwareGeneticMap.extract_maps(RObject(r, args.compare))
            Visualizer().plot_compare_maps(maps, new_maps, title=args.title, ax=ax)
        else:
            Visualizer().plot_genetic_map(maps, show_names=args.show_names, title=args.title, ax=ax)
        save_figure(args, fig)
    logger.info("Plotting completed!")


def plot_rf(args):
    """Recombination fractions"""
    logger.info("Starting plot subcommand...")
    with open_session(args) as r:
        _, cross = load_cross(args, r)
        rf = EstimateRfCommandBuilder.recombination_fractions(cross)
        if rf is None:
            builder = EstimateRfCommandBuilder(cross)
            logger.info("Estimating pairwise recombination fractions...")
            run_command(r, builder.get_command(), f"estimating recombination fractions of {cross.name}")
            rf = EstimateRfCommandBuilder.recombination_fractions(cross)
        fig = plt.figure(figsize=(args.width, args.height))
        Visualizer().plot_rf(rf, cross.number_of_markers(), cross.chromosome_names(), max_lod=args.max_lod,
                             title=args.title, ax=fig.add_subplot(111))
        save_figure(args, fig)
    logger.info("Plotting completed!")


def plot_geno(args):
    """Genotype matrix"""
    logger.info("Starting plot subcommand...")
    with open_session(args) as r:
        _, cross = load_cross(args, r)
        chromosome = cross.chromosome(args.chr)
        error_lods = None
        if args.error_lods:
            if not chromosome.error_lods_exist():
                cross.calculate_error_lods()
                chromosome = cross.chromosome(args.chr)
            error_lods = chromosome.error_lods()
        fig = plt.figure(figsize=(args.width, args.height))
        Visualizer().plot_geno(chromosome.genotypes(), error_lods, cutoff=args.cutoff,
                               categories=cross.subtype.genotype_categories,
                               title=args.title or f"Chromosome {args.chr}", ax=fig.add_subplot(111))
        save_figure(args, fig)
    logger.info("Plotting completed!")


def main():
    description = """
    jqtl: QTL mapping of experimental crosses with R/qtl, from the command line.
    """

    epilog = """
    Example usage:
    jqtl genoprob --cross hyper.csv --step 2 --out_name hyper
    jqtl scan --project hyper.jqtl --pheno bp --n_perm 1000 --alpha 0.05 --out_name bp
    jqtl plot scanone --project hyper.jqtl --alphas 0.05 0.1 --out_name bp
    """

    parser = argparse.ArgumentParser(
        description=description,
        epilog=epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter  # Preserve formatting
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # summary subcommand
    summary_parser = subparsers.add_parser("summary", help="Summarize a cross and its phenotypes")
    add_input_arguments(summary_parser, "cross")
    summary_parser.set_defaults(func=run_summary)

    # simulate subcommand
    simulate_parser = subparsers.add_parser("simulate", help="Simulate a genetic map and a cross")
    simulate_parser.add_argument("--cross_name", type=str, default="sim.cross", help="Name of the simulated cross (default: %(default)s)")
    simulate_parser.add_argument("--lengths", type=float, nargs="+", default=[100.0] * 5, help="Chromosome lengths in cM (default: %(default)s)")
    simulate_parser.add_argument("--n_mar", type=int, default=10, help="Markers per chromosome (default: %(default)s)")
    simulate_parser.add_argument("--anchor_tel", action="store_true", help="Put markers at the telomeres")
    simulate_parser.add_argument("--no_x", action="store_true", help="Do not simulate an X chromosome")
    simulate_parser.add_argument("--sex_specific", action="store_true", help="Simulate sex specific maps")
    simulate_parser.add_argument("--eq_spacing", action="store_true", help="Equally spaced markers")
    simulate_parser.add_argument("--n_ind", type=int, default=100, help="Number of individuals (default: %(default)s)")
    simulate_parser.add_argument("--type", type=str, default="f2", choices=["f2", "bc", "4way"], help="Cross type (default: %(default)s)")
    simulate_parser.add_argument("--map_function", type=str, default="haldane", choices=[m.r_string_value for m in MapFunction], help="Map function (default: %(default)s)")
    simulate_parser.add_argument("--error_prob", type=float, default=0.0, help="Genotyping error rate (default: %(default)s)")
    simulate_parser.add_argument("--missing_prob", type=float, default=0.0, help="Missing genotype rate (default: %(default)s)")
    simulate_parser.add_argument("--partial_missing_prob", type=float, default=0.0, help="Partially informative genotype rate (default: %(default)s)")
    simulate_parser.add_argument("--m", type=float, default=0.0, help="Interference parameter (default: %(default)s)")
    simulate_parser.add_argument("--p", type=float, default=0.0, help="Probability of no interference (default: %(default)s)")
    simulate_parser.add_argument("--qtl", type=str, nargs="+", help="QTL as chr,pos,effect1[,effect2[,effect3]]")
    add_output_arguments(simulate_parser, "simulated")
    simulate_parser.set_defaults(func=run_simulate)

    # genoprob subcommand
    genoprob_parser = subparsers.add_parser("genoprob", help="Calculate genotype probabilities (calc.genoprob / sim.geno)")
    add_input_arguments(genoprob_parser, "genoprob")
    genoprob_parser.add_argument("--method", type=str, default="calc.genoprob", choices=["calc.genoprob", "sim.geno"], help="Method (default: %(default)s)")
    genoprob_parser.add_argument("--step", type=float, default=2.0, help="Step size in cM (default: %(default)s)")
    genoprob_parser.add_argument("--off_end", type=float, default=0.0, help="Distance past the terminal markers in cM (default: %(default)s)")
    genoprob_parser.add_argument("--error_prob", type=float, default=0.0001, help="Genotyping error rate (default: %(default)s)")
    genoprob_parser.add_argument("--map_function", type=str, default="haldane", choices=[m.r_string_value for m in MapFunction], help="Map function (default: %(default)s)")
    genoprob_parser.add_argument("--stepwidth", type=str, default="fixed", choices=[s.value for s in StepWidth], help="Step width (default: %(default)s)")
    genoprob_parser.add_argument("--n_draws", type=int, default=16, help="Number of imputations for sim.geno (default: %(default)s)")
    genoprob_parser.set_defaults(func=run_genoprob)

    # scan subcommand
    scan_parser = subparsers.add_parser("scan", help="One or two QTL genome scan")
    add_input_arguments(scan_parser, "scan")
    scan_parser.add_argument("--type", type=str, default="scanone", choices=["scanone", "scantwo"], help="Scan type (default: %(default)s)")
    scan_parser.add_argument("--pheno", type=str, nargs="+", help="Phenotypes to scan (default: the first numeric phenotype)")
    scan_parser.add_argument("--chr", type=str, nargs="+", help="Chromosomes to scan (default: all)")
    scan_parser.add_argument("--model", dest="distribution", type=str, default="normal", choices=list(DISTRIBUTIONS), help="Phenotype distribution (default: %(default)s)")
    scan_parser.add_argument("--method", type=str, default="em", choices=[m.r_value for m in ScanMethod], help="Scan method (default: %(default)s)")
    scan_parser.add_argument("--addcovar", type=str, nargs="+", help="Additive covariates: phenotype names, markers or chr@pos")
    scan_parser.add_argument("--intcovar", type=str, nargs="+", help="Interactive covariates: phenotype names, markers or chr@pos")
    scan_parser.add_argument("--use_all_obs", action="store_true", help="Keep individuals with missing phenotypes when scanning several phenotypes")
    scan_parser.add_argument("--maxit", type=int, help="Maximum EM iterations")
    scan_parser.add_argument("--tol", type=float, help="EM convergence tolerance")
    scan_parser.add_argument("--n_perm", type=int, help="Number of permutations")
    scan_parser.add_argument("--perm_xsp", action="store_true", help="Separate permutations for the X chromosome (scanone)")
    scan_parser.add_argument("--verbose_perm", action="store_true", help="Let R report permutation progress")
    scan_parser.add_argument("--incl_markers", action="store_true", help="Include marker positions (scantwo)")
    scan_parser.add_argument("--clean_output", action="store_true", help="Clean the output (scantwo)")
    scan_parser.add_argument("--name", type=str, help="Result name, prefixed with the cross name (default: <type>.<phenotypes>)")
    scan_parser.add_argument("--alphas", type=float, nargs="+", default=[0.63, 0.1, 0.05], help="Significance levels for the LOD thresholds (default: %(default)s)")
    add_threshold_arguments(scan_parser)
    scan_parser.add_argument("--chr_max", action="store_true", help="Keep only the chromosome maxima in the summary")
    scan_parser.add_argument("--min_spacing", type=float, help="Keep local maxima at least this far apart (cM) in the summary")
    scan_parser.add_argument("--what", type=str, default="best", choices=list(MODELS), help="scantwo summary model (default: %(default)s)")
    scan_parser.add_argument("--pvalues", action="store_true", help="Calculate scantwo summary p-values (needs permutations)")
    scan_parser.set_defaults(func=run_scan)

    # interval subcommand
    interval_parser = subparsers.add_parser("interval", help="Bayesian credible or LOD drop intervals")
    add_input_arguments(interval_parser, "intervals")
    interval_parser.add_argument("--scan", type=str, help="scanone result name (default: the latest)")
    interval_parser.add_argument("--lod_column", type=str, help="LOD column (default: the first)")
    interval_parser.add_argument("--chr", type=str, nargs="+", help="Chromosomes (default: all)")
    interval_parser.add_argument("--min_lod", type=float, help="Only chromosomes whose peak reaches this LOD")
    interval_parser.add_argument("--type", type=str, default="bayes", choices=list(INTERVAL_TYPES), help="Interval type (default: %(default)s)")
    interval_parser.add_argument("--prob", type=float, default=0.95, help="Bayesian coverage probability (default: %(default)s)")
    interval_parser.add_argument("--drop", type=float, default=1.5, help="LOD drop (default: %(default)s)")
    interval_parser.set_defaults(func=run_interval)

    # fit subcommand
    fit_parser = subparsers.add_parser("fit", help="Fit a multiple QTL model")
    add_input_arguments(fit_parser, "fit")
    fit_parser.add_argument("--pheno", type=str, help="Phenotype (default: the first numeric phenotype)")
    fit_parser.add_argument("--qtl", type=str, nargs="+", help="QTL markers or chr@pos locations, referenced as Q1..Qn")
    fit_parser.add_argument("--term", type=str, nargs="+", help="Model terms, e.g. Q1 Q2 Q1*Q2 Q1*sex (default: Q1+...+Qn)")
    fit_parser.add_argument("--basket", type=str, help="Fit the items of a QTL basket instead of --qtl/--term")
    fit_parser.add_argument("--name", type=str, help="Result name, prefixed with the cross name (default: fit.<phenotype>)")
    fit_parser.add_argument("--no_dropone", action="store_true", help="Skip the drop-one-term analysis")
    fit_parser.add_argument("--ests", action="store_true", help="Estimate QTL effects")
    fit_parser.set_defaults(func=run_fit)

    # basket subcommand
    basket_parser = subparsers.add_parser("basket", help="Add, remove and list QTL basket items")
    add_input_arguments(basket_parser, "basket")
    basket_parser.add_argument("--basket", type=str, default="basket", help="Basket name (default: %(default)s)")
    basket_parser.add_argument("--add", type=str, nargs="+", help="Items to add: MARKER or MARKER1:MARKER2")
    basket_parser.add_argument("--comment", type=str, default="", help="Comment for the added items")
    basket_parser.add_argument("--remove", type=int, nargs="+", help="0 based indices of the items to remove")
    basket_parser.set_defaults(func=run_basket)

    # estmap subcommand
    estmap_parser = subparsers.add_parser("estmap", help="Re-estimate the genetic map and compare it with the current one")
    add_input_arguments(estmap_parser, "estmap")
    add_figure_arguments(estmap_parser)
    estmap_parser.add_argument("--map_function", type=str, default="haldane", choices=[m.r_string_value for m in MapFunction], help="Map function (default: %(default)s)")
    estmap_parser.add_argument("--m", type=float, default=0.0, help="Interference parameter (default: %(default)s)")
    estmap_parser.add_argument("--p", type=float, default=0.0, help="Probability of no interference (default: %(default)s)")
    estmap_parser.add_argument("--maxit", type=int, default=4000, help="Maximum iterations (default: %(default)s)")
    estmap_parser.add_argument("--tol", type=float, default=1e-4, help="Convergence tolerance (default: %(default)s)")
    estmap_parser.add_argument("--no_sex_sp", action="store_true", help="Estimate a sex averaged map")
    estmap_parser.set_defaults(func=run_estmap)

    # export subcommand
    export_parser = subparsers.add_parser("export", help="Export the R commands of a project as an R script")
    export_parser.add_argument("--project", type=str, required=True, help="Path to a saved jqtl project")
    export_parser.add_argument("--script", type=str, help="R script path (default: <out_dir>/<out_name>.R)")
    add_output_arguments(export_parser, "jqtl")
    export_parser.set_defaults(func=run_export)

    # report subcommand
    report_parser = subparsers.add_parser("report", help="Generate an HTML summary of a cross and its scans")
    add_input_arguments(report_parser, "jqtl_report")
    add_threshold_arguments(report_parser)
    report_parser.add_argument("--what", type=str, default="best", choices=list(MODELS), help="scantwo summary model (default: %(default)s)")
    report_parser.add_argument("--pvalues", action="store_true", help="Calculate scantwo summary p-values (needs permutations)")
    report_parser.set_defaults(func=run_report)

    # plot subcommand
    plot_parser = subparsers.add_parser("plot", help="Visualize crosses and scan results")
    plot_subparsers = plot_parser.add_subparsers(dest="plot_type", help="Plot types")

    scanone_parser = plot_subparsers.add_parser("scanone", help="Plot scanone LOD curves")
    add_input_arguments(scanone_parser, "scanone")
    add_figure_arguments(scanone_parser)
    scanone_parser.add_argument("--scan", type=str, help="scanone result name (default: the latest)")
    scanone_parser.add_argument("--lod_columns", type=str, nargs="+", help="LOD columns to draw (default: all)")
    scanone_parser.add_argument("--alphas", type=float, nargs="+", help="Draw permutation thresholds at these significance levels")
    scanone_parser.add_argument("--interval", type=str, choices=list(INTERVAL_TYPES), help="Shade intervals of this type")
    scanone_parser.add_argument("--min_lod", type=float, help="Shade intervals only on chromosomes reaching this LOD")
    scanone_parser.add_argument("--chr_gap", type=float, default=10, help="Gap between chromosomes in cM (default: %(default)s)")
    scanone_parser.set_defaults(plot_func=plot_scanone)

    scantwo_parser = plot_subparsers.add_parser("scantwo", help="Plot a scantwo heat map")
    add_input_arguments(scantwo_parser, "scantwo")
    add_figure_arguments(scantwo_parser)
    scantwo_parser.add_argument("--scan", type=str, help="scantwo result name (default: the latest)")
    scantwo_parser.add_argument("--upper", type=str, default="fv1", choices=list(SIGNIFICANCE_TYPES), help="Upper triangle LOD (default: %(default)s)")
    scantwo_parser.add_argument("--lower", type=str, default="int", choices=list(SIGNIFICANCE_TYPES), help="Lower triangle LOD (default: %(default)s)")
    scantwo_parser.add_argument("--pheno_index", type=int, default=1, help="1 based index of the scanned phenotype (default: %(default)s)")
    scantwo_parser.set_defaults(plot_func=plot_scantwo)

    effect_parser = plot_subparsers.add_parser("effect", help="Plot phenotype means per genotype")
    add_input_arguments(effect_parser, "effect")
    add_figure_arguments(effect_parser)
    effect_parser.add_argument("--pheno", type=str, help="Phenotype (default: the first numeric phenotype)")
    effect_parser.add_argument("--marker1", type=str, required=True, help="Marker on the x axis")
    effect_parser.add_argument("--marker2", type=str, help="Second marker, one line per genotype")
    effect_parser.set_defaults(plot_func=plot_effect)

    scatter_parser = plot_subparsers.add_parser("scatter", help="Plot a phenotype against a phenotype or a genotype")
    add_input_arguments(scatter_parser, "scatter")
    add_figure_arguments(scatter_parser)
    scatter_parser.add_argument("--y", type=str, help="Phenotype on the y axis (default: the first numeric phenotype)")
    scatter_group = scatter_parser.add_mutually_exclusive_group()
    scatter_group.add_argument("--x", type=str, help="Phenotype on the x axis")
    scatter_group.add_argument("--marker", type=str, help="Marker whose genotype is on the x axis")
    scatter_parser.add_argument("--group", type=str, help="Categorical phenotype used to color the points")
    scatter_parser.set_defaults(plot_func=plot_scatter)

    map_parser = plot_subparsers.add_parser("map", help="Plot the genetic map")
    add_input_arguments(map_parser, "map")
    add_figure_arguments(map_parser)
    map_parser.add_argument("--show_names", action="store_true", help="Label the markers")
    map_parser.add_argument("--compare", type=str, help="R map object to compare with, e.g. <cross>.newmap")
    map_parser.set_defaults(plot_func=plot_map)

    rf_parser = plot_subparsers.add_parser("rf", help="Plot pairwise recombination fractions and LOD scores")
    add_input_arguments(rf_parser, "rf")
    add_figure_arguments(rf_parser)
    rf_parser.add_argument("--max_lod", type=float, default=12, help="LOD scores are capped at this value (default: %(default)s)")
    rf_parser.set_defaults(plot_func=plot_rf)

    geno_parser = plot_subparsers.add_parser("geno", help="Plot the genotypes of one chromosome")
    add_input_arguments(geno_parser, "geno")
    add_figure_arguments(geno_parser)
    geno_parser.add_argument("--chr", type=str, required=True, help="Chromosome")
    geno_parser.add_argument("--error_lods", action="store_true", help="Flag likely genotyping errors")
    geno_parser.add_argument("--cutoff", type=float, default=4.0, help="Error LOD cutoff (default: %(default)s)")
    geno_parser.set_defaults(plot_func=plot_geno)

    # Parse arguments and execute the corresponding subcommand
    args = parser.parse_args()
    if args.command:
        if getattr(args, "verbose", False):
            set_verbose(True)
        # Create output directory if it doesn't exist
        if hasattr(args, "out_dir"):
            os.makedirs(args.out_dir, exist_ok=True)
        try:
            if hasattr(args, 'plot_func'):
                args.plot_func(args)
            elif hasattr(args, 'func'):
                args.func(args)
            else:
                plot_parser.print_help()
        except Exception as e:
            logger.error(f"{args.command} failed: {e}")
            raise
    else:
        parser.print_help()

if __name__ == "__main__":
    main()
