import numpy as np
import pandas as pd
import matplotlib as mpl
mpl.use('Agg')
import matplotlib.pyplot as plt
from matplotlib.collections import LineCollection

from jqtl.log import logger
from typing import List, Dict, Optional, Sequence


DEFAULT_LINE_COLORS = ["#1F77B4", "#D62728", "#2CA02C", "#9467BD", "#FF7F0E", "#8C564B"]
DEFAULT_CHR_COLORS = ["#B8B0C3", "#D0E2DF"]


def _is_x_chromosome(name) -> bool:
    return str(name).lower() == "x"


def _chromosome_offsets(frame: pd.DataFrame, chr_gap: float) -> Dict[str, float]:
    """Start of each chromosome when chromosomes are laid end to end, in order of appearance."""
    offsets = {}
    current = 0.0
    for chrom in dict.fromkeys(frame["chr"].astype(str)):
        positions = frame.loc[frame["chr"].astype(str) == chrom, "pos"]
        offsets[chrom] = current - positions.min()
        current += positions.max() - positions.min() + chr_gap
    return offsets


class Visualizer:
    def __init__(self):
        pass

    def plot_scanone(
            self,
            frame: pd.DataFrame,
            lod_columns: Optional[List[str]] = None,
            thresholds=None,
            intervals=None,
            chr_gap: float = 10,
            colors: Optional[List[str]] = None,
            xlabel=None, ylabel=None, title=None,
            ax=None):
        """
        Plot scanone LOD curves with chromosomes laid end to end.

        :param frame: scanone table with columns chr, pos and one column per LOD score
        :param lod_columns: LOD columns to draw, all columns after chr and pos by default
        :param thresholds: ScanOneThreshold list, one horizontal line each (autosome and X when separate)
        :param intervals: ScanOneInterval list, shaded on the curve
        :param chr_gap: gap between chromosomes in cM
        :param colors: line colors, cycled
        :param ax: Matplotlib Axes object for plotting
        """
        logger.info("Plotting scanone LOD curves...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")
        frame = frame.copy()
        frame["chr"] = frame["chr"].astype(str)
        if lod_columns is None:
            lod_columns = [c for c in frame.columns if c not in ("chr", "pos")]
        if colors is None:
            colors = DEFAULT_LINE_COLORS

        offsets = _chromosome_offsets(frame, chr_gap)
        centers = {}
        for chrom, group in frame.groupby("chr", sort=False):
            x = group["pos"].to_numpy(dtype=float) + offsets[chrom]
            centers[chrom] = (x.min() + x.max()) / 2
            for i, column in enumerate(lod_columns):
                ax.plot(x, group[column].to_numpy(dtype=float), color=colors[i % len(colors)],
                        linewidth=1.2, label=str(column) if chrom == next(iter(offsets)) else None)

        # alternate shading per chromosome
        for i, chrom in enumerate(offsets):
            positions = frame.loc[frame["chr"] == chrom, "pos"] + offsets[chrom]
            if i % 2 == 1:
                ax.axvspan(positions.min(), positions.max(), color=DEFAULT_CHR_COLORS[1], alpha=0.3, zorder=0)

        if thresholds:
            styles = ["--", ":", "-."]
            for i, threshold in enumerate(thresholds):
                style = styles[i % len(styles)]
                if threshold.x_separate:
                    for chrom in offsets:
                        positions = frame.loc[frame["chr"] == chrom, "pos"] + offsets[chrom]
                        lod = threshold.x_lod if _is_x_chromosome(chrom) else threshold.autosome_lod
                        ax.hlines(lod, positions.min(), positions.max(), colors="gray", linestyles=style, linewidth=1)
                    ax.plot([], [], color="gray", linestyle=style, label=f"alpha={threshold.alpha:g}")
                else:
                    ax.axhline(threshold.autosome_lod, color="gray", linestyle=style, linewidth=1,
                               label=f"alpha={threshold.alpha:g}")
        else:
            logger.info("No LOD threshold provided; skipping threshold line.")

        if intervals:
            for interval in intervals:
                chrom = str(interval.chromosome)
                if chrom not in offsets:
                    logger.warning(f"interval chromosome {chrom} is not in the scan, skipping it")
                    continue
                ax.axvspan(interval.left[0] + offsets[chrom], interval.right[0] + offsets[chrom],
                           color="#F2B134", alpha=0.35, zorder=0)
                ax.plot(interval.peak[0] + offsets[chrom], interval.peak[1], marker="v", color="black")

        ax.set_xticks(list(centers.values()), list(centers.keys()))
        ax.spines[['top', 'right']].set_visible(False)
        ax.set_xlabel(xlabel if xlabel is not None else "Chromosome")
        ax.set_ylabel(ylabel if ylabel is not None else "LOD score")
        ax.set_ylim(min(0, ax.get_ylim()[0]), ax.get_ylim()[1])
        ax.set_title(title if title is not None else "Scanone")
        ax.legend(loc="upper right", frameon=False)

    def plot_scantwo(
            self,
            upper_matrix: np.ndarray,
            lower_matrix: np.ndarray,
            map_frame: pd.DataFrame,
            upper_label: str = "Additive Model",
            lower_label: str = "Full Model",
            cmap=None,
            title=None,
            ax=None):
        """
        Plot a scantwo heat map with one LOD type in each triangle.

        :param upper_matrix: marker x marker values drawn above the diagonal
        :param lower_matrix: marker x marker values drawn below the diagonal
        :param map_frame: scantwo map (index marker names, column chr)
        :param upper_label: name of the upper triangle values
        :param lower_label: name of the lower triangle values
        :param cmap: Colormap
        :param ax: Matplotlib Axes object for plotting
        """
        logger.info("Plotting scantwo heat map...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")
        n = upper_matrix.shape[0]
        if n == 0:
            raise ValueError("scantwo LOD matrix is empty")
        combined = np.full((n, n), np.nan)
        upper = np.triu_indices(n, k=1)
        lower = np.tril_indices(n, k=-1)
        combined[upper] = upper_matrix[upper]
        combined[lower] = lower_matrix[lower]

        cmap = mpl.colormaps.get_cmap(cmap if cmap is not None else "viridis")
        image = ax.imshow(combined, origin="lower", cmap=cmap, interpolation="nearest")
        ax.figure.colorbar(image, ax=ax, shrink=0.8, label="LOD score")

        chromosomes = [str(c) for c in map_frame["chr"]]
        boundaries = [i for i in range(1, n) if chromosomes[i] != chromosomes[i - 1]]
        for b in boundaries:
            ax.axhline(b - 0.5, color="white", linewidth=0.6)
            ax.axvline(b - 0.5, color="white", linewidth=0.6)
        starts = [0] + boundaries
        ends = boundaries + [n]
        ticks = [(s + e - 1) / 2 for s, e in zip(starts, ends)]
        labels = [chromosomes[s] for s in starts]
        ax.set_xticks(ticks, labels)
        ax.set_yticks(ticks, labels)
        ax.set_xlabel(f"Chromosome (upper: {upper_label})")
        ax.set_ylabel(f"Chromosome (lower: {lower_label})")
        ax.set_title(title if title is not None else "Scantwo")

    def plot_effect(self, effects, phenotype_name: str = None, colors=None, title=None, ax=None):
        """
        Plot phenotype means (with standard error bars) per genotype.

        :param effects: EffectPlotData
        :param phenotype_name: y-axis label
        :param ax: Matplotlib Axes object for plotting
        """
        logger.info("Plotting effect plot...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")
        if colors is None:
            colors = DEFAULT_LINE_COLORS
        points = list(effects.means.index)
        x = np.arange(len(points))
        for i, line in enumerate(effects.means.columns):
            label = f"{effects.line_category}.{line}" if effects.line_category else None
            ax.errorbar(x, effects.means[line].to_numpy(dtype=float),
                        yerr=effects.standard_errors[line].to_numpy(dtype=float),
                        color=colors[i % len(colors)], marker="o", capsize=4, label=label)
        ax.set_xticks(x, points)
        ax.set_xlim(-0.5, len(points) - 0.5)
        ax.spines[['top', 'right']].set_visible(False)
        ax.set_xlabel(effects.main_category)
        ax.set_ylabel(phenotype_name if phenotype_name is not None else "Phenotype")
        ax.set_title(title if title is not None else "Effect Plot")
        if effects.line_category:
            ax.legend(loc="best", frameon=False)

    def plot_scatter(self, x, y, groups=None, xlabel=None, ylabel=None, point_size=12,
                     colors=None, jitter: float = 0.0, title=None, ax=None):
        """
        Scatter one phenotype against another phenotype or a genotype.

        :param x: x values (numbers, or genotype codes)
        :param y: y values
        :param groups: optional group label per point, one color per group
        :param jitter: uniform horizontal jitter, useful for genotype codes
        :param ax: Matplotlib Axes object for plotting
        """
        logger.info("Plotting scatter plot...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")
        data = pd.DataFrame({"x": np.asarray(x, dtype=float), "y": np.asarray(y, dtype=float)})
        data["group"] = list(groups) if groups is not None else "all"
        data = data.dropna(subset=["x", "y"])
        if jitter:
            rng = np.random.default_rng(0)
            data["x"] = data["x"] + rng.uniform(-jitter, jitter, len(data))
        if colors is None:
            colors = DEFAULT_LINE_COLORS
        for i, (group, part) in enumerate(data.groupby("group", sort=False, dropna=False)):
            ax.scatter(part["x"], part["y"], s=point_size, color=colors[i % len(colors)],
                       label=None if groups is None else str(group), alpha=0.8)
        ax.spines[['top', 'right']].set_visible(False)
        ax.set_xlabel(xlabel if xlabel is not None else "x")
        ax.set_ylabel(ylabel if ylabel is not None else "y")
        ax.set_title(title if title is not None else "Scatter Plot")
        if groups is not None:
            ax.legend(loc="best", frameon=False)

    def plot_genetic_map(self, maps, show_names: bool = False, title=None, ax=None):
        """
        Draw chromosomes as vertical bars with a tick per marker.

        :param maps: SexAwareGeneticMap list
        :param show_names: label the markers
        :param ax: Matplotlib Axes object for plotting
        """
        logger.info("Plotting genetic map...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")
        for i, genetic_map in enumerate(maps):
            positions = genetic_map.any_map.positions
            if len(positions) == 0:
                continue
            ax.vlines(i, positions.min(), positions.max(), color="#7F7F7F", linewidth=6, alpha=0.5)
            ax.hlines(positions, i - 0.2, i + 0.2, color="black", linewidth=1)
            if show_names:
                for marker in genetic_map.any_map:
                    ax.text(i + 0.25, marker.position_cm, marker.name, fontsize=5, va="center")
        ax.set_xticks(range(len(maps)), [str(m.chromosome) for m in maps])
        ax.invert_yaxis()
        ax.spines[['top', 'right']].set_visible(False)
        ax.set_xlabel("Chromosome")
        ax.set_ylabel("Location (cM)")
        ax.set_title(title if title is not None else "Genetic Map")

    def plot_compare_maps(self, old_maps, new_maps, title=None, ax=None):
        """
        Compare two genetic maps: each chromosome gets two bars, matching markers are joined.

        :param old_maps: SexAwareGeneticMap list (eg. the cross map)
        :param new_maps: SexAwareGeneticMap list (eg. the est.map estimate)
        :param ax: Matplotlib Axes object for plotting
        """
        logger.info("Plotting genetic map comparison...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")
        new_by_chr = {str(m.chromosome): m for m in new_maps}
        segments = []
        for i, old in enumerate(old_maps):
            new = new_by_chr.get(str(old.chromosome))
            if new is None:
                logger.warning(f"chromosome {old.chromosome} is missing from the new map")
                continue
            old_map, new_map = old.any_map, new.any_map
            for maps_x, genetic_map in ((i - 0.2, old_map), (i + 0.2, new_map)):
                positions = genetic_map.positions
                if len(positions):
                    ax.vlines(maps_x, positions.min(), positions.max(), color="#7F7F7F", linewidth=4, alpha=0.5)
            new_positions = {marker.name: marker.position_cm for marker in new_map}
            for marker in old_map:
                if marker.name in new_positions:
                    segments.append([(i - 0.2, marker.position_cm), (i + 0.2, new_positions[marker.name])])
        ax.add_collection(LineCollection(segments, colors="black", linewidths=0.6))
        ax.set_xticks(range(len(old_maps)), [str(m.chromosome) for m in old_maps])
        ax.set_xlim(-0.6, len(old_maps) - 0.4)
        ax.invert_yaxis()
        ax.spines[['top', 'right']].set_visible(False)
        ax.set_xlabel("Chromosome")
        ax.set_ylabel("Location (cM)")
        ax.set_title(title if title is not None else "Map Comparison")

    def plot_rf(self, rf_matrix: np.ndarray, chromosome_sizes: Sequence[int],
                chromosome_names: Sequence[str] = None, max_lod: float = 12, title=None, ax=None):
        """
        Plot recombination fractions (lower triangle) and LOD scores for linkage (upper triangle).

        :param rf_matrix: the cross$rf matrix, rf below the diagonal and LOD above it
        :param chromosome_sizes: markers per chromosome, in matrix order
        :param chromosome_names: chromosome labels
        :param max_lod: LOD values are capped at this value
        :param ax: Matplotlib Axes object for plotting
        """
        logger.info("Plotting recombination fractions...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")
        n = rf_matrix.shape[0]
        if n != rf_matrix.shape[1] or n != sum(chromosome_sizes):
            raise ValueError("recombination fraction matrix does not match the chromosome sizes")
        # put both halves on the same 0-1 scale, low rf / high LOD in the same color
        scaled = np.full((n, n), np.nan)
        upper = np.triu_indices(n, k=1)
        lower = np.tril_indices(n, k=-1)
        scaled[lower] = 1 - np.clip(rf_matrix[lower], 0, 0.5) * 2
        scaled[upper] = np.clip(rf_matrix[upper], 0, max_lod) / max_lod
        image = ax.imshow(scaled, origin="upper", cmap=mpl.colormaps.get_cmap("RdYlBu_r"),
                          vmin=0, vmax=1, interpolation="nearest")
        ax.figure.colorbar(image, ax=ax, shrink=0.8, label="linkage (lower: 1 - 2rf, upper: LOD / max)")

        bounds = np.cumsum(chromosome_sizes)
        for b in bounds[:-1]:
            ax.axhline(b - 0.5, color="white", linewidth=0.6)
            ax.axvline(b - 0.5, color="white", linewidth=0.6)
        starts = np.concatenate([[0], bounds[:-1]])
        ticks = (starts + bounds - 1) / 2
        if chromosome_names is None:
            chromosome_names = [str(i + 1) for i in range(len(chromosome_sizes))]
        ax.set_xticks(ticks, chromosome_names)
        ax.set_yticks(ticks, chromosome_names)
        ax.set_xlabel("Chromosome")
        ax.set_ylabel("Chromosome")
        ax.set_title(title if title is not None else "Recombination Fractions")

    def plot_geno(self, genotypes: pd.DataFrame, error_lods: Optional[pd.DataFrame] = None,
                  cutoff: float = 4.0, categories: Sequence[str] = None, title=None, ax=None):
        """
        Plot the genotype matrix of one chromosome, flagging likely genotyping errors.

        :param genotypes: individuals x markers genotype codes (NaN for missing)
        :param error_lods: individuals x markers error LOD scores, or None
        :param cutoff: error LODs above this value are flagged
        :param categories: genotype names, indexed by code
        :param ax: Matplotlib Axes object for plotting
        """
        logger.info("Plotting genotypes...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")
        values = genotypes.to_numpy(dtype=float)
        n_codes = int(np.nanmax(values)) + 1 if np.isfinite(values).any() else 1
        cmap = mpl.colormaps.get_cmap("tab10").resampled(max(n_codes, 1))
        cmap.set_bad("white")
        image = ax.imshow(np.ma.masked_invalid(values), aspect="auto", cmap=cmap,
                          vmin=-0.5, vmax=n_codes - 0.5, interpolation="nearest")
        colorbar = ax.figure.colorbar(image, ax=ax, ticks=range(n_codes))
        if categories is not None:
            colorbar.ax.set_yticklabels([categories[i] if i < len(categories) else str(i) for i in range(n_codes)])

        if error_lods is not None:
            rows, columns = np.nonzero(error_lods.to_numpy(dtype=float) > cutoff)
            if len(rows):
                ax.scatter(columns, rows, marker="s", s=12, facecolors="none", edgecolors="red",
                           label=f"error LOD > {cutoff:g}")
                ax.legend(loc="upper right", frameon=False)
            logger.info(f"{len(rows)} genotypes have an error LOD above {cutoff:g}")

        step = max(1, len(genotypes.columns) // 30)
        ax.set_xticks(range(0, len(genotypes.columns), step), list(genotypes.columns)[::step], rotation=90)
        ax.set_xlabel("Marker")
        ax.set_ylabel("Individual")
        ax.set_title(title if title is not None else "Genotypes")
