"""jqtl package

QTL mapping of experimental crosses, driving R/qtl in a child R process.

Core modules:
- jqtl.r: R session and value decoding
- jqtl.cross: crosses, chromosomes, genetic maps and phenotypes
- jqtl.commands: R/qtl command builders (read.cross, sim.cross, calc.genoprob, est.map, ...)
- jqtl.scan: scanone/scantwo commands, results, summaries and filters
- jqtl.fit: fitqtl models
- jqtl.basket: QTL baskets
- jqtl.project: project bundles (R workspace + metadata)
- jqtl.phe: phenotype statistics
- jqtl.viz: Visualization utilities
- jqtl.report: HTML report
- jqtl.config: user configuration
- jqtl.jqtl: CLI entry point (main)
"""

__all__ = [
    "r",
    "cross",
    "commands",
    "scan",
    "fit",
    "basket",
    "project",
    "phe",
    "viz",
    "report",
    "config",
    "jqtl",
]
