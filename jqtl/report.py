import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from jinja2 import Environment, FileSystemLoader, select_autoescape

from jqtl.cross import Cross, CrossSummary
from jqtl.log import logger
from jqtl.phe import summarize_phenotypes
from jqtl.scan import ScanOneSummary, ScanTwoSummary


class QtlReport:
    def __init__(self):
        """
        Initialize the QtlReport class.
        """
        self.template_dir = Path(__file__).resolve().parent / "templates"
        self._env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape(["html", "xml"]),
            enable_async=False,
        )

    @staticmethod
    def _safe_float(value: Optional[float]) -> Optional[float]:
        if value is None or pd.isna(value):
            return None
        return float(value)

    @classmethod
    def _records(cls, frame: pd.DataFrame) -> List[Dict[str, Any]]:
        records = []
        for row in frame.to_dict("records"):
            records.append({
                key: cls._safe_float(value) if isinstance(value, (float, np.floating)) else value
                for key, value in row.items()
            })
        return records

    def _prepare_context(self, cross: Cross, summary: CrossSummary, phenotype_stats: pd.DataFrame,
                         scanone_frames: Dict[str, pd.DataFrame],
                         scantwo_frames: Dict[str, pd.DataFrame]) -> Dict[str, Any]:
        numeric = phenotype_stats[phenotype_stats["kind"] != "categorical"]
        categorical = phenotype_stats[phenotype_stats["kind"] == "categorical"]
        return {
            "generated_at": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
            "cross_name": cross.name,
            "summary": {
                "cross_type": summary.cross_type_description,
                "individuals": summary.number_of_individuals,
                "markers": int(sum(summary.markers_per_chromosome.values())),
                "chromosomes": len(summary.markers_per_chromosome),
                "percent_genotyped": summary.percent(1 - summary.missing_genotype_ratio),
            },
            "summary_rows": summary.to_frame().to_dict("records"),
            "numeric_phenotypes": self._records(
                numeric[["trait", "non_missing", "missing", "mean", "std", "min", "median", "max",
                         "skew", "kurtosis", "shapiro_p"]]),
            "categorical_phenotypes": self._records(
                categorical[["trait", "non_missing", "missing", "categories"]]),
            "scanone": [
                {"name": name, "columns": list(frame.columns), "rows": self._records(frame)}
                for name, frame in scanone_frames.items()
            ],
            "scantwo": [
                {"name": name, "columns": list(frame.columns), "rows": self._records(frame)}
                for name, frame in scantwo_frames.items()
            ],
        }

    def render(
        self,
        cross: Cross,
        scanone_summaries: Optional[Dict[str, ScanOneSummary]] = None,
        scantwo_summaries: Optional[Dict[str, ScanTwoSummary]] = None,
        out_dir: str = ".",
        out_name: str = "jqtl_report",
    ) -> str:
        """
        Write an HTML report for one cross and the tables it shows as CSV.

        :param cross: the cross
        :param scanone_summaries: scanone summaries keyed by result name
        :param scantwo_summaries: scantwo summaries keyed by result name
        :param out_dir: output directory
        :param out_name: output file name prefix
        :return: path of the HTML report
        """
        if not (self.template_dir / "report.html").exists():
            raise FileNotFoundError(
                f"Report template not found at {self.template_dir / 'report.html'}."
            )
        summary = CrossSummary.from_cross(cross)
        phenotype_stats = summarize_phenotypes(cross)
        scanone_frames = {name: s.to_frame() for name, s in (scanone_summaries or {}).items()}
        scantwo_frames = {name: s.to_frame() for name, s in (scantwo_summaries or {}).items()}
        context = self._prepare_context(cross, summary, phenotype_stats, scanone_frames, scantwo_frames)

        template = self._env.get_template("report.html")
        html_content = template.render(**context)

        os.makedirs(out_dir, exist_ok=True)
        summary.to_frame().to_csv(Path(out_dir) / f"{out_name}.cross_summary.csv", index=False)
        phenotype_stats.to_csv(Path(out_dir) / f"{out_name}.phenotypes.csv", index=False)
        for name, frame in scanone_frames.items():
            frame.to_csv(Path(out_dir) / f"{out_name}.{name}.summary.csv", index=False)
        for name, frame in scantwo_frames.items():
            frame.to_csv(Path(out_dir) / f"{out_name}.{name}.summary.csv", index=False)
        logger.info(f"Report tables saved to {out_dir}")

        output_path = Path(out_dir) / f"{out_name}.html"
        output_path.write_text(html_content, encoding="utf-8")
        logger.info(f"QTL report saved to {output_path}")
        return str(output_path.resolve())
