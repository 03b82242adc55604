"""Run diagnostics: every non-fatal failure and per-stage statistic ends up here."""

import json
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List

from asvsense.exceptions import AsvsenseError
from asvsense.types import ChimeraFlag, MergeRejection


@dataclass
class DiagnosticsReport:
    """Collects statistics and recoverable failures for a pipeline run."""
    denoise_stats: Dict[str, Dict[str, Dict[str, Any]]] = field(default_factory=lambda: defaultdict(dict))
    error_models: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    merge_stats: Dict[str, Dict[str, int]] = field(default_factory=dict)
    merge_rejections: List[MergeRejection] = field(default_factory=list)
    chimeras: List[ChimeraFlag] = field(default_factory=list)
    phylogeny: Dict[str, Any] = field(default_factory=dict)
    warnings: List[Dict[str, Any]] = field(default_factory=list)

    def record(self, error: AsvsenseError, component: str) -> None:
        """Log a recoverable failure and keep it for the report."""
        logging.warning(f"{component}: {error.message}")
        self.warnings.append({
            "component": component,
            "type": type(error).__name__,
            "message": error.message,
        })

    def add_denoise_stats(self, sample: str, orientation: str, stats: Dict[str, Any]) -> None:
        self.denoise_stats[sample][orientation] = dict(stats)

    def add_merge_rejections(self, rejections: List[MergeRejection]) -> None:
        self.merge_rejections.extend(rejections)

    def merge_failure_counts(self) -> Dict[str, Dict[str, int]]:
        """Count rejected pairs (and the reads they carried) per sample and reason."""
        counts: Dict[str, Counter] = defaultdict(Counter)
        for rejection in self.merge_rejections:
            counts[rejection.sample][rejection.reason] += 1
            counts[rejection.sample][f"{rejection.reason}_reads"] += rejection.abundance
        return {sample: dict(counter) for sample, counter in counts.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "denoise": {sample: dict(per_orientation) for sample, per_orientation in self.denoise_stats.items()},
            "error_models": self.error_models,
            "merge": self.merge_stats,
            "merge_failures": self.merge_failure_counts(),
            "chimeras": [
                {
                    "sequence": flag.sequence,
                    "abundance": flag.abundance,
                    "breakpoint": flag.breakpoint,
                    "left_parent": flag.left_parent,
                    "right_parent": flag.right_parent,
                    "left_abundance": flag.left_abundance,
                    "right_abundance": flag.right_abundance,
                    "mismatches": flag.mismatches,
                    "score": flag.score,
                }
                for flag in self.chimeras if flag.is_chimera
            ],
            "phylogeny": self.phylogeny,
            "warnings": self.warnings,
        }

    def write_json(self, path: str) -> None:
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2, default=float)
        logging.debug(f"Wrote diagnostics to {path}")
