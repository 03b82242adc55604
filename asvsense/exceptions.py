"""Failure taxonomy for asvsense.

Run-level failures (no samples, empty reference database, too few sequences
for a tree) are fatal and raised immediately. Per-sample, per-pair and
iterative-fit failures are recoverable: callers record them in the
diagnostics report and carry on.
"""

from typing import Optional


class AsvsenseError(Exception):
    """Base exception for asvsense errors."""

    fatal = True

    def __init__(self, message: str, suggestion: Optional[str] = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(self.full_message)

    @property
    def full_message(self) -> str:
        if self.suggestion:
            return f"{self.message}\n\nSuggestion: {self.suggestion}"
        return self.message


class NonConvergence(AsvsenseError):
    """An iterative fit hit its round cap before stabilizing.

    The last estimate is still usable and is attached as ``estimate``.
    """

    fatal = False

    def __init__(self, component: str, rounds: int, delta: float, estimate=None):
        super().__init__(
            message=f"{component} did not converge after {rounds} rounds (last change {delta:.3g})",
            suggestion="Increase the round cap or loosen the convergence tolerance."
        )
        self.component = component
        self.rounds = rounds
        self.delta = delta
        self.estimate = estimate


class OptimizationStalled(NonConvergence):
    """Maximum-likelihood tree refinement did not converge; last tree retained."""

    def __init__(self, rounds: int, delta: float, estimate=None):
        super().__init__("Phylogeny refinement", rounds, delta, estimate)


class MergeFailure(AsvsenseError):
    """Base class for per-pair merge failures."""

    fatal = False
    reason = "MergeFailure"


class InsufficientOverlap(MergeFailure):
    """Forward and reverse ASVs overlap by fewer bases than required."""

    reason = "InsufficientOverlap"

    def __init__(self, overlap: int, min_overlap: int):
        super().__init__(
            message=f"Overlap of {overlap}bp is below the minimum of {min_overlap}bp",
            suggestion="Check amplicon length against read length, or lower min_overlap."
        )
        self.overlap = overlap
        self.min_overlap = min_overlap


class TooManyMismatches(MergeFailure):
    """The best overlap disagrees at too many positions."""

    reason = "TooManyMismatches"

    def __init__(self, mismatches: int, overlap: int, max_rate: float):
        super().__init__(
            message=(f"{mismatches} mismatches in {overlap}bp overlap exceeds "
                     f"the maximum rate of {max_rate:.3f}"),
            suggestion="Inspect read quality near the 3' ends, or raise max_mismatch_rate."
        )
        self.mismatches = mismatches
        self.overlap = overlap
        self.max_rate = max_rate


class EmptyPartition(AsvsenseError):
    """A sample had no usable reads and produced no ASVs."""

    fatal = False

    def __init__(self, sample: str, orientation: str):
        super().__init__(message=f"Sample '{sample}' ({orientation}) has no usable reads")
        self.sample = sample
        self.orientation = orientation


class AlignmentFailure(AsvsenseError):
    """Too few sequences remain to align or build a tree."""

    def __init__(self, n_sequences: int):
        super().__init__(
            message=f"Phylogeny needs at least 2 sequences, got {n_sequences}",
            suggestion="Skip tree building for this dataset, or relax upstream filtering."
        )
        self.n_sequences = n_sequences


class NoSamplesError(AsvsenseError):
    """The run received no samples with reads."""

    def __init__(self):
        super().__init__(
            message="No samples with reads were provided",
            suggestion="Check the manifest paths and that the FASTQ files are not empty."
        )


class EmptyReferenceDatabase(AsvsenseError):
    """The taxonomy reference contains no usable entries."""

    def __init__(self, source: str = "reference database"):
        super().__init__(
            message=f"No usable reference sequences in {source}",
            suggestion="Reference FASTA headers must carry a ';'-separated lineage."
        )
        self.source = source
