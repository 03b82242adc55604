"""Configuration for each pipeline stage."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple

DEFAULT_RANKS = ("Kingdom", "Phylum", "Class", "Order", "Family", "Genus")


@dataclass
class ErrorModelConfig:
    """Configuration for error-rate learning.

    Attributes:
        max_quality: Highest quality score tracked; higher scores are clamped
        max_rounds: Cap on self-consistency rounds
        tolerance: Maximum relative rate change accepted as converged
        fit_degree: Degree of the weighted polynomial fit of log10 rate vs quality
        min_error_rate: Floor for fitted substitution rates
        max_error_rate: Ceiling for fitted substitution rates
        max_learn_bases: Stop adding samples once this many bases are used (0 = all)
        fail_on_nonconvergence: Abort instead of continuing with the last estimate
    """
    max_quality: int = 41
    max_rounds: int = 10
    tolerance: float = 0.05
    fit_degree: int = 2
    min_error_rate: float = 1e-7
    max_error_rate: float = 0.25
    max_learn_bases: int = 100_000_000
    fail_on_nonconvergence: bool = False

    @classmethod
    def from_args(cls, args) -> 'ErrorModelConfig':
        return cls(
            max_rounds=getattr(args, 'error_max_rounds', cls.max_rounds),
            tolerance=getattr(args, 'error_tolerance', cls.tolerance),
            max_learn_bases=getattr(args, 'max_learn_bases', cls.max_learn_bases),
            fail_on_nonconvergence=getattr(args, 'fail_on_nonconvergence', cls.fail_on_nonconvergence),
        )


@dataclass
class DenoiseConfig:
    """Configuration for per-sample ASV inference.

    Attributes:
        omega_a: Significance threshold for the Bonferroni-corrected abundance p-value
        indel_error_rate: Per-column probability charged for an indel between
            a sequence and a cluster consensus
        band_size: Sequences whose lengths differ by more than this are never
            considered error copies of each other
        max_clusters: Cap on clusters per sample (0 = no cap)
        max_rounds: Cap on cluster-formation rounds
        max_shuffle: Cap on reassignment passes after each new cluster
    """
    omega_a: float = 1e-40
    indel_error_rate: float = 1e-4
    band_size: int = 16
    max_clusters: int = 0
    max_rounds: int = 10_000
    max_shuffle: int = 10

    @classmethod
    def from_args(cls, args) -> 'DenoiseConfig':
        return cls(
            omega_a=getattr(args, 'omega_a', cls.omega_a),
            band_size=getattr(args, 'band_size', cls.band_size),
        )


@dataclass
class MergeConfig:
    """Configuration for mate-pair merging."""
    min_overlap: int = 12
    max_mismatch_rate: float = 0.0
    concatenate: bool = False
    spacer_length: int = 10
    trim_overhang: bool = False

    @classmethod
    def from_args(cls, args) -> 'MergeConfig':
        return cls(
            min_overlap=getattr(args, 'min_overlap', cls.min_overlap),
            max_mismatch_rate=getattr(args, 'max_mismatch_rate', cls.max_mismatch_rate),
            concatenate=getattr(args, 'concatenate', cls.concatenate),
            trim_overhang=getattr(args, 'trim_overhang', cls.trim_overhang),
        )


@dataclass
class ChimeraConfig:
    """Configuration for de-novo bimera detection.

    Attributes:
        method: 'pooled' (one test on table totals) or 'consensus' (per-sample vote)
        min_fold_parent_over_abundance: Parents must be at least this many times
            more abundant than the candidate chimera
        min_parent_abundance: Parents must have at least this many reads
        max_mismatch: Mismatches allowed between the candidate and its two-parent model
        min_one_off_parent_distance: With max_mismatch > 0, the best single
            parent must differ by at least this many positions
        min_segment_length: Each parent must contribute at least this many bases
        abundance_penalty: Weight of the candidate/parent abundance ratio in the score
        min_score: Score required to flag a chimera
        min_sample_fraction: Fraction of samples that must agree in 'consensus' mode
    """
    method: str = "pooled"
    min_fold_parent_over_abundance: float = 2.0
    min_parent_abundance: int = 8
    max_mismatch: int = 0
    min_one_off_parent_distance: int = 4
    min_segment_length: int = 8
    abundance_penalty: float = 0.1
    min_score: float = 0.9
    min_sample_fraction: float = 0.9

    @classmethod
    def from_args(cls, args) -> 'ChimeraConfig':
        return cls(
            method=getattr(args, 'chimera_method', cls.method),
            min_fold_parent_over_abundance=getattr(args, 'min_fold_parent', cls.min_fold_parent_over_abundance),
            max_mismatch=getattr(args, 'chimera_max_mismatch', cls.max_mismatch),
        )


@dataclass
class TaxonomyConfig:
    """Configuration for naive-Bayes taxonomy assignment."""
    ranks: Tuple[str, ...] = DEFAULT_RANKS
    kmer_size: int = 8
    n_bootstrap: int = 100
    min_bootstrap: float = 0.5
    try_reverse_complement: bool = False
    seed: int = 100

    @classmethod
    def from_args(cls, args) -> 'TaxonomyConfig':
        return cls(
            min_bootstrap=getattr(args, 'min_bootstrap', cls.min_bootstrap),
            try_reverse_complement=getattr(args, 'try_rc', cls.try_reverse_complement),
        )


@dataclass
class PhylogenyConfig:
    """Configuration for alignment and maximum-likelihood tree refinement."""
    match_score: float = 1.0
    mismatch_score: float = -1.0
    gap_score: float = -2.0
    guide_kmer_size: int = 6
    gamma_categories: int = 4
    max_rounds: int = 10
    tolerance: float = 0.01
    max_nni_passes: int = 1
    min_branch_length: float = 1e-6
    max_branch_length: float = 10.0
    midpoint_root: bool = False

    @classmethod
    def from_args(cls, args) -> 'PhylogenyConfig':
        return cls(
            max_rounds=getattr(args, 'tree_max_rounds', cls.max_rounds),
            midpoint_root=getattr(args, 'midpoint_root', cls.midpoint_root),
        )


@dataclass
class PipelineConfig:
    """All stage configurations plus run-wide settings."""
    error_model: ErrorModelConfig = field(default_factory=ErrorModelConfig)
    denoise: DenoiseConfig = field(default_factory=DenoiseConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    chimera: ChimeraConfig = field(default_factory=ChimeraConfig)
    taxonomy: TaxonomyConfig = field(default_factory=TaxonomyConfig)
    phylogeny: PhylogenyConfig = field(default_factory=PhylogenyConfig)
    max_workers: int = 1
    build_tree: bool = True
    output_dir: Optional[str] = None

    @classmethod
    def from_args(cls, args) -> 'PipelineConfig':
        return cls(
            error_model=ErrorModelConfig.from_args(args),
            denoise=DenoiseConfig.from_args(args),
            merge=MergeConfig.from_args(args),
            chimera=ChimeraConfig.from_args(args),
            taxonomy=TaxonomyConfig.from_args(args),
            phylogeny=PhylogenyConfig.from_args(args),
            max_workers=getattr(args, 'threads', 1),
            build_tree=not getattr(args, 'skip_tree', False),
            output_dir=getattr(args, 'output_dir', None),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
