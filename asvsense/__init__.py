"""
asvsense: Amplicon sequence variant inference for paired-end marker-gene reads.

Learns a quality-aware error model, denoises each sample into exact sequence
variants, merges read pairs, removes bimeras, assigns taxonomy and builds a
maximum-likelihood tree over the surviving variants.
"""

__version__ = "0.1.0"

from .chimera import ChimeraDetector
from .config import PipelineConfig
from .denoise import denoise_sample
from .error_model import ErrorModel, learn_errors
from .merge import PairMerger
from .phylogeny import PhylogenyBuilder
from .pipeline import run_pipeline
from .table import AbundanceTable
from .taxonomy import TaxonomyClassifier

__all__ = [
    "AbundanceTable",
    "ChimeraDetector",
    "ErrorModel",
    "PairMerger",
    "PhylogenyBuilder",
    "PipelineConfig",
    "TaxonomyClassifier",
    "denoise_sample",
    "learn_errors",
    "run_pipeline",
    "__version__",
]
