"""Shared data structures for the asvsense pipeline."""

from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Optional, Tuple

import numpy as np

BASES = "ACGT"
BASE_INDEX = {base: i for i, base in enumerate(BASES)}
N_CODE = 4  # Encoded value for N and any non-ACGT symbol

FORWARD = "forward"
REVERSE = "reverse"
ORIENTATIONS = (FORWARD, REVERSE)

UNCLASSIFIED = "Unclassified"


def encode_sequence(sequence: str) -> np.ndarray:
    """Encode a nucleotide string as uint8 codes (A=0, C=1, G=2, T=3, other=4)."""
    lookup = np.full(256, N_CODE, dtype=np.uint8)
    for base, code in BASE_INDEX.items():
        lookup[ord(base)] = code
        lookup[ord(base.lower())] = code
    raw = np.frombuffer(sequence.encode("ascii"), dtype=np.uint8)
    return lookup[raw]


class Read(NamedTuple):
    """A single quality-filtered read."""
    read_id: str
    sample: str
    orientation: str  # 'forward' or 'reverse'
    sequence: str
    quality: Tuple[int, ...]


class DereplicatedSequence(NamedTuple):
    """A unique sequence with its multiplicity and mean per-position quality."""
    sequence: str
    abundance: int
    quality: Tuple[float, ...]
    first_index: int = 0  # Position of the first read carrying this sequence


class ASV(NamedTuple):
    """A denoised amplicon sequence variant within one sample."""
    sequence: str
    abundance: int
    members: Tuple[int, ...]  # Indices into the sample's dereplicated sequences
    quality: Tuple[float, ...]
    center: int  # Index of the most abundant member, whose sequence is the consensus
    birth_pvalue: Optional[float] = None  # Abundance p-value at cluster formation (None for the seed)


class MergedSequence(NamedTuple):
    """A forward/reverse ASV pair joined through their overlap."""
    sequence: str
    abundance: int
    forward_asv: int
    reverse_asv: int
    overlap: int
    mismatches: int
    quality_score: float  # Identity over the overlap region


class MergeRejection(NamedTuple):
    """A forward/reverse pair that could not be merged."""
    sample: str
    forward_asv: int
    reverse_asv: int
    abundance: int
    reason: str
    detail: str


class ChimeraFlag(NamedTuple):
    """Chimera call for one table column, with the supporting evidence."""
    sequence: str
    is_chimera: bool
    abundance: int
    breakpoint: Optional[int] = None
    left_parent: Optional[str] = None
    right_parent: Optional[str] = None
    left_abundance: Optional[int] = None
    right_abundance: Optional[int] = None
    mismatches: Optional[int] = None
    score: Optional[float] = None


class RankAssignment(NamedTuple):
    """Name and bootstrap confidence at one taxonomic rank."""
    rank: str
    name: str
    confidence: float


@dataclass(frozen=True)
class TaxonomyAssignment:
    """Ordered lineage for one sequence.

    Built once by the classifier and never modified afterwards; ranks that did
    not reach the confidence cutoff carry the ``Unclassified`` marker.
    """
    sequence: str
    ranks: Tuple[RankAssignment, ...]

    def name_at(self, rank: str) -> str:
        for assignment in self.ranks:
            if assignment.rank == rank:
                return assignment.name
        raise KeyError(rank)

    def confidence_at(self, rank: str) -> float:
        for assignment in self.ranks:
            if assignment.rank == rank:
                return assignment.confidence
        raise KeyError(rank)

    @property
    def is_classified(self) -> bool:
        return any(a.name != UNCLASSIFIED for a in self.ranks)

    def lineage(self) -> List[str]:
        return [a.name for a in self.ranks]

    def as_dict(self) -> Dict[str, str]:
        return {a.rank: a.name for a in self.ranks}
