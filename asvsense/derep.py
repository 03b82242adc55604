"""Dereplication of quality-filtered reads."""

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Tuple

import numpy as np

from asvsense.types import DereplicatedSequence, Read


def dereplicate(reads: Iterable[Read]) -> Tuple[List[DereplicatedSequence], Dict[str, int]]:
    """Collapse identical reads into unique sequences.

    Uniques are ordered by descending abundance; ties go to the sequence seen
    first. The quality profile of a unique is the per-position mean of its
    reads' Phred scores.

    Args:
        reads: Reads from one sample and one orientation

    Returns:
        Tuple of (uniques, read_to_unique) where read_to_unique maps each read
        id to the index of its unique sequence in the returned list
    """
    first_seen: Dict[str, int] = {}
    quality_sums: Dict[str, np.ndarray] = {}
    counts: Dict[str, int] = defaultdict(int)
    members: Dict[str, List[str]] = defaultdict(list)

    for i, read in enumerate(reads):
        seq = read.sequence.upper()
        if len(read.quality) != len(seq):
            raise ValueError(f"Read {read.read_id}: {len(seq)} bases but {len(read.quality)} quality scores")
        if seq not in first_seen:
            first_seen[seq] = i
            quality_sums[seq] = np.zeros(len(seq), dtype=np.float64)
        quality_sums[seq] += np.asarray(read.quality, dtype=np.float64)
        counts[seq] += 1
        members[seq].append(read.read_id)

    ordered = sorted(first_seen, key=lambda s: (-counts[s], first_seen[s]))

    uniques = []
    read_to_unique: Dict[str, int] = {}
    for index, seq in enumerate(ordered):
        mean_quality = quality_sums[seq] / counts[seq]
        uniques.append(DereplicatedSequence(
            sequence=seq,
            abundance=counts[seq],
            quality=tuple(float(q) for q in mean_quality),
            first_index=first_seen[seq],
        ))
        for read_id in members[seq]:
            read_to_unique[read_id] = index

    total = sum(counts.values())
    logging.debug(f"Dereplicated {total} reads into {len(uniques)} unique sequences")
    return uniques, read_to_unique


def group_reads(reads: Iterable[Read]) -> Dict[str, Dict[str, List[Read]]]:
    """Split a mixed read stream into sample -> orientation -> reads, keeping input order."""
    grouped: Dict[str, Dict[str, List[Read]]] = defaultdict(lambda: defaultdict(list))
    for read in reads:
        grouped[read.sample][read.orientation].append(read)
    return {sample: dict(by_orientation) for sample, by_orientation in grouped.items()}
