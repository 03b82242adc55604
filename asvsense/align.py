"""Pairwise alignment helpers built on edlib.

All functions here use global (Needleman-Wunsch) alignment with unit edit
costs. Positions are 0-based.
"""

from typing import Tuple

import edlib
import numpy as np
from adjusted_identity import score_alignment, AdjustmentParams

from asvsense.types import N_CODE, encode_sequence

# Plain identity scoring: every difference counts, nothing is normalized away.
# Overlaps between mate reads must agree base for base, so homopolymer length
# differences are real mismatches here.
OVERLAP_ADJUSTMENT_PARAMS = AdjustmentParams(
    normalize_homopolymers=False,
    handle_iupac_overlap=False,
    normalize_indels=False,
    end_skip_distance=0,
    max_repeat_motif_length=1
)


def edit_distance(seq1: str, seq2: str, max_distance: int = -1) -> int:
    """Edit distance between two sequences, or -1 if above max_distance."""
    if not seq1 or not seq2:
        return max(len(seq1), len(seq2))
    result = edlib.align(seq1, seq2, task="distance", k=max_distance)
    return result["editDistance"]


def _nice_alignment(reference: str, query: str) -> Tuple[str, str]:
    """Gapped (reference, query) strings from an edlib global alignment."""
    result = edlib.align(query, reference, task="path")
    if result["editDistance"] == -1:
        return "", ""
    alignment = edlib.getNiceAlignment(result, query, reference)
    if not alignment or not alignment.get('query_aligned') or not alignment.get('target_aligned'):
        return "", ""
    return alignment['target_aligned'], alignment['query_aligned']


def aligned_columns(reference: str, query: str) -> Tuple[np.ndarray, np.ndarray, int]:
    """Pair up reference and query positions that share an alignment column.

    Args:
        reference: Reference sequence (e.g. a cluster consensus)
        query: Query sequence

    Returns:
        Tuple of (reference_positions, query_positions, indel_columns) where the
        two arrays list the positions of gap-free columns in alignment order.
    """
    if reference == query:
        positions = np.arange(len(reference), dtype=np.intp)
        return positions, positions.copy(), 0

    ref_aligned, query_aligned = _nice_alignment(reference, query)
    if not ref_aligned:
        empty = np.zeros(0, dtype=np.intp)
        return empty, empty.copy(), max(len(reference), len(query))

    ref_positions = []
    query_positions = []
    indels = 0
    i = j = 0  # query, reference cursors
    for query_char, ref_char in zip(query_aligned, ref_aligned):
        if query_char == '-':
            indels += 1
            j += 1
        elif ref_char == '-':
            indels += 1
            i += 1
        else:
            ref_positions.append(j)
            query_positions.append(i)
            i += 1
            j += 1

    return (np.array(ref_positions, dtype=np.intp),
            np.array(query_positions, dtype=np.intp),
            indels)


def query_mismatch_profile(reference: str, query: str) -> np.ndarray:
    """Flag every query position that disagrees with the reference.

    A query base aligned to a different base or to a gap is a mismatch. A
    reference base missing from the query (deletion) is charged to the next
    query position, or to the last one at the 3' end.

    Returns:
        Boolean array with one entry per query position
    """
    n = len(query)
    if len(reference) == n:
        ref_codes = np.frombuffer(reference.encode("ascii"), dtype=np.uint8)
        query_codes = np.frombuffer(query.encode("ascii"), dtype=np.uint8)
        hamming = ref_codes != query_codes
        # Substitution-only difference needs no alignment
        if hamming.sum() <= 1 or edit_distance(reference, query) == int(hamming.sum()):
            return hamming

    mismatches = np.zeros(n, dtype=bool)
    ref_aligned, query_aligned = _nice_alignment(reference, query)
    if not ref_aligned:
        mismatches[:] = True
        return mismatches

    i = 0
    pending_deletion = False
    for query_char, ref_char in zip(query_aligned, ref_aligned):
        if query_char == '-':
            pending_deletion = True
            continue
        if ref_char == '-' or ref_char != query_char or pending_deletion:
            mismatches[i] = True
        pending_deletion = False
        i += 1

    if pending_deletion and n > 0:
        mismatches[n - 1] = True
    return mismatches


def overlap_identity(aligned1: str, aligned2: str) -> float:
    """Identity of two equal-length aligned strings (e.g. a mate-pair overlap)."""
    if not aligned1 or not aligned2:
        return 0.0
    if aligned1 == aligned2:
        return 1.0
    score_result = score_alignment(
        aligned1,
        aligned2,
        adjustment_params=OVERLAP_ADJUSTMENT_PARAMS
    )
    return score_result.identity


def kmer_indices(sequence: str, k: int) -> np.ndarray:
    """Sorted unique k-mer word indices of a sequence; words containing N are skipped."""
    codes = encode_sequence(sequence)
    if len(codes) < k:
        return np.zeros(0, dtype=np.int64)
    windows = np.lib.stride_tricks.sliding_window_view(codes, k)
    windows = windows[(windows != N_CODE).all(axis=1)].astype(np.int64)
    weights = 4 ** np.arange(k - 1, -1, -1, dtype=np.int64)
    return np.unique(windows @ weights)
