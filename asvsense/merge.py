"""Merging of denoised forward and reverse ASVs into full-length sequences."""

import logging
from collections import Counter
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
from Bio.Seq import reverse_complement

from asvsense.align import overlap_identity
from asvsense.config import MergeConfig
from asvsense.denoise import DenoiseResult
from asvsense.exceptions import InsufficientOverlap, MergeFailure, TooManyMismatches
from asvsense.types import ASV, MergedSequence, MergeRejection, N_CODE, encode_sequence


class Overlap(NamedTuple):
    """Placement of the reverse-complemented reverse read relative to the forward read."""
    offset: int  # Start of the reverse read in forward coordinates (may be negative)
    length: int
    mismatches: int
    score: int


def find_best_overlap(forward: str, reverse_rc: str) -> Optional[Overlap]:
    """Best ungapped overlap between a forward read and a reverse-complemented reverse read.

    Every offset with at least one overlapping base is scored as matches minus
    mismatches; N never counts as a mismatch. Ties favour the longer overlap,
    then the smaller offset.
    """
    f_codes = encode_sequence(forward)
    r_codes = encode_sequence(reverse_rc)
    m, n = len(f_codes), len(r_codes)
    if m == 0 or n == 0:
        return None

    best = None
    for offset in range(-(n - 1), m):
        ov_start = max(0, offset)
        ov_end = min(m, offset + n)
        length = ov_end - ov_start
        f_part = f_codes[ov_start:ov_end]
        r_part = r_codes[ov_start - offset:ov_end - offset]
        informative = (f_part != N_CODE) & (r_part != N_CODE)
        matches = int(np.count_nonzero(informative & (f_part == r_part)))
        mismatches = int(np.count_nonzero(informative & (f_part != r_part)))
        candidate = Overlap(offset, length, mismatches, matches - mismatches)
        if best is None or (candidate.score, candidate.length) > (best.score, best.length):
            best = candidate
    return best


def build_merged_sequence(forward: str, forward_quality: Sequence[float],
                          reverse_rc: str, reverse_rc_quality: Sequence[float],
                          overlap: Overlap, trim_overhang: bool = False) -> Tuple[str, str, str]:
    """Join two reads placed by `overlap`.

    Within the overlap a disagreement is resolved in favour of the base with
    the higher quality (the forward base on a tie); an N yields to a called
    base.

    Returns:
        Tuple of (merged_sequence, forward_overlap, reverse_overlap)
    """
    m, n = len(forward), len(reverse_rc)
    offset = overlap.offset
    ov_start = max(0, offset)
    ov_end = min(m, offset + n)

    consensus = []
    for pos in range(ov_start, ov_end):
        f_base = forward[pos]
        r_base = reverse_rc[pos - offset]
        if f_base == r_base or r_base == 'N':
            consensus.append(f_base)
        elif f_base == 'N':
            consensus.append(r_base)
        elif reverse_rc_quality[pos - offset] > forward_quality[pos]:
            consensus.append(r_base)
        else:
            consensus.append(f_base)

    # Flanks: forward covers the left side when the reverse starts inside it,
    # the reverse covers the right side when it runs past the forward end
    if offset >= 0:
        left = forward[:ov_start]
    else:
        left = "" if trim_overhang else reverse_rc[:-offset]
    if offset + n >= m:
        right = reverse_rc[ov_end - offset:]
    else:
        right = "" if trim_overhang else forward[ov_end:]

    return (left + "".join(consensus) + right,
            forward[ov_start:ov_end],
            reverse_rc[ov_start - offset:ov_end - offset])


def merge_asv_pair(forward_asv: ASV, reverse_asv: ASV, config: MergeConfig) -> Tuple[str, int, int, float]:
    """Merge one forward/reverse ASV pair.

    Returns:
        Tuple of (sequence, overlap_length, mismatches, quality_score)

    Raises:
        InsufficientOverlap: Best overlap shorter than config.min_overlap
        TooManyMismatches: Best overlap exceeds config.max_mismatch_rate
    """
    reverse_rc = reverse_complement(reverse_asv.sequence)
    reverse_rc_quality = tuple(reversed(reverse_asv.quality))

    if config.concatenate:
        return forward_asv.sequence + "N" * config.spacer_length + reverse_rc, 0, 0, 1.0

    overlap = find_best_overlap(forward_asv.sequence, reverse_rc)
    if overlap is None or overlap.length < config.min_overlap:
        raise InsufficientOverlap(overlap.length if overlap else 0, config.min_overlap)
    if overlap.mismatches > config.max_mismatch_rate * overlap.length:
        raise TooManyMismatches(overlap.mismatches, overlap.length, config.max_mismatch_rate)

    merged, f_overlap, r_overlap = build_merged_sequence(
        forward_asv.sequence, forward_asv.quality,
        reverse_rc, reverse_rc_quality,
        overlap, trim_overhang=config.trim_overhang
    )
    return merged, overlap.length, overlap.mismatches, overlap_identity(f_overlap, r_overlap)


def count_read_pairs(forward: DenoiseResult, reverse: DenoiseResult,
                     forward_reads: Dict[str, int], reverse_reads: Dict[str, int]) -> Counter:
    """Count reads per (forward ASV, reverse ASV) combination.

    Args:
        forward_reads: Read id -> forward unique index
        reverse_reads: Read id -> reverse unique index
    """
    pairs: Counter = Counter()
    for read_id, f_unique in forward_reads.items():
        r_unique = reverse_reads.get(read_id)
        if r_unique is None:
            continue
        pairs[(int(forward.assignment[f_unique]), int(reverse.assignment[r_unique]))] += 1
    return pairs


class PairMerger:
    """Reconciles per-sample forward and reverse ASVs into merged sequences."""

    def __init__(self, config: Optional[MergeConfig] = None):
        self.config = config or MergeConfig()

    def merge(self, forward: DenoiseResult, reverse: DenoiseResult,
              forward_reads: Dict[str, int], reverse_reads: Dict[str, int]
              ) -> Tuple[List[MergedSequence], List[MergeRejection], Dict[str, int]]:
        """Merge every ASV pair supported by at least one read pair in the sample.

        The abundance of a merged sequence is the number of reads whose forward
        and reverse mates were assigned to the two parent ASVs. Failed pairs are
        returned as rejections, not raised.

        Returns:
            Tuple of (merged, rejections, stats)
        """
        sample = forward.sample
        pairs = count_read_pairs(forward, reverse, forward_reads, reverse_reads)
        unpaired = len(forward_reads) + len(reverse_reads) - 2 * sum(pairs.values())

        merged: List[MergedSequence] = []
        rejections: List[MergeRejection] = []
        for (f_index, r_index), count in sorted(pairs.items(), key=lambda item: (-item[1], item[0])):
            try:
                sequence, overlap, mismatches, quality_score = merge_asv_pair(
                    forward.asvs[f_index], reverse.asvs[r_index], self.config
                )
            except MergeFailure as e:
                rejections.append(MergeRejection(
                    sample=sample, forward_asv=f_index, reverse_asv=r_index,
                    abundance=count, reason=e.reason, detail=e.message
                ))
                continue
            merged.append(MergedSequence(
                sequence=sequence,
                abundance=count,
                forward_asv=f_index,
                reverse_asv=r_index,
                overlap=overlap,
                mismatches=mismatches,
                quality_score=quality_score,
            ))

        merged_reads = sum(m.abundance for m in merged)
        rejected_reads = sum(r.abundance for r in rejections)
        stats = {
            "pairs_tested": len(pairs),
            "pairs_merged": len(merged),
            "reads_merged": merged_reads,
            "reads_rejected": rejected_reads,
            "reads_unpaired": unpaired,
        }
        if rejections:
            reasons = Counter(r.reason for r in rejections)
            logging.warning(f"Sample {sample}: merged {merged_reads} reads into {len(merged)} sequences; "
                            f"rejected {len(rejections)} pairs ({dict(reasons)})")
        else:
            logging.info(f"Sample {sample}: merged {merged_reads} reads into {len(merged)} sequences")
        return merged, rejections, stats
