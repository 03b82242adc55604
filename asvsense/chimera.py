"""De-novo bimera detection.

A bimera is a sequence whose prefix matches one more-abundant sequence and
whose suffix matches another. Every candidate is compared with each eligible
parent to obtain a per-position mismatch profile; prefix and suffix mismatch
counts at every breakpoint then follow from cumulative sums, so all parent
pairs are tested at all breakpoints without re-aligning.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from asvsense.align import query_mismatch_profile
from asvsense.config import ChimeraConfig
from asvsense.table import AbundanceTable
from asvsense.types import ChimeraFlag


def _two_smallest(values: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Row indices of the smallest and second-smallest entry of each column.

    Ties resolve to the lower row index (rows are ordered most abundant first).
    """
    order = np.argsort(values, axis=0, kind="stable")
    first = order[0]
    second = order[1] if values.shape[0] > 1 else order[0]
    return first, second


def evaluate_bimera(query: str, query_abundance: int, parents: Sequence[Tuple[str, int]],
                    config: ChimeraConfig,
                    mapper: Callable = map) -> ChimeraFlag:
    """Test one sequence against a set of more-abundant candidate parents.

    Args:
        query: Candidate chimera
        query_abundance: Its abundance
        parents: (sequence, abundance) pairs, most abundant first, already
            restricted to sequences allowed to act as parents
        config: Detection parameters
        mapper: map-like callable used to compute per-parent mismatch profiles

    Returns:
        ChimeraFlag; is_chimera is False when no two-parent model qualifies
    """
    not_chimera = ChimeraFlag(sequence=query, is_chimera=False, abundance=int(query_abundance))
    length = len(query)

    # Abundance-ratio pre-filter bounds the number of parent pairs
    threshold = config.min_fold_parent_over_abundance * query_abundance
    candidates = [(seq, abund) for seq, abund in parents
                  if abund >= threshold and abund >= config.min_parent_abundance and seq != query]
    if len(candidates) < 2 or length < 2 * config.min_segment_length:
        return not_chimera

    profiles = list(mapper(lambda parent: query_mismatch_profile(parent[0], query), candidates))
    mismatch = np.vstack(profiles).astype(np.int64)  # (n_parents, length)
    prefix = np.zeros((len(candidates), length + 1), dtype=np.int64)
    np.cumsum(mismatch, axis=1, out=prefix[:, 1:])
    totals = prefix[:, length]
    suffix = totals[:, np.newaxis] - prefix  # suffix[p, b] = mismatches in query[b:]

    best_single = int(totals.min())
    if best_single == 0:
        return not_chimera
    if config.max_mismatch > 0 and best_single < config.min_one_off_parent_distance:
        return not_chimera

    breakpoints = np.arange(config.min_segment_length, length - config.min_segment_length + 1)
    pre = prefix[:, breakpoints]
    suf = suffix[:, breakpoints]
    left1, left2 = _two_smallest(pre)
    right1, right2 = _two_smallest(suf)
    columns = np.arange(len(breakpoints))

    # Parents must differ; when one sequence is best on both sides, try the runners-up
    same = left1 == right1
    option_a = pre[left1, columns] + suf[right2, columns]
    option_b = pre[left2, columns] + suf[right1, columns]
    use_a = option_a <= option_b
    left = np.where(same & ~use_a, left2, left1)
    right = np.where(same & use_a, right2, right1)
    chimeric_mismatch = pre[left, columns] + suf[right, columns]

    abundances = np.array([abund for _, abund in candidates], dtype=np.float64)
    skew = query_abundance / np.minimum(abundances[left], abundances[right])
    scores = (length - chimeric_mismatch) / length - config.abundance_penalty * skew

    valid = (left != right) & (chimeric_mismatch <= config.max_mismatch) & (chimeric_mismatch < best_single)
    if not valid.any():
        return not_chimera

    masked = np.where(valid, scores, -np.inf)
    best = int(np.argmax(masked))
    if masked[best] < config.min_score:
        return not_chimera

    l_idx, r_idx = int(left[best]), int(right[best])
    return ChimeraFlag(
        sequence=query,
        is_chimera=True,
        abundance=int(query_abundance),
        breakpoint=int(breakpoints[best]),
        left_parent=candidates[l_idx][0],
        right_parent=candidates[r_idx][0],
        left_abundance=int(candidates[l_idx][1]),
        right_abundance=int(candidates[r_idx][1]),
        mismatches=int(chimeric_mismatch[best]),
        score=float(masked[best]),
    )


class ChimeraDetector:
    """Flags and removes bimeras from an abundance table."""

    def __init__(self, config: Optional[ChimeraConfig] = None, max_workers: int = 1):
        self.config = config or ChimeraConfig()
        self.max_workers = max_workers

    def _scan(self, sequences: List[str], abundances: np.ndarray, totals: np.ndarray,
              mapper: Callable) -> Dict[str, ChimeraFlag]:
        """Evaluate sequences most abundant first so every parent's status is settled before use.

        Flagged sequences never act as parents. Parents must also have a larger
        total abundance than the candidate.
        """
        order = sorted(range(len(sequences)), key=lambda j: (-abundances[j], -totals[j], sequences[j]))
        flags: Dict[str, ChimeraFlag] = {}
        accepted: List[int] = []
        for j in order:
            if abundances[j] <= 0:
                continue
            parents = [(sequences[p], int(abundances[p])) for p in accepted
                       if abundances[p] > abundances[j] and totals[p] > totals[j]]
            flag = evaluate_bimera(sequences[j], int(abundances[j]), parents, self.config, mapper)
            flags[sequences[j]] = flag
            if not flag.is_chimera:
                accepted.append(j)
        return flags

    def filter(self, table: AbundanceTable) -> Tuple[AbundanceTable, List[ChimeraFlag]]:
        """Remove bimeras.

        Returns:
            Tuple of (filtered_table, flags) with one ChimeraFlag per removed
            sequence, least abundant first
        """
        sequences = table.sequences
        totals = table.totals()
        if not sequences:
            return table, []

        if self.max_workers > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                chimeras = self._detect(table, sequences, totals, executor.map)
        else:
            chimeras = self._detect(table, sequences, totals, map)

        chimeras.sort(key=lambda flag: (flag.abundance, flag.sequence))
        filtered = table.drop(flag.sequence for flag in chimeras)

        total_reads = int(totals.sum())
        chimeric_reads = sum(table.total(flag.sequence) for flag in chimeras)
        if total_reads > 0:
            logging.info(f"Identified {len(chimeras)} bimeras out of {len(sequences)} input sequences "
                         f"({chimeric_reads / total_reads:.1%} of reads)")
        return filtered, chimeras

    def _detect(self, table: AbundanceTable, sequences: List[str], totals: np.ndarray,
                mapper: Callable) -> List[ChimeraFlag]:
        if self.config.method == "pooled":
            flags = self._scan(sequences, totals, totals, mapper)
            return [flag for flag in flags.values() if flag.is_chimera]

        if self.config.method != "consensus":
            raise ValueError(f"Unknown chimera detection method: {self.config.method}")

        # Per-sample vote
        present = np.zeros(len(sequences), dtype=np.int64)
        flagged = np.zeros(len(sequences), dtype=np.int64)
        best_evidence: Dict[str, ChimeraFlag] = {}
        column = {seq: j for j, seq in enumerate(sequences)}
        for i, sample in enumerate(table.samples):
            row = table.counts[i]
            present += row > 0
            flags = self._scan(sequences, row, totals, mapper)
            for seq, flag in flags.items():
                if not flag.is_chimera:
                    continue
                flagged[column[seq]] += 1
                if seq not in best_evidence or flag.score > best_evidence[seq].score:
                    best_evidence[seq] = flag
            logging.debug(f"Sample {sample}: {sum(f.is_chimera for f in flags.values())} bimeras")

        chimeras = []
        for j, seq in enumerate(sequences):
            if flagged[j] and flagged[j] >= self.config.min_sample_fraction * present[j]:
                evidence = best_evidence[seq]
                chimeras.append(evidence._replace(
                    abundance=int(totals[j]),
                    left_abundance=table.total(evidence.left_parent),
                    right_abundance=table.total(evidence.right_parent),
                ))
        return chimeras
