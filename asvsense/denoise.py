"""Divisive amplicon denoising.

Partitions one sample's dereplicated sequences into ASVs. Every unique
sequence is scored against each cluster consensus with the error model: the
probability ``lambda`` that it arose as an error-laden copy of the consensus.
A sequence's abundance p-value asks how surprising its read count is if it
were only such a copy, given the cluster size:

    P(X >= a | X >= 1),  X ~ Poisson(lambda * n_cluster)

The most significant sequence (after Bonferroni correction) seeds a new
cluster, all sequences are reassigned to the cluster that best explains them
and each cluster's consensus moves to its most abundant member. The process
repeats until nothing is significant.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.special import gammainc

from asvsense.align import aligned_columns
from asvsense.config import DenoiseConfig
from asvsense.types import ASV, DereplicatedSequence, N_CODE, encode_sequence

if TYPE_CHECKING:
    from asvsense.error_model import ErrorModel


@dataclass
class DenoiseResult:
    """ASVs inferred for one sample and orientation."""
    sample: str
    orientation: str
    asvs: List[ASV]
    assignment: np.ndarray  # unique index -> ASV index
    transitions: np.ndarray  # observed transition counts, shape (16, max_quality + 1)
    stats: Dict[str, int]

    @property
    def total_abundance(self) -> int:
        return int(sum(asv.abundance for asv in self.asvs))

    @property
    def is_empty(self) -> bool:
        return not self.asvs


def substitution_log_prob(reference: np.ndarray, query: np.ndarray,
                          quality: np.ndarray, log_rates: np.ndarray) -> np.ndarray:
    """Sum of per-position log transition probabilities.

    Args:
        reference: Encoded reference bases, shape (L,) or (m, L)
        query: Encoded query bases, shape (m, L)
        quality: Quality index of each query base, shape (m, L)
        log_rates: Log transition matrix, shape (16, max_quality + 1)

    Returns:
        Array of shape (m,); positions where either base is N contribute nothing
    """
    reference = np.broadcast_to(reference, query.shape).astype(np.intp)
    query = query.astype(np.intp)
    informative = (reference != N_CODE) & (query != N_CODE)
    transitions = np.where(informative, 4 * reference + query, 0)
    per_position = np.where(informative, log_rates[transitions, quality], 0.0)
    return per_position.sum(axis=1)


def abundance_pvalues(abundances: np.ndarray, expected: np.ndarray) -> np.ndarray:
    """P(X >= a | X >= 1) for X ~ Poisson(expected), element-wise.

    An expected count of zero makes any observation impossible under the
    error model, so its p-value is 0.
    """
    abundances = np.asarray(abundances, dtype=np.float64)
    expected = np.asarray(expected, dtype=np.float64)
    pvalues = np.zeros_like(expected)
    positive = expected > 0
    # P(X >= a) == regularized lower incomplete gamma(a, mu), stable for tiny mu
    upper_tail = gammainc(abundances[positive], expected[positive])
    pvalues[positive] = upper_tail / -np.expm1(-expected[positive])
    return np.minimum(pvalues, 1.0)


class _SampleData:
    """Encoded uniques of one sample, grouped by length for vectorized scoring."""

    def __init__(self, uniques: Sequence[DereplicatedSequence], max_quality: int):
        self.sequences = [u.sequence for u in uniques]
        self.abundances = np.array([u.abundance for u in uniques], dtype=np.int64)
        self.codes = [encode_sequence(s) for s in self.sequences]
        self.quals = [np.clip(np.rint(np.asarray(u.quality, dtype=np.float64)), 0, max_quality).astype(np.intp)
                      for u in uniques]
        self.raw_quals = [np.asarray(u.quality, dtype=np.float64) for u in uniques]

        by_length: Dict[int, List[int]] = {}
        for i, seq in enumerate(self.sequences):
            by_length.setdefault(len(seq), []).append(i)
        self.by_length = {length: np.array(idx, dtype=np.intp) for length, idx in by_length.items()}
        self.stacked_codes = {length: np.vstack([self.codes[i] for i in idx]) if length else np.zeros((len(idx), 0), np.uint8)
                              for length, idx in self.by_length.items()}
        self.stacked_quals = {length: np.vstack([self.quals[i] for i in idx]) if length else np.zeros((len(idx), 0), np.intp)
                              for length, idx in self.by_length.items()}

    def __len__(self) -> int:
        return len(self.sequences)

    def log_lambdas(self, center: int, log_rates: np.ndarray, config: DenoiseConfig) -> np.ndarray:
        """Log probability that each unique is an error copy of `center`."""
        out = np.full(len(self), -np.inf)
        center_codes = self.codes[center]
        center_length = len(center_codes)
        log_indel = np.log(config.indel_error_rate)

        for length, idx in self.by_length.items():
            if abs(length - center_length) > config.band_size:
                continue
            if length == center_length:
                out[idx] = substitution_log_prob(center_codes, self.stacked_codes[length],
                                                 self.stacked_quals[length], log_rates)
                continue
            for j in idx:
                ref_pos, query_pos, indels = aligned_columns(self.sequences[center], self.sequences[j])
                if len(ref_pos) == 0:
                    continue
                log_prob = substitution_log_prob(
                    center_codes[ref_pos],
                    self.codes[j][query_pos][np.newaxis, :],
                    self.quals[j][query_pos][np.newaxis, :],
                    log_rates
                )[0]
                out[j] = log_prob + indels * log_indel
        return out

    def aligned_pairs(self, center: int, member: int) -> Tuple[np.ndarray, np.ndarray]:
        """Encoded (reference, query) bases plus query quality for a member's gap-free columns."""
        if len(self.codes[member]) == len(self.codes[center]):
            return self.codes[center], self.codes[member], self.quals[member]
        ref_pos, query_pos, _ = aligned_columns(self.sequences[center], self.sequences[member])
        return self.codes[center][ref_pos], self.codes[member][query_pos], self.quals[member][query_pos]


def _count_transitions(data: _SampleData, centers: List[int], assignment: np.ndarray,
                       n_qualities: int) -> np.ndarray:
    """Abundance-weighted (consensus base -> read base, quality) counts."""
    counts = np.zeros((16, n_qualities), dtype=np.float64)
    for k, center in enumerate(centers):
        for j in np.flatnonzero(assignment == k):
            reference, query, quality = data.aligned_pairs(center, j)
            informative = (reference != N_CODE) & (query != N_CODE)
            if not informative.any():
                continue
            transitions = 4 * reference[informative].astype(np.intp) + query[informative].astype(np.intp)
            np.add.at(counts, (transitions, quality[informative]), data.abundances[j])
    return counts


def _cluster_quality(data: _SampleData, center: int, members: np.ndarray) -> Tuple[float, ...]:
    """Abundance-weighted mean quality profile of the members sharing the center's length."""
    length = len(data.sequences[center])
    same_length = [j for j in members if len(data.sequences[j]) == length]
    weights = data.abundances[same_length].astype(np.float64)
    profile = np.average(np.vstack([data.raw_quals[j] for j in same_length]), axis=0, weights=weights) \
        if length else np.zeros(0)
    return tuple(float(q) for q in profile)


def _reassign(log_lambda: np.ndarray, centers: List[int], assignment: np.ndarray, abund: np.ndarray,
              max_shuffle: int) -> Tuple[np.ndarray, int]:
    """Move every unique to the cluster that best explains it.

    Returns:
        Tuple of (assignment, number_of_moves)
    """
    n_clusters = len(centers)
    # Ties between clusters go to the one whose center has the lower index
    center_order = np.argsort(centers, kind="stable")
    center_array = np.array(centers, dtype=np.intp)
    n_moved = 0
    for _ in range(max_shuffle):
        cluster_abundance = np.bincount(assignment, weights=abund, minlength=n_clusters)
        with np.errstate(divide="ignore"):
            score = log_lambda + np.log(cluster_abundance)[:, np.newaxis]
        best = center_order[np.argmax(score[center_order], axis=0)]
        # Sequences no cluster can explain stay put until they bud
        unexplained = ~np.isfinite(score.max(axis=0))
        best[unexplained] = assignment[unexplained]
        best[center_array] = np.arange(n_clusters)
        moved = int(np.count_nonzero(best != assignment))
        assignment = best
        n_moved += moved
        if moved == 0:
            break
    return assignment, n_moved


def _most_abundant_members(assignment: np.ndarray, n_clusters: int) -> List[int]:
    """Most abundant member of each cluster, lower index on ties.

    Uniques are sorted by descending abundance, so that is the lowest member index.
    """
    first = np.full(n_clusters, len(assignment), dtype=np.intp)
    np.minimum.at(first, assignment, np.arange(len(assignment)))
    return [int(i) for i in first]


def denoise_sample(uniques: Sequence[DereplicatedSequence], error_model: 'ErrorModel',
                   config: Optional[DenoiseConfig] = None, sample: str = "sample",
                   orientation: str = "forward") -> DenoiseResult:
    """Partition a sample's dereplicated sequences into ASVs.

    Args:
        uniques: Dereplicated sequences sorted by descending abundance
        error_model: Transition probabilities by quality
        config: Denoising parameters
        sample: Sample id (for logging and the result record)
        orientation: 'forward' or 'reverse'

    Returns:
        DenoiseResult whose ASVs are sorted by descending abundance. Every
        input unique belongs to exactly one ASV.
    """
    if config is None:
        config = DenoiseConfig()
    n_qualities = error_model.max_quality + 1

    if not uniques:
        logging.warning(f"Sample {sample} ({orientation}): no reads to denoise")
        return DenoiseResult(
            sample=sample, orientation=orientation, asvs=[],
            assignment=np.zeros(0, dtype=np.intp),
            transitions=np.zeros((16, n_qualities)),
            stats={"n_reads": 0, "n_unique": 0, "n_asvs": 0, "n_rounds": 0, "n_reassigned": 0},
        )

    abundances = np.array([u.abundance for u in uniques])
    if np.any(np.diff(abundances) > 0):
        raise ValueError("Dereplicated sequences must be sorted by descending abundance")

    data = _SampleData(uniques, error_model.max_quality)
    log_rates = error_model.log_rates
    n_unique = len(data)
    abund = data.abundances.astype(np.float64)

    centers = [0]
    birth_pvalues: List[Optional[float]] = [None]
    log_lambda_rows = [data.log_lambdas(0, log_rates, config)]
    assignment = np.zeros(n_unique, dtype=np.intp)
    n_reassigned = 0
    rounds = 0

    while True:
        rounds += 1
        n_clusters = len(centers)

        # Reassign, then move each center to its cluster's most abundant member
        for _ in range(config.max_shuffle):
            assignment, moved = _reassign(np.vstack(log_lambda_rows), centers, assignment, abund,
                                          config.max_shuffle)
            n_reassigned += moved
            recentered = False
            for k, member in enumerate(_most_abundant_members(assignment, n_clusters)):
                if member != centers[k]:
                    logging.debug(f"Sample {sample} ({orientation}): cluster {k} re-centered "
                                  f"from unique {centers[k]} to {member}")
                    centers[k] = member
                    log_lambda_rows[k] = data.log_lambdas(member, log_rates, config)
                    recentered = True
            if not recentered:
                break

        log_lambda = np.vstack(log_lambda_rows)
        center_array = np.array(centers, dtype=np.intp)

        if config.max_clusters and n_clusters >= config.max_clusters:
            logging.debug(f"Sample {sample} ({orientation}): reached cluster cap {config.max_clusters}")
            break
        if rounds >= config.max_rounds:
            logging.warning(f"Sample {sample} ({orientation}): stopped after {rounds} rounds")
            break

        cluster_abundance = np.bincount(assignment, weights=abund, minlength=n_clusters)
        own_log_lambda = log_lambda[assignment, np.arange(n_unique)]
        expected = np.exp(own_log_lambda) * cluster_abundance[assignment]
        pvalues = abundance_pvalues(abund, expected)
        pvalues[center_array] = np.inf

        # argmin returns the first minimum, so the lower (more abundant) index wins ties
        candidate = int(np.argmin(pvalues))
        pvalue = float(pvalues[candidate])
        if not np.isfinite(pvalue) or min(1.0, pvalue * n_unique) >= config.omega_a:
            break

        logging.debug(f"Sample {sample} ({orientation}): new cluster from unique {candidate} "
                      f"(abundance={uniques[candidate].abundance}, p={pvalue:.3g})")
        centers.append(candidate)
        birth_pvalues.append(pvalue)
        log_lambda_rows.append(data.log_lambdas(candidate, log_rates, config))
        assignment[candidate] = len(centers) - 1

    # Build ASVs, most abundant first; ties by center index
    raw_asvs = []
    for k, center in enumerate(centers):
        members = np.flatnonzero(assignment == k)
        raw_asvs.append((k, ASV(
            sequence=data.sequences[center],
            abundance=int(data.abundances[members].sum()),
            members=tuple(int(m) for m in members),
            quality=_cluster_quality(data, center, members),
            center=center,
            birth_pvalue=birth_pvalues[k],
        )))
    raw_asvs.sort(key=lambda item: (-item[1].abundance, item[1].center))

    remap = np.empty(len(centers), dtype=np.intp)
    for new_index, (old_index, _) in enumerate(raw_asvs):
        remap[old_index] = new_index
    asvs = [asv for _, asv in raw_asvs]

    transitions = _count_transitions(data, centers, assignment, n_qualities)
    n_reads = int(data.abundances.sum())
    stats = {
        "n_reads": n_reads,
        "n_unique": n_unique,
        "n_asvs": len(asvs),
        "n_rounds": rounds,
        "n_reassigned": n_reassigned,
    }
    logging.debug(f"Sample {sample} ({orientation}): {n_unique} uniques ({n_reads} reads) -> {len(asvs)} ASVs")

    return DenoiseResult(
        sample=sample,
        orientation=orientation,
        asvs=asvs,
        assignment=remap[assignment],
        transitions=transitions,
        stats=stats,
    )
