"""Naive-Bayes k-mer taxonomy assignment (RDP classifier method).

Each reference lineage is a class. The probability that a class contains a
word w is estimated from the fraction of its reference sequences carrying w,
smoothed towards the word's frequency across the whole database. A query is
assigned to the class maximizing the summed log-probabilities of its words;
confidence at each rank is the fraction of bootstrap replicates (random word
subsets) that land in a class sharing the winner's lineage down to that rank.
"""

import hashlib
import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from Bio.Seq import reverse_complement
from scipy import sparse
from tqdm import tqdm

from asvsense.align import kmer_indices
from asvsense.config import TaxonomyConfig
from asvsense.exceptions import EmptyReferenceDatabase
from asvsense.types import UNCLASSIFIED, RankAssignment, TaxonomyAssignment


def normalize_lineage(lineage: Sequence[str], n_ranks: int) -> Tuple[str, ...]:
    """Trim to n_ranks names, padding missing or blank ranks with Unclassified."""
    names = [name.strip() for name in lineage[:n_ranks]]
    names = [name if name else UNCLASSIFIED for name in names]
    return tuple(names + [UNCLASSIFIED] * (n_ranks - len(names)))


def _sequence_seed(sequence: str, seed: int) -> int:
    digest = hashlib.sha256(sequence.encode()).digest()
    return int.from_bytes(digest[:8], "big") ^ seed


class TaxonomyClassifier:
    """Trained k-mer classifier over a reference database.

    Args:
        reference: (sequence, lineage) pairs; lineage lists names from the
            highest rank down
        config: Classifier parameters
        source: Name of the reference used in messages

    Raises:
        EmptyReferenceDatabase: No entry has a sequence
    """

    def __init__(self, reference: Sequence[Tuple[str, Sequence[str]]],
                 config: Optional[TaxonomyConfig] = None, source: str = "reference database"):
        self.config = config or TaxonomyConfig()
        self.ranks = tuple(self.config.ranks)
        k = self.config.kmer_size

        lineages: List[Tuple[str, ...]] = []
        word_lists: List[np.ndarray] = []
        skipped = 0
        for sequence, lineage in reference:
            if not sequence:
                skipped += 1
                continue
            lineages.append(normalize_lineage(list(lineage), len(self.ranks)))
            word_lists.append(kmer_indices(sequence.upper(), k))
        if skipped:
            logging.warning(f"Skipped {skipped} entries without a sequence in {source}")
        if not lineages:
            raise EmptyReferenceDatabase(source)

        # One class per distinct full lineage
        self.classes: List[Tuple[str, ...]] = sorted(set(lineages))
        class_index = {lineage: g for g, lineage in enumerate(self.classes)}
        ref_class = np.array([class_index[lineage] for lineage in lineages], dtype=np.int64)

        n_refs = len(lineages)
        n_words = 4 ** k
        rows = np.repeat(np.arange(n_refs), [len(w) for w in word_lists])
        cols = np.concatenate(word_lists) if n_refs else np.zeros(0, dtype=np.int64)
        presence = sparse.csr_matrix((np.ones(len(cols)), (rows, cols)), shape=(n_refs, n_words))
        membership = sparse.csr_matrix(
            (np.ones(n_refs), (ref_class, np.arange(n_refs))), shape=(len(self.classes), n_refs)
        )

        word_totals = np.asarray(presence.sum(axis=0)).ravel()
        self.word_priors = (word_totals + 0.5) / (n_refs + 1)
        self.class_word_counts = (membership @ presence).tocsc()
        self.class_sizes = np.bincount(ref_class, minlength=len(self.classes)).astype(np.float64)

        # rank_codes[r][g]: identifier of class g's lineage truncated after rank r
        self.rank_codes = []
        for r in range(len(self.ranks)):
            prefixes: Dict[Tuple[str, ...], int] = {}
            self.rank_codes.append(np.array(
                [prefixes.setdefault(lineage[:r + 1], len(prefixes)) for lineage in self.classes]
            ))

        logging.info(f"Trained taxonomy classifier on {n_refs} references in {len(self.classes)} lineages "
                     f"({k}-mers)")

    def word_log_probs(self, words: np.ndarray) -> np.ndarray:
        """log P(w | class) for each class (rows) and query word (columns)."""
        counts = self.class_word_counts[:, words].toarray()
        return np.log((counts + self.word_priors[words]) / (self.class_sizes[:, np.newaxis] + 1.0))

    def _classify_words(self, words: np.ndarray, rng: np.random.Generator) -> Tuple[int, np.ndarray, float]:
        """Return (best class, per-rank confidence, best log-probability)."""
        log_probs = self.word_log_probs(words)
        scores = log_probs.sum(axis=1)
        best = int(np.argmax(scores))

        n_sample = max(1, len(words) // 8)
        picks = rng.integers(0, len(words), size=(self.config.n_bootstrap, n_sample))
        boot_scores = log_probs[:, picks].sum(axis=2)  # (classes, replicates)
        boot_best = np.argmax(boot_scores, axis=0)

        confidence = np.array([
            np.mean(codes[boot_best] == codes[best]) for codes in self.rank_codes
        ])
        return best, confidence, float(scores[best])

    def classify(self, sequence: str) -> TaxonomyAssignment:
        """Assign one sequence.

        Ranks below the bootstrap cutoff, and every rank beneath them, are
        reported as Unclassified.
        """
        rng = np.random.default_rng(_sequence_seed(sequence, self.config.seed))
        words = kmer_indices(sequence.upper(), self.config.kmer_size)
        if len(words) == 0:
            return self._unclassified(sequence)

        best, confidence, score = self._classify_words(words, rng)
        if self.config.try_reverse_complement:
            rc_words = kmer_indices(reverse_complement(sequence.upper()), self.config.kmer_size)
            if len(rc_words):
                rc_best, rc_confidence, rc_score = self._classify_words(rc_words, rng)
                if rc_score / len(rc_words) > score / len(words):
                    best, confidence = rc_best, rc_confidence

        lineage = self.classes[best]
        ranks = []
        confident = True
        for r, rank in enumerate(self.ranks):
            confident = confident and confidence[r] >= self.config.min_bootstrap
            name = lineage[r] if confident else UNCLASSIFIED
            ranks.append(RankAssignment(rank, name, float(confidence[r])))
        return TaxonomyAssignment(sequence=sequence, ranks=tuple(ranks))

    def _unclassified(self, sequence: str) -> TaxonomyAssignment:
        return TaxonomyAssignment(
            sequence=sequence,
            ranks=tuple(RankAssignment(rank, UNCLASSIFIED, 0.0) for rank in self.ranks)
        )

    def assign(self, sequences: Sequence[str]) -> Dict[str, TaxonomyAssignment]:
        """Classify every sequence; results do not depend on batch composition or order."""
        assignments = {}
        for sequence in tqdm(sequences, desc="Assigning taxonomy", disable=len(sequences) < 100):
            if sequence not in assignments:
                assignments[sequence] = self.classify(sequence)
        n_lowest = sum(1 for a in assignments.values() if a.ranks and a.ranks[-1].name != UNCLASSIFIED)
        logging.info(f"Assigned taxonomy to {len(assignments)} sequences; "
                     f"{n_lowest} classified to {self.ranks[-1] if self.ranks else 'the lowest rank'}")
        return assignments


def assign_species(assignments: Dict[str, TaxonomyAssignment],
                   species_reference: Sequence[Tuple[str, str, str]],
                   allow_multiple: bool = False) -> Dict[str, TaxonomyAssignment]:
    """Add a Species rank by exact matching against a species-labelled reference.

    A reference matches when the query occurs verbatim within it and its genus
    agrees with the query's Genus rank (Unclassified when the rank is absent).
    Several distinct matching species are joined with '/' when allow_multiple
    is set, otherwise the call is Unclassified.

    Args:
        assignments: Output of TaxonomyClassifier.assign
        species_reference: (sequence, genus, species) triples
        allow_multiple: Report ambiguous species instead of leaving them unassigned

    Returns:
        New assignments with a trailing Species rank
    """
    reference = [(seq.upper(), genus, species) for seq, genus, species in species_reference if seq]
    if not reference:
        raise EmptyReferenceDatabase("species reference")

    updated = {}
    n_assigned = 0
    for sequence, assignment in assignments.items():
        try:
            genus = assignment.name_at("Genus")
        except KeyError:
            genus = UNCLASSIFIED
        query = sequence.upper()
        hits = sorted({species for ref_seq, ref_genus, species in reference
                       if ref_genus == genus and query in ref_seq})
        if genus == UNCLASSIFIED or not hits:
            name = UNCLASSIFIED
        elif len(hits) == 1:
            name = hits[0]
        elif allow_multiple:
            name = "/".join(hits)
        else:
            name = UNCLASSIFIED
        if name != UNCLASSIFIED:
            n_assigned += 1
        species_rank = RankAssignment("Species", name, 1.0 if name != UNCLASSIFIED else 0.0)
        updated[sequence] = TaxonomyAssignment(sequence=sequence, ranks=assignment.ranks + (species_rank,))

    logging.info(f"Exact species matches for {n_assigned} of {len(assignments)} sequences")
    return updated
