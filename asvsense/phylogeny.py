"""Multiple alignment and maximum-likelihood phylogeny of ASV sequences.

Sequences are aligned progressively along a UPGMA guide tree built from k-mer
distances. Jukes-Cantor distances over the alignment seed a neighbour-joining
tree, which is then refined under GTR with discrete-Gamma rate heterogeneity:
each round re-fits the substitution model, optimises every branch length and
tries nearest-neighbour interchanges, until the log-likelihood gain drops
below the tolerance or the round cap is hit.
"""

import logging
from dataclasses import dataclass, field
from io import StringIO
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from Bio import Phylo
from Bio.Phylo.BaseTree import Clade, Tree
from Bio.Phylo.TreeConstruction import DistanceMatrix, DistanceTreeConstructor
from scipy.cluster.hierarchy import linkage
from scipy.optimize import minimize, minimize_scalar
from scipy.spatial.distance import squareform
from scipy.stats import gamma

from asvsense.align import kmer_indices
from asvsense.config import PhylogenyConfig
from asvsense.exceptions import AlignmentFailure, OptimizationStalled
from asvsense.types import N_CODE, encode_sequence

GAP_CODE = 5
ALIGNMENT_SYMBOLS = np.frombuffer(b"ACGTN-", dtype=np.uint8)

# Traceback pointers
DIAG, UP, LEFT = 0, 1, 2

# Exchangeability order; GT is fixed at 1
EXCHANGE_PAIRS = [(0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3)]


# ============================================================================
# Progressive alignment
# ============================================================================

def _score_weights(config: PhylogenyConfig) -> np.ndarray:
    """5 x 5 column-pair scores over A, C, G, T and gap."""
    weights = np.full((5, 5), config.mismatch_score)
    np.fill_diagonal(weights, config.match_score)
    weights[:4, 4] = config.gap_score
    weights[4, :4] = config.gap_score
    weights[4, 4] = 0.0
    return weights


def _profile_frequencies(rows: np.ndarray) -> np.ndarray:
    """Per-column frequencies of A, C, G, T and gap; N counts a quarter towards each base."""
    counts = np.stack([(rows == code).sum(axis=0) for code in range(6)], axis=1).astype(np.float64)
    freqs = np.empty((rows.shape[1], 5))
    freqs[:, :4] = counts[:, :4] + counts[:, N_CODE:N_CODE + 1] / 4.0
    freqs[:, 4] = counts[:, GAP_CODE]
    return freqs / rows.shape[0]


def align_profiles(rows1: np.ndarray, rows2: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """Needleman-Wunsch alignment of two profiles with linear gap costs.

    Args:
        rows1: Aligned codes of the first group, shape (n1, L1)
        rows2: Aligned codes of the second group, shape (n2, L2)
        weights: Column-pair score matrix from _score_weights

    Returns:
        Merged alignment of shape (n1 + n2, L), rows1 first
    """
    f1 = _profile_frequencies(rows1)
    f2 = _profile_frequencies(rows2)
    len1, len2 = f1.shape[0], f2.shape[0]
    column_scores = f1 @ weights @ f2.T
    gap1 = f1 @ weights[:, 4]  # column of profile 1 against an all-gap column
    gap2 = f2 @ weights[:, 4]

    scores = np.zeros((len1 + 1, len2 + 1))
    pointers = np.full((len1 + 1, len2 + 1), LEFT, dtype=np.int8)
    offsets = np.concatenate([[0.0], np.cumsum(gap2)])
    scores[0] = offsets
    for i in range(1, len1 + 1):
        diag = scores[i - 1, :-1] + column_scores[i - 1]
        up = scores[i - 1, 1:] + gap1[i - 1]
        best_no_left = np.empty(len2 + 1)
        best_no_left[0] = scores[i - 1, 0] + gap1[i - 1]
        best_no_left[1:] = np.maximum(diag, up)

        # Horizontal moves: H[j] = max_k<=j (C[k] + offsets[j] - offsets[k])
        shifted = best_no_left - offsets
        running = np.maximum.accumulate(shifted)
        left = running > shifted + 1e-9
        scores[i] = np.where(left, running + offsets, best_no_left)

        pointers[i, 0] = UP
        pointers[i, 1:] = np.where(diag >= up, DIAG, UP)
        pointers[i, left] = LEFT

    columns1: List[int] = []
    columns2: List[int] = []
    i, j = len1, len2
    while i > 0 or j > 0:
        move = pointers[i, j]
        if move == DIAG:
            i -= 1
            j -= 1
            columns1.append(i)
            columns2.append(j)
        elif move == UP:
            i -= 1
            columns1.append(i)
            columns2.append(-1)
        else:
            j -= 1
            columns1.append(-1)
            columns2.append(j)
    index1 = np.array(columns1[::-1], dtype=np.intp)
    index2 = np.array(columns2[::-1], dtype=np.intp)

    n1 = rows1.shape[0]
    merged = np.full((n1 + rows2.shape[0], len(index1)), GAP_CODE, dtype=np.uint8)
    present1 = index1 >= 0
    present2 = index2 >= 0
    merged[:n1, present1] = rows1[:, index1[present1]]
    merged[n1:, present2] = rows2[:, index2[present2]]
    return merged


def kmer_distance_matrix(sequences: Sequence[str], k: int) -> np.ndarray:
    """1 - shared k-mers / k-mers of the shorter sequence, for every pair."""
    words = [kmer_indices(seq, k) for seq in sequences]
    n = len(sequences)
    distances = np.zeros((n, n))
    for i in range(n):
        for j in range(i + 1, n):
            smaller = min(len(words[i]), len(words[j]))
            shared = len(np.intersect1d(words[i], words[j], assume_unique=True))
            distances[i, j] = distances[j, i] = 1.0 - shared / smaller if smaller else 1.0
    return distances


def align_sequences(sequences: Sequence[str], config: Optional[PhylogenyConfig] = None) -> np.ndarray:
    """Progressive multiple alignment along a UPGMA guide tree.

    Returns:
        Code matrix of shape (n_sequences, alignment_length) in input order;
        see alignment_to_strings for text output
    """
    config = config or PhylogenyConfig()
    if len(sequences) < 2:
        raise AlignmentFailure(len(sequences))

    weights = _score_weights(config)
    groups: Dict[int, Tuple[List[int], np.ndarray]] = {
        i: ([i], encode_sequence(seq.upper())[np.newaxis, :]) for i, seq in enumerate(sequences)
    }
    guide = linkage(squareform(kmer_distance_matrix(sequences, config.guide_kmer_size), checks=False),
                    method="average")
    n = len(sequences)
    for step, (a, b, _, _) in enumerate(guide):
        members_a, rows_a = groups.pop(int(a))
        members_b, rows_b = groups.pop(int(b))
        groups[n + step] = (members_a + members_b, align_profiles(rows_a, rows_b, weights))

    members, rows = groups[2 * n - 2]
    aligned = np.empty_like(rows)
    aligned[members] = rows
    logging.info(f"Aligned {n} sequences into {aligned.shape[1]} columns")
    return aligned


def alignment_to_strings(aligned: np.ndarray) -> List[str]:
    return [ALIGNMENT_SYMBOLS[row].tobytes().decode("ascii") for row in aligned]


def jc69_distances(aligned: np.ndarray, max_distance: float = 10.0) -> np.ndarray:
    """Jukes-Cantor corrected distances over columns where both sequences have a base.

    Pairs with no comparable columns, or too divergent to correct, get max_distance.
    """
    n = aligned.shape[0]
    is_base = aligned < N_CODE
    distances = np.zeros((n, n))
    for i in range(n):
        for j in range(i + 1, n):
            both = is_base[i] & is_base[j]
            compared = int(both.sum())
            if compared == 0:
                d = max_distance
            else:
                p = np.count_nonzero(aligned[i, both] != aligned[j, both]) / compared
                arg = 1.0 - 4.0 * p / 3.0
                d = min(-0.75 * np.log(arg), max_distance) if arg > 0 else max_distance
            distances[i, j] = distances[j, i] = d
    return distances


def neighbor_joining(distances: np.ndarray, labels: Sequence[str]) -> Tree:
    """Biopython neighbour-joining tree from a square distance matrix."""
    lower = [[float(distances[i, j]) for j in range(i + 1)] for i in range(len(labels))]
    return DistanceTreeConstructor().nj(DistanceMatrix(list(labels), lower))


# ============================================================================
# Substitution model
# ============================================================================

@dataclass
class GTRModel:
    """General time-reversible model with discrete-Gamma rate categories."""
    exchangeabilities: Tuple[float, ...] = (1.0, 1.0, 1.0, 1.0, 1.0, 1.0)  # AC AG AT CG CT GT
    frequencies: Tuple[float, ...] = (0.25, 0.25, 0.25, 0.25)
    alpha: float = 1.0
    n_categories: int = 4

    def rate_matrix(self) -> np.ndarray:
        """Instantaneous rate matrix scaled to one expected substitution per unit time."""
        pi = np.asarray(self.frequencies)
        q = np.zeros((4, 4))
        for (a, b), s in zip(EXCHANGE_PAIRS, self.exchangeabilities):
            q[a, b] = s * pi[b]
            q[b, a] = s * pi[a]
        np.fill_diagonal(q, -q.sum(axis=1))
        return q / -(pi @ np.diag(q))

    def category_rates(self) -> np.ndarray:
        """Median rates of equal-probability Gamma categories, normalized to mean 1."""
        if self.n_categories <= 1:
            return np.ones(1)
        quantiles = (2 * np.arange(self.n_categories) + 1) / (2.0 * self.n_categories)
        rates = gamma.ppf(quantiles, a=self.alpha, scale=1.0 / self.alpha)
        return rates / rates.mean()

    def to_dict(self) -> Dict:
        return {
            "exchangeabilities": dict(zip(["AC", "AG", "AT", "CG", "CT", "GT"], self.exchangeabilities)),
            "frequencies": dict(zip("ACGT", self.frequencies)),
            "alpha": self.alpha,
            "n_categories": self.n_categories,
        }


class TransitionKernel:
    """Transition probability matrices P(r_k * t) for every rate category."""

    def __init__(self, model: GTRModel):
        pi = np.asarray(model.frequencies)
        sqrt_pi = np.sqrt(pi)
        q = model.rate_matrix()
        # D^1/2 Q D^-1/2 is symmetric for a reversible model
        symmetric = sqrt_pi[:, np.newaxis] * q / sqrt_pi[np.newaxis, :]
        eigenvalues, vectors = np.linalg.eigh((symmetric + symmetric.T) / 2.0)
        self.eigenvalues = eigenvalues
        self.left = vectors / sqrt_pi[:, np.newaxis]
        self.right = vectors.T * sqrt_pi[np.newaxis, :]
        self.rates = model.category_rates()
        self.frequencies = pi

    def matrices(self, t: float) -> np.ndarray:
        """Shape (n_categories, 4, 4); entry [k, x, y] = P(y | x) after time r_k * t."""
        decay = np.exp(np.outer(self.rates * t, self.eigenvalues))
        probs = np.einsum('ij,kj,jl->kil', self.left, decay, self.right)
        return np.clip(probs, 0.0, None)


# ============================================================================
# Likelihood over an unrooted tree
# ============================================================================

def site_patterns(aligned: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Unique alignment columns and their multiplicities."""
    patterns, counts = np.unique(aligned, axis=1, return_counts=True)
    return patterns, counts.astype(np.float64)


def tip_partials(patterns: np.ndarray) -> np.ndarray:
    """Conditional likelihood vectors at the tips; N and gaps are uninformative."""
    partials = np.zeros(patterns.shape + (4,))
    for code in range(4):
        partials[patterns == code, code] = 1.0
    partials[patterns >= N_CODE] = 1.0
    return partials


class LikelihoodTree:
    """Unrooted binary tree with Felsenstein pruning over site patterns.

    Nodes 0..n_tips-1 are tips; internal node ids follow. `adjacency[u][v]`
    is the length of branch u-v. Conditional likelihoods are cached per
    directed branch (node, away-from neighbour) and rescaled per pattern.
    """

    def __init__(self, adjacency: Dict[int, Dict[int, float]], tips: np.ndarray, weights: np.ndarray,
                 model: GTRModel, config: PhylogenyConfig):
        self.adjacency = adjacency
        self.tips = tips
        self.n_tips = tips.shape[0]
        self.weights = weights
        self.config = config
        self._cache: Dict[Tuple[int, int], Tuple[np.ndarray, np.ndarray]] = {}
        self.set_model(model)

    def set_model(self, model: GTRModel) -> None:
        self.model = model
        self.kernel = TransitionKernel(model)
        self._cache.clear()

    def _invalidate(self, u: int, v: int) -> None:
        """Drop cached partials whose subtree contains branch u-v."""
        stack = [(u, v), (v, u)]
        while stack:
            node, came_from = stack.pop()
            for neighbor in self.adjacency[node]:
                if neighbor != came_from:
                    self._cache.pop((node, neighbor), None)
                    stack.append((neighbor, node))

    def partial(self, node: int, parent: int) -> Tuple[np.ndarray, np.ndarray]:
        """Likelihood of the subtree at `node` away from `parent`: (K, P, 4) vectors and per-pattern log scale."""
        key = (node, parent)
        if key in self._cache:
            return self._cache[key]

        n_cat = len(self.kernel.rates)
        n_patterns = self.tips.shape[1]
        if node < self.n_tips:
            vectors = np.broadcast_to(self.tips[node], (n_cat, n_patterns, 4))
            result = (vectors, np.zeros(n_patterns))
        else:
            vectors = np.ones((n_cat, n_patterns, 4))
            log_scale = np.zeros(n_patterns)
            for child, length in self.adjacency[node].items():
                if child == parent:
                    continue
                child_vectors, child_scale = self.partial(child, node)
                vectors *= np.einsum('kpy,kxy->kpx', child_vectors, self.kernel.matrices(length))
                log_scale += child_scale
            peak = vectors.max(axis=(0, 2))
            peak[peak <= 0] = 1.0
            vectors /= peak[np.newaxis, :, np.newaxis]
            result = (vectors, log_scale + np.log(peak))
        self._cache[key] = result
        return result

    def _branch_log_likelihood(self, side_u, side_v, length: float) -> float:
        vectors_u, scale_u = side_u
        vectors_v, scale_v = side_v
        moved = np.einsum('kpy,kxy->kpx', vectors_v, self.kernel.matrices(length))
        site = np.einsum('kpx,kpx,x->p', vectors_u, moved, self.kernel.frequencies) / len(self.kernel.rates)
        return float(self.weights @ (np.log(np.maximum(site, 1e-300)) + scale_u + scale_v))

    def log_likelihood(self) -> float:
        neighbor, length = next(iter(self.adjacency[0].items()))
        return self._branch_log_likelihood(self.partial(0, neighbor), self.partial(neighbor, 0), length)

    def branches(self) -> List[Tuple[int, int]]:
        return sorted((u, v) for u in self.adjacency for v in self.adjacency[u] if u < v)

    def set_length(self, u: int, v: int, length: float) -> None:
        self.adjacency[u][v] = length
        self.adjacency[v][u] = length
        self._invalidate(u, v)

    def optimize_branch(self, u: int, v: int) -> float:
        """Maximize the likelihood over the length of branch u-v; returns the new log-likelihood."""
        side_u = self.partial(u, v)
        side_v = self.partial(v, u)
        result = minimize_scalar(
            lambda t: -self._branch_log_likelihood(side_u, side_v, t),
            bounds=(self.config.min_branch_length, self.config.max_branch_length),
            method="bounded",
            options={"xatol": 1e-5},
        )
        current = self._branch_log_likelihood(side_u, side_v, self.adjacency[u][v])
        if -result.fun > current:
            self.set_length(u, v, float(result.x))
            return -float(result.fun)
        return current

    def optimize_branches(self) -> float:
        ll = self.log_likelihood()
        for u, v in self.branches():
            ll = self.optimize_branch(u, v)
        return ll

    def optimize_model(self) -> float:
        """Fit exchangeabilities and Gamma shape with L-BFGS-B (frequencies stay empirical)."""
        start = np.log(np.concatenate([np.asarray(self.model.exchangeabilities[:5]), [self.model.alpha]]))

        def build(x) -> GTRModel:
            return GTRModel(
                exchangeabilities=tuple(float(v) for v in np.exp(x[:5])) + (1.0,),
                frequencies=self.model.frequencies,
                alpha=float(np.exp(x[5])),
                n_categories=self.model.n_categories,
            )

        def objective(x) -> float:
            self.set_model(build(x))
            return -self.log_likelihood()

        bounds = [(-7.0, 7.0)] * 5 + [(np.log(0.02), np.log(100.0))]
        if self.model.n_categories <= 1:
            bounds[5] = (start[5], start[5])
        result = minimize(objective, start, method="L-BFGS-B", bounds=bounds, options={"maxiter": 25})
        best = result.x if result.fun <= objective(start) else start
        self.set_model(build(best))
        return self.log_likelihood()

    def _swap(self, u: int, a: int, v: int, b: int) -> None:
        """Exchange subtree a (attached to u) with subtree b (attached to v)."""
        length_a = self.adjacency[u].pop(a)
        del self.adjacency[a][u]
        length_b = self.adjacency[v].pop(b)
        del self.adjacency[b][v]
        self.adjacency[u][b] = self.adjacency[b][u] = length_b
        self.adjacency[v][a] = self.adjacency[a][v] = length_a
        self._cache.clear()

    def nni_pass(self) -> int:
        """Try both interchanges around every internal branch; keep improvements.

        An accepted interchange removes two branches and adds two others, so
        branches from the starting list that no longer exist are skipped.
        """
        accepted = 0
        for u, v in self.branches():
            if u < self.n_tips or v < self.n_tips or v not in self.adjacency[u]:
                continue
            baseline = self.log_likelihood()
            original_length = self.adjacency[u][v]
            a = sorted(n for n in self.adjacency[u] if n != v)[1]
            best = None
            for b in sorted(n for n in self.adjacency[v] if n != u):
                self._swap(u, a, v, b)
                ll = self.optimize_branch(u, v)
                if ll > baseline + 1e-6 and (best is None or ll > best[0]):
                    best = (ll, b, self.adjacency[u][v])
                self._swap(u, b, v, a)
                self.set_length(u, v, original_length)
            if best is not None:
                _, b, length = best
                self._swap(u, a, v, b)
                self.set_length(u, v, length)
                accepted += 1
        return accepted


def adjacency_from_phylo(tree: Tree, labels: Sequence[str],
                         min_length: float, max_length: float) -> Dict[int, Dict[int, float]]:
    """Convert a Biopython tree to an unrooted adjacency map, suppressing degree-2 nodes."""
    tip_ids = {label: i for i, label in enumerate(labels)}
    adjacency: Dict[int, Dict[int, float]] = {i: {} for i in range(len(labels))}
    next_id = [len(labels)]

    def visit(clade: Clade) -> int:
        if clade.is_terminal():
            return tip_ids[clade.name]
        node = next_id[0]
        next_id[0] += 1
        adjacency[node] = {}
        for child in clade.clades:
            child_id = visit(child)
            length = child.branch_length or 0.0
            adjacency[node][child_id] = length
            adjacency[child_id][node] = length
        return node

    visit(tree.root)

    for node in [n for n in adjacency if n >= len(labels) and len(adjacency[n]) == 2]:
        (a, la), (b, lb) = adjacency.pop(node).items()
        del adjacency[a][node]
        del adjacency[b][node]
        adjacency[a][b] = adjacency[b][a] = la + lb

    for u in adjacency:
        for v in adjacency[u]:
            adjacency[u][v] = min(max(adjacency[u][v], min_length), max_length)
    return adjacency


def phylo_from_adjacency(adjacency: Dict[int, Dict[int, float]], labels: Sequence[str]) -> Tree:
    """Biopython tree rooted at the internal node next to the first tip."""
    n_tips = len(labels)

    def build(node: int, parent: Optional[int]) -> Clade:
        length = adjacency[node][parent] if parent is not None else None
        if node < n_tips:
            return Clade(branch_length=length, name=labels[node])
        children = [build(child, node) for child in sorted(adjacency[node]) if child != parent]
        return Clade(branch_length=length, clades=children)

    if n_tips == 2:
        half = adjacency[0][1] / 2.0
        root = Clade(clades=[Clade(branch_length=half, name=labels[0]),
                             Clade(branch_length=half, name=labels[1])])
    else:
        root = build(next(iter(adjacency[0])), None)
    return Tree(root=root, rooted=False)


# ============================================================================
# Public interface
# ============================================================================

@dataclass
class PhylogeneticTree:
    """Refined tree over the ASVs with its alignment and fitted model."""
    newick: str
    tips: List[str]
    alignment: List[str]
    log_likelihood: float
    model: GTRModel
    converged: bool
    rounds: int
    history: List[float] = field(default_factory=list)

    def to_phylo(self) -> Tree:
        return Phylo.read(StringIO(self.newick), "newick")

    def write(self, path: str) -> None:
        with open(path, 'w') as f:
            f.write(self.newick + "\n")

    def to_dict(self) -> Dict:
        return {
            "n_tips": len(self.tips),
            "alignment_length": len(self.alignment[0]) if self.alignment else 0,
            "log_likelihood": self.log_likelihood,
            "converged": self.converged,
            "rounds": self.rounds,
            "history": self.history,
            "model": self.model.to_dict(),
        }


class PhylogenyBuilder:
    """Aligns ASVs and infers a maximum-likelihood tree."""

    def __init__(self, config: Optional[PhylogenyConfig] = None):
        self.config = config or PhylogenyConfig()

    def build(self, sequences: Sequence[str], labels: Optional[Sequence[str]] = None,
              diagnostics=None) -> PhylogeneticTree:
        """Build a tree over `sequences`, tipped with `labels` (default ASV1, ASV2, ...).

        A refinement that hits the round cap keeps its last tree; the
        OptimizationStalled warning goes to `diagnostics` when given.

        Raises:
            AlignmentFailure: Fewer than two sequences
        """
        config = self.config
        if len(sequences) < 2:
            raise AlignmentFailure(len(sequences))
        if labels is None:
            labels = [f"ASV{i + 1}" for i in range(len(sequences))]
        labels = list(labels)
        if len(set(labels)) != len(labels):
            raise ValueError("Tree tip labels must be unique")

        aligned = align_sequences(sequences, config)
        distances = jc69_distances(aligned, config.max_branch_length)
        start = neighbor_joining(distances, labels)
        adjacency = adjacency_from_phylo(start, labels, config.min_branch_length, config.max_branch_length)

        patterns, weights = site_patterns(aligned)
        base_counts = np.array([(aligned == code).sum() for code in range(4)], dtype=np.float64) + 1.0
        model = GTRModel(frequencies=tuple(float(f) for f in base_counts / base_counts.sum()),
                         n_categories=config.gamma_categories)
        tree = LikelihoodTree(adjacency, tip_partials(patterns), weights, model, config)

        log_likelihood = tree.log_likelihood()
        history = [log_likelihood]
        logging.info(f"Neighbour-joining start tree: log-likelihood {log_likelihood:.2f}")

        converged = False
        improvement = float('inf')
        rounds = 0
        for rounds in range(1, config.max_rounds + 1):
            tree.optimize_model()
            tree.optimize_branches()
            swaps = 0
            for _ in range(config.max_nni_passes):
                accepted = tree.nni_pass()
                swaps += accepted
                if not accepted:
                    break
            if swaps:
                tree.optimize_branches()
            new_log_likelihood = tree.log_likelihood()
            improvement = new_log_likelihood - log_likelihood
            log_likelihood = new_log_likelihood
            history.append(log_likelihood)
            logging.info(f"ML round {rounds}: log-likelihood {log_likelihood:.2f} "
                         f"(+{improvement:.3g}, {swaps} NNI)")
            if improvement < config.tolerance:
                converged = True
                break

        if not converged:
            stalled = OptimizationStalled(config.max_rounds, improvement)
            if diagnostics is not None:
                diagnostics.record(stalled, "PhylogenyBuilder")
            else:
                logging.warning(stalled.message)

        phylo = phylo_from_adjacency(tree.adjacency, labels)
        if config.midpoint_root:
            try:
                phylo.root_at_midpoint()
            except (UnboundLocalError, ValueError):
                logging.debug("Could not root at midpoint (all distances may be identical)")
        output = StringIO()
        Phylo.write(phylo, output, "newick")

        result = PhylogeneticTree(
            newick=output.getvalue().strip(),
            tips=labels,
            alignment=alignment_to_strings(aligned),
            log_likelihood=log_likelihood,
            model=tree.model,
            converged=converged,
            rounds=rounds,
            history=history,
        )
        if diagnostics is not None:
            diagnostics.phylogeny = result.to_dict()
        return result
