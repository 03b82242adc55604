#!/usr/bin/env python3
"""
Tests for progressive alignment and maximum-likelihood tree refinement.
"""

import hashlib

import numpy as np
import pytest

from asvsense.config import PhylogenyConfig
from asvsense.diagnostics import DiagnosticsReport
from asvsense.exceptions import AlignmentFailure
from asvsense.phylogeny import (
    GTRModel,
    LikelihoodTree,
    PhylogenyBuilder,
    TransitionKernel,
    align_sequences,
    alignment_to_strings,
    jc69_distances,
    site_patterns,
    tip_partials,
)
from asvsense.types import encode_sequence


def generate_dna_sequence(seed: str, length: int) -> str:
    """Generate a reproducible pseudo-random DNA sequence."""
    result = []
    bases = "ACGT"
    for i in range(length):
        h = hashlib.md5(f"{seed}_{i}".encode()).hexdigest()
        result.append(bases[int(h[0], 16) % 4])
    return "".join(result)


def mutate(sequence: str, positions) -> str:
    seq = list(sequence)
    for pos in positions:
        seq[pos] = "ACGT"[("ACGT".index(seq[pos]) + 1) % 4]
    return "".join(seq)


BASE = generate_dna_sequence("phylogeny_base", 300)
# Two clades of two sequences each
CLADE_1 = [BASE, mutate(BASE, [40, 150, 260])]
SISTER = mutate(BASE, range(5, 300, 5))
CLADE_2 = [SISTER, mutate(SISTER, [12, 133, 201])]
SEQUENCES = CLADE_1 + CLADE_2

# Eight tips on ((P1,P2),(Q1,Q2)),((R1,R2),(S1,S2)); every split carries its own mutations
ROOT = generate_dna_sequence("phylogeny_root", 300)
GROUP_1 = mutate(ROOT, range(0, 300, 15))
GROUP_2 = mutate(ROOT, range(7, 300, 15))
PAIRS = {
    "P": mutate(GROUP_1, range(1, 300, 30)),
    "Q": mutate(GROUP_1, range(2, 300, 30)),
    "R": mutate(GROUP_2, range(4, 300, 30)),
    "S": mutate(GROUP_2, range(8, 300, 30)),
}
EIGHT_TIPS = {}
for offset, name in enumerate(f"{pair}{i}" for pair in "PQRS" for i in (1, 2)):
    EIGHT_TIPS[name] = mutate(PAIRS[name[0]], [5 + 30 * offset])


def caterpillar(tip_order, length=0.02):
    """Adjacency of a caterpillar tree whose internal node ids are out of chain order.

    Chain 12-10-8-9-11-13; the end nodes carry two tips and the others one.
    """
    chain = [12, 10, 8, 9, 11, 13]
    pendants = {12: tip_order[0:2], 10: tip_order[2:3], 8: tip_order[3:4],
                9: tip_order[4:5], 11: tip_order[5:6], 13: tip_order[6:8]}
    adjacency = {node: {} for node in range(14)}
    edges = list(zip(chain, chain[1:]))
    edges += [(node, tip) for node, tips in pendants.items() for tip in tips]
    for u, v in edges:
        adjacency[u][v] = adjacency[v][u] = length
    return adjacency


class TestAlignment:

    def test_gapless_rows_reproduce_input(self):
        deletion = BASE[:100] + BASE[106:]
        insertion = BASE[:200] + "ACGTTG" + BASE[200:]
        sequences = [BASE, deletion, insertion, CLADE_1[1]]
        rows = alignment_to_strings(align_sequences(sequences))
        assert len({len(row) for row in rows}) == 1
        assert [row.replace("-", "") for row in rows] == sequences

    def test_identical_sequences_need_no_gaps(self):
        rows = alignment_to_strings(align_sequences([BASE, BASE]))
        assert rows == [BASE, BASE]

    def test_single_sequence_fails(self):
        with pytest.raises(AlignmentFailure):
            align_sequences([BASE])


class TestDistances:

    def test_jc69(self):
        first = BASE[:100]
        second = mutate(first, range(0, 100, 10))
        aligned = np.vstack([encode_sequence(first), encode_sequence(second), encode_sequence(first)])
        distances = jc69_distances(aligned)
        assert distances[0, 2] == 0.0
        assert distances[0, 1] == pytest.approx(-0.75 * np.log(1 - 4 * 0.1 / 3))
        assert np.allclose(distances, distances.T)

    def test_saturated_pairs_get_cap(self):
        aligned = np.vstack([encode_sequence("ACGT" * 10), encode_sequence("CATG" * 10)])
        assert jc69_distances(aligned, max_distance=5.0)[0, 1] == 5.0


class TestGTRModel:

    def test_rate_matrix_is_normalized(self):
        model = GTRModel(exchangeabilities=(1.0, 4.0, 0.5, 1.2, 3.0, 1.0), frequencies=(0.3, 0.2, 0.2, 0.3))
        q = model.rate_matrix()
        assert np.allclose(q.sum(axis=1), 0.0)
        assert -np.dot(model.frequencies, np.diag(q)) == pytest.approx(1.0)

    def test_transition_matrices(self):
        model = GTRModel(exchangeabilities=(1.0, 4.0, 0.5, 1.2, 3.0, 1.0), frequencies=(0.3, 0.2, 0.2, 0.3))
        kernel = TransitionKernel(model)
        assert np.allclose(kernel.matrices(0.0), np.eye(4))
        probs = kernel.matrices(0.3)
        assert probs.shape == (4, 4, 4)
        assert np.allclose(probs.sum(axis=2), 1.0)
        # Long branches approach the stationary distribution
        assert np.allclose(kernel.matrices(2000.0)[0], np.tile(model.frequencies, (4, 1)), atol=1e-6)

    def test_gamma_category_rates(self):
        rates = GTRModel(alpha=0.5, n_categories=4).category_rates()
        assert rates.mean() == pytest.approx(1.0)
        assert np.all(np.diff(rates) > 0)
        assert GTRModel(n_categories=1).category_rates().tolist() == [1.0]


class TestPhylogenyBuilder:

    def test_builds_tree_over_labels(self):
        labels = ["ASV1", "ASV2", "ASV3", "ASV4"]
        result = PhylogenyBuilder().build(SEQUENCES, labels)

        assert result.tips == labels
        assert len(result.alignment) == 4
        assert result.rounds >= 1
        assert result.history[-1] >= result.history[0] - 1e-6
        assert result.log_likelihood == result.history[-1]

        phylo = result.to_phylo()
        assert sorted(t.name for t in phylo.get_terminals()) == labels
        assert phylo.distance("ASV1", "ASV2") < phylo.distance("ASV1", "ASV3")
        assert phylo.distance("ASV3", "ASV4") < phylo.distance("ASV2", "ASV4")

    def test_default_labels(self):
        result = PhylogenyBuilder().build(SEQUENCES[:3])
        assert result.tips == ["ASV1", "ASV2", "ASV3"]

    def test_two_sequences(self):
        result = PhylogenyBuilder().build(CLADE_1, ["a", "b"])
        assert sorted(t.name for t in result.to_phylo().get_terminals()) == ["a", "b"]

    def test_too_few_sequences(self):
        with pytest.raises(AlignmentFailure):
            PhylogenyBuilder().build([BASE])

    def test_duplicate_labels(self):
        with pytest.raises(ValueError):
            PhylogenyBuilder().build(CLADE_1, ["x", "x"])

    def test_round_cap_is_recorded(self):
        diagnostics = DiagnosticsReport()
        config = PhylogenyConfig(max_rounds=1, tolerance=-1.0)
        result = PhylogenyBuilder(config).build(SEQUENCES, diagnostics=diagnostics)
        assert result.converged is False
        assert result.rounds == 1
        assert [w["type"] for w in diagnostics.warnings] == ["OptimizationStalled"]
        assert diagnostics.phylogeny["converged"] is False

    def test_midpoint_rooting(self):
        result = PhylogenyBuilder(PhylogenyConfig(midpoint_root=True)).build(SEQUENCES)
        assert len(result.to_phylo().get_terminals()) == 4

    def test_write_newick(self, tmp_path):
        result = PhylogenyBuilder().build(SEQUENCES)
        path = tmp_path / "tree.nwk"
        result.write(str(path))
        assert path.read_text().strip().endswith(";")

    def test_eight_tip_tree(self):
        labels = list(EIGHT_TIPS)
        result = PhylogenyBuilder(PhylogenyConfig(max_rounds=3)).build(list(EIGHT_TIPS.values()), labels)

        assert result.tips == labels
        assert all(later >= earlier - 1e-6 for earlier, later in zip(result.history, result.history[1:]))

        phylo = result.to_phylo()
        assert sorted(t.name for t in phylo.get_terminals()) == sorted(labels)
        for pair, other in [("P", "Q"), ("Q", "P"), ("R", "S"), ("S", "R")]:
            assert phylo.distance(f"{pair}1", f"{pair}2") < phylo.distance(f"{pair}1", f"{other}1")
        assert phylo.distance("P1", "Q1") < phylo.distance("P1", "R1")


class TestNearestNeighborInterchange:

    def likelihood_tree(self, names):
        aligned = align_sequences([EIGHT_TIPS[name] for name in names])
        patterns, weights = site_patterns(aligned)
        return LikelihoodTree(caterpillar(list(range(8))), tip_partials(patterns), weights,
                              GTRModel(n_categories=4), PhylogenyConfig())

    def test_interchange_repairs_wrong_topology(self):
        # P1 and P2 hang off neighbouring chain nodes 8 and 9
        names = ["Q1", "Q2", "R1", "P1", "P2", "R2", "S1", "S2"]
        tree = self.likelihood_tree(names)
        before = tree.log_likelihood()

        accepted = tree.nni_pass()

        assert accepted >= 1
        assert tree.log_likelihood() > before
        p1, p2 = names.index("P1"), names.index("P2")
        assert set(tree.adjacency[p1]) == set(tree.adjacency[p2])

    def test_tree_stays_binary_after_interchanges(self):
        names = ["Q1", "Q2", "R1", "P1", "P2", "R2", "S1", "S2"]
        tree = self.likelihood_tree(names)
        for _ in range(5):
            if not tree.nni_pass():
                break

        assert len(tree.branches()) == 13
        for node, neighbors in tree.adjacency.items():
            assert len(neighbors) == (1 if node < 8 else 3)
            for neighbor, length in neighbors.items():
                assert tree.adjacency[neighbor][node] == length
