#!/usr/bin/env python3
"""
Tests for per-sample ASV inference (denoise_sample).
"""

import hashlib
import random

import numpy as np
import pytest

from asvsense.config import DenoiseConfig
from asvsense.denoise import abundance_pvalues, denoise_sample, substitution_log_prob
from asvsense.derep import dereplicate
from asvsense.error_model import ErrorModel
from asvsense.types import DereplicatedSequence, Read, encode_sequence


def generate_dna_sequence(seed: str, length: int) -> str:
    """Generate a reproducible pseudo-random DNA sequence."""
    result = []
    bases = "ACGT"
    for i in range(length):
        h = hashlib.md5(f"{seed}_{i}".encode()).hexdigest()
        result.append(bases[int(h[0], 16) % 4])
    return "".join(result)


def mutate(sequence: str, positions) -> str:
    """Substitute each listed position with the next base in ACGT order."""
    seq = list(sequence)
    for pos in positions:
        seq[pos] = "ACGT"[("ACGT".index(seq[pos]) + 1) % 4]
    return "".join(seq)


def simulate_reads(templates, counts, error_rate: float, seed: int, quality: int = 35):
    """Reads drawn from templates with uniform random substitutions."""
    rng = random.Random(seed)
    reads = []
    for t, (template, count) in enumerate(zip(templates, counts)):
        for i in range(count):
            bases = list(template)
            for pos in range(len(bases)):
                if rng.random() < error_rate:
                    bases[pos] = rng.choice([b for b in "ACGT" if b != bases[pos]])
            reads.append(Read(f"t{t}_r{i}", "s1", "forward", "".join(bases), (quality,) * len(bases)))
    return reads


SEQ_A = generate_dna_sequence("denoise_a", 150)
SEQ_B = mutate(SEQ_A, [10, 40, 70, 100, 130])


class TestAbundancePvalues:
    """P(X >= a | X >= 1) for X ~ Poisson."""

    def test_singleton_is_never_significant(self):
        pvalues = abundance_pvalues(np.array([1.0, 1.0]), np.array([1e-6, 3.0]))
        assert pvalues == pytest.approx([1.0, 1.0])

    def test_matches_poisson_tail(self):
        mu = 0.5
        # P(X >= 2) / P(X >= 1)
        expected = (1 - np.exp(-mu) - mu * np.exp(-mu)) / (1 - np.exp(-mu))
        assert abundance_pvalues(np.array([2.0]), np.array([mu]))[0] == pytest.approx(expected)

    def test_zero_expectation_gives_zero(self):
        assert abundance_pvalues(np.array([5.0]), np.array([0.0]))[0] == 0.0

    def test_large_abundance_is_tiny(self):
        assert abundance_pvalues(np.array([100.0]), np.array([0.01]))[0] < 1e-40


class TestSubstitutionLogProb:

    def test_identical_sequences(self):
        model = ErrorModel.from_quality_prior(41)
        codes = encode_sequence("ACGT")
        quality = np.full((1, 4), 30, dtype=np.intp)
        log_prob = substitution_log_prob(codes, codes[np.newaxis, :], quality, model.log_rates)[0]
        assert log_prob == pytest.approx(4 * np.log(1 - 1e-3))

    def test_n_is_ignored(self):
        model = ErrorModel.from_quality_prior(41)
        quality = np.full((1, 4), 30, dtype=np.intp)
        with_n = substitution_log_prob(encode_sequence("ACGT"), encode_sequence("ACNT")[np.newaxis, :],
                                       quality, model.log_rates)[0]
        assert with_n == pytest.approx(3 * np.log(1 - 1e-3))


class TestDenoiseSample:

    def test_rare_one_off_variant_joins_dominant_cluster(self):
        """Two identical 100-base sequences seen 50 times each plus a singleton one-off."""
        dominant = generate_dna_sequence("rare_variant", 100)
        variant = mutate(dominant, [50])
        reads = [Read(f"r{i}", "s1", "forward", dominant, (40,) * 100) for i in range(100)]
        reads.append(Read("v", "s1", "forward", variant, (40,) * 100))
        uniques, _ = dereplicate(reads)

        model = ErrorModel.from_quality_prior(41)
        assert model.error_rate(40) < 0.001

        result = denoise_sample(uniques, model)
        assert len(result.asvs) == 1
        assert result.asvs[0].abundance == 101
        assert result.asvs[0].sequence == dominant

    def test_distinct_variants_are_separated(self):
        uniques = [
            DereplicatedSequence(SEQ_A, 500, (35.0,) * 150),
            DereplicatedSequence(SEQ_B, 300, (35.0,) * 150),
        ]
        result = denoise_sample(uniques, ErrorModel.from_quality_prior(41))
        assert [asv.sequence for asv in result.asvs] == [SEQ_A, SEQ_B]
        assert [asv.abundance for asv in result.asvs] == [500, 300]
        assert result.asvs[1].birth_pvalue is not None

    def test_conservation_and_partition(self):
        reads = simulate_reads([SEQ_A, SEQ_B], [300, 150], error_rate=0.002, seed=7)
        uniques, _ = dereplicate(reads)
        result = denoise_sample(uniques, ErrorModel.from_quality_prior(41))

        assert result.total_abundance == sum(u.abundance for u in uniques) == 450
        members = sorted(m for asv in result.asvs for m in asv.members)
        assert members == list(range(len(uniques)))
        for i, asv_index in enumerate(result.assignment):
            assert i in result.asvs[asv_index].members

    def test_simulated_errors_collapse_to_templates(self):
        reads = simulate_reads([SEQ_A, SEQ_B], [300, 150], error_rate=0.002, seed=11)
        uniques, _ = dereplicate(reads)
        result = denoise_sample(uniques, ErrorModel.from_quality_prior(41))
        assert {asv.sequence for asv in result.asvs} == {SEQ_A, SEQ_B}

    def test_deterministic(self):
        reads = simulate_reads([SEQ_A, SEQ_B], [200, 100], error_rate=0.003, seed=3)
        uniques, _ = dereplicate(reads)
        model = ErrorModel.from_quality_prior(41)
        first = denoise_sample(uniques, model)
        second = denoise_sample(uniques, model)
        assert first.asvs == second.asvs
        assert np.array_equal(first.assignment, second.assignment)
        assert np.array_equal(first.transitions, second.transitions)

    def test_length_variant_is_compared_by_alignment(self):
        shorter = SEQ_A[:60] + SEQ_A[61:]
        uniques = [
            DereplicatedSequence(SEQ_A, 400, (35.0,) * 150),
            DereplicatedSequence(shorter, 1, (35.0,) * 149),
        ]
        result = denoise_sample(uniques, ErrorModel.from_quality_prior(41))
        assert len(result.asvs) == 1
        assert result.asvs[0].members == (0, 1)

    def test_band_size_keeps_distant_lengths_apart(self):
        shorter = SEQ_A[:120]
        uniques = [
            DereplicatedSequence(SEQ_A, 400, (35.0,) * 150),
            DereplicatedSequence(shorter, 3, (35.0,) * 120),
        ]
        result = denoise_sample(uniques, ErrorModel.from_quality_prior(41), DenoiseConfig(band_size=16))
        assert len(result.asvs) == 2

    def test_empty_sample(self):
        result = denoise_sample([], ErrorModel.from_quality_prior(41), sample="empty")
        assert result.is_empty
        assert result.stats["n_reads"] == 0

    def test_unsorted_input_rejected(self):
        uniques = [
            DereplicatedSequence(SEQ_A, 1, (35.0,) * 150),
            DereplicatedSequence(SEQ_B, 5, (35.0,) * 150),
        ]
        with pytest.raises(ValueError):
            denoise_sample(uniques, ErrorModel.from_quality_prior(41))

    def test_transitions_count_observed_bases(self):
        uniques = [DereplicatedSequence(SEQ_A, 10, (30.0,) * 150)]
        result = denoise_sample(uniques, ErrorModel.from_quality_prior(41))
        assert result.transitions.sum() == 10 * 150
        assert result.transitions[:, 30].sum() == 10 * 150

    def test_center_moves_to_most_abundant_member(self):
        """A variant that buds can pull in a more abundant neighbour, which then represents the cluster.

        The neighbour is three low-quality mismatches from the dominant sequence,
        so its own abundance is not significant, but only one from the variant.
        """
        neighbour = mutate(SEQ_A, [20, 60, 100])
        variant = mutate(neighbour, [120])
        neighbour_quality = tuple(10.0 if i in (20, 60, 100, 120) else 35.0 for i in range(150))
        uniques = [
            DereplicatedSequence(SEQ_A, 1000, (35.0,) * 150),
            DereplicatedSequence(neighbour, 12, neighbour_quality),
            DereplicatedSequence(variant, 10, (35.0,) * 150),
        ]
        result = denoise_sample(uniques, ErrorModel.from_quality_prior(41))

        assert [asv.sequence for asv in result.asvs] == [SEQ_A, neighbour]
        assert result.asvs[1].members == (1, 2)
        assert result.asvs[1].center == 1
        assert result.asvs[1].abundance == 22
        assert result.asvs[1].birth_pvalue is not None

    def test_every_center_is_its_most_abundant_member(self):
        reads = simulate_reads([SEQ_A, SEQ_B], [300, 150], error_rate=0.004, seed=5)
        uniques, _ = dereplicate(reads)
        result = denoise_sample(uniques, ErrorModel.from_quality_prior(41))
        for asv in result.asvs:
            assert asv.center == min(asv.members)
            assert asv.sequence == uniques[asv.center].sequence
