#!/usr/bin/env python3
"""
End-to-end tests: simulated paired reads through to an annotated table.
"""

import hashlib
import random

import pytest
from Bio.Seq import reverse_complement

from asvsense.config import PipelineConfig
from asvsense.exceptions import AlignmentFailure, NoSamplesError
from asvsense.pipeline import run_pipeline
from asvsense.types import Read


def generate_dna_sequence(seed: str, length: int) -> str:
    """Generate a reproducible pseudo-random DNA sequence."""
    result = []
    bases = "ACGT"
    for i in range(length):
        h = hashlib.md5(f"{seed}_{i}".encode()).hexdigest()
        result.append(bases[int(h[0], 16) % 4])
    return "".join(result)


def add_errors(sequence: str, rng: random.Random, error_rate: float) -> str:
    bases = list(sequence)
    for pos in range(len(bases)):
        if rng.random() < error_rate:
            bases[pos] = rng.choice([b for b in "ACGT" if b != bases[pos]])
    return "".join(bases)


def simulate_reads(design, seed: int = 1, error_rate: float = 0.001, quality: int = 35):
    """Paired 150bp reads from 250bp amplicons; design maps sample -> {amplicon: n_pairs}."""
    rng = random.Random(seed)
    reads = []
    for sample, amplicons in design.items():
        n = 0
        for amplicon, n_pairs in amplicons.items():
            for _ in range(n_pairs):
                read_id = f"{sample}_r{n}"
                n += 1
                forward = add_errors(amplicon[:150], rng, error_rate)
                reverse = add_errors(reverse_complement(amplicon[100:]), rng, error_rate)
                reads.append(Read(read_id, sample, "forward", forward, (quality,) * 150))
                reads.append(Read(read_id, sample, "reverse", reverse, (quality,) * 150))
    return reads


AMPLICON_1 = generate_dna_sequence("pipeline_amplicon_1", 250)
AMPLICON_2 = generate_dna_sequence("pipeline_amplicon_2", 250)
DESIGN = {
    "s1": {AMPLICON_1: 200, AMPLICON_2: 100},
    "s2": {AMPLICON_1: 100, AMPLICON_2: 200},
}


def mutate(sequence: str, positions) -> str:
    seq = list(sequence)
    for pos in positions:
        seq[pos] = "ACGT"[("ACGT".index(seq[pos]) + 1) % 4]
    return "".join(seq)


def taxonomy_reference():
    lineage_1 = ["Bacteria", "Firmicutes", "Bacilli", "Bacillales", "Bacillaceae", "Bacillus"]
    lineage_2 = ["Bacteria", "Proteobacteria", "Gammaproteobacteria", "Pseudomonadales", "Pseudomonadaceae",
                 "Pseudomonas"]
    reference = []
    for i in range(3):
        reference.append((mutate(AMPLICON_1, [30 + 60 * i]), lineage_1))
        reference.append((mutate(AMPLICON_2, [45 + 60 * i]), lineage_2))
    return reference


@pytest.fixture(scope="module")
def result():
    return run_pipeline(simulate_reads(DESIGN), reference=taxonomy_reference(),
                        metadata={"s1": {"site": "river"}, "s2": {"site": "lake"}})


class TestRunPipeline:

    def test_recovers_true_amplicons(self, result):
        assert set(result.table.sequences) == {AMPLICON_1, AMPLICON_2}
        assert result.chimeras == []

    def test_read_pairs_are_conserved(self, result):
        assert int(result.table.counts.sum()) == 600
        assert result.table.sample_counts("s1") == {AMPLICON_1: 200, AMPLICON_2: 100}
        assert result.table.sample_counts("s2") == {AMPLICON_1: 100, AMPLICON_2: 200}

    def test_annotations_cover_table(self, result):
        ids = result.asv_ids()
        assert set(result.taxonomy) == set(result.table.sequences)
        assert sorted(result.tree.tips) == sorted(ids.values())
        assert result.taxonomy[AMPLICON_1].name_at("Genus") == "Bacillus"
        assert result.taxonomy[AMPLICON_2].name_at("Genus") == "Pseudomonas"

    def test_error_models_per_orientation(self, result):
        assert set(result.error_models) == {"forward", "reverse"}
        assert set(result.diagnostics.error_models) == {"forward", "reverse"}

    def test_diagnostics(self, result):
        assert set(result.diagnostics.denoise_stats) == {"s1", "s2"}
        assert set(result.diagnostics.merge_stats) == {"s1", "s2"}

    def test_metadata_passes_through(self, result):
        assert result.metadata == {"s1": {"site": "river"}, "s2": {"site": "lake"}}

    def test_missing_orientation_is_recorded(self):
        reads = simulate_reads(DESIGN, seed=2)
        reads += [r for r in simulate_reads({"s3": {AMPLICON_1: 30}}, seed=3)
                  if r.orientation == "forward"]
        config = PipelineConfig(build_tree=False)
        result = run_pipeline(reads, config=config)
        assert result.table.samples == ["s1", "s2", "s3"]
        assert result.table.sample_counts("s3") == {}
        assert [w["type"] for w in result.diagnostics.warnings
                if w["component"] == "DenoiseEngine"] == ["EmptyPartition"]
        assert result.tree is None
        assert result.taxonomy == {}

    def test_tree_needs_two_asvs(self):
        reads = simulate_reads({"s1": {AMPLICON_1: 50}}, seed=4)
        with pytest.raises(AlignmentFailure):
            run_pipeline(reads)
        result = run_pipeline(reads, config=PipelineConfig(build_tree=False))
        assert result.table.sequences == [AMPLICON_1]

    def test_no_reads(self):
        with pytest.raises(NoSamplesError):
            run_pipeline([])

    def test_threaded_run_matches_sequential(self):
        reads = simulate_reads(DESIGN, seed=5)
        sequential = run_pipeline(reads, config=PipelineConfig(build_tree=False))
        threaded = run_pipeline(reads, config=PipelineConfig(build_tree=False, max_workers=4))
        assert threaded.table.sequences == sequential.table.sequences
        assert (threaded.table.counts == sequential.table.counts).all()
