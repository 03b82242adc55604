#!/usr/bin/env python3
"""
Tests for manifest/FASTQ/reference parsing, output writers and the command line.
"""

import csv
import hashlib
import json
import random

import pytest
from Bio import SeqIO
from Bio.Seq import Seq, reverse_complement
from Bio.SeqRecord import SeqRecord

from asvsense.cli import build_parser, main
from asvsense.config import PipelineConfig
from asvsense.io import (
    _mate_id,
    load_reference,
    load_species_reference,
    read_fastq,
    read_manifest,
    read_paired_samples,
    write_asv_fasta,
    write_run_metadata,
    write_table,
)
from asvsense.table import AbundanceTable


def generate_dna_sequence(seed: str, length: int) -> str:
    """Generate a reproducible pseudo-random DNA sequence."""
    result = []
    bases = "ACGT"
    for i in range(length):
        h = hashlib.md5(f"{seed}_{i}".encode()).hexdigest()
        result.append(bases[int(h[0], 16) % 4])
    return "".join(result)


def write_fastq(path, records):
    """records: (read_id, sequence, phred) triples."""
    seq_records = []
    for read_id, sequence, phred in records:
        record = SeqRecord(Seq(sequence), id=read_id, description="")
        record.letter_annotations["phred_quality"] = [phred] * len(sequence)
        seq_records.append(record)
    with open(path, 'w') as f:
        SeqIO.write(seq_records, f, "fastq")


def write_paired_sample(directory, sample, amplicons, rng):
    """Write forward/reverse FASTQ for a sample; amplicons maps sequence -> n_pairs."""
    forward, reverse = [], []
    n = 0
    for amplicon, n_pairs in amplicons.items():
        for _ in range(n_pairs):
            fwd = list(amplicon[:150])
            if rng.random() < 0.1:
                pos = rng.randrange(150)
                fwd[pos] = "ACGT"[("ACGT".index(fwd[pos]) + 1) % 4]
            forward.append((f"{sample}.{n}/1", "".join(fwd), 35))
            reverse.append((f"{sample}.{n}/2", reverse_complement(amplicon[100:]), 35))
            n += 1
    forward_path = directory / f"{sample}_R1.fastq"
    reverse_path = directory / f"{sample}_R2.fastq"
    write_fastq(forward_path, forward)
    write_fastq(reverse_path, reverse)
    return forward_path.name, reverse_path.name


AMPLICON_1 = generate_dna_sequence("io_amplicon_1", 250)
AMPLICON_2 = generate_dna_sequence("io_amplicon_2", 250)


class TestReaders:

    def test_mate_id(self):
        assert _mate_id("read7/1") == "read7"
        assert _mate_id("read7/2") == "read7"
        assert _mate_id("read7") == "read7"
        assert _mate_id("read7/3") == "read7/3"

    def test_read_fastq(self, tmp_path):
        path = tmp_path / "reads.fastq"
        write_fastq(path, [("x/1", "acgt", 30), ("y/1", "GGCC", 20)])
        reads = read_fastq(str(path), "s1", "forward")
        assert [r.read_id for r in reads] == ["x", "y"]
        assert reads[0].sequence == "ACGT"
        assert reads[1].quality == (20, 20, 20, 20)
        assert reads[0].sample == "s1"

    def test_read_manifest(self, tmp_path):
        manifest = tmp_path / "manifest.tsv"
        manifest.write_text(
            "sample-id\tforward-absolute-filepath\treverse-absolute-filepath\n"
            "# comment\n"
            "s1\ts1_R1.fastq\t/data/s1_R2.fastq\n"
        )
        rows = read_manifest(str(manifest))
        assert rows == [("s1", str(tmp_path / "s1_R1.fastq"), "/data/s1_R2.fastq")]

    def test_manifest_needs_three_columns(self, tmp_path):
        manifest = tmp_path / "manifest.tsv"
        manifest.write_text("s1\tonly_forward.fastq\n")
        with pytest.raises(ValueError):
            read_manifest(str(manifest))

    def test_read_paired_samples(self, tmp_path):
        forward, reverse = write_paired_sample(tmp_path, "s1", {AMPLICON_1: 3}, random.Random(1))
        reads = read_paired_samples([("s1", str(tmp_path / forward), str(tmp_path / reverse))])
        assert len(reads) == 6
        assert {r.orientation for r in reads} == {"forward", "reverse"}
        assert {r.read_id for r in reads} == {"s1.0", "s1.1", "s1.2"}

    def test_load_reference(self, tmp_path):
        path = tmp_path / "ref.fasta"
        path.write_text(">Bacteria;Firmicutes;Bacilli;\nacgtacgt\n>Bacteria;Proteobacteria\nGGGGCCCC\n")
        reference = load_reference(str(path))
        assert reference == [
            ("ACGTACGT", ["Bacteria", "Firmicutes", "Bacilli"]),
            ("GGGGCCCC", ["Bacteria", "Proteobacteria"]),
        ]

    def test_load_species_reference(self, tmp_path):
        path = tmp_path / "species.fasta"
        path.write_text(">AB001 Bacillus subtilis\nACGTACGT\n>AB002\nGGGG\n")
        assert load_species_reference(str(path)) == [("ACGTACGT", "Bacillus", "subtilis")]


class TestWriters:

    def test_write_table_and_fasta(self, tmp_path):
        table = AbundanceTable.from_counts({"s1": {"AAAA": 5, "CCCC": 1}, "s2": {"CCCC": 9}})
        write_table(table, str(tmp_path / "table.tsv"))
        write_asv_fasta(table, str(tmp_path / "asvs.fasta"))

        with open(tmp_path / "table.tsv") as f:
            rows = list(csv.reader(f, delimiter="\t"))
        assert rows == [["sample-id", "ASV1", "ASV2"], ["s1", "1", "5"], ["s2", "9", "0"]]

        records = list(SeqIO.parse(str(tmp_path / "asvs.fasta"), "fasta"))
        assert [(r.id, str(r.seq)) for r in records] == [("ASV1", "CCCC"), ("ASV2", "AAAA")]
        assert records[0].description.endswith("size=10")

    def test_write_run_metadata(self, tmp_path):
        path = tmp_path / "run-metadata.json"
        write_run_metadata(str(path), PipelineConfig(), manifest="m.tsv", sample_metadata={"s1": {"site": "a"}})
        data = json.loads(path.read_text())
        assert data["manifest"] == "m.tsv"
        assert data["samples"] == {"s1": {"site": "a"}}
        assert data["parameters"]["chimera"]["method"] == "pooled"


class TestCommandLine:

    def test_parser_builds_config(self):
        args = build_parser().parse_args(["m.tsv", "--threads", "3", "--chimera-method", "consensus",
                                          "--skip-tree", "--min-overlap", "20"])
        config = PipelineConfig.from_args(args)
        assert config.max_workers == 3
        assert config.chimera.method == "consensus"
        assert config.merge.min_overlap == 20
        assert config.build_tree is False

    def test_missing_manifest(self, tmp_path):
        with pytest.raises(SystemExit) as excinfo:
            main([str(tmp_path / "missing.tsv"), "-O", str(tmp_path / "out")])
        assert excinfo.value.code == 1

    def test_end_to_end(self, tmp_path):
        rng = random.Random(7)
        lines = ["sample-id\tforward-absolute-filepath\treverse-absolute-filepath"]
        for sample, amplicons in [("s1", {AMPLICON_1: 60, AMPLICON_2: 30}), ("s2", {AMPLICON_1: 30, AMPLICON_2: 60})]:
            forward, reverse = write_paired_sample(tmp_path, sample, amplicons, rng)
            lines.append(f"{sample}\t{forward}\t{reverse}")
        manifest = tmp_path / "manifest.tsv"
        manifest.write_text("\n".join(lines) + "\n")
        output_dir = tmp_path / "out"

        main([str(manifest), "-O", str(output_dir), "--log-level", "WARNING"])

        for name in ["asv-table.tsv", "asvs.fasta", "tree.nwk", "chimeras.tsv", "diagnostics.json",
                     "run-metadata.json"]:
            assert (output_dir / name).exists(), name
        records = list(SeqIO.parse(str(output_dir / "asvs.fasta"), "fasta"))
        assert {str(r.seq) for r in records} == {AMPLICON_1, AMPLICON_2}
        diagnostics = json.loads((output_dir / "diagnostics.json").read_text())
        assert set(diagnostics["merge"]) == {"s1", "s2"}
