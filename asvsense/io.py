"""Reading manifests, FASTQ and reference FASTA; writing run outputs."""

import csv
import gzip
import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from Bio import SeqIO
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord

from asvsense.config import PipelineConfig
from asvsense.types import FORWARD, REVERSE, ChimeraFlag, Read, TaxonomyAssignment

MANIFEST_HEADER = ["sample-id", "forward-absolute-filepath", "reverse-absolute-filepath"]


def _open_text(path: str):
    if path.endswith(".gz"):
        return gzip.open(path, "rt")
    return open(path)


def read_manifest(path: str) -> List[Tuple[str, str, str]]:
    """Parse a paired-end manifest TSV into (sample_id, forward_path, reverse_path).

    The header row and lines starting with '#' are skipped. Relative paths are
    resolved against the manifest's directory.
    """
    base = os.path.dirname(os.path.abspath(path))
    rows = []
    with open(path) as f:
        for fields in csv.reader(f, delimiter="\t"):
            if not fields or fields[0].startswith("#") or fields[0] == MANIFEST_HEADER[0]:
                continue
            if len(fields) < 3:
                raise ValueError(f"Manifest line for '{fields[0]}' needs sample id, forward and reverse paths")
            sample, forward, reverse = (field.strip() for field in fields[:3])
            rows.append((sample,
                         forward if os.path.isabs(forward) else os.path.join(base, forward),
                         reverse if os.path.isabs(reverse) else os.path.join(base, reverse)))
    logging.info(f"Manifest lists {len(rows)} samples")
    return rows


def _mate_id(record_id: str) -> str:
    """Strip a trailing /1 or /2 so both mates share an id."""
    if len(record_id) > 2 and record_id[-2] == "/" and record_id[-1] in "12":
        return record_id[:-2]
    return record_id


def read_fastq(path: str, sample: str, orientation: str) -> List[Read]:
    with _open_text(path) as handle:
        return [
            Read(
                read_id=_mate_id(record.id),
                sample=sample,
                orientation=orientation,
                sequence=str(record.seq).upper(),
                quality=tuple(record.letter_annotations["phred_quality"]),
            )
            for record in SeqIO.parse(handle, "fastq")
        ]


def read_paired_samples(manifest: Sequence[Tuple[str, str, str]]) -> List[Read]:
    """Load forward and reverse reads of every manifest sample."""
    reads: List[Read] = []
    for sample, forward_path, reverse_path in manifest:
        forward = read_fastq(forward_path, sample, FORWARD)
        reverse = read_fastq(reverse_path, sample, REVERSE)
        if len(forward) != len(reverse):
            logging.warning(f"Sample {sample}: {len(forward)} forward but {len(reverse)} reverse reads")
        logging.debug(f"Sample {sample}: loaded {len(forward)} read pairs")
        reads.extend(forward)
        reads.extend(reverse)
    logging.info(f"Loaded {len(reads)} reads from {len(manifest)} samples")
    return reads


def load_reference(path: str) -> List[Tuple[str, List[str]]]:
    """Taxonomy training FASTA whose headers are ';'-separated lineages, highest rank first."""
    reference = []
    with _open_text(path) as handle:
        for record in SeqIO.parse(handle, "fasta"):
            lineage = [name.strip() for name in record.description.split(";")]
            while lineage and not lineage[-1]:
                lineage.pop()
            reference.append((str(record.seq).upper(), lineage))
    logging.info(f"Loaded {len(reference)} reference sequences from {path}")
    return reference


def load_species_reference(path: str) -> List[Tuple[str, str, str]]:
    """Species FASTA with headers of the form '>ID Genus species'."""
    reference = []
    with _open_text(path) as handle:
        for record in SeqIO.parse(handle, "fasta"):
            parts = record.description.split()
            if len(parts) < 3:
                logging.warning(f"Skipping species reference entry without genus and species: {record.id}")
                continue
            reference.append((str(record.seq).upper(), parts[1], parts[2]))
    logging.info(f"Loaded {len(reference)} species reference sequences from {path}")
    return reference


def write_table(table, path: str) -> None:
    """Samples as rows, ASV ids as columns."""
    ids = table.asv_ids()
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f, delimiter="\t")
        writer.writerow(["sample-id"] + [ids[seq] for seq in table.sequences])
        for sample, row in zip(table.samples, table.counts):
            writer.writerow([sample] + [int(c) for c in row])


def write_asv_fasta(table, path: str) -> None:
    ids = table.asv_ids()
    totals = table.totals()
    records = [
        SeqRecord(Seq(seq), id=ids[seq], description=f"size={int(total)}")
        for seq, total in zip(table.sequences, totals)
    ]
    with open(path, 'w') as f:
        SeqIO.write(records, f, "fasta")


def write_taxonomy(taxonomy: Mapping[str, TaxonomyAssignment], table, path: str) -> None:
    """One row per table column: names per rank followed by their bootstrap confidences."""
    ids = table.asv_ids()
    sequences = [seq for seq in table.sequences if seq in taxonomy]
    if not sequences:
        return
    ranks = [a.rank for a in taxonomy[sequences[0]].ranks]
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f, delimiter="\t")
        writer.writerow(["asv-id"] + ranks + [f"{rank}-confidence" for rank in ranks] + ["sequence"])
        for seq in sequences:
            assignment = taxonomy[seq]
            writer.writerow([ids[seq]] + assignment.lineage()
                            + [f"{a.confidence:.2f}" for a in assignment.ranks] + [seq])


def write_chimeras(chimeras: Sequence[ChimeraFlag], path: str) -> None:
    columns = ["sequence", "abundance", "breakpoint", "left_parent", "right_parent",
               "left_abundance", "right_abundance", "mismatches", "score"]
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f, delimiter="\t")
        writer.writerow(columns)
        for flag in chimeras:
            row = flag._asdict()
            writer.writerow(["" if row[c] is None else row[c] for c in columns])


def write_run_metadata(path: str, config: PipelineConfig, manifest: Optional[str] = None,
                       sample_metadata: Optional[Mapping[str, Any]] = None) -> None:
    """Write run parameters to JSON for downstream tools."""
    from asvsense import __version__

    metadata: Dict[str, Any] = {
        "version": __version__,
        "timestamp": datetime.now().isoformat(),
        "parameters": config.to_dict(),
        "manifest": manifest,
    }
    if sample_metadata is not None:
        metadata["samples"] = dict(sample_metadata)
    with open(path, 'w') as f:
        json.dump(metadata, f, indent=2)


def write_results(result, output_dir: str, config: PipelineConfig, manifest: Optional[str] = None) -> None:
    """Write every output of a pipeline run into output_dir."""
    os.makedirs(output_dir, exist_ok=True)
    write_table(result.table, os.path.join(output_dir, "asv-table.tsv"))
    write_asv_fasta(result.table, os.path.join(output_dir, "asvs.fasta"))
    if result.taxonomy:
        write_taxonomy(result.taxonomy, result.table, os.path.join(output_dir, "taxonomy.tsv"))
    if result.tree is not None:
        result.tree.write(os.path.join(output_dir, "tree.nwk"))
    write_chimeras(result.chimeras, os.path.join(output_dir, "chimeras.tsv"))
    result.diagnostics.write_json(os.path.join(output_dir, "diagnostics.json"))
    write_run_metadata(os.path.join(output_dir, "run-metadata.json"), config, manifest, result.metadata)
    logging.info(f"Wrote results to {output_dir}")
