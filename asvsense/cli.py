#!/usr/bin/env python3

import argparse
import logging
import os
import sys

from asvsense import __version__
from asvsense.config import PipelineConfig
from asvsense.exceptions import AsvsenseError
from asvsense.io import load_reference, load_species_reference, read_manifest, read_paired_samples, \
    write_results
from asvsense.pipeline import run_pipeline


def setup_logging(log_level: str, log_file: str = None):
    """Setup logging configuration with optional file output."""
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level))
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
        return log_file

    return None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Infer amplicon sequence variants from paired-end reads, "
                    "with chimera removal, taxonomy and a maximum-likelihood tree"
    )
    parser.add_argument("manifest",
                        help="Tab-separated manifest: sample-id, forward FASTQ, reverse FASTQ")
    parser.add_argument("--reference",
                        help="Taxonomy training FASTA with ';'-separated lineages in the headers")
    parser.add_argument("--species-reference",
                        help="FASTA with '>ID Genus species' headers for exact species assignment")
    parser.add_argument("-O", "--output-dir", default="asvsense_output",
                        help="Output directory for all files (default: asvsense_output)")
    parser.add_argument("--threads", type=int, default=1, metavar="N",
                        help="Worker threads for per-sample denoising (default: 1)")

    group = parser.add_argument_group("Error model")
    group.add_argument("--error-max-rounds", type=int, default=10,
                       help="Maximum self-consistency rounds (default: 10)")
    group.add_argument("--error-tolerance", type=float, default=0.05,
                       help="Maximum relative rate change accepted as converged (default: 0.05)")
    group.add_argument("--max-learn-bases", type=int, default=100_000_000,
                       help="Bases used for error learning, 0 for all (default: 1e8)")
    group.add_argument("--fail-on-nonconvergence", action="store_true",
                       help="Abort when the error model does not converge (default: warn and continue)")

    group = parser.add_argument_group("Denoising")
    group.add_argument("--omega-a", type=float, default=1e-40,
                       help="Abundance p-value threshold for new ASVs (default: 1e-40)")
    group.add_argument("--band-size", type=int, default=16,
                       help="Maximum length difference compared between sequences (default: 16)")

    group = parser.add_argument_group("Merging")
    group.add_argument("--min-overlap", type=int, default=12,
                       help="Minimum overlap of forward and reverse ASVs (default: 12)")
    group.add_argument("--max-mismatch-rate", type=float, default=0.0,
                       help="Maximum fraction of mismatches in the overlap (default: 0)")
    group.add_argument("--concatenate", action="store_true",
                       help="Join non-overlapping pairs with an N spacer instead of merging")
    group.add_argument("--trim-overhang", action="store_true",
                       help="Trim bases extending past the start of the mate")

    group = parser.add_argument_group("Chimeras")
    group.add_argument("--chimera-method", choices=["pooled", "consensus"], default="pooled",
                       help="Detect on pooled totals or by per-sample vote (default: pooled)")
    group.add_argument("--min-fold-parent", type=float, default=2.0,
                       help="Parents must be this many times more abundant (default: 2.0)")
    group.add_argument("--chimera-max-mismatch", type=int, default=0,
                       help="Mismatches allowed against the two-parent model (default: 0)")

    group = parser.add_argument_group("Taxonomy")
    group.add_argument("--min-bootstrap", type=float, default=0.5,
                       help="Bootstrap confidence needed to report a rank (default: 0.5)")
    group.add_argument("--try-rc", action="store_true",
                       help="Also classify the reverse complement of each ASV")

    group = parser.add_argument_group("Phylogeny")
    group.add_argument("--skip-tree", action="store_true",
                       help="Do not build a phylogenetic tree")
    group.add_argument("--tree-max-rounds", type=int, default=10,
                       help="Maximum likelihood refinement rounds (default: 10)")
    group.add_argument("--midpoint-root", action="store_true",
                       help="Root the output tree at its midpoint")

    parser.add_argument("--log-file", help="Also write the log to this file")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--version", action="version",
                        version=f"asvsense {__version__}",
                        help="Show program's version number and exit")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    config = PipelineConfig.from_args(args)
    logging.info(f"asvsense {__version__}")

    if not os.path.exists(args.manifest):
        logging.error(f"Manifest not found: {args.manifest}")
        sys.exit(1)

    try:
        manifest = read_manifest(args.manifest)
        reads = read_paired_samples(manifest)
        if not reads:
            logging.warning("No reads found in any sample. Nothing to denoise.")
            sys.exit(0)

        reference = load_reference(args.reference) if args.reference else None
        species_reference = load_species_reference(args.species_reference) if args.species_reference else None

        result = run_pipeline(reads, reference=reference, config=config, species_reference=species_reference)
    except AsvsenseError as e:
        logging.error(e.full_message)
        sys.exit(1)

    write_results(result, args.output_dir, config, manifest=os.path.abspath(args.manifest))

    n_warnings = len(result.diagnostics.warnings)
    logging.info(f"Done: {len(result.table)} ASVs in {len(result.table.samples)} samples, "
                 f"{len(result.chimeras)} chimeras removed, {n_warnings} warnings")


if __name__ == "__main__":
    main()
