"""End-to-end ASV inference: reads in, annotated abundance table out."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from asvsense.chimera import ChimeraDetector
from asvsense.config import PipelineConfig
from asvsense.denoise import DenoiseResult, denoise_sample
from asvsense.derep import dereplicate, group_reads
from asvsense.diagnostics import DiagnosticsReport
from asvsense.error_model import ErrorModel, learn_errors
from asvsense.exceptions import EmptyPartition, NoSamplesError
from asvsense.merge import PairMerger
from asvsense.phylogeny import PhylogeneticTree, PhylogenyBuilder
from asvsense.table import AbundanceTable
from asvsense.taxonomy import TaxonomyClassifier, assign_species
from asvsense.types import FORWARD, ORIENTATIONS, REVERSE, ChimeraFlag, DereplicatedSequence, Read, \
    TaxonomyAssignment
from asvsense.workers import map_samples


@dataclass
class PipelineResult:
    """Everything a run produces.

    `table` is the chimera-filtered table; taxonomy and tree cover exactly
    its columns.
    """
    table: AbundanceTable
    unfiltered_table: AbundanceTable
    chimeras: List[ChimeraFlag]
    error_models: Dict[str, ErrorModel]
    diagnostics: DiagnosticsReport
    taxonomy: Dict[str, TaxonomyAssignment] = field(default_factory=dict)
    tree: Optional[PhylogeneticTree] = None
    metadata: Optional[Mapping[str, Any]] = None

    def asv_ids(self) -> Dict[str, str]:
        return self.table.asv_ids()


def dereplicate_samples(grouped: Dict[str, Dict[str, List[Read]]], diagnostics: DiagnosticsReport
                        ) -> Dict[str, Dict[str, Tuple[List[DereplicatedSequence], Dict[str, int]]]]:
    """Dereplicate every (sample, orientation); empty partitions are recorded and omitted."""
    derep: Dict[str, Dict[str, Tuple[List[DereplicatedSequence], Dict[str, int]]]] = {}
    for sample, by_orientation in grouped.items():
        derep[sample] = {}
        for orientation in ORIENTATIONS:
            reads = by_orientation.get(orientation, [])
            if not reads:
                diagnostics.record(EmptyPartition(sample, orientation), "DenoiseEngine")
                continue
            derep[sample][orientation] = dereplicate(reads)
    return derep


def run_pipeline(reads: Iterable[Read], reference: Optional[Sequence[Tuple[str, Sequence[str]]]] = None,
                 config: Optional[PipelineConfig] = None, metadata: Optional[Mapping[str, Any]] = None,
                 species_reference: Optional[Sequence[Tuple[str, str, str]]] = None) -> PipelineResult:
    """Run error learning, denoising, merging, chimera removal, taxonomy and tree building.

    Args:
        reads: Quality-filtered reads from any number of samples, both orientations
        reference: (sequence, lineage) pairs for taxonomy; skipped when None
        config: Pipeline configuration
        metadata: Sample annotations passed through to the result untouched
        species_reference: (sequence, genus, species) triples for exact species calls

    Returns:
        PipelineResult

    Raises:
        NoSamplesError: No reads at all, or none in one orientation
        EmptyReferenceDatabase: The taxonomy reference has no usable entries
        AlignmentFailure: Tree requested but fewer than two ASVs survive filtering
    """
    config = config or PipelineConfig()
    diagnostics = DiagnosticsReport()

    grouped = group_reads(reads)
    if not grouped:
        raise NoSamplesError()
    samples = list(grouped.keys())
    logging.info(f"Processing {len(samples)} samples")

    derep = dereplicate_samples(grouped, diagnostics)

    error_models: Dict[str, ErrorModel] = {}
    for orientation in ORIENTATIONS:
        uniques_by_sample = {s: derep[s][orientation][0] for s in samples if orientation in derep[s]}
        model = learn_errors(uniques_by_sample, orientation, config.error_model, config.denoise,
                             max_workers=config.max_workers, diagnostics=diagnostics)
        error_models[orientation] = model
        diagnostics.error_models[orientation] = model.to_dict()

    tasks = [(sample, orientation) for sample in samples for orientation in ORIENTATIONS
             if orientation in derep[sample]]

    def run(task: Tuple[str, str]) -> DenoiseResult:
        sample, orientation = task
        uniques, _ = derep[sample][orientation]
        return denoise_sample(uniques, error_models[orientation], config.denoise,
                              sample=sample, orientation=orientation)

    results = dict(zip(tasks, map_samples(run, tasks, max_workers=config.max_workers, desc="Denoising samples")))
    for (sample, orientation), result in results.items():
        diagnostics.add_denoise_stats(sample, orientation, result.stats)

    merger = PairMerger(config.merge)
    merged = {}
    for sample in samples:
        if (sample, FORWARD) not in results or (sample, REVERSE) not in results:
            merged[sample] = []
            continue
        merged[sample], rejections, stats = merger.merge(
            results[(sample, FORWARD)], results[(sample, REVERSE)],
            derep[sample][FORWARD][1], derep[sample][REVERSE][1]
        )
        diagnostics.merge_stats[sample] = stats
        diagnostics.add_merge_rejections(rejections)

    unfiltered = AbundanceTable.from_merged(merged, samples=samples)
    logging.info(f"Abundance table: {len(samples)} samples x {len(unfiltered)} sequences")

    table, chimeras = ChimeraDetector(config.chimera, max_workers=config.max_workers).filter(unfiltered)
    diagnostics.chimeras = chimeras

    result = PipelineResult(
        table=table,
        unfiltered_table=unfiltered,
        chimeras=chimeras,
        error_models=error_models,
        diagnostics=diagnostics,
        metadata=metadata,
    )

    if reference is not None:
        classifier = TaxonomyClassifier(reference, config.taxonomy)
        result.taxonomy = classifier.assign(table.sequences)
        if species_reference is not None:
            result.taxonomy = assign_species(result.taxonomy, species_reference)

    if config.build_tree:
        ids = table.asv_ids()
        result.tree = PhylogenyBuilder(config.phylogeny).build(
            table.sequences, labels=[ids[seq] for seq in table.sequences], diagnostics=diagnostics
        )

    return result
