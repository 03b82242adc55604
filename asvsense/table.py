"""Sample x sequence abundance table."""

from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np

from asvsense.types import MergedSequence


class AbundanceTable:
    """Integer counts with samples as rows and unique sequences as columns.

    Columns are kept in descending order of total abundance (ties broken
    lexicographically). Instances are not modified after construction;
    filtering returns a new table.
    """

    def __init__(self, samples: Sequence[str], sequences: Sequence[str], counts: np.ndarray):
        counts = np.asarray(counts, dtype=np.int64)
        if counts.shape != (len(samples), len(sequences)):
            raise ValueError(f"Counts shape {counts.shape} does not match "
                             f"{len(samples)} samples x {len(sequences)} sequences")
        if len(set(sequences)) != len(sequences):
            raise ValueError("Duplicate sequences in abundance table columns")

        totals = counts.sum(axis=0)
        order = sorted(range(len(sequences)), key=lambda j: (-totals[j], sequences[j]))
        self._samples = list(samples)
        self._sequences = [sequences[j] for j in order]
        self._counts = counts[:, order] if len(order) else counts.copy()
        self._counts.setflags(write=False)
        self._index = {seq: j for j, seq in enumerate(self._sequences)}

    @classmethod
    def from_merged(cls, merged: Mapping[str, Iterable[MergedSequence]],
                    samples: Optional[Sequence[str]] = None) -> 'AbundanceTable':
        """Sum merged-sequence abundances per (sample, sequence)."""
        if samples is None:
            samples = list(merged.keys())
        per_sample: Dict[str, Dict[str, int]] = {s: defaultdict(int) for s in samples}
        all_sequences = set()
        for sample in samples:
            for item in merged.get(sample, []):
                per_sample[sample][item.sequence] += item.abundance
                all_sequences.add(item.sequence)
        return cls.from_counts(per_sample, samples=samples, sequences=sorted(all_sequences))

    @classmethod
    def from_counts(cls, per_sample: Mapping[str, Mapping[str, int]],
                    samples: Optional[Sequence[str]] = None,
                    sequences: Optional[Sequence[str]] = None) -> 'AbundanceTable':
        if samples is None:
            samples = list(per_sample.keys())
        if sequences is None:
            sequences = sorted({seq for counts in per_sample.values() for seq in counts})
        column = {seq: j for j, seq in enumerate(sequences)}
        counts = np.zeros((len(samples), len(sequences)), dtype=np.int64)
        for i, sample in enumerate(samples):
            for seq, count in per_sample.get(sample, {}).items():
                counts[i, column[seq]] += count
        return cls(samples, sequences, counts)

    @property
    def samples(self) -> List[str]:
        return list(self._samples)

    @property
    def sequences(self) -> List[str]:
        return list(self._sequences)

    @property
    def counts(self) -> np.ndarray:
        return self._counts

    @property
    def shape(self):
        return self._counts.shape

    def __len__(self) -> int:
        return len(self._sequences)

    def __contains__(self, sequence: str) -> bool:
        return sequence in self._index

    def totals(self) -> np.ndarray:
        """Total abundance of each column."""
        return self._counts.sum(axis=0)

    def total(self, sequence: str) -> int:
        return int(self._counts[:, self._index[sequence]].sum())

    def column(self, sequence: str) -> np.ndarray:
        return self._counts[:, self._index[sequence]]

    def sample_counts(self, sample: str) -> Dict[str, int]:
        """Non-zero counts of one sample."""
        row = self._counts[self._samples.index(sample)]
        return {seq: int(row[j]) for j, seq in enumerate(self._sequences) if row[j] > 0}

    def asv_ids(self) -> Dict[str, str]:
        """Stable labels ASV1, ASV2, ... in column order."""
        return {seq: f"ASV{j + 1}" for j, seq in enumerate(self._sequences)}

    def keep(self, sequences: Iterable[str]) -> 'AbundanceTable':
        keep = set(sequences)
        columns = [j for j, seq in enumerate(self._sequences) if seq in keep]
        return AbundanceTable(self._samples, [self._sequences[j] for j in columns], self._counts[:, columns])

    def drop(self, sequences: Iterable[str]) -> 'AbundanceTable':
        dropped = set(sequences)
        return self.keep(seq for seq in self._sequences if seq not in dropped)
