from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

import numpy as np


def as_descriptor(vec) -> np.ndarray:
    """Return a read-only 1D float32 copy of `vec`."""
    arr = np.array(vec, dtype=np.float32).reshape(-1)
    if arr.size == 0:
        raise ValueError("empty descriptor")
    arr.flags.writeable = False
    return arr


@dataclass(eq=False)
class IdentityRecord:
    """One enrolled person: a unique label plus every reference descriptor for it."""

    label: str
    descriptors: List[np.ndarray] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not isinstance(self.label, str) or not self.label:
            raise ValueError("label must be a non-empty string")
        self.descriptors = [as_descriptor(d) for d in self.descriptors]
        _check_lengths(self.descriptors)

    @property
    def descriptor_length(self) -> Optional[int]:
        return int(self.descriptors[0].shape[0]) if self.descriptors else None

    def copy(self) -> "IdentityRecord":
        # descriptors are read-only, sharing them is safe
        return IdentityRecord(self.label, list(self.descriptors))

    def as_matrix(self) -> np.ndarray:
        if not self.descriptors:
            return np.zeros((0, 0), dtype=np.float32)
        return np.stack(self.descriptors, axis=0)


def _check_lengths(descriptors: Sequence[np.ndarray], expected: Optional[int] = None) -> None:
    for d in descriptors:
        n = int(d.shape[0])
        if expected is None:
            expected = n
        elif n != expected:
            raise ValueError(f"Descriptor length mismatch: expected {expected}, got {n}")


class Gallery:
    """Ordered mapping label -> IdentityRecord.

    Insertion order is kept (it is the matcher's tie-break order). All descriptors
    in one gallery share a single length.
    """

    def __init__(self, records: Optional[Iterable[IdentityRecord]] = None):
        self._records: Dict[str, IdentityRecord] = {}
        for rec in records or []:
            self.put(rec)

    # -- mapping protocol ---------------------------------------------------

    def __contains__(self, label: object) -> bool:
        return label in self._records

    def __getitem__(self, label: str) -> IdentityRecord:
        return self._records[label]

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Gallery):
            return NotImplemented
        return self.equals(other, atol=0.0)

    def __repr__(self) -> str:
        counts = ", ".join(f"{k}={len(v.descriptors)}" for k, v in self._records.items())
        return f"Gallery({counts})"

    def get(self, label: str) -> Optional[IdentityRecord]:
        return self._records.get(label)

    def labels(self) -> List[str]:
        return list(self._records.keys())

    def records(self) -> List[IdentityRecord]:
        return list(self._records.values())

    # -- queries ------------------------------------------------------------

    @property
    def descriptor_length(self) -> Optional[int]:
        for rec in self._records.values():
            if rec.descriptors:
                return rec.descriptor_length
        return None

    @property
    def stats(self) -> Dict[str, dict]:
        return {label: {"count": len(rec.descriptors)} for label, rec in self._records.items()}

    def equals(self, other: "Gallery", atol: float = 1e-6) -> bool:
        if self.labels() != other.labels():
            return False
        for label, rec in self._records.items():
            theirs = other[label].descriptors
            if len(rec.descriptors) != len(theirs):
                return False
            for a, b in zip(rec.descriptors, theirs):
                if a.shape != b.shape or not np.allclose(a, b, rtol=0.0, atol=atol):
                    return False
        return True

    # -- mutation -----------------------------------------------------------

    def copy(self) -> "Gallery":
        return Gallery(rec.copy() for rec in self._records.values())

    def put(self, record: IdentityRecord) -> None:
        """Insert or replace the record for `record.label`."""
        _check_lengths(record.descriptors, self._length_excluding(record.label))
        self._records[record.label] = record

    def add_person_descriptors(self, label: str, descriptors: Sequence[np.ndarray]) -> int:
        """Append descriptors to `label`, creating the record if needed. Returns how many were added."""
        new = [as_descriptor(d) for d in descriptors]
        if not new:
            return 0
        _check_lengths(new, self.descriptor_length)

        existing = self._records.get(label)
        if existing is None:
            self._records[label] = IdentityRecord(label, new)
        else:
            existing.descriptors.extend(new)
        return len(new)

    def _length_excluding(self, label: str) -> Optional[int]:
        for other_label, rec in self._records.items():
            if other_label != label and rec.descriptors:
                return rec.descriptor_length
        return None
