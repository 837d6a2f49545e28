"""Search data models."""

from __future__ import annotations

from array import array
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Posting:
    """Occurrences of one term in one document; positions are ascending token ordinals."""

    doc_id: str
    positions: array[int] = field(default_factory=lambda: array("I"))

    @property
    def term_frequency(self) -> int:
        return len(self.positions)

    @classmethod
    def from_blob(cls, doc_id: str, blob: bytes | None) -> Posting:
        """Rebuild a posting from the binary position encoding used on disk."""
        positions = array("I")
        if blob:
            positions.frombytes(blob)
        return cls(doc_id=doc_id, positions=positions)

    def to_blob(self) -> bytes:
        return self.positions.tobytes()
