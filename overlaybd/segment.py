"""Segments and segment mappings of the log-structured index, in 512-byte sectors."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import ClassVar, Iterable, Iterator, List, Protocol, Union


class LSMTError(Exception):
    """Raised when an LSMT layer or index operation fails."""


@dataclass
class Segment:
    """A range ``[offset, offset + length)`` of the logical address space."""

    offset: int
    length: int

    MAX_OFFSET: ClassVar[int] = (1 << 50) - 1
    MAX_LENGTH: ClassVar[int] = (1 << 14) - 1
    INVALID_OFFSET: ClassVar[int] = (1 << 50) - 1

    def end(self) -> int:
        """Exclusive end of the segment."""
        return self.offset + self.length

    def forward_offset_to(self, x: int) -> int:
        """Move the start to ``x``, keeping the end; return the distance moved."""
        if x < self.offset:
            raise ValueError(f"cannot move offset {self.offset} backwards to {x}")
        delta = x - self.offset
        self.length -= delta
        self.offset = x
        return delta

    def backward_end_to(self, x: int) -> None:
        """Move the end to ``x``, keeping the start."""
        if x <= self.offset:
            raise ValueError(f"end {x} must lie after offset {self.offset}")
        self.length = x - self.offset


_WIRE = struct.Struct("<QQ")
_MASK50 = (1 << 50) - 1
_MASK55 = (1 << 55) - 1


@dataclass
class SegmentMapping(Segment):
    """A logical segment mapped onto ``moffset`` of the layer file ``tag``."""

    moffset: int = 0
    zeroed: bool = False
    tag: int = 0

    MAX_MOFFSET: ClassVar[int] = (1 << 55) - 1
    SIZE: ClassVar[int] = 16

    def __post_init__(self) -> None:
        if not 0 <= self.length <= self.MAX_LENGTH:
            raise ValueError(f"segment length {self.length} out of range")

    def mend(self) -> int:
        """Exclusive end in the mapped space; a zeroed mapping occupies none."""
        return self.moffset if self.zeroed else self.moffset + self.length

    def forward_offset_to(self, x: int) -> int:
        delta = super().forward_offset_to(x)
        if not self.zeroed:
            self.moffset += delta
        return delta

    def backward_end_to(self, x: int) -> None:
        super().backward_end_to(x)

    def discard(self) -> SegmentMapping:
        """Mark the mapping as a zero-filled range and return it."""
        self.zeroed = True
        return self

    @classmethod
    def invalid_mapping(cls) -> SegmentMapping:
        """The placeholder mapping used for padding: ``[INVALID_OFFSET, 0)``."""
        return cls(cls.INVALID_OFFSET, 0, 0)

    def to_bytes(self) -> bytes:
        """Encode as the 16-byte on-disk record."""
        if not 0 <= self.offset <= self.MAX_OFFSET:
            raise ValueError(f"offset {self.offset} out of range")
        if not 0 <= self.length <= self.MAX_LENGTH:
            raise ValueError(f"length {self.length} out of range")
        if not 0 <= self.moffset <= self.MAX_MOFFSET:
            raise ValueError(f"moffset {self.moffset} out of range")
        if not 0 <= self.tag <= 0xFF:
            raise ValueError(f"tag {self.tag} out of range")
        first = self.offset | (self.length << 50)
        second = self.moffset | (int(bool(self.zeroed)) << 55) | (self.tag << 56)
        return _WIRE.pack(first, second)

    @classmethod
    def from_bytes(cls, data: bytes) -> SegmentMapping:
        """Decode a 16-byte on-disk record."""
        if len(data) != cls.SIZE:
            raise ValueError(f"a segment mapping takes {cls.SIZE} bytes, got {len(data)}")
        first, second = _WIRE.unpack(data)
        return cls(
            offset=first & _MASK50,
            length=first >> 50,
            moffset=second & _MASK55,
            zeroed=bool((second >> 55) & 1),
            tag=second >> 56,
        )


def pack_mappings(mappings: Iterable[SegmentMapping]) -> bytes:
    """Encode mappings as consecutive on-disk records."""
    return b"".join(m.to_bytes() for m in mappings)


def unpack_mappings(data: bytes) -> List[SegmentMapping]:
    """Decode consecutive on-disk records."""
    if len(data) % SegmentMapping.SIZE:
        raise ValueError(f"index data of {len(data)} bytes is not a whole number of records")
    return [
        SegmentMapping.from_bytes(data[pos:pos + SegmentMapping.SIZE])
        for pos in range(0, len(data), SegmentMapping.SIZE)
    ]


class _Lookup(Protocol):
    def lookup(self, segment: Segment, n: int) -> List[SegmentMapping]: ...


_BATCH = 16


def iter_segments(index: _Lookup, segment: Segment) -> Iterator[Union[Segment, SegmentMapping]]:
    """Walk ``segment`` through ``index`` in order.

    Yields a plain :class:`Segment` for every range that reads as zeros (holes
    and zeroed mappings) and the :class:`SegmentMapping` for every range backed
    by data.
    """
    s = Segment(segment.offset, segment.length)
    while True:
        found = index.lookup(s, _BATCH)
        for m in found:
            if s.offset < m.offset:
                yield Segment(s.offset, m.offset - s.offset)
            yield Segment(m.offset, m.length) if m.zeroed else m
            s.forward_offset_to(m.end())
        if len(found) < _BATCH:
            break
    if s.length > 0:
        yield Segment(s.offset, s.length)