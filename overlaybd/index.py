"""In-memory indexes that map logical sectors onto layer files.

A read-only :class:`Index` is a sorted array of non-overlapping mappings.
:class:`LevelIndex` adds a page table above it for faster lookups.
:class:`Index0` is the writable level-0 index of a read/write layer, and
:class:`ComboIndex` places an :class:`Index0` over a read-only backing index.
"""

from __future__ import annotations

import copy
import sys
from bisect import bisect_left, bisect_right
from typing import Iterable, List, Optional, Sequence

from .segment import LSMTError, Segment, SegmentMapping

_UINT64_MAX = (1 << 64) - 1
_INT64_MAX = (1 << 63) - 1


def _end(m: Segment) -> int:
    return m.end()


def _offset(m: Segment) -> int:
    return m.offset


def _copy(m: SegmentMapping) -> SegmentMapping:
    return copy.copy(m)


def _limit(n: Optional[int]) -> int:
    return sys.maxsize if n is None else n


def _trim_edges(found: List[SegmentMapping], segment: Segment) -> None:
    """Clip the first and last mappings to ``segment``."""
    if not found:
        return
    if found[0].offset < segment.offset:
        found[0].forward_offset_to(segment.offset)
    back = found[-1]
    if back.end() > segment.end():
        back.backward_end_to(segment.end())


def _collect(
    mappings: Sequence[SegmentMapping], start: int, segment: Segment, n: Optional[int]
) -> List[SegmentMapping]:
    limit = _limit(n)
    found: List[SegmentMapping] = []
    if limit <= 0:
        return found
    end = segment.end()
    for m in mappings[start:]:
        if m.offset >= end:
            break
        found.append(_copy(m))
        if len(found) == limit:
            break
    _trim_edges(found, segment)
    return found


def _used(m: SegmentMapping) -> int:
    return 0 if m.zeroed else m.length


class Index:
    """A read-only index over sorted, non-overlapping mappings."""

    def __init__(self, mappings: Iterable[SegmentMapping] = ()) -> None:
        self._mappings: List[SegmentMapping] = [_copy(m) for m in mappings]
        self._alloc = sum(_used(m) for m in self._mappings)

    def __len__(self) -> int:
        return len(self._mappings)

    def mappings(self) -> List[SegmentMapping]:
        """Copies of all mappings, in logical order."""
        return [_copy(m) for m in self._mappings]

    def lookup(self, segment: Segment, n: Optional[int] = None) -> List[SegmentMapping]:
        """Mappings within ``segment``, at most ``n``, with the edges clipped."""
        if segment.length == 0:
            return []
        start = bisect_right(self._mappings, segment.offset, key=_end)
        return _collect(self._mappings, start, segment, n)

    def front(self) -> SegmentMapping:
        """The first mapping, or the invalid mapping when empty."""
        return _copy(self._mappings[0]) if self._mappings else SegmentMapping.invalid_mapping()

    def back(self) -> SegmentMapping:
        """The last mapping, or the invalid mapping when empty."""
        return _copy(self._mappings[-1]) if self._mappings else SegmentMapping.invalid_mapping()

    def lower_bound(self, offset: int) -> int:
        """Position of the first mapping that ends after ``offset``."""
        return bisect_right(self._mappings, offset, key=_end)

    def increase_tag(self, delta: int = 1) -> None:
        """Add ``delta`` to the layer tag of every mapping."""
        for m in self._mappings:
            m.tag = (m.tag + delta) & 0xFF

    def block_count(self) -> int:
        """Number of allocated (non-zeroed) sectors."""
        return self._alloc


class LevelIndex(Index):
    """A read-only index with a page table of first offsets above it."""

    LEVEL_LSHIFT = 9
    PAGE_SIZE = (1 << LEVEL_LSHIFT) * 8

    def __init__(self, mappings: Iterable[SegmentMapping] = ()) -> None:
        super().__init__(mappings)
        levels: List[List[int]] = []
        if self._mappings:
            extent = [m.offset for m in self._mappings[:: self.PAGE_SIZE // SegmentMapping.SIZE]]
            levels.append(extent)
            per_page = self.PAGE_SIZE // 8
            while len(extent) > per_page:
                extent = extent[::per_page]
                levels.append(extent)
        # Coarsest level first, the level over the mappings last.
        self.level_mapping: List[List[int]] = levels[::-1]

    def lookup(self, segment: Segment, n: Optional[int] = None) -> List[SegmentMapping]:
        if segment.length == 0 or not self.level_mapping:
            return []
        levels = self.level_mapping
        lower, upper = 0, len(levels[0])
        page_offset = 0
        last = len(levels) - 1
        for i, extent in enumerate(levels):
            page_offset = bisect_left(extent, segment.offset, lower, upper)
            if page_offset == 0:
                break
            bottom = i == last
            lshift = self.LEVEL_LSHIFT - int(bottom)
            underlay = len(self._mappings) if bottom else len(levels[i + 1])
            lower = (page_offset - 1) << lshift
            upper = min(page_offset << lshift, underlay)
        start = 0
        if page_offset:
            start = bisect_right(self._mappings, segment.offset, lower, upper, key=_end)
        return _collect(self._mappings, start, segment, n)


class Index0:
    """The writable level-0 index; later insertions shadow earlier ones."""

    def __init__(self, mappings: Iterable[SegmentMapping] = ()) -> None:
        self._mappings: List[SegmentMapping] = []
        self._alloc = 0
        for m in mappings:
            self.insert(m)

    def __len__(self) -> int:
        return len(self._mappings)

    def insert(self, mapping: SegmentMapping) -> None:
        """Insert ``mapping``, cutting away whatever it overlaps."""
        if mapping.length == 0:
            return
        new = _copy(mapping)
        lo = bisect_right(self._mappings, new.offset, key=_end)
        hi = bisect_left(self._mappings, new.end(), lo, key=_offset)
        left: List[SegmentMapping] = []
        right: List[SegmentMapping] = []
        for old in self._mappings[lo:hi]:
            self._alloc -= _used(old)
            if old.offset < new.offset:
                piece = _copy(old)
                piece.backward_end_to(new.offset)
                left.append(piece)
            if old.end() > new.end():
                piece = _copy(old)
                piece.forward_offset_to(new.end())
                right.append(piece)
        for piece in left + right:
            self._alloc += _used(piece)
        self._alloc += _used(new)
        self._mappings[lo:hi] = left + [new] + right

    def lookup(self, segment: Segment, n: Optional[int] = None) -> List[SegmentMapping]:
        """Mappings within ``segment``, at most ``n``, with the edges clipped."""
        if segment.length == 0:
            return []
        start = bisect_right(self._mappings, segment.offset, key=_end)
        return _collect(self._mappings, start, segment, n)

    def dump(self, alignment: int = 0) -> List[SegmentMapping]:
        """All mappings, padded with invalid ones to ``alignment`` bytes."""
        result = [_copy(m) for m in self._mappings]
        size = len(result)
        if alignment > 0:
            per = alignment // SegmentMapping.SIZE
            if per > 0:
                size = (size + per - 1) // per * per
        result.extend(SegmentMapping.invalid_mapping() for _ in range(size - len(result)))
        return result

    def make_read_only_index(self) -> Index:
        """A read-only :class:`Index` holding the same mappings."""
        return Index(self._mappings)

    def block_count(self) -> int:
        """Number of allocated (non-zeroed) sectors."""
        return self._alloc

    def front(self) -> SegmentMapping:
        return _copy(self._mappings[0]) if self._mappings else SegmentMapping.invalid_mapping()

    def back(self) -> SegmentMapping:
        return _copy(self._mappings[-1]) if self._mappings else SegmentMapping.invalid_mapping()

    def lower_bound(self, offset: int) -> int:
        """Position of the first mapping that ends after ``offset``."""
        return bisect_right(self._mappings, offset, key=_end)

    def front_index(self) -> Index0:
        return self


class ComboIndex(Index0):
    """A writable index over a read-only backing index, looked up as one."""

    def __init__(self, index0: Index0, index: Optional[Index], ro_layers_count: int) -> None:
        super().__init__()
        self._index0 = index0
        self._backing = index
        self._mappings = [_copy(m) for m in index0._mappings]
        for m in self._mappings:
            m.tag = ro_layers_count
        self._alloc = index0._alloc

    def front_index(self) -> Index0:
        return self._index0

    def lookup(self, segment: Segment, n: Optional[int] = None) -> List[SegmentMapping]:
        if segment.length == 0:
            return []
        if self._backing is None:
            return super().lookup(segment, n)
        remaining = _limit(n)
        found: List[SegmentMapping] = []
        pos = self.lower_bound(segment.offset)
        soffset = segment.offset
        send = segment.end()
        while pos < len(self._mappings) and self._mappings[pos].offset < send and remaining > 0:
            m = self._mappings[pos]
            if m.offset > soffset:
                below = self._backing.lookup(Segment(soffset, m.offset - soffset), remaining)
                found.extend(below)
                remaining -= len(below)
                if remaining == 0:
                    break
            soffset = m.end()
            found.append(_copy(m))
            pos += 1
            remaining -= 1
        if remaining > 0 and soffset < send:
            found.extend(self._backing.lookup(Segment(soffset, send - soffset), remaining))
        _trim_edges(found, segment)
        return found

    def backing_index(self) -> Optional[Index]:
        return self._backing

    def set_backing_index(self, index: Index) -> None:
        """Replace the backing index; it must be a non-empty read-only index."""
        if not isinstance(index, Index) or len(index) == 0:
            raise LSMTError("a combo index needs a non-empty read-only backing index")
        self._backing = index

    def load_range_index(self, min_level: int, max_level: int) -> Optional[Index]:
        """Backing mappings whose tag lies in ``[min_level, max_level)``, or None."""
        if min_level >= max_level or self._backing is None:
            return None
        picked = [m for m in self._backing._mappings if min_level <= m.tag < max_level]
        return Index(picked) if picked else None

    def rebuild_backing_index(self, highlevel_idx: Index, max_level: int) -> Index:
        """Merge ``highlevel_idx`` over the backing index, keeping tags."""
        out: List[SegmentMapping] = []
        indexes = [highlevel_idx, self._backing]
        _merge(0, out, indexes, 0, 2, 0, _UINT64_MAX, False, max_level)
        return Index(out)


def _verify_order(mappings: Sequence[SegmentMapping]) -> bool:
    return all(a.end() <= b.offset for a, b in zip(mappings, mappings[1:]))


def _within(x: int, y: int, begin: int, end: int, zeroed: bool) -> bool:
    if zeroed:
        return begin <= x <= end
    return begin <= x < end and begin < y <= end


def _verify_moffset(mappings: Sequence[SegmentMapping], begin: int, end: int) -> bool:
    return all(_within(m.moffset, m.mend(), begin, end, m.zeroed) for m in mappings)


def _check(mappings: Sequence[SegmentMapping], begin: int, end: int, ordered: bool) -> None:
    if ordered and not _verify_order(mappings):
        raise LSMTError("incorrect segment mappings: disordered")
    if not _verify_moffset(mappings, begin, end):
        raise LSMTError(
            f"incorrect segment mappings: mapped offset out of range [{begin}, {end}]"
        )


def create_memory_index0(
    mappings: Iterable[SegmentMapping] = (), moffset_begin: int = 0, moffset_end: int = _UINT64_MAX
) -> Index0:
    """A writable index built from ``mappings`` in insertion order."""
    mappings = list(mappings)
    _check(mappings, moffset_begin, moffset_end, ordered=False)
    return Index0(mappings)


def create_memory_index(
    mappings: Iterable[SegmentMapping], moffset_begin: int, moffset_end: int
) -> Index:
    """A read-only index; mappings must be sorted and within the mapped range."""
    mappings = list(mappings)
    _check(mappings, moffset_begin, moffset_end, ordered=True)
    return Index(mappings)


def create_level_index(
    mappings: Iterable[SegmentMapping], moffset_begin: int, moffset_end: int
) -> LevelIndex:
    """Like :func:`create_memory_index`, with a page table for lookups."""
    mappings = list(mappings)
    _check(mappings, moffset_begin, moffset_end, ordered=True)
    return LevelIndex(mappings)


def _merge(
    level: int,
    out: List[SegmentMapping],
    indexes: Sequence,
    start: int,
    n: int,
    begin: int,
    end: int,
    change_tag: bool = True,
    max_level: int = 0,
) -> None:
    if change_tag:
        if n == 0:
            return
    elif max_level == 0:
        return
    if begin >= end:
        return

    def below(lo: int, hi: int) -> None:
        if change_tag:
            _merge(level + 1, out, indexes, start + 1, n - 1, lo, hi)
        else:
            k = 0 if n <= 1 else 1
            _merge(level + 1, out, indexes, start + k, 0, lo, hi, False, max_level - 1)

    begin0 = begin
    size0 = len(out)
    top = indexes[start]
    ms = top._mappings
    pos = top.lower_bound(begin)
    while pos < len(ms) and ms[pos].offset < end:
        m = ms[pos]
        if m.offset > begin:
            below(begin, m.offset)
        piece = _copy(m)
        if change_tag:
            piece.tag = level
        out.append(piece)
        begin = m.end()
        pos += 1
    if begin < end:
        below(begin, end)
    if len(out) > size0:
        if out[size0].offset < begin0:
            out[size0].forward_offset_to(begin0)
        if out[-1].end() > end:
            out[-1].backward_end_to(end)


def merge_memory_indexes(indexes: Sequence[Index]) -> Index:
    """Merge layers, ``indexes[0]`` on top; each tag becomes the layer's position."""
    indexes = list(indexes)
    if len(indexes) > 255:
        raise LSMTError("too many indexes to merge, 255 at most")
    if not indexes:
        raise LSMTError("no indexes to merge")
    out: List[SegmentMapping] = []
    _merge(0, out, indexes, 0, len(indexes), 0, _UINT64_MAX)
    return Index(out)


def create_combo_index(index0: Index0, index: Index, ro_index_count: int) -> ComboIndex:
    """Place ``index0`` over ``index``; its mappings get tag ``ro_index_count``."""
    if index0 is None or index is None:
        raise LSMTError("invalid argument(s)")
    return ComboIndex(index0, index, ro_index_count)


def _mergeable(a: SegmentMapping, b: SegmentMapping) -> bool:
    return (
        a.end() == b.offset
        and bool(a.zeroed) == bool(b.zeroed)
        and a.tag == b.tag
        and a.length + b.length < SegmentMapping.MAX_LENGTH
    )


def compress_raw_index(mappings: Iterable[SegmentMapping]) -> List[SegmentMapping]:
    """Join adjacent mappings that continue each other in both spaces."""
    result: List[SegmentMapping] = []
    for m in mappings:
        if result and _mergeable(result[-1], m) and result[-1].mend() == m.moffset:
            result[-1].length += m.length
        else:
            result.append(_copy(m))
    return result


def compress_raw_index_predict(mappings: Sequence[SegmentMapping]) -> int:
    """Size :func:`compress_raw_index` would reach ignoring mapped offsets."""
    count = 0
    current: Optional[SegmentMapping] = None
    for m in mappings:
        if current is not None and _mergeable(current, m):
            current.length += m.length
        else:
            current = _copy(m)
            count += 1
    return count