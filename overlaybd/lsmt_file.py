"""Read-only and read/write LSMT layer files built over an in-memory index."""

from __future__ import annotations

import copy
import errno
import os
import stat as stat_mod
import threading
import uuid as uuid_mod
from dataclasses import dataclass
from typing import BinaryIO, Iterator, List, Optional, Sequence, Tuple

from .header import (
    ALIGNMENT,
    ALIGNMENT4K,
    SPACE,
    CommitArgs,
    DataStat,
    append,
    load_layer_info,
    read_at,
    write_at,
    write_header_trailer,
)
from .index import compress_raw_index, create_memory_index
from .segment import LSMTError, Segment, SegmentMapping, iter_segments, pack_mappings

FALLOC_FL_KEEP_SIZE = 0x01
FALLOC_FL_PUNCH_HOLE = 0x02

DEFAULT_MAX_IO_SIZE = 4 * 1024 * 1024
_COPY_BUFFER = 32 * 1024
_INDEX_PAGE = ALIGNMENT4K // SegmentMapping.SIZE


@dataclass
class FileStat:
    """Status of an LSMT file as seen by its users."""

    st_size: int
    st_blksize: int
    st_blocks: int
    st_mode: int = stat_mod.S_IFREG | 0o644


def _check_aligned(count: int, offset: int) -> None:
    if count < 0 or offset < 0 or (count | offset) & (ALIGNMENT - 1):
        raise LSMTError("arguments must be aligned to 512 bytes")


def _file_size(file: BinaryIO) -> int:
    pos = file.tell()
    try:
        return file.seek(0, os.SEEK_END)
    finally:
        file.seek(pos)


def _file_mode(file: BinaryIO) -> int:
    try:
        return os.fstat(file.fileno()).st_mode
    except (AttributeError, OSError, ValueError):
        return stat_mod.S_IFREG | 0o644


def _sync(file: BinaryIO) -> None:
    flush = getattr(file, "flush", None)
    if flush is not None:
        flush()
    try:
        os.fsync(file.fileno())
    except (AttributeError, OSError, ValueError):
        pass


def _split(data: bytes, offset: int, limit: int) -> Iterator[Tuple[bytes, int]]:
    """Cut ``data`` into pieces of at most ``limit`` bytes with their offsets."""
    pos = 0
    while len(data) - pos > limit:
        yield data[pos:pos + limit], offset + pos
        pos += limit
    yield data[pos:], offset + pos


class LSMTReadOnlyFile:
    """A read-only view of one or more stacked layer files through an index."""

    def __init__(
        self,
        index=None,
        files: Sequence[Optional[BinaryIO]] = (),
        uuids: Sequence[uuid_mod.UUID] = (),
        virtual_size: int = 0,
        ownership: bool = False,
    ) -> None:
        self.index = index
        self.files: List[Optional[BinaryIO]] = list(files)
        self.uuids: List[uuid_mod.UUID] = list(uuids)
        self.virtual_size = virtual_size
        self.ownership = ownership
        self.max_io_size = DEFAULT_MAX_IO_SIZE
        self.io_count = 0
        self.io_bytes = 0
        self.closed = False

    def set_max_io_size(self, size: int) -> None:
        """Limit a single read or write to ``size`` bytes, a multiple of 4 KiB."""
        if size <= 0 or size % ALIGNMENT4K:
            raise LSMTError(f"max io size {size} is not aligned with 4K")
        self.max_io_size = size

    def close(self) -> None:
        """Drop the index and close the layer files if they are owned."""
        if self.closed:
            return
        self.closed = True
        self.index = None
        if self.ownership:
            for file in self.files:
                if file is not None:
                    file.close()

    def get_uuid(self, layer_id: int = 0) -> uuid_mod.UUID:
        """UUID of the layer at ``layer_id``."""
        if not 0 <= layer_id < len(self.uuids):
            raise LSMTError(f"layer_id {layer_id} out of range")
        return self.uuids[layer_id]

    def pread(self, count: int, offset: int) -> bytes:
        """Read ``count`` bytes at ``offset``; both must be 512-byte aligned."""
        _check_aligned(count, offset)
        if self.index is None:
            raise LSMTError("file is closed")
        parts = []
        while count > self.max_io_size:
            parts.append(self._read_chunk(self.max_io_size, offset))
            count -= self.max_io_size
            offset += self.max_io_size
        parts.append(self._read_chunk(count, offset))
        return b"".join(parts)

    def _read_chunk(self, count: int, offset: int) -> bytes:
        out = bytearray()
        whole = Segment(offset // ALIGNMENT, count // ALIGNMENT)
        for piece in iter_segments(self.index, whole):
            size = piece.length * ALIGNMENT
            if not isinstance(piece, SegmentMapping):
                out += bytes(size)
                continue
            if piece.tag >= len(self.files) or self.files[piece.tag] is None:
                raise LSMTError(f"mapping refers to missing layer {piece.tag}")
            data = read_at(self.files[piece.tag], size, piece.moffset * ALIGNMENT)
            if len(data) < size:
                raise LSMTError(
                    f"failed to read from layer {piece.tag}: {len(data)} < {size} bytes"
                )
            self.io_bytes += len(data)
            self.io_count += 1
            out += data
        return bytes(out)

    def front_file(self) -> Optional[BinaryIO]:
        """The first layer file present."""
        return next((f for f in self.files if f is not None), None)

    def fstat(self) -> FileStat:
        """Virtual size, block size and allocated blocks of the file."""
        file = self.front_file()
        if file is None:
            raise LSMTError("no underlying files found")
        return FileStat(
            st_size=self.virtual_size,
            st_blksize=ALIGNMENT,
            st_blocks=self.index.block_count(),
            st_mode=_file_mode(file),
        )

    def data_stat(self) -> DataStat:
        """Bytes of data referenced by the index."""
        size = self.index.block_count() * ALIGNMENT
        return DataStat(total_data_size=size, valid_data_size=size)

    def __enter__(self) -> LSMTReadOnlyFile:
        return self

    def __exit__(self, *args) -> None:
        self.close()


class LSMTFile(LSMTReadOnlyFile):
    """A read/write layer: data appended to a data file, mappings to an index file."""

    def __init__(
        self,
        index=None,
        files: Sequence[Optional[BinaryIO]] = (),
        uuids: Sequence[uuid_mod.UUID] = (),
        virtual_size: int = 0,
        ownership: bool = False,
        findex: Optional[BinaryIO] = None,
        rw_tag: int = 0,
    ) -> None:
        super().__init__(index, files, uuids, virtual_size, ownership)
        self.findex = findex
        self.rw_tag = rw_tag
        self.data_offset = SPACE // ALIGNMENT
        self._group_size = 0
        self._pending: List[SegmentMapping] = []
        self._lock = threading.RLock()

    def front_file(self) -> Optional[BinaryIO]:
        if self.rw_tag < len(self.files):
            return self.files[self.rw_tag]
        return None

    def set_index_group_commit(self, buffer_size: int) -> None:
        """Buffer index records, writing ``buffer_size`` bytes of them at a time."""
        capacity = buffer_size // SegmentMapping.SIZE
        with self._lock:
            if self._pending and capacity <= len(self._pending):
                self._do_group_commit()
            self._group_size = capacity

    def _do_group_commit(self) -> None:
        if not self._pending or self.findex is None:
            return
        padding = self._group_size - len(self._pending)
        records = self._pending + [SegmentMapping.invalid_mapping() for _ in range(padding)]
        append(self.findex, pack_mappings(records))
        self._pending.clear()

    def close(self) -> None:
        if self.closed:
            return
        with self._lock:
            self._do_group_commit()
        if self.ownership and self.findex is not None:
            self.findex.close()
        super().close()

    def append_index(self, mapping: SegmentMapping) -> None:
        """Record ``mapping`` in the index file, directly or through the buffer."""
        if self.findex is None:
            return
        with self._lock:
            if self._group_size == 0:
                append(self.findex, mapping.to_bytes())
                return
            self._pending.append(copy.copy(mapping))
            if len(self._pending) >= self._group_size:
                self._do_group_commit()

    def pwrite(self, data: bytes, offset: int) -> int:
        """Write aligned ``data`` at ``offset``; return the number of bytes written."""
        data = bytes(data)
        _check_aligned(len(data), offset)
        if self.index is None:
            raise LSMTError("file is closed")
        for chunk, at in _split(data, offset, self.max_io_size):
            if chunk:
                self._write_chunk(chunk, at)
        return len(data)

    def _write_chunk(self, chunk: bytes, offset: int) -> None:
        with self._lock:
            moffset = append(self.files[self.rw_tag], chunk)
            self.virtual_size = max(self.virtual_size, offset + len(chunk))
            m = SegmentMapping(
                offset // ALIGNMENT, len(chunk) // ALIGNMENT, moffset // ALIGNMENT,
                tag=self.rw_tag,
            )
            self.data_offset = m.mend()
            self.index.insert(m)
            self.append_index(m)

    def fallocate(self, mode: int, offset: int, length: int) -> None:
        """Punch a hole; only FALLOC_FL_PUNCH_HOLE | FALLOC_FL_KEEP_SIZE is supported."""
        max_bytes = Segment.MAX_LENGTH * ALIGNMENT
        while length > max_bytes:
            self.fallocate(mode, offset, max_bytes)
            offset += max_bytes
            length -= max_bytes
        if not mode & FALLOC_FL_PUNCH_HOLE or not mode & FALLOC_FL_KEEP_SIZE:
            raise OSError(errno.ENOSYS, "only FALLOC_FL_PUNCH_HOLE | FALLOC_FL_KEEP_SIZE")
        _check_aligned(length, offset)
        m = SegmentMapping(offset // ALIGNMENT, length // ALIGNMENT, 0).discard()
        self.discard(m)

    def discard(self, mapping: SegmentMapping) -> None:
        """Mark the logical range of ``mapping`` as zeros."""
        with self._lock:
            pos = _file_size(self.files[self.rw_tag])
            mapping.moffset = pos // ALIGNMENT
            mapping.tag = self.rw_tag
            self.index.insert(mapping)
            self.append_index(mapping)

    def commit(self, args: CommitArgs) -> None:
        """Write the live content as a new sealed layer to ``args.dest``."""
        if len(self.files) > 1:
            raise LSMTError("not supported: commit stacked files")
        with self._lock:
            mappings = self.index.dump()
        compact(self.files, mappings, args)

    def close_seal(self, reopen: bool = False) -> Optional[LSMTReadOnlyFile]:
        """Append index and trailer, close, and optionally reopen read-only."""
        file = self.files[self.rw_tag]
        with self._lock:
            dumped = self.index.dump(ALIGNMENT)
            count = len(self.index)
        index_offset = append(file, pack_mappings(dumped))
        layer = load_layer_info([file], oper_seal=True)
        file.seek(0, os.SEEK_END)
        write_header_trailer(file, False, True, True, index_offset, count, layer)
        reopened = None
        if reopen:
            live = dumped[:count]
            for m in live:
                m.tag = 0
            try:
                index = create_memory_index(live, SPACE // ALIGNMENT, index_offset // ALIGNMENT)
            except LSMTError:
                self.close()
                raise
            reopened = LSMTReadOnlyFile(
                index=index,
                files=[file],
                uuids=self.uuids[self.rw_tag:self.rw_tag + 1],
                virtual_size=self.virtual_size,
                ownership=self.ownership,
            )
            self.ownership = False
        self.close()
        return reopened

    def fsync(self) -> None:
        """Flush buffered index records and sync the data and index files."""
        with self._lock:
            self._do_group_commit()
        _sync(self.files[self.rw_tag])
        if self.findex is not None:
            _sync(self.findex)

    def data_stat(self) -> DataStat:
        size = _file_size(self.files[self.rw_tag])
        return DataStat(
            total_data_size=size - SPACE,
            valid_data_size=self.index.block_count() * ALIGNMENT,
        )


def _data_regions(file: BinaryIO, start: int) -> List[Tuple[int, int]]:
    """Ranges of ``file`` from ``start`` on that hold data rather than holes."""
    seek_data = getattr(os, "SEEK_DATA", None)
    seek_hole = getattr(os, "SEEK_HOLE", None)
    try:
        fd = file.fileno()
    except (AttributeError, OSError, ValueError):
        fd = None
    if fd is None or seek_data is None or seek_hole is None:
        size = _file_size(file)
        return [(start, size)] if size > start else []
    flush = getattr(file, "flush", None)
    if flush is not None:
        flush()
    pos = file.tell()
    regions = []
    try:
        moffset = start
        while True:
            try:
                begin = os.lseek(fd, moffset, seek_data)
                end = os.lseek(fd, begin, seek_hole)
            except OSError as exc:
                if exc.errno == errno.ENXIO:
                    break
                raise LSMTError(f"seeking data in sparse file failed: {exc}") from exc
            regions.append((begin, end))
            moffset = end
    finally:
        file.seek(pos)
    return regions


class LSMTSparseFile(LSMTFile):
    """A read/write layer whose data file mirrors the logical space after the header."""

    BASE_MOFFSET = SPACE

    def close(self) -> None:
        LSMTReadOnlyFile.close(self)

    def pwrite(self, data: bytes, offset: int) -> int:
        """Write aligned ``data`` in place at ``offset`` past the header."""
        data = bytes(data)
        _check_aligned(len(data), offset)
        if self.index is None:
            raise LSMTError("file is closed")
        for chunk, at in _split(data, offset, self.max_io_size):
            if chunk:
                self._write_chunk(chunk, at)
        return len(data)

    def _write_chunk(self, chunk: bytes, offset: int) -> None:
        moffset = self.BASE_MOFFSET + offset
        m = SegmentMapping(
            offset // ALIGNMENT, len(chunk) // ALIGNMENT, moffset // ALIGNMENT, tag=self.rw_tag
        )
        written = write_at(self.files[self.rw_tag], chunk, moffset)
        if written != len(chunk):
            raise LSMTError(f"short write at {moffset}: {written} of {len(chunk)} bytes")
        self.index.insert(m)

    def discard(self, mapping: SegmentMapping) -> None:
        """Mark the range as zeros and clear it in the data file."""
        mapping.moffset = mapping.offset + SPACE // ALIGNMENT
        self.index.insert(mapping)
        write_at(
            self.files[self.rw_tag],
            bytes(mapping.length * ALIGNMENT),
            mapping.offset * ALIGNMENT + SPACE,
        )

    def close_seal(self, reopen: bool = False) -> Optional[LSMTReadOnlyFile]:
        raise LSMTError("a sparse read/write layer cannot be sealed")

    @staticmethod
    def create_mappings(file: BinaryIO) -> List[SegmentMapping]:
        """Mappings for every data region of a sparse data file."""
        base = LSMTSparseFile.BASE_MOFFSET
        mappings: List[SegmentMapping] = []
        for begin, end in _data_regions(file, base):
            total = (end - begin) // ALIGNMENT
            loffset = (begin - base) // ALIGNMENT
            moffset = begin // ALIGNMENT
            while total > Segment.MAX_LENGTH:
                mappings.append(SegmentMapping(loffset, Segment.MAX_LENGTH, moffset))
                loffset += Segment.MAX_LENGTH
                moffset += Segment.MAX_LENGTH
                total -= Segment.MAX_LENGTH
            if total:
                mappings.append(SegmentMapping(loffset, total, moffset))
        return mappings


def _copy_segment(
    src_files: Sequence[BinaryIO],
    m: SegmentMapping,
    moffset: int,
    out: List[SegmentMapping],
    dest: BinaryIO,
) -> int:
    if m.tag >= len(src_files):
        raise LSMTError(f"mapping refers to missing layer {m.tag}")
    src = src_files[m.tag]
    offset = m.moffset * ALIGNMENT
    remaining = m.length * ALIGNMENT
    loffset = m.offset
    copied = 0
    while remaining > 0:
        step = min(remaining, _COPY_BUFFER)
        data = read_at(src, step, offset)
        if len(data) < step:
            raise LSMTError("failed to read from source file")
        written = dest.write(data)
        if written is not None and written < step:
            raise LSMTError("failed to write to destination file")
        blocks = step // ALIGNMENT
        out.append(SegmentMapping(loffset, blocks, moffset, tag=m.tag))
        loffset += blocks
        moffset += blocks
        copied += blocks
        offset += step
        remaining -= step
    return copied


def compact(
    src_files: Sequence[BinaryIO], mappings: Sequence[SegmentMapping], args: CommitArgs
) -> None:
    """Copy the data behind ``mappings`` into a new sealed layer at ``args.dest``."""
    src_files = list(src_files)
    dest = args.dest
    if dest is None:
        raise LSMTError("no destination file to commit to")
    layer = load_layer_info(src_files)
    layer.user_tag = args.tag_bytes()
    try:
        parent = uuid_mod.UUID(args.parent_uuid)
    except (ValueError, TypeError, AttributeError):
        parent = None
    else:
        layer.parent_uuid = parent if parent.int else None
    write_header_trailer(dest, True, True, True, 0, 0, layer)

    moffset = SPACE // ALIGNMENT
    out: List[SegmentMapping] = []
    for m in mappings:
        if m.zeroed:
            piece = copy.copy(m)
            piece.moffset = moffset
            out.append(piece)
            continue
        moffset += _copy_segment(src_files, m, moffset, out, dest)

    index_offset = moffset * ALIGNMENT
    index = compress_raw_index(out)
    index.extend(SegmentMapping.invalid_mapping() for _ in range(-len(index) % _INDEX_PAGE))
    raw = pack_mappings(index)
    if raw:
        written = dest.write(raw)
        if written is not None and written < len(raw):
            raise LSMTError("failed to write index")
    write_header_trailer(dest, False, True, True, index_offset, len(index), layer)