"""Opening, creating, stacking and merging LSMT layers."""

from __future__ import annotations

import os
import uuid as uuid_mod
from concurrent.futures import ThreadPoolExecutor
from typing import BinaryIO, List, Optional, Sequence, Tuple, Union

from .header import (
    ALIGNMENT,
    MAX_STACK_LAYERS,
    SPACE,
    CommitArgs,
    HeaderTrailer,
    LayerInfo,
    load_layer_info,
    read_at,
    verify_ht,
    write_header_trailer,
)
from .index import (
    Index,
    create_combo_index,
    create_memory_index,
    create_memory_index0,
    merge_memory_indexes,
)
from .lsmt_file import LSMTFile, LSMTReadOnlyFile, LSMTSparseFile, compact
from .segment import LSMTError, Segment, SegmentMapping, unpack_mappings

PARALLEL_LOAD_INDEX = 32

_NULL_UUID = uuid_mod.UUID(int=0)


def _file_size(file: BinaryIO) -> int:
    pos = file.tell()
    try:
        return file.seek(0, os.SEEK_END)
    finally:
        file.seek(pos)


def _to_uuid(text: str) -> uuid_mod.UUID:
    """Parse a UUID string; an unreadable one gives the null UUID."""
    try:
        return uuid_mod.UUID(text)
    except (ValueError, TypeError, AttributeError):
        return _NULL_UUID


def load_index(file: BinaryIO, trailer: bool = True) -> Tuple[List[SegmentMapping], HeaderTrailer]:
    """Read the index of a sealed data file (``trailer``) or of an index file.

    Returns the valid mappings, with tags reset to 0, and the header or
    trailer describing them, its ``index_size`` set to the number returned.
    """
    ht = verify_ht(file)
    size = _file_size(file)
    if trailer:
        if not ht.is_data_file:
            raise LSMTError("unrecognized file type")
        trailer_offset = size - SPACE
        if trailer_offset < 0:
            raise LSMTError("failed to read file trailer")
        block = read_at(file, SPACE, trailer_offset)
        if len(block) < SPACE:
            raise LSMTError("failed to read file trailer")
        ht = HeaderTrailer.from_bytes(block)
        if not (ht.verify_magic() and ht.is_trailer and ht.is_data_file and ht.is_sealed):
            raise LSMTError(
                "trailer magic, trailer type, file type or sealedness doesn't match"
            )
        index_bytes = ht.index_size * SegmentMapping.SIZE
        if index_bytes > trailer_offset - ht.index_offset:
            raise LSMTError("invalid index bytes or size")
    else:
        if not ht.is_index_file or ht.is_sealed:
            raise LSMTError("file type or sealedness wrong")
        if ht.index_offset != SPACE:
            raise LSMTError("index offset wrong")
        index_bytes = size - SPACE
        index_bytes -= index_bytes % SegmentMapping.SIZE
        ht.index_size = index_bytes // SegmentMapping.SIZE

    raw = read_at(file, index_bytes, ht.index_offset)
    if len(raw) < index_bytes:
        raise LSMTError("failed to read index")
    mappings = []
    for m in unpack_mappings(raw):
        if m.offset != Segment.INVALID_OFFSET:
            m.tag = 0
            mappings.append(m)
    ht.index_size = len(mappings)
    return mappings, ht


def _load_ro_index(file: BinaryIO) -> Tuple[Index, HeaderTrailer]:
    mappings, ht = load_index(file, True)
    index = create_memory_index(mappings, SPACE // ALIGNMENT, ht.index_offset // ALIGNMENT)
    return index, ht


def open_file_ro(file: Optional[BinaryIO], ownership: bool = False) -> LSMTReadOnlyFile:
    """Open a sealed layer (made by ``close_seal`` or ``commit``) read-only."""
    if file is None:
        raise LSMTError("invalid file (None)")
    index, ht = _load_ro_index(file)
    return LSMTReadOnlyFile(
        index=index,
        files=[file],
        uuids=[_to_uuid(ht.uuid)],
        virtual_size=ht.virtual_size,
        ownership=ownership,
    )


def open_file_rw(
    fdata: Optional[BinaryIO], findex: Optional[BinaryIO] = None, ownership: bool = False
) -> LSMTFile:
    """Reopen a writable layer from its data file and, unless sparse, its index file."""
    ht = verify_ht(fdata)
    if not ht.is_sparse_rw and findex is None:
        raise LSMTError("an append-only layer needs an index file")
    size = _file_size(fdata)
    if not ht.is_sparse_rw:
        mappings, meta = load_index(findex, False)
        index = create_memory_index0(mappings, SPACE // ALIGNMENT, size // ALIGNMENT)
        cls = LSMTSparseFile if meta.is_sparse_rw else LSMTFile
    else:
        mappings = LSMTSparseFile.create_mappings(fdata)
        index = create_memory_index0(mappings, SPACE // ALIGNMENT, size // ALIGNMENT)
        meta = ht
        cls = LSMTSparseFile
    return cls(
        index=index,
        files=[fdata],
        uuids=[_to_uuid(meta.uuid)],
        virtual_size=meta.virtual_size,
        ownership=ownership,
        findex=findex,
    )


def create_file_rw(args: LayerInfo, ownership: bool = False) -> LSMTFile:
    """Create a new writable layer in ``args.fdata`` (and ``args.findex``)."""
    fdata, findex = args.fdata, args.findex
    if fdata is None or (not args.sparse_rw and findex is None):
        raise LSMTError("invalid files: a data file and, unless sparse, an index file")
    cls = LSMTSparseFile if args.sparse_rw else LSMTFile
    rst = cls(
        index=create_memory_index0(),
        files=[fdata],
        uuids=[args.uuid if args.uuid is not None else _NULL_UUID],
        virtual_size=args.virtual_size,
        ownership=ownership,
        findex=findex,
    )
    write_header_trailer(fdata, True, False, True, 0, 0, args)
    if not args.sparse_rw:
        write_header_trailer(findex, True, False, False, SPACE, 0, args)
    else:
        fdata.truncate(args.virtual_size + SPACE)
    return rst


def _load_merge_index(
    files: Sequence[BinaryIO],
) -> Tuple[Index, List[uuid_mod.UUID], HeaderTrailer, List[BinaryIO]]:
    """Load and merge the indexes of ``files`` (lowest first).

    Returns the merged index, the UUIDs and files top first, and the
    trailer of the top layer.
    """
    files = list(files)
    workers = min(PARALLEL_LOAD_INDEX, len(files))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(_load_ro_index, files))
    indexes = [index for index, _ in results]
    uuids = [_to_uuid(ht.uuid) for _, ht in results]
    top_ht = results[-1][1]
    files.reverse()
    indexes.reverse()
    uuids.reverse()
    merged = merge_memory_indexes(indexes)
    return merged, uuids, top_ht, files


def open_files_ro(files: Sequence[BinaryIO], ownership: bool = False) -> LSMTReadOnlyFile:
    """Open sealed layers as one read-only file; ``files[0]`` is the lowest layer."""
    files = list(files)
    if len(files) > MAX_STACK_LAYERS:
        raise LSMTError(f"open too many files ({len(files)} > {MAX_STACK_LAYERS})")
    if not files:
        raise LSMTError("no layer files given")
    index, uuids, ht, top_first = _load_merge_index(files)
    return LSMTReadOnlyFile(
        index=index,
        files=top_first,
        uuids=uuids,
        virtual_size=ht.virtual_size,
        ownership=ownership,
    )


def merge_files_ro(files: Sequence[BinaryIO], args: CommitArgs) -> None:
    """Merge sealed layers (lowest first) into a single layer at ``args.dest``."""
    files = list(files)
    if not files or args is None or args.dest is None:
        raise LSMTError("invalid argument(s)")
    index, _, _, top_first = _load_merge_index(files)
    compact(top_first, index.mappings(), args)


def _verify_order(
    layers: Sequence[BinaryIO], uuids: Sequence[uuid_mod.UUID], start_layer: int
) -> None:
    parent: Optional[uuid_mod.UUID] = None
    last = len(layers) - 1
    for i in range(start_layer, len(layers)):
        info = load_layer_info([layers[i]])
        if parent is not None and uuids[i] != parent:
            raise LSMTError(
                f"parent uuid mismatch in layer {i}: its UUID is {uuids[i]}, "
                f"previous layer's parent expected: {parent}"
            )
        if i < last:
            parent = info.parent_uuid
    return None


def stack_files(
    upper_layer: Optional[LSMTFile],
    lower_layers: Optional[LSMTReadOnlyFile],
    ownership: bool = False,
    check_order: bool = True,
) -> LSMTFile:
    """Stack a writable layer over read-only layers, forming one writable file."""
    if upper_layer is None or len(upper_layer.files) != 1:
        raise LSMTError("invalid upper layer")
    if lower_layers is None:
        return upper_layer
    ht = verify_ht(upper_layer.files[0])
    index = create_combo_index(upper_layer.index, lower_layers.index, len(lower_layers.files))
    files: List[Optional[BinaryIO]] = list(lower_layers.files)
    uuids = list(lower_layers.uuids)
    if check_order:
        _verify_order(files, uuids, 1)
    files.append(upper_layer.files[0])
    uuids.append(upper_layer.uuids[0])
    cls = LSMTSparseFile if ht.is_sparse_rw else LSMTFile
    rst = cls(
        index=index,
        files=files,
        uuids=uuids,
        virtual_size=upper_layer.virtual_size,
        ownership=ownership,
        findex=upper_layer.findex,
        rw_tag=len(files) - 1,
    )
    upper_layer.index = None
    lower_layers.index = None
    upper_layer.ownership = False
    lower_layers.ownership = False
    if ownership:
        upper_layer.close()
        lower_layers.close()
    return rst