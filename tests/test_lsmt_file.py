import errno
import io
import uuid

import pytest

from overlaybd.header import (
    ALIGNMENT,
    SPACE,
    CommitArgs,
    HeaderTrailer,
    LayerInfo,
    write_at,
    write_header_trailer,
)
from overlaybd.index import Index, create_memory_index, create_memory_index0
from overlaybd.lsmt_file import (
    FALLOC_FL_KEEP_SIZE,
    FALLOC_FL_PUNCH_HOLE,
    LSMTFile,
    LSMTReadOnlyFile,
    LSMTSparseFile,
    compact,
)
from overlaybd.segment import LSMTError, SegmentMapping, unpack_mappings

VSIZE = 1 << 20
PUNCH = FALLOC_FL_PUNCH_HOLE | FALLOC_FL_KEEP_SIZE


def _pattern(n, seed=1):
    return bytes((i * seed + seed) % 251 for i in range(n))


def _new_rw(layer=None):
    layer = layer or LayerInfo(virtual_size=VSIZE)
    fdata, findex = io.BytesIO(), io.BytesIO()
    write_header_trailer(fdata, True, False, True, 0, 0, layer)
    write_header_trailer(findex, True, False, False, SPACE, 0, layer)
    f = LSMTFile(
        index=create_memory_index0(),
        files=[fdata],
        uuids=[layer.uuid],
        virtual_size=VSIZE,
        findex=findex,
    )
    return f, fdata, findex, layer


def _new_sparse(vsize=64 * 1024):
    layer = LayerInfo(virtual_size=vsize, sparse_rw=True)
    fdata = io.BytesIO()
    write_header_trailer(fdata, True, False, True, 0, 0, layer)
    fdata.write(bytes(vsize))
    f = LSMTSparseFile(
        index=create_memory_index0(), files=[fdata], uuids=[layer.uuid], virtual_size=vsize
    )
    return f, fdata


def _open_sealed(dest):
    raw = dest.getvalue()
    trailer = HeaderTrailer.from_bytes(raw[-SPACE:])
    start = trailer.index_offset
    records = unpack_mappings(raw[start:start + trailer.index_size * SegmentMapping.SIZE])
    live = [m for m in records if m.offset != SegmentMapping.INVALID_OFFSET]
    for m in live:
        m.tag = 0
    index = create_memory_index(live, SPACE // ALIGNMENT, start // ALIGNMENT)
    ro = LSMTReadOnlyFile(index=index, files=[dest], virtual_size=trailer.virtual_size)
    return trailer, ro, live


def test_write_read_round_trip():
    f, _, _, _ = _new_rw()
    data = _pattern(2048)
    assert f.pwrite(data, 4096) == len(data)
    assert f.pread(2048, 4096) == data


def test_unwritten_range_reads_zeros():
    f, _, _, _ = _new_rw()
    f.pwrite(_pattern(1024), 0)
    assert f.pread(2048, 8192) == bytes(2048)
    assert f.pread(2048, 0) == _pattern(1024) + bytes(1024)


def test_overwrite_shadows_older_data():
    f, _, _, _ = _new_rw()
    first = _pattern(1024, 3)
    second = _pattern(512, 7)
    f.pwrite(first, 0)
    f.pwrite(second, 512)
    assert f.pread(1024, 0) == first[:512] + second


@pytest.mark.parametrize("count,offset", [(100, 0), (512, 100), (513, 512)])
def test_unaligned_io_rejected(count, offset):
    f, _, _, _ = _new_rw()
    with pytest.raises(LSMTError):
        f.pwrite(bytes(count), offset)
    with pytest.raises(LSMTError):
        f.pread(count, offset)


@pytest.mark.parametrize("size", [0, 1000, 6000])
def test_set_max_io_size_rejects_unaligned(size):
    f, _, _, _ = _new_rw()
    with pytest.raises(LSMTError):
        f.set_max_io_size(size)


def test_large_write_is_split_by_max_io_size():
    f, _, _, _ = _new_rw()
    f.set_max_io_size(4096)
    assert f.max_io_size == 4096
    data = _pattern(3 * 4096, 5)
    f.pwrite(data, 0)
    assert len(f.index) == 3
    assert f.pread(len(data), 0) == data


def test_index_file_records_each_write():
    f, _, findex, _ = _new_rw()
    f.pwrite(_pattern(1024), 0)
    f.pwrite(_pattern(512, 2), 8192)
    records = unpack_mappings(findex.getvalue()[SPACE:])
    assert records == f.index.dump()


def test_group_commit_buffers_until_fsync():
    f, _, findex, _ = _new_rw()
    f.set_index_group_commit(4 * SegmentMapping.SIZE)
    f.pwrite(_pattern(1024), 0)
    assert len(findex.getvalue()) == SPACE
    f.fsync()
    records = unpack_mappings(findex.getvalue()[SPACE:])
    assert len(records) == 4
    assert records[0] == f.index.dump()[0]
    assert all(r == SegmentMapping.invalid_mapping() for r in records[1:])


def test_punch_hole_reads_zeros_and_frees_blocks():
    f, _, findex, _ = _new_rw()
    data = _pattern(2048)
    f.pwrite(data, 0)
    before = f.index.block_count()
    f.fallocate(PUNCH, 512, 512)
    assert f.pread(2048, 0) == data[:512] + bytes(512) + data[1024:]
    assert f.index.block_count() == before - 1
    assert unpack_mappings(findex.getvalue()[SPACE:])[-1].zeroed


def test_fallocate_requires_punch_hole_keep_size():
    f, _, _, _ = _new_rw()
    with pytest.raises(OSError) as info:
        f.fallocate(FALLOC_FL_KEEP_SIZE, 0, 512)
    assert info.value.errno == errno.ENOSYS


def test_fstat_reports_virtual_size_and_blocks():
    f, _, _, _ = _new_rw()
    f.pwrite(_pattern(1024), 0)
    st = f.fstat()
    assert st.st_size == VSIZE
    assert st.st_blksize == ALIGNMENT
    assert st.st_blocks == f.index.block_count()


def test_data_stat_counts_garbage():
    f, _, _, _ = _new_rw()
    data = _pattern(2048)
    f.pwrite(data, 0)
    f.pwrite(data, 0)
    stat = f.data_stat()
    assert stat.total_data_size == 2 * len(data)
    assert stat.valid_data_size == len(data)


def test_close_seal_reopens_read_only():
    f, fdata, _, layer = _new_rw()
    data = _pattern(2048, 9)
    f.pwrite(data, 8192)
    ro = f.close_seal(reopen=True)
    assert f.closed
    assert ro.pread(2048, 8192) == data
    assert ro.get_uuid(0) == layer.uuid
    raw = fdata.getvalue()
    header = HeaderTrailer.from_bytes(raw[:SPACE])
    trailer = HeaderTrailer.from_bytes(raw[-SPACE:])
    assert trailer.is_trailer and trailer.is_sealed and trailer.is_data_file
    assert trailer.uuid == header.uuid
    assert trailer.index_size == len(ro.index)
    assert trailer.index_offset == SPACE + len(data)


def test_close_seal_without_reopen_returns_none():
    f, fdata, _, _ = _new_rw()
    f.pwrite(_pattern(512), 0)
    assert f.close_seal() is None
    trailer = HeaderTrailer.from_bytes(fdata.getvalue()[-SPACE:])
    assert trailer.is_sealed and trailer.verify_magic()


def test_commit_produces_sealed_layer():
    f, _, _, layer = _new_rw()
    data = _pattern(4096, 11)
    f.pwrite(data, 0)
    f.pwrite(_pattern(1024, 13), 1024)
    expected = f.pread(8192, 0)
    dest = io.BytesIO()
    parent = uuid.uuid4()
    f.commit(CommitArgs(dest=dest, user_tag=b"msg", parent_uuid=str(parent)))
    header = HeaderTrailer.from_bytes(dest.getvalue()[:SPACE])
    assert header.verify_magic() and header.is_header and header.is_sealed
    trailer, ro, _ = _open_sealed(dest)
    assert trailer.is_trailer and trailer.is_sealed
    assert trailer.user_tag.startswith(b"msg")
    assert trailer.parent_uuid == str(parent)
    assert trailer.virtual_size == layer.virtual_size
    assert (trailer.index_size * SegmentMapping.SIZE) % SPACE == 0
    assert ro.pread(8192, 0) == expected


def test_commit_rejects_stacked_files():
    f, fdata, _, _ = _new_rw()
    f.files.append(fdata)
    with pytest.raises(LSMTError):
        f.commit(CommitArgs(dest=io.BytesIO()))


def test_compact_keeps_zeroed_mapping():
    layer = LayerInfo(virtual_size=VSIZE)
    src = io.BytesIO()
    write_header_trailer(src, True, True, True, 0, 0, layer)
    data = _pattern(1024, 17)
    src.write(data)
    mappings = [
        SegmentMapping(0, 2, SPACE // ALIGNMENT),
        SegmentMapping(4, 2, 0).discard(),
    ]
    dest = io.BytesIO()
    compact([src], mappings, CommitArgs(dest=dest))
    _, ro, live = _open_sealed(dest)
    assert any(m.zeroed for m in live)
    assert ro.pread(1024, 0) == data
    assert ro.pread(1024, 4 * ALIGNMENT) == bytes(1024)


def test_get_uuid_out_of_range():
    f, _, _, layer = _new_rw()
    assert f.get_uuid() == layer.uuid
    with pytest.raises(LSMTError):
        f.get_uuid(1)


def test_read_only_data_stat_ignores_zeroed():
    index = Index([SegmentMapping(0, 4, 8), SegmentMapping(4, 2, 12).discard()])
    ro = LSMTReadOnlyFile(index=index, files=[io.BytesIO()], virtual_size=VSIZE)
    stat = ro.data_stat()
    assert stat.total_data_size == 4 * ALIGNMENT
    assert stat.valid_data_size == stat.total_data_size


def test_read_from_missing_layer_raises():
    index = Index([SegmentMapping(0, 1, 8, tag=1)])
    ro = LSMTReadOnlyFile(index=index, files=[io.BytesIO(bytes(SPACE + 512))])
    with pytest.raises(LSMTError):
        ro.pread(512, 0)


def test_context_manager_closes_owned_files():
    backing = io.BytesIO(bytes(SPACE) + _pattern(512))
    index = Index([SegmentMapping(0, 1, SPACE // ALIGNMENT)])
    with LSMTReadOnlyFile(index=index, files=[backing], ownership=True) as ro:
        assert ro.pread(512, 0) == _pattern(512)
    assert ro.closed
    assert backing.closed
    with pytest.raises(LSMTError):
        ro.pread(512, 0)


def test_sparse_write_lands_in_place():
    f, fdata = _new_sparse()
    data = _pattern(1024, 19)
    assert f.pwrite(data, 2048) == len(data)
    raw = fdata.getvalue()
    assert raw[SPACE + 2048:SPACE + 2048 + len(data)] == data
    assert f.pread(1024, 2048) == data


def test_sparse_discard_reads_zeros():
    f, fdata = _new_sparse()
    data = _pattern(2048, 23)
    f.pwrite(data, 0)
    f.fallocate(PUNCH, 512, 1024)
    assert f.pread(2048, 0) == data[:512] + bytes(1024) + data[1536:]
    assert fdata.getvalue()[SPACE + 512:SPACE + 1536] == bytes(1024)


def test_sparse_create_mappings_without_hole_support():
    vsize = 64 * 1024
    _, fdata = _new_sparse(vsize)
    mappings = LSMTSparseFile.create_mappings(fdata)
    assert mappings == [SegmentMapping(0, vsize // ALIGNMENT, SPACE // ALIGNMENT)]


def test_sparse_create_mappings_on_real_file(tmp_path):
    layer = LayerInfo(virtual_size=VSIZE, sparse_rw=True)
    data = _pattern(4096, 29)
    with open(tmp_path / "data", "w+b") as fdata:
        write_header_trailer(fdata, True, False, True, 0, 0, layer)
        fdata.truncate(SPACE + VSIZE)
        write_at(fdata, data, SPACE)
        mappings = LSMTSparseFile.create_mappings(fdata)
        assert mappings[0].offset == 0
        assert mappings[0].moffset == SPACE // ALIGNMENT
        assert sum(m.length for m in mappings) * ALIGNMENT >= len(data)
        index = create_memory_index0(mappings, SPACE // ALIGNMENT, (SPACE + VSIZE) // ALIGNMENT)
        f = LSMTSparseFile(index=index, files=[fdata], virtual_size=VSIZE)
        assert f.pread(len(data), 0) == data


def test_sparse_close_seal_unsupported():
    f, _ = _new_sparse()
    with pytest.raises(LSMTError):
        f.close_seal()