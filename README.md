# overlaybd

A pure-Python library for the layered block format used by overlay block
devices. An image is a stack of log-structured merge-tree (LSMT) layers. Each
layer holds data blocks and an index. The index maps logical 512-byte sectors
to places in the layer's data file. Layers can be written, sealed, committed
(compacted), merged and stacked. A read returns each block from the topmost
layer that holds it.

The package has no dependencies outside the standard library.

## Installation

```
pip install .
```

To install the test dependencies and run the tests:

```
pip install .[test]
pytest
```

## Modules

### `overlaybd.segment`

- `Segment` is a logical extent `[offset, offset + length)` in sectors.
- `SegmentMapping` adds the mapped sector `moffset`, a `zeroed` flag and the
  layer `tag`.
- `SegmentMapping.to_bytes` / `from_bytes` give the 16-byte on-disk record.
  `pack_mappings` and `unpack_mappings` do the same for whole lists of mappings.
- `iter_segments(index, segment)` walks a range through an index. It yields a
  plain `Segment` for each hole or zeroed range, and the `SegmentMapping` for
  each range backed by data.
- `LSMTError` is the exception raised across the package.

### `overlaybd.index`

- `Index` is a read-only index over sorted mappings that do not overlap.
- `LevelIndex` is an `Index` with a page table that speeds up lookups.
- `Index0` is the writable level-0 index. An insert cuts away any older
  mappings it overlaps.
- `ComboIndex` puts an `Index0` on top of a read-only backing index.

Each index has a `lookup(segment, n)` method. It returns at most `n` mappings
and trims the first and last of them to the segment.

The module also has these functions:

- `create_memory_index0`, `create_memory_index` and `create_level_index` check
  the order of the mappings and their mapped offsets before they build an
  index. They raise `LSMTError` if a check fails.
- `merge_memory_indexes` merges layers into one index, with `indexes[0]` on
  top. Each mapping's tag becomes the position of its layer.
- `create_combo_index` builds a `ComboIndex`.
- `compress_raw_index` joins neighbouring mappings that continue each other.
- `compress_raw_index_predict` returns the size the index would have after
  joining, without checking mapped offsets.

### `overlaybd.header`

- `HeaderTrailer` is the record at the start or end of a layer file. It has
  flag properties `is_header`, `is_data_file`, `is_sealed` and
  `is_sparse_rw`, and a `to_bytes` / `from_bytes` encoding.
- `LayerInfo`, `CommitArgs` and `DataStat` hold layer metadata.
- `read_at`, `write_at` and `append` do positioned I/O.
- `write_header_trailer`, `load_layer_info` and `verify_ht` write, read and
  check headers.

### `overlaybd.lsmt_file`

- `LSMTReadOnlyFile` reads through an index from one or more layer files.
- `LSMTFile` is an append-only writable layer. Its data goes to the data file
  and its mappings go to a separate index file. Group commit of index records
  is available through `set_index_group_commit`. The class also has
  `fallocate` (hole punching), `commit`, `close_seal` and `fsync`.
- `LSMTSparseFile` is a writable layer whose blocks sit in place after a 4 KiB
  header. When its index is rebuilt, data regions are found with
  `SEEK_DATA`/`SEEK_HOLE` where the platform has them.
- `compact` copies the live data behind a list of mappings into a new sealed
  layer.

### `overlaybd.layers`

- `create_file_rw` and `open_file_rw` create or reopen a writable layer.
- `open_file_ro` opens one sealed layer.
- `open_files_ro` opens a stack of sealed layers, lowest first. Their indexes
  are loaded in parallel threads.
- `merge_files_ro` merges a stack of sealed layers into a single layer.
- `stack_files` puts a writable layer on top of read-only layers. By default it
  checks that the parent UUIDs of the layers follow each other.
- `load_index` reads the index of a sealed data file or of an index file.

### `overlaybd.tar_file`

- `TarFile` shows the payload of a single-member tar blob as a plain file.
  Offsets are counted from the end of the header, and a PAX size record is
  used if present.
- When a new blob is closed, `TarFile` writes a ustar header and two zero
  blocks after the payload.
- `TarFs.open` opens files under a root directory. An empty file opened for
  writing is marked as a new blob.
- `is_tar_file` checks the ustar magic, version and checksum.
- `new_tar_file_adaptor` returns a `TarFile` for a tar blob and otherwise
  returns the file unchanged.
- `new_tar_fs_adaptor` returns a `TarFs` for a root directory.

## Example

```python
from overlaybd.header import CommitArgs, LayerInfo
from overlaybd.layers import create_file_rw, open_file_ro

with open("data.lsmt", "w+b") as fdata, open("index.lsmt", "w+b") as findex:
    layer = create_file_rw(LayerInfo(fdata=fdata, findex=findex, virtual_size=1 << 20), False)
    layer.pwrite(b"x" * 4096, 0)
    with open("sealed.lsmt", "w+b") as out:
        layer.commit(CommitArgs(out))

with open("sealed.lsmt", "rb") as f:
    ro = open_file_ro(f, False)
    assert ro.pread(4096, 0) == b"x" * 4096
```

Offsets and lengths given to `pread`, `pwrite` and `fallocate` must be
multiples of 512 bytes. If they are not, `LSMTError` is raised.

## What it does not do

- It works on local file objects only. It does not fetch layer blobs from a
  remote image registry, and it does no authentication.
- It has no command-line tool.
- It does not present layers as a block device.
- The tar support covers a single-member blob with its header and trailer. It
  is not a general tar reader or writer.