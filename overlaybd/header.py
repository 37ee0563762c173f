"""On-disk header and trailer of LSMT layer files, and the layer metadata around them."""

from __future__ import annotations

import io
import os
import struct
import uuid as uuid_mod
from dataclasses import dataclass, field
from typing import BinaryIO, Optional, Sequence, Union

from .segment import LSMTError

SPACE = 4096
TAG_SIZE = 256
ALIGNMENT = 512
ALIGNMENT4K = 4096
MAX_STACK_LAYERS = 255

MAGIC0 = b"LSMT\x00\x01\x02\x00"
MAGIC1 = struct.pack(
    "<IHHH6B", 0xD2637E65, 0x4494, 0x4C08, 0xD2A2, 0xC8, 0xEC, 0x4F, 0xCF, 0xAE, 0x8A
)

LSMT_V1 = 1
LSMT_SUB_V1 = 1

FLAG_SHIFT_HEADER = 0
FLAG_SHIFT_TYPE = 1
FLAG_SHIFT_SEALED = 2
FLAG_SPARSE_RW = 4

_LAYOUT = struct.Struct("<8s16sIIQQQ37s37sBBBB256s")
HEADER_TRAILER_SIZE = _LAYOUT.size

_NULL_UUID = uuid_mod.UUID(int=0)


def _uuid_to_str(value: Optional[uuid_mod.UUID]) -> str:
    return str(_NULL_UUID if value is None else value)


def _parse_uuid(text: str) -> Optional[uuid_mod.UUID]:
    """Parse a UUID string; an unreadable or null UUID gives None."""
    try:
        parsed = uuid_mod.UUID(text)
    except (ValueError, TypeError):
        return None
    return None if parsed == _NULL_UUID else parsed


def _encode_str(text: str, width: int) -> bytes:
    raw = text.encode("ascii")[: width - 1]
    return raw.ljust(width, b"\0")


def _decode_str(raw: bytes) -> str:
    return raw.split(b"\0", 1)[0].decode("latin-1")


def _flag_property(shift: int, doc: str) -> property:
    def getter(self: HeaderTrailer) -> bool:
        return bool(self.flags & (1 << shift))

    def setter(self: HeaderTrailer, value: bool) -> None:
        if value:
            self.flags |= 1 << shift
        else:
            self.flags &= ~(1 << shift)

    return property(getter, setter, doc=doc)


@dataclass
class HeaderTrailer:
    """The record at the start (header) or end (trailer) of a layer file."""

    magic0: bytes = MAGIC0
    magic1: bytes = MAGIC1
    size: int = HEADER_TRAILER_SIZE
    flags: int = 0
    index_offset: int = 0
    index_size: int = 0
    virtual_size: int = 0
    uuid: str = ""
    parent_uuid: str = ""
    from_: int = 0
    to: int = 0
    version: int = LSMT_V1
    sub_version: int = LSMT_SUB_V1
    user_tag: bytes = bytes(TAG_SIZE)

    is_header = _flag_property(FLAG_SHIFT_HEADER, "Header rather than trailer.")
    is_data_file = _flag_property(FLAG_SHIFT_TYPE, "Data file rather than index file.")
    is_sealed = _flag_property(FLAG_SHIFT_SEALED, "The layer is sealed.")
    is_sparse_rw = _flag_property(FLAG_SPARSE_RW, "The layer is a sparse read/write file.")

    @property
    def is_trailer(self) -> bool:
        return not self.is_header

    @property
    def is_index_file(self) -> bool:
        return not self.is_data_file

    def verify_magic(self) -> bool:
        """Whether both magic fields hold the LSMT values."""
        return self.magic0 == MAGIC0 and self.magic1 == MAGIC1

    def set_tag(self, tag: bytes) -> None:
        """Store a commit message of at most TAG_SIZE bytes; empty clears it."""
        tag = bytes(tag)
        if len(tag) > TAG_SIZE:
            raise LSMTError(f"user tag too long (need at most {TAG_SIZE} bytes)")
        if not tag:
            self.user_tag = bytes(TAG_SIZE)
            return
        current = bytes(self.user_tag).ljust(TAG_SIZE, b"\0")[:TAG_SIZE]
        self.user_tag = tag + current[len(tag):]

    def to_bytes(self) -> bytes:
        """Encode as the packed on-disk record."""
        return _LAYOUT.pack(
            self.magic0,
            self.magic1,
            self.size,
            self.flags & 0xFFFFFFFF,
            self.index_offset,
            self.index_size,
            self.virtual_size,
            _encode_str(self.uuid, 37),
            _encode_str(self.parent_uuid, 37),
            self.from_,
            self.to,
            self.version,
            self.sub_version,
            bytes(self.user_tag).ljust(TAG_SIZE, b"\0")[:TAG_SIZE],
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> HeaderTrailer:
        """Decode a record from the start of ``data``."""
        if len(data) < HEADER_TRAILER_SIZE:
            raise ValueError(
                f"a header takes {HEADER_TRAILER_SIZE} bytes, got {len(data)}"
            )
        (
            magic0, magic1, size, flags, index_offset, index_size, virtual_size,
            raw_uuid, raw_parent, from_, to, version, sub_version, user_tag,
        ) = _LAYOUT.unpack(bytes(data[:HEADER_TRAILER_SIZE]))
        return cls(
            magic0=magic0,
            magic1=magic1,
            size=size,
            flags=flags,
            index_offset=index_offset,
            index_size=index_size,
            virtual_size=virtual_size,
            uuid=_decode_str(raw_uuid),
            parent_uuid=_decode_str(raw_parent),
            from_=from_,
            to=to,
            version=version,
            sub_version=sub_version,
            user_tag=user_tag,
        )


@dataclass
class LayerInfo:
    """What is needed to create a layer: its files, size, identity and tag."""

    fdata: Optional[BinaryIO] = None
    findex: Optional[BinaryIO] = None
    virtual_size: int = 0
    parent_uuid: Optional[uuid_mod.UUID] = None
    uuid: uuid_mod.UUID = field(default_factory=uuid_mod.uuid4)
    user_tag: bytes = b""
    sparse_rw: bool = False


@dataclass
class CommitArgs:
    """Destination and metadata for committing a layer."""

    dest: Optional[BinaryIO] = None
    user_tag: Optional[Union[bytes, str]] = None
    tag_len: int = 0
    parent_uuid: str = ""

    def tag_bytes(self) -> bytes:
        """The commit message; with no length given, up to the first NUL."""
        if self.user_tag is None:
            return b""
        tag = self.user_tag.encode() if isinstance(self.user_tag, str) else bytes(self.user_tag)
        if self.tag_len == 0:
            return tag.split(b"\0", 1)[0]
        return tag[: self.tag_len]


@dataclass
class DataStat:
    """Data usage of a read/write layer, in bytes; -1 when unknown."""

    total_data_size: int = -1
    valid_data_size: int = -1


def read_at(file: BinaryIO, count: int, offset: int) -> bytes:
    """Read up to ``count`` bytes at ``offset``, leaving the position unchanged."""
    pos = file.tell()
    try:
        file.seek(offset)
        chunks = []
        remaining = count
        while remaining > 0:
            chunk = file.read(remaining)
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)
    finally:
        file.seek(pos)


def write_at(file: BinaryIO, data: bytes, offset: int) -> int:
    """Write ``data`` at ``offset``, leaving the position unchanged."""
    pos = file.tell()
    try:
        file.seek(offset)
        written = file.write(data)
        return len(data) if written is None else written
    finally:
        file.seek(pos)


def append(file: BinaryIO, data: bytes) -> int:
    """Write ``data`` at the end of ``file`` and return where it starts."""
    pos = file.seek(0, os.SEEK_END)
    written = file.write(data)
    if written is not None and written < len(data):
        raise LSMTError(f"short write at {pos}: {written} of {len(data)} bytes")
    return pos


def write_header_trailer(
    file: BinaryIO,
    is_header: bool,
    is_sealed: bool,
    is_data_file: bool,
    index_offset: int,
    index_size: int,
    layer: LayerInfo,
) -> int:
    """Write a SPACE-sized header or trailer at the current position."""
    ht = HeaderTrailer()
    ht.is_header = is_header
    ht.is_sealed = is_sealed
    ht.is_data_file = is_data_file
    ht.is_sparse_rw = layer.sparse_rw
    ht.index_offset = index_offset
    ht.index_size = index_size
    ht.virtual_size = layer.virtual_size
    ht.set_tag(layer.user_tag or b"")
    ht.uuid = _uuid_to_str(layer.uuid)
    ht.parent_uuid = _uuid_to_str(layer.parent_uuid)
    buf = ht.to_bytes().ljust(SPACE, b"\0")
    written = file.write(buf)
    return len(buf) if written is None else written


def _read_header_block(file: BinaryIO, what: str) -> HeaderTrailer:
    block = read_at(file, SPACE, 0)
    if len(block) != SPACE:
        raise LSMTError(f"read {what} info failed")
    return HeaderTrailer.from_bytes(block)


def load_layer_info(files: Sequence[BinaryIO], oper_seal: bool = False) -> LayerInfo:
    """Layer metadata from the headers of ``files`` (top first, bottom last)."""
    if not files:
        raise LSMTError("no layer files given")
    top = _read_header_block(files[0], "layer")
    layer = LayerInfo(virtual_size=top.virtual_size)
    ht = top if len(files) == 1 else _read_header_block(files[-1], "bottom")
    layer.parent_uuid = _parse_uuid(ht.parent_uuid)
    if oper_seal:
        sealed = _parse_uuid(ht.uuid)
        if sealed is not None:
            layer.uuid = sealed
    return layer


def verify_ht(file: Optional[BinaryIO]) -> HeaderTrailer:
    """Read and check the header of a layer file."""
    if file is None:
        raise LSMTError("invalid file (None)")
    block = read_at(file, SPACE, 0)
    if len(block) < SPACE:
        raise LSMTError("failed to read file header")
    ht = HeaderTrailer.from_bytes(block)
    if not ht.verify_magic() or not ht.is_header:
        raise LSMTError("header magic/type don't match")
    return ht