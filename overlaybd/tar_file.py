"""Adaptor exposing the payload of a single-member tar blob as a plain file.

Only what a layer blob needs is supported: one member with a tar header in
front and two zero blocks behind, or a PAX extended header carrying the size.
"""

from __future__ import annotations

import errno
import io
import os
import re
import stat as stat_mod
from typing import BinaryIO, Optional, Union

try:
    import grp
    import pwd
except ImportError:  # pragma: no cover - non-POSIX systems
    grp = None
    pwd = None

HEADER_SIZE = 512
COMMIT_NAME = b"overlaybd.commit"
NEW_NAME = b"overlaybd.new"

_MAGIC = b"ustar"
_VERSION = b"00"
_MAGIC_EMPTY = b"xxtar"
_VERSION_EMPTY = b"xx"

_NAME = (0, 100)
_MODE = (100, 8)
_UID = (108, 8)
_GID = (116, 8)
_SIZE = (124, 12)
_MTIME = (136, 12)
_CHKSUM = (148, 8)
_TYPEFLAG = (156, 1)
_MAGIC_FIELD = (257, 6)
_VERSION_FIELD = (263, 2)
_UNAME = (265, 32)
_GNAME = (297, 32)


def _get(block: bytes, field) -> bytes:
    off, n = field
    return bytes(block[off:off + n])


def _put(block: bytearray, field, value: bytes) -> None:
    off, n = field
    value = value[:n]
    block[off:off + len(value)] = value


def _octal(num: int, width: int) -> bytes:
    """Right-aligned octal, a space and a NUL, filling ``width`` bytes."""
    text = f"{num & 0xFFFFFFFFFFFFFFFF:>{width - 2}o} ".encode("ascii")
    return text[:width - 1] + b"\0"


def _octal_nonull(num: int, width: int) -> bytes:
    """Right-aligned octal followed by a space, with no terminating NUL."""
    return f"{num:>{width - 1}o}".encode("ascii")[:width - 1] + b" "


def _parse_octal(raw: bytes) -> int:
    """Read an octal field; an unreadable field gives -1."""
    text = raw.split(b"\0", 1)[0].strip()
    if not text:
        return 0
    try:
        return int(text.decode("ascii"), 8)
    except (UnicodeDecodeError, ValueError):
        return -1


def _checksums(block: bytes) -> tuple[int, int]:
    """Unsigned and signed header sums, counting the checksum field as spaces."""
    off, n = _CHKSUM
    chk = block[off:off + n]
    unsigned = sum(block) - sum(chk) + n * 0x20

    def signed(values):
        return sum(b - 256 if b > 127 else b for b in values)

    return unsigned, signed(block) - signed(chk) + n * 0x20


def _pread(file: BinaryIO, count: int, offset: int) -> bytes:
    pos = file.tell()
    try:
        file.seek(offset)
        return file.read(count) or b""
    finally:
        file.seek(pos)


def _pwrite(file: BinaryIO, data: bytes, offset: int) -> int:
    pos = file.tell()
    try:
        file.seek(offset)
        return file.write(data)
    finally:
        file.seek(pos)


def _fstat(file: BinaryIO) -> os.stat_result:
    flush = getattr(file, "flush", None)
    if flush is not None:
        flush()
    try:
        return os.fstat(file.fileno())
    except (AttributeError, OSError):
        pos = file.tell()
        size = file.seek(0, os.SEEK_END)
        file.seek(pos)
        return os.stat_result((stat_mod.S_IFREG | 0o644, 0, 0, 1, 0, 0, size, 0, 0, 0))


def _with_size(st: os.stat_result, size: int) -> os.stat_result:
    values = list(st[:10])
    values[6] = size
    return os.stat_result(values)


_LEADING_INT = re.compile(rb"\s*([+-]?\d+)")


def _pax_size(records: bytes) -> int:
    for line in records.split(b"\n")[:-1]:
        pos = line.find(b"size=")
        if pos < 0:
            continue
        match = _LEADING_INT.match(line[pos + len(b"size="):])
        size = int(match.group(1)) if match else 0
        if size == 0:
            raise ValueError("PAX extended header holds no usable file size")
        return size
    raise ValueError("PAX extended header has no size record")


class TarFile:
    """A file view that skips the tar header of a single-member blob."""

    def __init__(self, file: BinaryIO) -> None:
        self._file = file
        self.base_offset = HEADER_SIZE
        self.size = 0
        self.closed = False

    def read_header(self) -> None:
        """Read the header, setting the payload offset and size."""
        block = _pread(self._file, HEADER_SIZE, 0).ljust(HEADER_SIZE, b"\0")
        self.base_offset = HEADER_SIZE
        if _get(block, _TYPEFLAG) == b"x":
            self.base_offset = 3 * HEADER_SIZE
            ext_size = _parse_octal(_get(block, _SIZE))
            if not 0 <= ext_size < HEADER_SIZE:
                raise ValueError(f"PAX extended header too large: {ext_size}")
            self.size = _pax_size(_pread(self._file, ext_size, HEADER_SIZE))
        else:
            self.size = _parse_octal(_get(block, _SIZE))
        self._file.seek(self.base_offset)

    def fstat(self) -> os.stat_result:
        """Status of the underlying file, with the payload size."""
        return _with_size(_fstat(self._file), self.size)

    def lseek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        """Reposition the underlying file; return the position past the header."""
        if whence == os.SEEK_SET:
            target = (offset + self.base_offset, os.SEEK_SET)
        elif whence == os.SEEK_CUR:
            target = (offset, os.SEEK_CUR)
        elif whence == os.SEEK_END:
            block = _pread(self._file, HEADER_SIZE, 0).ljust(HEADER_SIZE, b"\0")
            size = _parse_octal(_get(block, _SIZE))
            if size == -1:
                target = (offset, os.SEEK_END)
            else:
                target = (size + offset, os.SEEK_SET)
        else:
            raise OSError(errno.EINVAL, f"invalid whence: {whence}")
        try:
            pos = self._file.seek(*target)
        except (OSError, ValueError) as exc:
            raise OSError(errno.EINVAL, f"cannot seek to {offset}") from exc
        return pos - self.base_offset

    def pread(self, count: int, offset: int) -> bytes:
        """Read ``count`` bytes at ``offset`` within the payload."""
        return _pread(self._file, count, offset + self.base_offset)

    def pwrite(self, data: bytes, offset: int) -> int:
        """Write at a raw offset of the underlying file, header included."""
        return _pwrite(self._file, data, offset)

    def close(self) -> None:
        """Finish the tar header of a new blob, then close the underlying file."""
        if self.closed:
            return
        self.closed = True
        block = _pread(self._file, HEADER_SIZE, 0).ljust(HEADER_SIZE, b"\0")
        if (
            _get(block, _MAGIC_FIELD)[:len(_MAGIC_EMPTY)] == _MAGIC_EMPTY
            and _get(block, _VERSION_FIELD) == _VERSION_EMPTY
        ):
            self._write_header_trailer()
        self._file.close()

    def __enter__(self) -> TarFile:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _write_header_trailer(self) -> None:
        st = _fstat(self._file)
        block = bytearray(HEADER_SIZE)
        _put(block, _TYPEFLAG, b"0")
        if pwd is not None:
            try:
                _put(block, _UNAME, os.fsencode(pwd.getpwuid(st.st_uid).pw_name)[:_UNAME[1] - 1])
            except KeyError:
                pass
        _put(block, _UID, _octal(st.st_uid, _UID[1]))
        if grp is not None:
            try:
                _put(block, _GNAME, os.fsencode(grp.getgrgid(st.st_gid).gr_name)[:_GNAME[1] - 1])
            except KeyError:
                pass
        _put(block, _GID, _octal(st.st_gid, _GID[1]))
        _put(block, _MODE, _octal(st.st_mode, _MODE[1]))
        _put(block, _MTIME, _octal_nonull(int(st.st_mtime), _MTIME[1]))
        _put(block, _SIZE, _octal_nonull(st.st_size - HEADER_SIZE, _SIZE[1]))
        _put(block, _NAME, COMMIT_NAME)
        _put(block, _VERSION_FIELD, _VERSION)
        _put(block, _MAGIC_FIELD, _MAGIC + b"\0")
        _put(block, _CHKSUM, _octal(_checksums(bytes(block))[0], _CHKSUM[1]))
        _pwrite(self._file, bytes(block), 0)
        end = (st.st_size + HEADER_SIZE - 1) // HEADER_SIZE * HEADER_SIZE
        _pwrite(self._file, bytes(2 * HEADER_SIZE), end)


def is_tar_file(file: BinaryIO) -> bool:
    """Whether ``file`` starts with a valid ustar header."""
    block = _pread(file, HEADER_SIZE, 0)
    if len(block) != HEADER_SIZE:
        return False
    if _get(block, _MAGIC_FIELD)[:len(_MAGIC)] != _MAGIC:
        return False
    if _get(block, _VERSION_FIELD) != _VERSION:
        return False
    return _parse_octal(_get(block, _CHKSUM)) in _checksums(block)


def _open_tar_file(file: BinaryIO, verify_type: bool = True) -> Union[TarFile, BinaryIO]:
    if verify_type and not is_tar_file(file):
        return file
    tar = TarFile(file)
    tar.read_header()
    return tar


def _mark_new_tar(file: BinaryIO) -> None:
    block = bytearray(HEADER_SIZE)
    _put(block, _NAME, NEW_NAME)
    _put(block, _VERSION_FIELD, _VERSION_EMPTY)
    _put(block, _MAGIC_FIELD, _MAGIC_EMPTY + b"\0")
    _put(block, _SIZE, _octal_nonull(-1, _SIZE[1]))
    _pwrite(file, bytes(block), 0)


def _fdopen_mode(flags: int) -> str:
    access = flags & (os.O_RDONLY | os.O_WRONLY | os.O_RDWR)
    if access == os.O_RDONLY:
        return "rb"
    if access == os.O_WRONLY:
        return "wb"
    return "r+b"


class TarFs:
    """Opens files under ``root``, seeing through tar blobs."""

    def __init__(self, root: Union[str, os.PathLike]) -> None:
        self.root = os.fspath(root)

    def open(self, pathname, flags: int = os.O_RDONLY, mode: int = 0o666):
        """Open ``pathname``; an empty writable file becomes a new tar blob."""
        path = os.path.join(self.root, os.fspath(pathname).lstrip("/"))
        fd = os.open(path, flags, mode)
        try:
            file = os.fdopen(fd, _fdopen_mode(flags))
        except Exception:
            os.close(fd)
            raise
        if flags & (os.O_RDONLY | os.O_WRONLY | os.O_RDWR) == os.O_RDONLY:
            return _open_tar_file(file)
        if _fstat(file).st_size == 0:
            _mark_new_tar(file)
            return _open_tar_file(file, verify_type=False)
        return _open_tar_file(file)


def new_tar_file_adaptor(file: BinaryIO) -> Union[TarFile, BinaryIO]:
    """Wrap ``file`` in a :class:`TarFile` if it is a tar blob, else return it."""
    return _open_tar_file(file)


def new_tar_fs_adaptor(root: Union[str, os.PathLike]) -> TarFs:
    """A :class:`TarFs` over the directory ``root``."""
    return TarFs(root)