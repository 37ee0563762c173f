import errno
import io
import os
import tarfile

import pytest

from overlaybd.tar_file import (
    HEADER_SIZE,
    TarFile,
    TarFs,
    is_tar_file,
    new_tar_file_adaptor,
    new_tar_fs_adaptor,
)


def _tar_bytes(name, data):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.USTAR_FORMAT) as tar:
        info = tarfile.TarInfo(name)
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def _pax_blob(record, payload):
    header = bytearray(HEADER_SIZE)
    header[156:157] = b"x"
    header[124:136] = f"{len(record):011o}\0".encode()
    return bytes(header) + record.ljust(HEADER_SIZE, b"\0") + bytes(HEADER_SIZE) + payload


def test_is_tar_file_accepts_stdlib_tar():
    assert is_tar_file(io.BytesIO(_tar_bytes("blob", b"payload"))) is True


def test_is_tar_file_rejects_other_data():
    assert is_tar_file(io.BytesIO(b"\x01" * 2048)) is False
    assert is_tar_file(io.BytesIO(b"short")) is False


def test_is_tar_file_rejects_bad_checksum():
    blob = bytearray(_tar_bytes("blob", b"payload"))
    blob[0] ^= 0x20
    assert is_tar_file(io.BytesIO(bytes(blob))) is False


def test_adaptor_reads_payload():
    data = b"layer contents" * 50
    tar = new_tar_file_adaptor(io.BytesIO(_tar_bytes("blob", data)))
    assert isinstance(tar, TarFile)
    assert tar.pread(len(data), 0) == data
    assert tar.pread(4, 6) == data[6:10]
    assert tar.fstat().st_size == len(data)


def test_adaptor_passes_plain_file_through():
    plain = io.BytesIO(b"not a tar" * 100)
    assert new_tar_file_adaptor(plain) is plain


def test_lseek_set_and_cur_are_relative_to_payload():
    tar = new_tar_file_adaptor(io.BytesIO(_tar_bytes("blob", b"x" * 1000)))
    assert tar.lseek(0, os.SEEK_SET) == 0
    assert tar.lseek(100, os.SEEK_SET) == 100
    assert tar.lseek(50, os.SEEK_CUR) == 150


def test_lseek_rejects_bad_whence():
    tar = new_tar_file_adaptor(io.BytesIO(_tar_bytes("blob", b"abc")))
    with pytest.raises(OSError) as info:
        tar.lseek(0, 99)
    assert info.value.errno == errno.EINVAL


def test_pax_header_gives_size_and_offset():
    payload = b"hello world"
    tar = TarFile(io.BytesIO(_pax_blob(b"11 size=11\n", payload)))
    tar.read_header()
    assert tar.base_offset == 3 * HEADER_SIZE
    assert tar.fstat().st_size == len(payload)
    assert tar.pread(len(payload), 0) == payload


def test_pax_header_with_zero_size_fails():
    tar = TarFile(io.BytesIO(_pax_blob(b"10 size=0\n", b"data")))
    with pytest.raises(ValueError):
        tar.read_header()


def test_tar_fs_new_file_round_trip(tmp_path):
    data = b"committed layer data" * 40
    fs = new_tar_fs_adaptor(tmp_path)
    tar = fs.open("blob.tar", os.O_RDWR | os.O_CREAT, 0o644)
    assert isinstance(tar, TarFile)
    assert tar.fstat().st_size == -1
    tar.pwrite(data, HEADER_SIZE)
    assert tar.lseek(0, os.SEEK_END) == len(data)
    tar.close()

    with tarfile.open(tmp_path / "blob.tar") as archive:
        assert archive.getnames() == ["overlaybd.commit"]
        assert archive.extractfile("overlaybd.commit").read() == data
    with open(tmp_path / "blob.tar", "rb") as raw:
        assert is_tar_file(raw) is True


def test_tar_fs_reopen_committed_file(tmp_path):
    data = b"0123456789" * 70
    fs = TarFs(tmp_path)
    with fs.open("/layer", os.O_RDWR | os.O_CREAT) as tar:
        tar.pwrite(data, HEADER_SIZE)
    with fs.open("layer", os.O_RDONLY) as tar:
        assert isinstance(tar, TarFile)
        assert tar.pread(len(data), 0) == data
        assert tar.fstat().st_size == len(data)


def test_tar_fs_plain_file_is_left_alone(tmp_path):
    content = b"plain content" * 10
    (tmp_path / "plain").write_bytes(content)
    file = TarFs(tmp_path).open("plain", os.O_RDWR)
    try:
        assert not isinstance(file, TarFile)
        assert file.read() == content
    finally:
        file.close()
    assert (tmp_path / "plain").read_bytes() == content