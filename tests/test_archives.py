import tarfile
import zipfile

import py7zr
import pytest

from conv_service.conversion import ConversionOptions, ProcessingError, UnsupportedFormat
from conv_service.conversion.archives import ArchiveConverter


@pytest.fixture
def sample_zip(tmp_path):
    path = tmp_path / "bundle.zip"
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("a.txt", "alpha")
        zf.writestr("nested/b.txt", "beta")
    return path


def test_zip_to_tar_gz(sample_zip, tmp_path):
    artifact = ArchiveConverter().convert(sample_zip, "tar.gz", ConversionOptions(), tmp_path / "work")
    assert artifact.path.name == "bundle.tar.gz"
    with tarfile.open(artifact.path, "r:gz") as tf:
        assert sorted(tf.getnames()) == ["a.txt", "nested/b.txt"]
        assert tf.extractfile("nested/b.txt").read() == b"beta"


def test_zip_to_7z_and_back(sample_zip, tmp_path):
    seven = ArchiveConverter().convert(sample_zip, "7z", ConversionOptions(), tmp_path / "w1")
    with py7zr.SevenZipFile(seven.path, "r") as sz:
        assert "a.txt" in sz.getnames()
    back = ArchiveConverter().convert(seven.path, "zip", ConversionOptions(compress=True), tmp_path / "w2")
    with zipfile.ZipFile(back.path) as zf:
        assert zf.read("a.txt") == b"alpha"


def test_path_traversal_is_refused(tmp_path):
    evil = tmp_path / "evil.zip"
    with zipfile.ZipFile(evil, "w") as zf:
        zf.writestr("../outside.txt", "gotcha")
    with pytest.raises(ProcessingError):
        ArchiveConverter().convert(evil, "tar", ConversionOptions(), tmp_path / "work")
    assert not (tmp_path / "outside.txt").exists()


def test_rar_is_unsupported(sample_zip, tmp_path):
    with pytest.raises(UnsupportedFormat):
        ArchiveConverter().convert(sample_zip, "rar", ConversionOptions(), tmp_path / "work")


def test_gz_holds_one_file(sample_zip, tmp_path):
    with pytest.raises(UnsupportedFormat):
        ArchiveConverter().convert(sample_zip, "gz", ConversionOptions(), tmp_path / "work")


def test_corrupt_archive(tmp_path):
    bad = tmp_path / "bad.zip"
    bad.write_bytes(b"PK\x03\x04 truncated")
    with pytest.raises(ProcessingError):
        ArchiveConverter().convert(bad, "tar", ConversionOptions(), tmp_path / "work")
