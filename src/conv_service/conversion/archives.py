"""Archive repackaging.

Archive formats are not interchangeable containers, so a conversion always
extracts into scratch space and writes a fresh archive from the extracted tree.
"""

import gzip
import logging
import shutil
import tarfile
import zipfile
from pathlib import Path

import py7zr

from .errors import ProcessingError, UnsupportedFormat
from .formats import format_of, normalize_format
from .interfaces import ConversionArtifact
from .options import ConversionOptions

logger = logging.getLogger(__name__)

READABLE = frozenset({"zip", "tar", "tgz", "tar.gz", "gz", "7z"})
WRITABLE = frozenset({"zip", "tar", "tgz", "tar.gz", "gz", "7z"})


def _inside(root: Path, name: str) -> bool:
    target = (root / name).resolve()
    return target == root or root in target.parents


def _extract(source: Path, fmt: str, dest: Path) -> None:
    root = dest.resolve()
    if fmt == "zip":
        with zipfile.ZipFile(source) as zf:
            for info in zf.infolist():
                if not _inside(root, info.filename):
                    raise ProcessingError(f"unsafe path in archive: {info.filename}")
            zf.extractall(dest)
    elif fmt in {"tar", "tgz", "tar.gz"}:
        with tarfile.open(source, "r:*") as tf:
            members = []
            for member in tf.getmembers():
                if not (member.isfile() or member.isdir()):
                    logger.debug("skipping non-regular tar member %s", member.name)
                    continue
                if not _inside(root, member.name):
                    raise ProcessingError(f"unsafe path in archive: {member.name}")
                members.append(member)
            kwargs = {"filter": "data"} if hasattr(tarfile, "data_filter") else {}
            tf.extractall(dest, members=members, **kwargs)
    elif fmt == "7z":
        with py7zr.SevenZipFile(source, "r") as sz:
            for name in sz.getnames():
                if not _inside(root, name):
                    raise ProcessingError(f"unsafe path in archive: {name}")
            sz.extractall(path=dest)
    elif fmt == "gz":
        name = source.name[: -len(".gz")] or "content"
        with gzip.open(source, "rb") as src, (dest / name).open("wb") as out:
            shutil.copyfileobj(src, out)
    else:
        raise UnsupportedFormat(f"cannot read .{fmt} archives")


def _files(root: Path) -> list[Path]:
    return sorted(p for p in root.rglob("*") if p.is_file())


def _package(root: Path, fmt: str, out: Path, compress: bool) -> None:
    files = _files(root)
    if fmt == "zip":
        level = 9 if compress else 6
        with zipfile.ZipFile(out, "w", zipfile.ZIP_DEFLATED, compresslevel=level) as zf:
            for item in files:
                zf.write(item, item.relative_to(root))
    elif fmt == "7z":
        with py7zr.SevenZipFile(out, "w") as sz:
            for item in files:
                sz.write(item, str(item.relative_to(root)))
    elif fmt in {"tar", "tgz", "tar.gz"}:
        mode = "w" if fmt == "tar" else "w:gz"
        with tarfile.open(out, mode) as tf:
            for item in files:
                tf.add(item, arcname=str(item.relative_to(root)))
    elif fmt == "gz":
        if len(files) != 1:
            raise UnsupportedFormat(f".gz holds a single file; archive contains {len(files)}")
        with files[0].open("rb") as src, gzip.open(out, "wb", compresslevel=9 if compress else 6) as dst:
            shutil.copyfileobj(src, dst)
    else:
        raise UnsupportedFormat(f"cannot write .{fmt} archives")


class ArchiveConverter:
    def convert(
        self,
        input_path: Path,
        target_format: str,
        options: ConversionOptions,
        work_dir: Path,
    ) -> ConversionArtifact:
        target = normalize_format(target_format)
        source = format_of(input_path)
        if source not in READABLE:
            raise UnsupportedFormat(f"cannot read .{source or '?'} archives")
        if target not in WRITABLE:
            raise UnsupportedFormat(f"cannot write .{target} archives")

        extracted = work_dir / "extracted"
        extracted.mkdir(parents=True, exist_ok=True)
        try:
            _extract(input_path, source, extracted)
        except (zipfile.BadZipFile, tarfile.TarError, py7zr.Bad7zFile, OSError, EOFError) as e:
            raise ProcessingError(f"cannot extract archive: {e}") from e
        if not _files(extracted):
            raise ProcessingError("archive is empty")

        stem = input_path.name
        for suffix in (".tar.gz", f".{source}"):
            if stem.lower().endswith(suffix):
                stem = stem[: -len(suffix)]
                break
        out = work_dir / f"{stem or 'archive'}.{target}"
        try:
            _package(extracted, target, out, options.compress)
        except OSError as e:
            out.unlink(missing_ok=True)
            raise ProcessingError(f"cannot write archive: {e}") from e
        return ConversionArtifact.from_file(out, target, "repackage")
