"""Format tokens and converter families.

``classify_format`` is the single place that decides which converter family
handles a target format. The family sets are disjoint; anything unknown goes to
the document family because office converters accept the widest range of input.
"""

import re
from enum import Enum
from pathlib import Path

from .errors import InvalidFormatError


class ConverterFamily(str, Enum):
    DOCUMENT = "document"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    ARCHIVE = "archive"


IMAGE_FORMATS = frozenset({"jpg", "jpeg", "png", "webp", "avif", "tiff", "tif", "bmp", "gif", "ico"})
AUDIO_FORMATS = frozenset({"mp3", "wav", "aac", "flac", "ogg", "m4a", "opus"})
VIDEO_FORMATS = frozenset({"mp4", "avi", "mov", "mkv", "webm", "wmv", "flv"})
ARCHIVE_FORMATS = frozenset({"zip", "7z", "tar", "tgz", "tar.gz", "gz", "rar"})
DOCUMENT_FORMATS = frozenset({
    "pdf", "doc", "docx", "odt", "rtf", "txt", "md", "html",
    "xls", "xlsx", "ods", "csv", "ppt", "pptx", "odp", "epub", "json",
})

# Checked in this order; first match wins.
FAMILY_FORMATS: tuple[tuple[ConverterFamily, frozenset[str]], ...] = (
    (ConverterFamily.IMAGE, IMAGE_FORMATS),
    (ConverterFamily.AUDIO, AUDIO_FORMATS),
    (ConverterFamily.VIDEO, VIDEO_FORMATS),
    (ConverterFamily.ARCHIVE, ARCHIVE_FORMATS),
    (ConverterFamily.DOCUMENT, DOCUMENT_FORMATS),
)

_TOKEN_RE = re.compile(r"[a-z0-9]+(\.[a-z0-9]+)?")
_MAX_TOKEN_LEN = 16


def normalize_format(token: str | None) -> str:
    """Lower-case a format token and strip its leading dot(s).

    Raises ``InvalidFormatError`` for empty or malformed tokens.
    """
    value = (token or "").strip().lower().lstrip(".")
    if not value:
        raise InvalidFormatError("target format is required")
    if len(value) > _MAX_TOKEN_LEN or not _TOKEN_RE.fullmatch(value):
        raise InvalidFormatError(f"malformed format token: {token!r}")
    return value


def classify_format(token: str) -> ConverterFamily:
    fmt = normalize_format(token)
    for family, formats in FAMILY_FORMATS:
        if fmt in formats:
            return family
    return ConverterFamily.DOCUMENT


def format_of(path_or_name: str | Path) -> str:
    """Source format of a file name, '' when it has no extension."""
    name = Path(path_or_name).name.lower()
    if name.endswith(".tar.gz"):
        return "tar.gz"
    suffix = Path(name).suffix
    return suffix[1:] if suffix else ""


def family_listing() -> dict[str, list[str]]:
    return {family.value: sorted(formats) for family, formats in FAMILY_FORMATS}
