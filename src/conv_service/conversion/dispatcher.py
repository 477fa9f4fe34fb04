from typing import Mapping

from .errors import UnsupportedFormat
from .formats import ConverterFamily, classify_format
from .interfaces import ConverterGateway


class Dispatcher:
    """Maps a target format to the converter registered for its family."""

    def __init__(self, converters: Mapping[ConverterFamily, ConverterGateway]) -> None:
        self._converters = dict(converters)

    def resolve(self, target_format: str) -> ConverterFamily:
        return classify_format(target_format)

    def dispatch(self, target_format: str) -> ConverterGateway:
        family = self.resolve(target_format)
        converter = self._converters.get(family)
        if converter is None:
            raise UnsupportedFormat(f"no {family.value} converter is configured for .{target_format}")
        return converter

    @classmethod
    def default(
        cls,
        *,
        scanned_text_min_chars: int | None = None,
        soffice_bin: str | None = None,
        tool_timeout: float | None = None,
    ) -> "Dispatcher":
        """Dispatcher wired to the real converters."""
        from .archives import ArchiveConverter
        from .documents import SCANNED_TEXT_MIN_CHARS, DocumentConverter, LibreOfficeTranscode
        from .media import AudioConverter, ImageConverter, VideoConverter
        from .tools import DEFAULT_TOOL_TIMEOUT_SEC

        timeout = tool_timeout or DEFAULT_TOOL_TIMEOUT_SEC
        return cls({
            ConverterFamily.DOCUMENT: DocumentConverter(
                generic=LibreOfficeTranscode(soffice_bin=soffice_bin, timeout=timeout),
                scanned_text_min_chars=scanned_text_min_chars or SCANNED_TEXT_MIN_CHARS,
            ),
            ConverterFamily.IMAGE: ImageConverter(),
            ConverterFamily.AUDIO: AudioConverter(timeout=timeout),
            ConverterFamily.VIDEO: VideoConverter(timeout=timeout),
            ConverterFamily.ARCHIVE: ArchiveConverter(),
        })
