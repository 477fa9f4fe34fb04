from dataclasses import asdict, dataclass
from enum import Enum

from .errors import RequestValidationError


class QualityTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class QualitySettings:
    image_quality: int
    video_bitrate: str
    audio_bitrate: str


QUALITY_SETTINGS: dict[QualityTier, QualitySettings] = {
    QualityTier.LOW: QualitySettings(image_quality=60, video_bitrate="500k", audio_bitrate="64k"),
    QualityTier.MEDIUM: QualitySettings(image_quality=80, video_bitrate="1000k", audio_bitrate="128k"),
    QualityTier.HIGH: QualitySettings(image_quality=95, video_bitrate="2000k", audio_bitrate="192k"),
}

# Applied on top of the tier when the user asks for compression
COMPRESSED_IMAGE_QUALITY_DROP = 20
COMPRESSED_IMAGE_QUALITY_FLOOR = 10
COMPRESSED_AUDIO_BITRATE = "64k"
COMPRESSED_VIDEO_BITRATE = "300k"
COMPRESSED_VIDEO_WIDTH = 720


@dataclass(frozen=True)
class ConversionOptions:
    """User supplied knobs, passed through to converters and kept on the job."""

    quality: QualityTier = QualityTier.MEDIUM
    compress: bool = False
    ocr_enabled: bool = False
    table_extraction: bool = False

    @property
    def settings(self) -> QualitySettings:
        return QUALITY_SETTINGS[self.quality]

    def image_quality(self) -> int:
        q = self.settings.image_quality
        if self.compress:
            q = max(COMPRESSED_IMAGE_QUALITY_FLOOR, q - COMPRESSED_IMAGE_QUALITY_DROP)
        return q

    def audio_bitrate(self) -> str:
        return COMPRESSED_AUDIO_BITRATE if self.compress else self.settings.audio_bitrate

    def video_bitrate(self) -> str:
        return COMPRESSED_VIDEO_BITRATE if self.compress else self.settings.video_bitrate

    def to_metadata(self) -> dict[str, object]:
        data = asdict(self)
        data["quality"] = self.quality.value
        return data

    @classmethod
    def parse(
        cls,
        quality: str | None = None,
        compress: object = False,
        ocr_enabled: object = False,
        table_extraction: object = False,
    ) -> "ConversionOptions":
        """Build options from loosely typed form values ("true", "1", True...)."""
        raw = (quality or QualityTier.MEDIUM.value).strip().lower()
        try:
            tier = QualityTier(raw)
        except ValueError:
            raise RequestValidationError(f"quality must be one of low, medium, high (got {quality!r})") from None
        return cls(
            quality=tier,
            compress=_as_bool(compress),
            ocr_enabled=_as_bool(ocr_enabled),
            table_extraction=_as_bool(table_extraction),
        )

    @classmethod
    def from_metadata(cls, metadata: dict[str, object]) -> "ConversionOptions":
        return cls.parse(
            quality=str(metadata.get("quality") or QualityTier.MEDIUM.value),
            compress=metadata.get("compress", False),
            ocr_enabled=metadata.get("ocr_enabled", False),
            table_extraction=metadata.get("table_extraction", False),
        )


def _as_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)
