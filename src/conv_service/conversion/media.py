import logging
from abc import ABC, abstractmethod
from pathlib import Path

import ffmpeg
from PIL import Image, UnidentifiedImageError

from .documents import render_pdf_pages
from .errors import ProcessingError, UnsupportedFormat
from .formats import format_of, normalize_format
from .interfaces import ConversionArtifact
from .options import COMPRESSED_VIDEO_WIDTH, ConversionOptions
from .tools import DEFAULT_TOOL_TIMEOUT_SEC, find_tool, run_tool

logger = logging.getLogger(__name__)

PILLOW_FORMATS = {
    "jpg": "JPEG",
    "jpeg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "avif": "AVIF",
    "tiff": "TIFF",
    "tif": "TIFF",
    "bmp": "BMP",
    "gif": "GIF",
    "ico": "ICO",
}
# Formats without an alpha channel
_RGB_ONLY = {"JPEG", "BMP"}

VIDEO_CODECS = {
    "mp4": ("libx264", "aac"),
    "mkv": ("libx264", "aac"),
    "mov": ("libx264", "aac"),
    "avi": ("mpeg4", "libmp3lame"),
    "webm": ("libvpx-vp9", "libopus"),
    "wmv": ("wmv2", "wmav2"),
    "flv": ("flv1", "libmp3lame"),
}
AUDIO_CODECS = {
    "mp3": "libmp3lame",
    "aac": "aac",
    "m4a": "aac",
    "ogg": "libvorbis",
    "opus": "libopus",
    "wav": "pcm_s16le",
    "flac": "flac",
}
LOSSLESS_AUDIO = {"wav", "flac"}


def _output_path(input_path: Path, work_dir: Path, target: str) -> Path:
    work_dir.mkdir(parents=True, exist_ok=True)
    return work_dir / f"{input_path.stem or 'output'}.{target}"


class ImageConverter:
    """Format to format transcode with Pillow; quality comes from the tier."""

    def convert(
        self,
        input_path: Path,
        target_format: str,
        options: ConversionOptions,
        work_dir: Path,
    ) -> ConversionArtifact:
        target = normalize_format(target_format)
        pil_format = PILLOW_FORMATS.get(target)
        if pil_format is None:
            raise UnsupportedFormat(f"images cannot be written as .{target}")
        Image.init()
        if pil_format not in Image.SAVE:
            raise UnsupportedFormat(f"this Pillow build cannot write .{target}")
        out = _output_path(input_path, work_dir, target)

        try:
            if format_of(input_path) == "pdf":
                pages = render_pdf_pages(input_path, dpi=150)
                try:
                    img = next(pages)
                finally:
                    pages.close()
            else:
                img = Image.open(input_path)
            with img:
                img.load()
                animated = getattr(img, "is_animated", False) and pil_format in {"GIF", "WEBP"}
                if pil_format in _RGB_ONLY and img.mode not in ("RGB", "L"):
                    img = img.convert("RGB")
                img.save(out, pil_format, **self._save_params(pil_format, options, animated))
        except StopIteration:
            raise ProcessingError("PDF has no pages") from None
        except (UnidentifiedImageError, OSError, ValueError) as e:
            out.unlink(missing_ok=True)
            raise ProcessingError(f"image conversion failed: {e}") from e
        return ConversionArtifact.from_file(out, target, "pillow")

    @staticmethod
    def _save_params(pil_format: str, options: ConversionOptions, animated: bool) -> dict[str, object]:
        quality = options.image_quality()
        params: dict[str, object] = {}
        if pil_format in {"JPEG", "WEBP", "AVIF"}:
            params["quality"] = quality
        if pil_format == "JPEG":
            params["optimize"] = True
        elif pil_format == "PNG":
            params["optimize"] = options.compress
            params["compress_level"] = 9 if options.compress else 6
        elif pil_format == "TIFF" and options.compress:
            params["compression"] = "tiff_adobe_deflate"
        if animated:
            params["save_all"] = True
        return params


class _FfmpegConverter(ABC):
    kind = "media"
    strategy = "ffmpeg"

    def __init__(self, ffmpeg_bin: str | None = None, timeout: float = DEFAULT_TOOL_TIMEOUT_SEC) -> None:
        self._ffmpeg_bin = ffmpeg_bin
        self._timeout = timeout

    @abstractmethod
    def output_params(self, target: str, options: ConversionOptions) -> dict[str, object]:
        ...

    def convert(
        self,
        input_path: Path,
        target_format: str,
        options: ConversionOptions,
        work_dir: Path,
    ) -> ConversionArtifact:
        target = normalize_format(target_format)
        params = self.output_params(target, options)
        binary = find_tool("ffmpeg", explicit=self._ffmpeg_bin)
        out = _output_path(input_path, work_dir, target)

        stream = ffmpeg.output(ffmpeg.input(str(input_path)), str(out), **params)
        args = ffmpeg.compile(stream, cmd=binary, overwrite_output=True)
        logger.debug("%s transcode to .%s with %s", self.kind, target, params)
        try:
            run_tool(args, timeout=self._timeout)
        except Exception:
            out.unlink(missing_ok=True)
            raise
        if not out.exists() or out.stat().st_size == 0:
            raise ProcessingError(f"ffmpeg produced no .{target} output")
        return ConversionArtifact.from_file(out, target, self.strategy)


class AudioConverter(_FfmpegConverter):
    """Audio transcode; video sources have their audio track extracted."""

    kind = "audio"

    def output_params(self, target: str, options: ConversionOptions) -> dict[str, object]:
        codec = AUDIO_CODECS.get(target)
        if codec is None:
            raise UnsupportedFormat(f"audio cannot be written as .{target}")
        params: dict[str, object] = {"vn": None, "acodec": codec}
        if target not in LOSSLESS_AUDIO:
            params["audio_bitrate"] = options.audio_bitrate()
        return params


class VideoConverter(_FfmpegConverter):
    kind = "video"

    def output_params(self, target: str, options: ConversionOptions) -> dict[str, object]:
        codecs = VIDEO_CODECS.get(target)
        if codecs is None:
            raise UnsupportedFormat(f"video cannot be written as .{target}")
        vcodec, acodec = codecs
        params: dict[str, object] = {
            "vcodec": vcodec,
            "acodec": acodec,
            "video_bitrate": options.video_bitrate(),
            "audio_bitrate": options.audio_bitrate(),
        }
        if options.compress:
            # cap the width, never upscale; -2 keeps the height even
            params["vf"] = f"scale='min({COMPRESSED_VIDEO_WIDTH},iw)':-2"
        elif vcodec == "libx264":
            # x264 needs even dimensions (GIF sources often are not)
            params["vf"] = "scale=trunc(iw/2)*2:trunc(ih/2)*2"
        if vcodec == "libx264":
            params["pix_fmt"] = "yuv420p"
        if target == "mp4":
            params["movflags"] = "+faststart"
        return params
