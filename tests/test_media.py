import pytest
from PIL import Image

from conftest import make_text_pdf
from conv_service.conversion import ConversionOptions, ProcessingError, QualityTier, UnsupportedFormat
from conv_service.conversion.media import AudioConverter, ImageConverter, VideoConverter


@pytest.fixture
def photo(tmp_path):
    path = tmp_path / "photo.jpg"
    Image.effect_noise((160, 120), 64).convert("RGB").save(path, "JPEG", quality=95)
    return path


def test_jpg_to_png(photo, tmp_path):
    artifact = ImageConverter().convert(photo, "png", ConversionOptions(), tmp_path / "work")
    assert artifact.path.read_bytes()[:8] == b"\x89PNG\r\n\x1a\n"
    assert artifact.format == "png"
    assert artifact.path.parent == tmp_path / "work"


def test_quality_tier_orders_output_size(photo, tmp_path):
    low = ImageConverter().convert(photo, "jpg", ConversionOptions(quality=QualityTier.LOW), tmp_path / "low")
    high = ImageConverter().convert(photo, "jpg", ConversionOptions(quality=QualityTier.HIGH), tmp_path / "high")
    assert low.size_bytes <= high.size_bytes


def test_jpeg_target_drops_alpha(tmp_path):
    src = tmp_path / "logo.png"
    Image.new("RGBA", (32, 32), (0, 128, 255, 100)).save(src)
    artifact = ImageConverter().convert(src, "jpg", ConversionOptions(), tmp_path / "work")
    with Image.open(artifact.path) as img:
        assert img.mode == "RGB"


def test_pdf_first_page_to_image(tmp_path):
    pdf = make_text_pdf(tmp_path / "doc.pdf")
    artifact = ImageConverter().convert(pdf, "png", ConversionOptions(), tmp_path / "work")
    with Image.open(artifact.path) as img:
        assert img.width > 0


def test_corrupt_image_is_a_processing_error(tmp_path):
    src = tmp_path / "broken.png"
    src.write_bytes(b"not an image")
    with pytest.raises(ProcessingError):
        ImageConverter().convert(src, "jpg", ConversionOptions(), tmp_path / "work")
    assert not (tmp_path / "work" / "broken.jpg").exists()


def test_image_converter_rejects_non_image_targets(photo, tmp_path):
    with pytest.raises(UnsupportedFormat):
        ImageConverter().convert(photo, "mp3", ConversionOptions(), tmp_path / "work")


class TestFfmpegParams:
    def test_audio_bitrate_follows_tier(self):
        params = AudioConverter().output_params("mp3", ConversionOptions(quality=QualityTier.HIGH))
        assert params["audio_bitrate"] == "192k"
        assert params["acodec"] == "libmp3lame"
        assert "vn" in params

    def test_audio_compress_caps_bitrate(self):
        params = AudioConverter().output_params("ogg", ConversionOptions(quality=QualityTier.HIGH, compress=True))
        assert params["audio_bitrate"] == "64k"

    def test_lossless_audio_has_no_bitrate(self):
        assert "audio_bitrate" not in AudioConverter().output_params("flac", ConversionOptions())

    def test_video_compress_caps_width_at_720(self):
        params = VideoConverter().output_params("mp4", ConversionOptions(compress=True))
        assert params["video_bitrate"] == "300k"
        assert params["vf"] == "scale='min(720,iw)':-2"
        assert params["pix_fmt"] == "yuv420p"

    def test_video_tier_bitrate(self):
        params = VideoConverter().output_params("webm", ConversionOptions(quality=QualityTier.LOW))
        assert params["video_bitrate"] == "500k"
        assert params["vcodec"] == "libvpx-vp9"

    def test_unknown_targets(self):
        with pytest.raises(UnsupportedFormat):
            AudioConverter().output_params("mp4", ConversionOptions())
        with pytest.raises(UnsupportedFormat):
            VideoConverter().output_params("mp3", ConversionOptions())

    def test_ffmpeg_base_needs_output_params(self):
        from conv_service.conversion.media import _FfmpegConverter

        with pytest.raises(TypeError):
            _FfmpegConverter()


def test_codec_missing_from_pillow_build_is_unsupported(photo, tmp_path, monkeypatch):
    Image.init()
    monkeypatch.delitem(Image.SAVE, "WEBP", raising=False)
    with pytest.raises(UnsupportedFormat):
        ImageConverter().convert(photo, "webp", ConversionOptions(), tmp_path / "work")
