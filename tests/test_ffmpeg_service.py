"""Tests for media probing and FFmpeg capability checks."""

import pytest

from convert_engine.core.errors import InspectError
from convert_engine.services.ffmpeg import FFmpegService, parse_probe_output

PROBE = {
    "streams": [
        {"codec_type": "audio", "codec_name": "aac"},
        {
            "codec_type": "video",
            "codec_name": "h264",
            "width": 1920,
            "height": 1080,
            "r_frame_rate": "30000/1001",
            "duration": "12.0",
        },
    ],
    "format": {"duration": "62.5", "bit_rate": "4500000"},
}


class TestParseProbeOutput:
    """Tests for parse_probe_output."""

    def test_reads_streams_and_format(self):
        info = parse_probe_output(PROBE)

        assert info.duration == 62.5
        assert info.width == 1920
        assert info.height == 1080
        assert info.frame_rate == pytest.approx(29.97, abs=0.01)
        assert info.bitrate == 4_500_000
        assert info.video_codec == "h264"
        assert info.audio_codec == "aac"

    def test_falls_back_to_stream_duration(self):
        data = {"streams": PROBE["streams"], "format": {}}

        info = parse_probe_output(data)

        assert info.duration == 12.0
        assert info.bitrate == 0

    def test_unreadable_frame_rate(self):
        data = {"streams": [{"codec_type": "video", "r_frame_rate": "n/a"}]}

        info = parse_probe_output(data)

        assert info.frame_rate == 0
        assert info.audio_codec is None

    def test_audio_only_rejected(self):
        with pytest.raises(InspectError):
            parse_probe_output({"streams": [{"codec_type": "audio"}], "format": {"duration": "3"}})

    def test_to_dict(self):
        assert parse_probe_output(PROBE).to_dict()["video_codec"] == "h264"


class TestFFmpegService:
    """Tests for FFmpegService against missing binaries."""

    @pytest.mark.asyncio
    async def test_missing_ffmpeg_is_unavailable(self, tmp_path):
        service = FFmpegService(ffmpeg_path=str(tmp_path / "ffmpeg"))

        assert await service.check_availability() is False
        assert service.version is None
        assert not service.has_encoder("libx264")

    @pytest.mark.asyncio
    async def test_missing_ffprobe_raises_inspect_error(self, tmp_path):
        service = FFmpegService(ffprobe_path=str(tmp_path / "ffprobe"))

        with pytest.raises(InspectError):
            await service.get_video_info(str(tmp_path / "in.mp4"))

    def test_missing_encoders(self):
        service = FFmpegService()
        service.available_encoders = ["libx264", "aac", "libopus"]

        assert service.has_encoder("libopus")
        assert service.missing_encoders() == ["libvpx-vp9"]
        assert service.missing_encoders(["aac"]) == []
