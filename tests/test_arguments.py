"""Tests for FFmpeg argument building."""

import pytest
from hypothesis import given, settings, strategies as st

from convert_engine.models.job import OUTPUT_FORMATS, ConversionQuality, ConversionSettings
from convert_engine.services.ffmpeg import build_conversion_args, resolve_settings

INPUT = "/videos/in.mov"
OUTPUT = "/videos/out.mp4"


def _value_after(args, flag):
    return args[args.index(flag) + 1]


class TestBuildConversionArgs:
    """Tests for build_conversion_args."""

    def test_input_comes_first_and_output_last(self):
        """Verify -i <input> leads and the output path closes the list."""
        args = build_conversion_args(INPUT, OUTPUT, ConversionSettings())

        assert args[:2] == ["-i", INPUT]
        assert args[-4:] == ["-progress", "pipe:2", "-y", OUTPUT]

    def test_medium_preset_defaults(self):
        """Verify the default quality tier supplies its preset values."""
        args = build_conversion_args(INPUT, OUTPUT, ConversionSettings())

        assert _value_after(args, "-c:v") == "libx264"
        assert _value_after(args, "-b:v") == "1500000"
        assert _value_after(args, "-vf") == "scale=1280:720:force_original_aspect_ratio=decrease:force_divisible_by=2"
        assert _value_after(args, "-r") == "30"
        assert _value_after(args, "-c:a") == "aac"
        assert _value_after(args, "-b:a") == "128000"

    def test_explicit_settings_override_preset(self):
        """Verify explicit fields win over the preset, field by field."""
        settings_ = ConversionSettings(quality="high", bitrate=2_000_000, audio_codec="libmp3lame")
        args = build_conversion_args(INPUT, OUTPUT, settings_)

        assert _value_after(args, "-b:v") == "2000000"
        assert _value_after(args, "-c:a") == "libmp3lame"
        # Untouched fields still come from the high preset
        assert "scale=1920:1080" in _value_after(args, "-vf")
        assert _value_after(args, "-b:a") == "192000"

    def test_webm_uses_vp9(self):
        args = build_conversion_args(INPUT, "/videos/out.webm", ConversionSettings(format="webm"))

        assert _value_after(args, "-c:v") == "libvpx-vp9"

    @pytest.mark.parametrize("fmt", ["mp4", "mkv", "mov", "avi"])
    def test_other_formats_use_h264(self, fmt):
        args = build_conversion_args(INPUT, OUTPUT, ConversionSettings(format=fmt))

        assert _value_after(args, "-c:v") == "libx264"

    def test_custom_quality_has_no_preset_values(self):
        """Verify 'custom' omits everything not explicitly set."""
        args = build_conversion_args(INPUT, OUTPUT, ConversionSettings(quality="custom"))

        assert args == [
            "-i", INPUT,
            "-c:v", "libx264",
            "-c:a", "aac",
            "-progress", "pipe:2",
            "-y", OUTPUT,
        ]

    def test_resolution_without_aspect_ratio(self):
        """Verify a plain -s flag when aspect ratio is not preserved."""
        settings_ = ConversionSettings(quality="custom", resolution="640x360", maintain_aspect_ratio=False)
        args = build_conversion_args(INPUT, OUTPUT, settings_)

        assert _value_after(args, "-s") == "640x360"
        assert "-vf" not in args

    def test_unparseable_resolution_passed_through(self):
        settings_ = ConversionSettings(quality="custom", resolution="hd720")
        args = build_conversion_args(INPUT, OUTPUT, settings_)

        assert _value_after(args, "-s") == "hd720"

    def test_fractional_frame_rate(self):
        settings_ = ConversionSettings(quality="custom", frame_rate=29.97)
        args = build_conversion_args(INPUT, OUTPUT, settings_)

        assert _value_after(args, "-r") == "29.97"

    def test_trim_window_emits_duration(self):
        """Verify start offset plus duration, never an absolute end."""
        settings_ = ConversionSettings(quality="custom", start_time=5, end_time=15)
        args = build_conversion_args(INPUT, OUTPUT, settings_)

        assert _value_after(args, "-ss") == "5"
        assert _value_after(args, "-t") == "10"
        assert "-to" not in args

    def test_start_only(self):
        args = build_conversion_args(INPUT, OUTPUT, ConversionSettings(quality="custom", start_time=2.5))

        assert _value_after(args, "-ss") == "2.5"
        assert "-t" not in args

    def test_end_only_becomes_duration(self):
        args = build_conversion_args(INPUT, OUTPUT, ConversionSettings(quality="custom", end_time=8))

        assert "-ss" not in args
        assert _value_after(args, "-t") == "8"

    def test_custom_args_after_structured_flags(self):
        """Verify raw arguments follow the structured ones so they can override."""
        settings_ = ConversionSettings(custom_args=["-preset", "slow", "-b:v", "900k"])
        args = build_conversion_args(INPUT, OUTPUT, settings_)

        custom_start = args.index("-preset")
        assert custom_start > args.index("-b:a")
        assert args[custom_start:custom_start + 4] == ["-preset", "slow", "-b:v", "900k"]
        assert custom_start < args.index("-progress")

    def test_does_not_mutate_settings(self):
        settings_ = ConversionSettings(custom_args=["-tune", "film"])
        before = settings_.model_dump()

        build_conversion_args(INPUT, OUTPUT, settings_)

        assert settings_.model_dump() == before

    def test_resolve_settings_merges_preset(self):
        effective = resolve_settings(ConversionSettings(quality="low", frame_rate=12))

        assert effective["bitrate"] == 500_000
        assert effective["frame_rate"] == 12
        assert effective["resolution"] == "854x480"


conversion_settings = st.builds(
    ConversionSettings,
    format=st.sampled_from(OUTPUT_FORMATS),
    quality=st.sampled_from(list(ConversionQuality)),
    bitrate=st.none() | st.integers(min_value=1, max_value=50_000_000),
    resolution=st.none() | st.sampled_from(["640x360", "1280x720", "1920x1080", "hd720"]),
    frame_rate=st.none() | st.floats(min_value=1, max_value=120),
    audio_codec=st.none() | st.sampled_from(["aac", "libopus", "libmp3lame"]),
    audio_bitrate=st.none() | st.integers(min_value=8_000, max_value=512_000),
    custom_args=st.none() | st.lists(st.sampled_from(["-preset", "slow", "-tune", "film", "-y"]), max_size=4),
    maintain_aspect_ratio=st.booleans(),
    start_time=st.none() | st.floats(min_value=0, max_value=100),
)


class TestArgumentProperties:
    """Property tests for the argument builder."""

    @settings(max_examples=100, deadline=None)
    @given(settings_=conversion_settings)
    def test_deterministic(self, settings_):
        """Identical settings SHALL produce identical argument lists."""
        copy = ConversionSettings.model_validate(settings_.model_dump())

        assert build_conversion_args(INPUT, OUTPUT, settings_) == build_conversion_args(INPUT, OUTPUT, copy)

    @settings(max_examples=100, deadline=None)
    @given(settings_=conversion_settings)
    def test_shape(self, settings_):
        """Input SHALL lead, progress/overwrite/output SHALL close every list."""
        args = build_conversion_args(INPUT, OUTPUT, settings_)

        assert args[:2] == ["-i", INPUT]
        assert args[-4:] == ["-progress", "pipe:2", "-y", OUTPUT]
        assert all(isinstance(arg, str) for arg in args)
