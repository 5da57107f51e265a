"""
Tests for timeline -> filter graph compilation.

These check the generated filter_complex text; the ffmpeg-backed test at the
bottom renders a real file when ffmpeg is installed.
"""

import subprocess
from pathlib import Path

import pytest

from conftest import requires_ffmpeg
from timeline_export.models.timeline import (
    CaptionStyle,
    ElementType,
    ExportSettings,
    Position,
    TimelineElement,
    TrackInfo,
    Transition,
)
from timeline_export.render.graph_builder import (
    FilterGraphBuilder,
    atempo_chain,
    clamp_transition_ms,
    compute_total_duration_ms,
    display_text,
    escape_drawtext,
    escape_option_value,
    ffmpeg_color,
    sec,
)
from timeline_export.services.font_resolver import FontResolver

ASSET_A = "11111111-1111-1111-1111-111111111111"
ASSET_B = "22222222-2222-2222-2222-222222222222"


def _element(element_id: str, element_type: ElementType, start: int, end: int, **kwargs) -> TimelineElement:
    return TimelineElement(
        id=element_id,
        type=element_type,
        track_id=kwargs.pop("track_id", "t0"),
        timeline_start_ms=start,
        timeline_end_ms=end,
        **kwargs,
    )


def _builder(tracks=None, has_audio=True, settings=None) -> FilterGraphBuilder:
    return FilterGraphBuilder(
        settings or ExportSettings(resolution="720p", fps=30, quality="medium"),
        tracks or [TrackInfo(id="t0", index=0), TrackInfo(id="t1", index=1)],
        FontResolver(platform="linux", exists=lambda path: False, verify=False),
        audio_probe=lambda path: has_audio,
    )


class TestHelpers:
    def test_sec(self):
        assert sec(0) == "0"
        assert sec(1500) == "1.5"
        assert sec(33) == "0.033"
        assert sec(10000) == "10"

    def test_escape_option_value(self):
        assert escape_option_value("a:b'c\\d") == "a\\:b\\'c\\\\d"

    def test_escape_drawtext_escapes_both_levels(self):
        escaped = escape_drawtext("It's 10:30, [ok];")

        assert escaped == "It\\\\\\'s 10\\\\:30\\, \\[ok\\]\\;"

    def test_ffmpeg_color(self):
        assert ffmpeg_color("#fff") == "0xFFFFFF"
        assert ffmpeg_color("#12ab34") == "0x12AB34"
        assert ffmpeg_color("#00000080") == "0x000000@0.50"
        assert ffmpeg_color("rgb(255, 0, 0)") == "0xFF0000"
        assert ffmpeg_color("rgba(0,0,0,0.6)") == "0x000000@0.60"
        assert ffmpeg_color("Yellow") == "yellow"
        assert ffmpeg_color(None) == "white"
        assert ffmpeg_color("hsl(0, 50%, 50%)", "black") == "black"

    def test_display_text(self):
        element = _element(
            "t", ElementType.CAPTION, 0, 1000,
            text="Hello <span class='hl'>world</span><br/>&amp; more",
            caption_style=CaptionStyle(uppercase=True),
        )

        assert display_text(element) == "HELLO WORLD\n& MORE"

    @pytest.mark.parametrize(
        "speed, expected",
        [
            (1.0, []),
            (1.5, ["atempo=1.5"]),
            (2.0, ["atempo=2"]),
            (4.0, ["atempo=2", "atempo=2"]),
            (0.25, ["atempo=0.5", "atempo=0.5"]),
            (3.0, ["atempo=2", "atempo=1.5"]),
        ],
    )
    def test_atempo_chain(self, speed, expected):
        assert atempo_chain(speed) == expected

    def test_total_duration(self):
        elements = [
            _element("a", ElementType.TEXT, 0, 4000, text="a"),
            _element("b", ElementType.TEXT, 2000, 10000, text="b"),
        ]

        assert compute_total_duration_ms(elements, 100) == 10000
        assert compute_total_duration_ms([], 100) == 100

    def test_transition_clamped_to_half_duration(self):
        element = _element("a", ElementType.TEXT, 0, 1000, text="a")

        assert clamp_transition_ms(element, 5000) == 500
        assert clamp_transition_ms(element, 200) == 200


class TestGraphBuilder:
    def test_empty_timeline_is_black_and_silent(self):
        plan = _builder().build([], {})

        assert plan.total_duration_ms == 100
        assert plan.inputs[0].options == ["-f", "lavfi"]
        assert plan.inputs[0].path == "color=c=black:s=720x1280:r=30:d=0.1"
        assert "[final_video]" in plan.filter_complex
        assert "anullsrc=r=48000:cl=stereo,atrim=duration=0.1[final_audio]" in plan.filter_complex

    def test_text_only_has_no_media_inputs(self):
        element = _element("t", ElementType.TEXT, 1000, 3000, text="Title")
        plan = _builder().build([element], {})

        assert len(plan.inputs) == 1
        assert "drawtext=" in plan.filter_complex
        assert "text=Title" in plan.filter_complex
        assert "expansion=none" in plan.filter_complex
        assert "enable='between(t,1,3)'" in plan.filter_complex
        assert "fontfile" not in plan.filter_complex

    def test_text_with_special_characters_is_escaped(self):
        element = _element("t", ElementType.TEXT, 0, 1000, text="50% off: it's [new]")
        plan = _builder().build([element], {})

        assert "text=50% off\\\\:" in plan.filter_complex
        assert "\\[new\\]" in plan.filter_complex

    def test_video_element_filters(self):
        element = _element(
            "v", ElementType.VIDEO, 2000, 5000,
            asset_id=ASSET_A, source_start_ms=1000, source_end_ms=4000,
            opacity=0.5, transition_in=Transition("fade", 500),
        )
        plan = _builder().build([element], {ASSET_A: "/tmp/a.mp4"})
        fc = plan.filter_complex

        assert [i.path for i in plan.inputs][1] == "/tmp/a.mp4"
        assert "[1:v]trim=start=1:end=4,setpts=PTS-STARTPTS,trim=duration=3" in fc
        assert "colorchannelmixer=aa=0.500" in fc
        assert "fade=t=in:st=0:d=0.5:alpha=1" in fc
        assert "tpad=start_duration=2:start_mode=add:color=black@0" in fc
        assert "overlay=x=0:y=0:eof_action=pass:format=auto[final_video]" in fc
        # Single audio source is padded with silence on both sides
        assert "concat=n=2:v=0:a=1" in fc
        assert plan.total_duration_ms == 5000

    def test_video_without_audio_stream_is_silent(self):
        element = _element("v", ElementType.VIDEO, 0, 2000, asset_id=ASSET_A)
        plan = _builder(has_audio=False).build([element], {ASSET_A: "/tmp/a.mp4"})

        assert "[1:a]" not in plan.filter_complex
        assert "anullsrc=r=48000:cl=stereo,atrim=duration=2[final_audio]" in plan.filter_complex

    def test_speed_changes_video_and_audio(self):
        element = _element("v", ElementType.VIDEO, 0, 2000, asset_id=ASSET_A, speed=2.0)
        plan = _builder().build([element], {ASSET_A: "/tmp/a.mp4"})

        assert "setpts=(PTS-STARTPTS)/2" in plan.filter_complex
        assert "atempo=2," in plan.filter_complex

    def test_image_and_gif_input_options(self):
        elements = [
            _element("i", ElementType.IMAGE, 0, 2000, asset_id=ASSET_A),
            _element("g", ElementType.GIF, 0, 2000, asset_id=ASSET_B),
        ]
        plan = _builder().build(elements, {ASSET_A: "/tmp/a.png", ASSET_B: "/tmp/b.gif"})

        assert plan.inputs[1].to_args() == ["-loop", "1", "-framerate", "30", "-i", "/tmp/a.png"]
        assert plan.inputs[2].to_args() == ["-ignore_loop", "0", "-i", "/tmp/b.gif"]

    def test_same_asset_shares_one_input(self):
        elements = [
            _element("a", ElementType.AUDIO, 0, 2000, asset_id=ASSET_A),
            _element("b", ElementType.AUDIO, 3000, 5000, asset_id=ASSET_A),
        ]
        plan = _builder().build(elements, {ASSET_A: "/tmp/a.mp3"})

        assert len(plan.inputs) == 2
        assert plan.filter_complex.count("[1:a]") == 2

    def test_multiple_audio_sources_are_delayed_and_mixed(self):
        elements = [
            _element("a", ElementType.AUDIO, 0, 2000, asset_id=ASSET_A, volume=0.5),
            _element("b", ElementType.AUDIO, 1500, 4000, asset_id=ASSET_B),
        ]
        plan = _builder().build(elements, {ASSET_A: "/tmp/a.mp3", ASSET_B: "/tmp/b.mp3"})
        fc = plan.filter_complex

        assert "volume=0.5" in fc
        assert "adelay=delays=1500:all=1" in fc
        assert fc.count("amix=inputs=2:duration=first:dropout_transition=0:normalize=0") == 2
        assert "[final_audio]" in fc

    def test_muted_track_excluded_from_mix(self):
        tracks = [TrackInfo(id="t0", index=0, muted=True)]
        element = _element("a", ElementType.AUDIO, 0, 2000, asset_id=ASSET_A)
        plan = _builder(tracks=tracks).build([element], {ASSET_A: "/tmp/a.mp3"})

        assert "[1:a]" not in plan.filter_complex

    def test_higher_track_index_overlays_last(self):
        elements = [
            _element("top", ElementType.IMAGE, 0, 2000, asset_id=ASSET_B, track_id="t1"),
            _element("bottom", ElementType.IMAGE, 0, 2000, asset_id=ASSET_A, track_id="t0"),
        ]
        plan = _builder().build(elements, {ASSET_A: "/tmp/a.png", ASSET_B: "/tmp/b.png"})

        assert [i.path for i in plan.inputs[1:]] == ["/tmp/a.png", "/tmp/b.png"]
        overlays = [n for n in plan.graph.nodes if n.filters[0].startswith("overlay")]
        assert overlays[-1].outputs[0].label == "final_video"

    def test_text_drawn_after_media(self):
        elements = [
            _element("t", ElementType.TEXT, 0, 2000, text="Above", track_id="t0"),
            _element("i", ElementType.IMAGE, 0, 2000, asset_id=ASSET_A, track_id="t1"),
        ]
        plan = _builder().build(elements, {ASSET_A: "/tmp/a.png"})

        last = next(n for n in plan.graph.nodes if n.outputs and n.outputs[0].label == "final_video")
        assert last.filters[0].startswith("drawtext=")

    def test_missing_asset_is_skipped(self):
        elements = [
            _element("v", ElementType.VIDEO, 0, 2000, asset_id=ASSET_A),
            _element("t", ElementType.TEXT, 0, 2000, text="Still here"),
        ]
        plan = _builder().build(elements, {})

        assert plan.skipped == ["v"]
        assert plan.warnings == ["Skipped 1 element(s): v"]
        assert len(plan.inputs) == 1

    def test_caption_style_and_placement(self):
        element = _element(
            "c", ElementType.CAPTION, 0, 2000, text="Sub",
            font_color="#ffff00", font_size=40,
            caption_style=CaptionStyle(border_width=2, border_color="black", box_color="rgba(0,0,0,0.5)"),
            transition_out=Transition("fade", 400),
        )
        plan = _builder().build([element], {})
        fc = plan.filter_complex

        assert "fontcolor=0xFFFF00" in fc
        assert "fontsize=40" in fc
        assert "borderw=2" in fc
        assert "box=1" in fc
        assert "boxcolor=0x000000@0.50" in fc
        assert "y=h*0.9-text_h" in fc
        assert "alpha='if(gt(t,1.6),(2-t)/0.4,1)'" in fc

    def test_explicit_position(self):
        element = _element("t", ElementType.TEXT, 0, 1000, text="Here", position=Position(x=40, y=80))
        plan = _builder().build([element], {})

        assert ":x=40:y=80:" in plan.filter_complex


@requires_ffmpeg
@pytest.mark.requires_ffmpeg
class TestGraphRendersWithFFmpeg:
    """The compiled graph is accepted by a real ffmpeg."""

    def test_render_text_and_tone(self, temp_output_dir: Path, settings):
        from timeline_export.render.invoker import build_command
        from timeline_export.utils.media_info import get_media_duration

        tone = temp_output_dir / "tone.m4a"
        subprocess.run(
            ["ffmpeg", "-y", "-f", "lavfi", "-i", "sine=frequency=440:duration=3", "-c:a", "aac", str(tone)],
            capture_output=True,
            check=True,
        )
        elements = [
            _element("t", ElementType.TEXT, 0, 2000, text="Hello, world: it's [ok]"),
            _element("a", ElementType.AUDIO, 500, 2000, asset_id=ASSET_A),
        ]
        plan = _builder().build(elements, {ASSET_A: str(tone)})
        output = temp_output_dir / "out.mp4"

        result = subprocess.run(build_command(plan, str(output), "low", settings), capture_output=True)

        assert result.returncode == 0, result.stderr.decode(errors="replace")[-2000:]
        assert abs(get_media_duration(str(output)) - 2000) <= 100
