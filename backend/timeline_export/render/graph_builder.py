"""Timeline to filter-graph compilation.

Input 0 is always a synthetic black canvas (lavfi ``color``) lasting the whole
timeline; every distinct local asset file becomes one further input.

Video path:
    [0:v] -> base -> overlay(visual element 1) -> ... -> drawtext(text 1) -> ... -> [final_video]
Each visual element is trimmed, speed-adjusted, letterboxed onto a transparent
canvas of the output size, faded, then delayed with ``tpad`` so that it lines
up with its timeline start. Overlays use ``eof_action=pass`` so the composite
continues once an element ends.

Audio path:
    each audio source -> trim/tempo/volume/pad to its window -> mixed onto
    silence (0 sources), concatenated with silence (1 source) or delayed and
    folded in with pairwise ``amix`` (2+ sources) -> [final_audio]

Visual layering follows track index (lower index underneath), then timeline
start within a track. Text and captions always draw above media.
"""

import html
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from timeline_export.models.timeline import ElementType, ExportSettings, TimelineElement, TrackInfo
from timeline_export.render.filter_graph import FilterGraph, Pad, StreamKind
from timeline_export.services.asset_resolver import asset_key
from timeline_export.services.font_resolver import FontResolver
from timeline_export.utils.media_info import has_audio_track

logger = logging.getLogger(__name__)

DEFAULT_FONT_SIZE = 48
DEFAULT_FONT_COLOR = "white"
CAPTION_BOX_PADDING = 12

_TAG_RE = re.compile(r"<[^>]+>")
_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_HEX_RE = re.compile(r"^#([0-9a-fA-F]{3}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")
_RGB_RE = re.compile(r"^rgba?\(\s*([\d.]+)\s*,\s*([\d.]+)\s*,\s*([\d.]+)\s*(?:,\s*([\d.]+%?)\s*)?\)$", re.IGNORECASE)
_NAME_RE = re.compile(r"^[A-Za-z]+$")

_OPTION_SPECIAL = "\\':"
_GRAPH_SPECIAL = "\\'[],;"


# =============================================================================
# Helpers
# =============================================================================


def sec(ms: float) -> str:
    """Milliseconds as an ffmpeg seconds literal."""
    text = f"{ms / 1000:.3f}".rstrip("0").rstrip(".")
    return text or "0"


def escape_option_value(value: str) -> str:
    """Escape for the filter option level (``key=value:key=value``)."""
    return "".join(f"\\{c}" if c in _OPTION_SPECIAL else c for c in value)


def escape_graph_value(value: str) -> str:
    """Escape for the filtergraph level (labels, chains, statements)."""
    return "".join(f"\\{c}" if c in _GRAPH_SPECIAL else c for c in value)


def escape_drawtext(value: str) -> str:
    return escape_graph_value(escape_option_value(value))


def ffmpeg_color(value: str | None, default: str = DEFAULT_FONT_COLOR) -> str:
    """Convert a CSS color to ffmpeg syntax (``0xRRGGBB[@alpha]`` or a name)."""
    if not value:
        return default
    value = value.strip()

    match = _HEX_RE.match(value)
    if match:
        digits = match.group(1)
        if len(digits) == 3:
            digits = "".join(c * 2 for c in digits)
        if len(digits) == 8:
            alpha = int(digits[6:], 16) / 255
            return f"0x{digits[:6].upper()}@{alpha:.2f}"
        return f"0x{digits.upper()}"

    match = _RGB_RE.match(value)
    if match:
        r, g, b = (min(255, int(float(match.group(i)))) for i in (1, 2, 3))
        color = f"0x{r:02X}{g:02X}{b:02X}"
        alpha = match.group(4)
        if alpha is not None:
            a = float(alpha[:-1]) / 100 if alpha.endswith("%") else float(alpha)
            return f"{color}@{min(1.0, max(0.0, a)):.2f}"
        return color

    if _NAME_RE.match(value):
        return value.lower()
    logger.warning(f"[GRAPH] Unsupported color {value!r}, using {default}")
    return default


def display_text(element: TimelineElement) -> str:
    """Plain text to draw: highlight markup stripped, entities decoded."""
    text = element.text or ""
    text = _BR_RE.sub("\n", text)
    text = html.unescape(_TAG_RE.sub("", text)).strip()
    if element.caption_style and element.caption_style.uppercase:
        text = text.upper()
    return text


def atempo_chain(speed: float) -> list[str]:
    """``atempo`` stages whose product is ``speed``; each stays within 0.5-2.0."""
    if speed == 1.0:
        return []
    stages = []
    while speed > 2.0:
        stages.append("atempo=2")
        speed /= 2.0
    while speed < 0.5:
        stages.append("atempo=0.5")
        speed /= 0.5
    if abs(speed - 1.0) > 1e-6:
        stages.append(f"atempo={speed:.6g}")
    return stages


def compute_total_duration_ms(elements: list[TimelineElement], floor_ms: int) -> int:
    """Latest element end, never below ``floor_ms``."""
    if not elements:
        return floor_ms
    return max(floor_ms, max(e.timeline_end_ms for e in elements))


def clamp_transition_ms(element: TimelineElement, requested: int) -> int:
    return max(0, min(requested, element.duration_ms // 2))


# =============================================================================
# Build result
# =============================================================================


@dataclass
class RenderInput:
    """One ``-i`` argument plus the options that precede it."""

    path: str
    options: list[str] = field(default_factory=list)

    def to_args(self) -> list[str]:
        return [*self.options, "-i", self.path]


@dataclass
class RenderPlan:
    graph: FilterGraph
    filter_complex: str
    inputs: list[RenderInput]
    total_duration_ms: int
    width: int
    height: int
    fps: int
    video_label: str = FilterGraph.VIDEO_SINK
    audio_label: str = FilterGraph.AUDIO_SINK
    skipped: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def total_duration_s(self) -> float:
        return self.total_duration_ms / 1000


# =============================================================================
# Builder
# =============================================================================


class FilterGraphBuilder:
    """Compile validated elements into a ``RenderPlan``."""

    def __init__(
        self,
        settings: ExportSettings,
        tracks: list[TrackInfo],
        font_resolver: FontResolver | None = None,
        *,
        sample_rate: int = 48000,
        min_duration_ms: int = 100,
        audio_probe: Callable[[str], bool] = has_audio_track,
    ):
        self.settings = settings
        self.width, self.height = settings.dimensions
        self.fps = settings.fps
        self.tracks = {t.id: t for t in tracks}
        self.fonts = font_resolver or FontResolver()
        self.sample_rate = sample_rate
        self.min_duration_ms = min_duration_ms
        self._audio_probe = audio_probe
        self._probe_cache: dict[str, bool] = {}

    # -- inputs ---------------------------------------------------------------

    def _input_index(self, inputs: list[RenderInput], index_by_key: dict[tuple, int], element: TimelineElement, path: str) -> int:
        options: list[str] = []
        if element.type is ElementType.IMAGE:
            options = ["-loop", "1", "-framerate", str(self.fps)]
        elif element.type is ElementType.GIF:
            options = ["-ignore_loop", "0"]
        key = (path, tuple(options))
        if key not in index_by_key:
            index_by_key[key] = len(inputs)
            inputs.append(RenderInput(path=path, options=options))
        return index_by_key[key]

    def _has_audio(self, path: str) -> bool:
        if path not in self._probe_cache:
            self._probe_cache[path] = self._audio_probe(path)
        return self._probe_cache[path]

    def _track_index(self, element: TimelineElement) -> int:
        track = self.tracks.get(element.track_id)
        return track.index if track else 0

    def _track_muted(self, element: TimelineElement) -> bool:
        track = self.tracks.get(element.track_id)
        return bool(track and track.muted)

    # -- video ----------------------------------------------------------------

    def _visual_filters(self, element: TimelineElement) -> list[str]:
        w, h = self.width, self.height
        duration = element.duration_ms
        filters: list[str] = []

        if element.type is ElementType.VIDEO:
            if element.has_source_trim:
                filters.append(f"trim=start={sec(element.source_start_ms)}:end={sec(element.source_end_ms)}")
            elif element.source_start_ms:
                filters.append(f"trim=start={sec(element.source_start_ms)}")
            if element.speed != 1.0:
                filters.append(f"setpts=(PTS-STARTPTS)/{element.speed:g}")
            else:
                filters.append("setpts=PTS-STARTPTS")
        else:
            filters.append("setpts=PTS-STARTPTS")

        filters.extend([
            f"trim=duration={sec(duration)}",
            f"fps={self.fps}",
            f"scale={w}:{h}:force_original_aspect_ratio=decrease",
            "format=rgba",
            f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2:color=black@0",
            "setsar=1",
        ])

        if element.opacity < 1.0:
            filters.append(f"colorchannelmixer=aa={element.opacity:.3f}")

        if element.transition_in:
            fade_ms = clamp_transition_ms(element, element.transition_in.duration_ms)
            if fade_ms > 0:
                filters.append(f"fade=t=in:st=0:d={sec(fade_ms)}:alpha=1")
        if element.transition_out:
            fade_ms = clamp_transition_ms(element, element.transition_out.duration_ms)
            if fade_ms > 0:
                filters.append(f"fade=t=out:st={sec(duration - fade_ms)}:d={sec(fade_ms)}:alpha=1")

        if element.timeline_start_ms > 0:
            filters.append(f"tpad=start_duration={sec(element.timeline_start_ms)}:start_mode=add:color=black@0")
        return filters

    def _text_position(self, element: TimelineElement) -> tuple[str, str]:
        if element.position is not None:
            return f"{element.position.x:g}", f"{element.position.y:g}"
        placement = element.placement or ("bottom" if element.type is ElementType.CAPTION else "middle")
        x = "(w-text_w)/2"
        if placement == "top":
            y = "h*0.1"
        elif placement == "bottom":
            y = "h*0.9-text_h"
        else:
            y = "(h-text_h)/2"
        return x, y

    def _text_alpha(self, element: TimelineElement) -> str | None:
        start, end = element.timeline_start_ms, element.timeline_end_ms
        fade_in = clamp_transition_ms(element, element.transition_in.duration_ms) if element.transition_in else 0
        fade_out = clamp_transition_ms(element, element.transition_out.duration_ms) if element.transition_out else 0
        opacity = element.opacity
        if not fade_in and not fade_out:
            return f"{opacity:.3f}" if opacity < 1.0 else None

        expr = "1"
        if fade_out:
            expr = f"if(gt(t,{sec(end - fade_out)}),({sec(end)}-t)/{sec(fade_out)},{expr})"
        if fade_in:
            expr = f"if(lt(t,{sec(start + fade_in)}),(t-{sec(start)})/{sec(fade_in)},{expr})"
        if opacity < 1.0:
            expr = f"{opacity:.3f}*{expr}"
        return f"'{expr}'"

    def _drawtext(self, element: TimelineElement, text: str) -> str:
        font_path = self.fonts.resolve(element.font_family, element.font_weight)
        x, y = self._text_position(element)

        opts: list[str] = []
        if font_path:
            opts.append(f"fontfile={escape_drawtext(font_path)}")
        opts.extend([
            f"text={escape_drawtext(text)}",
            "expansion=none",
            f"fontsize={element.font_size or DEFAULT_FONT_SIZE}",
            f"fontcolor={ffmpeg_color(element.font_color)}",
            f"x={x}",
            f"y={y}",
        ])

        style = element.caption_style
        if style:
            if style.border_width > 0:
                opts.append(f"borderw={style.border_width}")
                opts.append(f"bordercolor={ffmpeg_color(style.border_color, 'black')}")
            if style.shadow_x or style.shadow_y:
                opts.append(f"shadowx={style.shadow_x}")
                opts.append(f"shadowy={style.shadow_y}")
                opts.append(f"shadowcolor={ffmpeg_color(style.shadow_color, 'black')}")
            if style.box_color:
                opts.append("box=1")
                opts.append(f"boxcolor={ffmpeg_color(style.box_color, 'black@0.5')}")
                opts.append(f"boxborderw={CAPTION_BOX_PADDING}")

        alpha = self._text_alpha(element)
        if alpha:
            opts.append(f"alpha={alpha}")
        opts.append(f"enable='between(t,{sec(element.timeline_start_ms)},{sec(element.timeline_end_ms)})'")
        return "drawtext=" + ":".join(opts)

    # -- audio ----------------------------------------------------------------

    def _audio_filters(self, element: TimelineElement) -> list[str]:
        duration = element.duration_ms
        filters: list[str] = []
        if element.has_source_trim:
            filters.append(f"atrim=start={sec(element.source_start_ms)}:end={sec(element.source_end_ms)}")
        elif element.source_start_ms:
            filters.append(f"atrim=start={sec(element.source_start_ms)}")
        filters.append("asetpts=PTS-STARTPTS")
        filters.extend(atempo_chain(element.speed))
        if element.volume != 1.0:
            filters.append(f"volume={element.volume:g}")
        filters.extend([
            f"aformat=sample_rates={self.sample_rate}:channel_layouts=stereo",
            "apad",
            f"atrim=duration={sec(duration)}",
        ])
        if element.transition_in:
            fade_ms = clamp_transition_ms(element, element.transition_in.duration_ms)
            if fade_ms > 0:
                filters.append(f"afade=t=in:st=0:d={sec(fade_ms)}")
        if element.transition_out:
            fade_ms = clamp_transition_ms(element, element.transition_out.duration_ms)
            if fade_ms > 0:
                filters.append(f"afade=t=out:st={sec(duration - fade_ms)}:d={sec(fade_ms)}")
        return filters

    def _silence(self, graph: FilterGraph, duration_ms: int, prefix: str = "sil") -> Pad:
        return graph.add(
            [f"anullsrc=r={self.sample_rate}:cl=stereo", f"atrim=duration={sec(duration_ms)}"],
            output=graph.new_pad(prefix, StreamKind.AUDIO),
        )

    def _mix_audio(self, graph: FilterGraph, sources: list[tuple[Pad, TimelineElement]], total_ms: int) -> Pad:
        sink = Pad(FilterGraph.AUDIO_SINK, StreamKind.AUDIO)

        if not sources:
            return graph.add(
                [f"anullsrc=r={self.sample_rate}:cl=stereo", f"atrim=duration={sec(total_ms)}"],
                output=sink,
            )

        if len(sources) == 1:
            pad, element = sources[0]
            parts: list[Pad] = []
            if element.timeline_start_ms > 0:
                parts.append(self._silence(graph, element.timeline_start_ms))
            parts.append(pad)
            tail_ms = total_ms - element.timeline_end_ms
            if tail_ms > 0:
                parts.append(self._silence(graph, tail_ms))
            return graph.add(
                [f"concat=n={len(parts)}:v=0:a=1", f"atrim=duration={sec(total_ms)}"],
                inputs=parts,
                output=sink,
            )

        current = self._silence(graph, total_ms, prefix="mixbase")
        for position, (pad, element) in enumerate(sources):
            delayed = pad
            if element.timeline_start_ms > 0:
                delayed = graph.add(
                    f"adelay=delays={element.timeline_start_ms}:all=1",
                    inputs=pad,
                    output=graph.new_pad("ad", StreamKind.AUDIO),
                )
            is_last = position == len(sources) - 1
            current = graph.add(
                "amix=inputs=2:duration=first:dropout_transition=0:normalize=0",
                inputs=[current, delayed],
                output=sink if is_last else graph.new_pad("mix", StreamKind.AUDIO),
            )
        return current

    # -- entry point ----------------------------------------------------------

    def build(self, elements: list[TimelineElement], asset_paths: Mapping[str, str]) -> RenderPlan:
        """Compile ``elements`` (already validated) into a render plan.

        ``asset_paths`` maps ``asset_key(element)`` to a local file. Media
        elements without a local file, and elements shorter than the minimum
        duration, are skipped and reported in ``RenderPlan.skipped``.
        """
        total_ms = compute_total_duration_ms(elements, self.min_duration_ms)
        w, h = self.width, self.height
        skipped: list[str] = []
        warnings: list[str] = []

        inputs = [RenderInput(
            path=f"color=c=black:s={w}x{h}:r={self.fps}:d={sec(total_ms)}",
            options=["-f", "lavfi"],
        )]
        index_by_key: dict[tuple, int] = {}

        usable: list[TimelineElement] = []
        for element in elements:
            if element.duration_ms < self.min_duration_ms:
                logger.warning(f"[GRAPH] Skipping {element.id}: duration {element.duration_ms}ms below minimum")
                skipped.append(element.id)
                continue
            if element.type.requires_asset and not asset_paths.get(asset_key(element)):
                logger.warning(f"[GRAPH] Skipping {element.id}: no local file for its asset")
                skipped.append(element.id)
                continue
            if element.type.is_text and not display_text(element):
                logger.info(f"[GRAPH] Skipping {element.id}: empty text")
                skipped.append(element.id)
                continue
            usable.append(element)

        graph = FilterGraph()
        base = graph.add(
            [f"scale={w}:{h}", "setsar=1", "format=yuv420p"],
            inputs=graph.input_pad(0, StreamKind.VIDEO),
            output=Pad("base", StreamKind.VIDEO),
        )

        visuals = sorted(
            (e for e in usable if e.type.is_visual_media),
            key=lambda e: (self._track_index(e), e.timeline_start_ms),
        )
        texts = sorted((e for e in usable if e.type.is_text), key=lambda e: e.timeline_start_ms)
        audio_elements = sorted(
            (e for e in usable if e.type in (ElementType.AUDIO, ElementType.VIDEO)),
            key=lambda e: (self._track_index(e), e.timeline_start_ms),
        )

        video_steps = len(visuals) + len(texts)
        current = base
        step = 0

        def next_video_pad() -> Pad:
            if step == video_steps:
                return Pad(FilterGraph.VIDEO_SINK, StreamKind.VIDEO)
            return graph.new_pad("c", StreamKind.VIDEO)

        for element in visuals:
            step += 1
            index = self._input_index(inputs, index_by_key, element, asset_paths[asset_key(element)])
            layer = graph.add(
                self._visual_filters(element),
                inputs=graph.input_pad(index, StreamKind.VIDEO),
                output=graph.new_pad("v", StreamKind.VIDEO),
            )
            x, y = ("0", "0")
            if element.position is not None:
                x, y = f"{element.position.x:g}", f"{element.position.y:g}"
            current = graph.add(
                f"overlay=x={x}:y={y}:eof_action=pass:format=auto",
                inputs=[current, layer],
                output=next_video_pad(),
            )

        for element in texts:
            step += 1
            current = graph.add(self._drawtext(element, display_text(element)), inputs=current, output=next_video_pad())

        if video_steps == 0:
            # Nothing layered: the canvas itself is the output
            graph.nodes[0].outputs = [Pad(FilterGraph.VIDEO_SINK, StreamKind.VIDEO)]
            current = graph.nodes[0].outputs[0]

        audio_sources: list[tuple[Pad, TimelineElement]] = []
        for element in audio_elements:
            if self._track_muted(element):
                continue
            path = asset_paths[asset_key(element)]
            if element.type is ElementType.VIDEO and not self._has_audio(path):
                continue
            index = self._input_index(inputs, index_by_key, element, path)
            pad = graph.add(
                self._audio_filters(element),
                inputs=graph.input_pad(index, StreamKind.AUDIO),
                output=graph.new_pad("a", StreamKind.AUDIO),
            )
            audio_sources.append((pad, element))

        audio_sink = self._mix_audio(graph, audio_sources, total_ms)

        graph.input_count = len(inputs)
        graph.set_sinks(current, audio_sink)
        filter_complex = graph.serialize()

        if skipped:
            warnings.append(f"Skipped {len(skipped)} element(s): {', '.join(skipped)}")
        logger.info(
            f"[GRAPH] Built graph: {len(visuals)} visual, {len(texts)} text, "
            f"{len(audio_sources)} audio, {len(inputs)} inputs, {total_ms}ms"
        )

        return RenderPlan(
            graph=graph,
            filter_complex=filter_complex,
            inputs=inputs,
            total_duration_ms=total_ms,
            width=w,
            height=h,
            fps=self.fps,
            skipped=skipped,
            warnings=warnings,
        )
