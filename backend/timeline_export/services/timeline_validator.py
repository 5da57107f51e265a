"""Timeline validation and normalization.

Turns the editor's raw clip/track/settings payloads into immutable
``TimelineElement`` objects plus a report of errors and warnings. Nothing here
has side effects: the caller's payloads are never mutated, and every
correction produces a new element.

Rules:
- errors reject the whole export (bad settings, no tracks, ceilings exceeded,
  duplicate track ids, dangling track references, missing asset references,
  unparseable external URLs, inverted source ranges)
- warnings record a correction (negative start, too-short window, negative
  source start, out-of-range speed/volume/opacity) or a tolerated condition
  (same-track overlap; later tracks are layered on top)
"""

import dataclasses
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from timeline_export.config import Settings, get_settings
from timeline_export.models.timeline import (
    QUALITIES,
    RESOLUTIONS,
    CaptionStyle,
    ElementType,
    ExportSettings,
    Position,
    TimelineElement,
    TrackInfo,
    Transition,
)
from timeline_export.schemas.export import ExportSettingsPayload, TimelineClip, Track

logger = logging.getLogger(__name__)

ORIENTATIONS = ("portrait", "landscape")
PLACEMENTS = ("top", "middle", "bottom")

_LENGTH_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)(?:px)?\s*")


@dataclass
class ValidationReport:
    """Outcome of validating one export request."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    corrected_elements: list[TimelineElement] | None = None
    tracks: list[TrackInfo] = field(default_factory=list)
    settings: ExportSettings | None = None


# =============================================================================
# Payload conversion
# =============================================================================


def _prop(clip: TimelineClip, props: dict[str, Any], attr: str, key: str) -> Any:
    """Top-level field wins; fall back to the properties bag."""
    value = getattr(clip, attr)
    if value is None:
        value = props.get(key)
    return value


def _as_int_ms(value: Any) -> int | None:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(round(number))


def _as_float(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _parse_length(value: str) -> tuple[float | None, str]:
    match = _LENGTH_RE.match(value)
    if not match:
        return None, value
    return float(match.group(1)), value[match.end():]


def _parse_caption_style(style: dict[str, Any]) -> CaptionStyle | None:
    """Map the editor's CSS-ish caption style onto drawtext knobs."""
    if not style:
        return None

    border_width, border_color = 0, None
    stroke = style.get("WebkitTextStroke") or style.get("webkitTextStroke")
    if isinstance(stroke, str) and stroke.strip():
        width, rest = _parse_length(stroke.strip())
        if width is not None and width > 0:
            border_width = max(1, int(round(width)))
            border_color = rest.strip() or "black"

    shadow_x, shadow_y, shadow_color = 0, 0, None
    shadow = style.get("textShadow")
    if isinstance(shadow, str) and shadow.strip() and shadow.strip() != "none":
        # Only the first shadow of a comma list; blur radius is dropped
        first = re.split(r",(?![^(]*\))", shadow)[0].strip()
        offsets: list[float] = []
        rest = first
        while len(offsets) < 3:
            length, remainder = _parse_length(rest)
            if length is None:
                break
            offsets.append(length)
            rest = remainder
        if len(offsets) >= 2:
            shadow_x, shadow_y = int(round(offsets[0])), int(round(offsets[1]))
            shadow_color = rest.strip() or "black"

    box_color = style.get("backgroundColor") or style.get("background")
    if not isinstance(box_color, str) or box_color.strip() in ("", "transparent", "none"):
        box_color = None

    uppercase = str(style.get("textTransform", "")).lower() == "uppercase"

    return CaptionStyle(
        border_width=border_width,
        border_color=border_color,
        shadow_x=shadow_x,
        shadow_y=shadow_y,
        shadow_color=shadow_color,
        box_color=box_color.strip() if box_color else None,
        uppercase=uppercase,
    )


def _parse_transition(value: Any) -> Transition | None:
    if value is None:
        return None
    if hasattr(value, "model_dump"):
        value = value.model_dump()
    if not isinstance(value, dict):
        return None
    duration = _as_int_ms(value.get("duration"))
    if not duration or duration <= 0:
        return None
    return Transition(type=str(value.get("type") or "fade"), duration_ms=duration)


def _parse_position(value: Any) -> Position | None:
    if value is None:
        return None
    if hasattr(value, "model_dump"):
        value = value.model_dump()
    if not isinstance(value, dict):
        return None
    try:
        return Position(x=float(value.get("x", 0)), y=float(value.get("y", 0)))
    except (TypeError, ValueError):
        return None


def clip_to_element(clip: TimelineClip, element_type: ElementType) -> TimelineElement:
    """Build an immutable element from an editor clip. ``clip`` is not modified."""
    props = dict(clip.properties or {})
    style = props.get("style") if isinstance(props.get("style"), dict) else {}

    font_weight = _prop(clip, props, "font_weight", "fontWeight") or style.get("fontWeight")
    font_size = _prop(clip, props, "font_size", "fontSize") or style.get("fontSize")
    if isinstance(font_size, str):
        font_size, _ = _parse_length(font_size)
    font_size = _as_float(font_size, 0.0)

    return TimelineElement(
        id=clip.id,
        type=element_type,
        track_id=clip.track_id,
        timeline_start_ms=_as_int_ms(clip.timeline_start_ms) or 0,
        timeline_end_ms=_as_int_ms(clip.timeline_end_ms) or 0,
        source_start_ms=_as_int_ms(clip.source_start_ms),
        source_end_ms=_as_int_ms(clip.source_end_ms),
        asset_id=clip.asset_id or None,
        speed=_as_float(clip.speed, 1.0) if clip.speed is not None else 1.0,
        volume=_as_float(clip.volume, 1.0) if clip.volume is not None else 1.0,
        opacity=_as_float(clip.opacity, 1.0) if clip.opacity is not None else 1.0,
        text=_prop(clip, props, "text", "text"),
        font_size=int(round(font_size)) if font_size > 0 else None,
        font_color=_prop(clip, props, "font_color", "fontColor") or style.get("color"),
        font_family=_prop(clip, props, "font_family", "fontFamily") or style.get("fontFamily"),
        font_weight=str(font_weight) if font_weight is not None else None,
        position=_parse_position(_prop(clip, props, "position", "position")),
        placement=props.get("placement") if props.get("placement") in PLACEMENTS else None,
        caption_style=_parse_caption_style(style) if element_type.is_text else None,
        transition_in=_parse_transition(_prop(clip, props, "transition_in", "transitionIn")),
        transition_out=_parse_transition(_prop(clip, props, "transition_out", "transitionOut")),
        properties=props,
    )


# =============================================================================
# Rules
# =============================================================================


def _validate_settings(payload: ExportSettingsPayload, cfg: Settings, errors: list[str]) -> ExportSettings | None:
    before = len(errors)
    if payload.resolution not in RESOLUTIONS:
        errors.append(f"Unsupported resolution '{payload.resolution}' (allowed: {', '.join(RESOLUTIONS)})")
    if not cfg.min_export_fps <= payload.fps <= cfg.max_export_fps:
        errors.append(f"fps must be between {cfg.min_export_fps} and {cfg.max_export_fps}, got {payload.fps}")
    if payload.quality not in QUALITIES:
        errors.append(f"Unsupported quality '{payload.quality}' (allowed: {', '.join(QUALITIES)})")
    if payload.orientation not in ORIENTATIONS:
        errors.append(f"Unsupported orientation '{payload.orientation}'")
    if len(errors) > before:
        return None
    return ExportSettings(
        resolution=payload.resolution,
        fps=payload.fps,
        quality=payload.quality,
        orientation=payload.orientation,
    )


def _validate_tracks(tracks: list[Track], cfg: Settings, errors: list[str]) -> list[TrackInfo]:
    if not tracks:
        errors.append("At least one track is required")
        return []
    if len(tracks) > cfg.max_export_tracks:
        errors.append(f"Too many tracks: {len(tracks)} (max {cfg.max_export_tracks})")

    seen: set[str] = set()
    infos: list[TrackInfo] = []
    for track in tracks:
        if track.id in seen:
            errors.append(f"Duplicate track id '{track.id}'")
            continue
        seen.add(track.id)
        infos.append(TrackInfo(id=track.id, index=track.index, type=track.type, name=track.name, muted=track.muted))
    return sorted(infos, key=lambda t: t.index)


def _check_external_url(element: TimelineElement) -> str | None:
    """Error message for an external element whose URL is unusable."""
    url = element.external_url
    if url is None:
        return f"Element '{element.id}' is an external asset without a URL"
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return f"Element '{element.id}' has an unparseable external URL"
    return None


def _correct_element(
    element: TimelineElement,
    min_ms: int,
    errors: list[str],
    warnings: list[str],
) -> TimelineElement | None:
    changes: dict[str, Any] = {}
    start, end = element.timeline_start_ms, element.timeline_end_ms

    if start < 0:
        warnings.append(f"Element '{element.id}': timeline start {start}ms clamped to 0")
        start = 0
        end = max(end, min_ms)
        changes.update(timeline_start_ms=start, timeline_end_ms=end)

    if end - start < min_ms:
        warnings.append(
            f"Element '{element.id}': duration {end - start}ms below {min_ms}ms, extended to {min_ms}ms"
        )
        end = start + min_ms
        changes["timeline_end_ms"] = end

    if end - start <= 0:
        errors.append(f"Element '{element.id}' has a non-positive duration")
        return None

    if element.type in (ElementType.VIDEO, ElementType.AUDIO):
        src_start, src_end = element.source_start_ms, element.source_end_ms
        if src_start is not None and src_start < 0:
            warnings.append(f"Element '{element.id}': source start {src_start}ms clamped to 0")
            src_start = 0
            changes["source_start_ms"] = 0
        if src_start is not None and src_end is not None:
            if src_end <= src_start:
                errors.append(f"Element '{element.id}' has a non-positive source range")
                return None
            if src_end - src_start < min_ms:
                warnings.append(f"Element '{element.id}': source range extended to {min_ms}ms")
                changes["source_end_ms"] = src_start + min_ms

    if element.speed <= 0:
        warnings.append(f"Element '{element.id}': speed {element.speed} reset to 1")
        changes["speed"] = 1.0
    if element.volume < 0:
        warnings.append(f"Element '{element.id}': negative volume clamped to 0")
        changes["volume"] = 0.0
    if not 0 <= element.opacity <= 1:
        warnings.append(f"Element '{element.id}': opacity {element.opacity} clamped to [0, 1]")
        changes["opacity"] = min(1.0, max(0.0, element.opacity))

    return dataclasses.replace(element, **changes) if changes else element


def _detect_overlaps(elements: list[TimelineElement], warnings: list[str]) -> None:
    by_track: dict[str, list[TimelineElement]] = {}
    for element in elements:
        by_track.setdefault(element.track_id, []).append(element)

    for track_id, items in by_track.items():
        # Elements still playing when the next one starts
        active: list[TimelineElement] = []
        for cur in sorted(items, key=lambda e: e.timeline_start_ms):
            active = [prev for prev in active if prev.timeline_end_ms > cur.timeline_start_ms]
            for prev in active:
                overlap = min(prev.timeline_end_ms, cur.timeline_end_ms) - cur.timeline_start_ms
                warnings.append(
                    f"Elements '{prev.id}' and '{cur.id}' overlap by {overlap}ms on track '{track_id}'"
                )
            active.append(cur)


def validate_timeline(
    clips: list[TimelineClip],
    tracks: list[Track],
    export_settings: ExportSettingsPayload,
    settings: Settings | None = None,
) -> ValidationReport:
    """Validate and normalize an export request.

    ``corrected_elements`` is set only when the report is valid; downstream
    stages must use it instead of the raw clips.
    """
    cfg = settings or get_settings()
    errors: list[str] = []
    warnings: list[str] = []

    output = _validate_settings(export_settings, cfg, errors)
    track_infos = _validate_tracks(tracks, cfg, errors)
    track_ids = {t.id for t in track_infos}

    if len(clips) > cfg.max_export_elements:
        errors.append(f"Too many elements: {len(clips)} (max {cfg.max_export_elements})")

    corrected: list[TimelineElement] = []
    seen_ids: set[str] = set()
    for clip in clips:
        try:
            element_type = ElementType(clip.type)
        except ValueError:
            errors.append(f"Element '{clip.id}' has unsupported type '{clip.type}'")
            continue

        if clip.id in seen_ids:
            warnings.append(f"Duplicate element id '{clip.id}'")
        seen_ids.add(clip.id)

        element = clip_to_element(clip, element_type)

        if element.track_id not in track_ids:
            errors.append(f"Element '{element.id}' references unknown track '{element.track_id}'")
            continue

        if element_type.requires_asset:
            if element.is_external:
                problem = _check_external_url(element)
                if problem:
                    errors.append(problem)
                    continue
            elif not element.asset_id:
                errors.append(f"Element '{element.id}' of type {element_type.value} has no asset reference")
                continue

        fixed = _correct_element(element, cfg.min_element_duration_ms, errors, warnings)
        if fixed is not None:
            corrected.append(fixed)

    _detect_overlaps(corrected, warnings)

    valid = not errors
    if errors:
        logger.info(f"[VALIDATE] Rejected timeline: {len(errors)} error(s)")
    elif warnings:
        logger.info(f"[VALIDATE] Accepted timeline with {len(warnings)} warning(s)")

    return ValidationReport(
        valid=valid,
        errors=errors,
        warnings=warnings,
        corrected_elements=corrected if valid else None,
        tracks=track_infos,
        settings=output,
    )
