"""Domain model for validated timelines.

``TimelineElement`` is the immutable, normalized form of an editor clip. The
validator builds corrected copies with ``dataclasses.replace``; nothing in the
engine mutates an element after construction.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ElementType(str, Enum):
    """Kinds of timeline content."""

    VIDEO = "video"
    AUDIO = "audio"
    IMAGE = "image"
    GIF = "gif"
    TEXT = "text"
    CAPTION = "caption"

    @property
    def requires_asset(self) -> bool:
        return self in ASSET_TYPES

    @property
    def is_visual_media(self) -> bool:
        return self in (ElementType.VIDEO, ElementType.IMAGE, ElementType.GIF)

    @property
    def is_text(self) -> bool:
        return self in (ElementType.TEXT, ElementType.CAPTION)


ASSET_TYPES = frozenset({ElementType.VIDEO, ElementType.AUDIO, ElementType.IMAGE, ElementType.GIF})


# (width, height) for the editor's vertical canvas
RESOLUTIONS: dict[str, tuple[int, int]] = {
    "480p": (480, 854),
    "720p": (720, 1280),
    "1080p": (1080, 1920),
}
QUALITIES = ("low", "medium", "high")


@dataclass(frozen=True)
class Position:
    x: float
    y: float


@dataclass(frozen=True)
class Transition:
    """A fade-style transition; ``duration_ms`` is before clamping."""

    type: str
    duration_ms: int


@dataclass(frozen=True)
class CaptionStyle:
    """drawtext-relevant subset of the editor's CSS caption style."""

    border_width: int = 0
    border_color: str | None = None
    shadow_x: int = 0
    shadow_y: int = 0
    shadow_color: str | None = None
    box_color: str | None = None
    uppercase: bool = False


@dataclass(frozen=True)
class TimelineElement:
    """One timeline-positioned unit of content."""

    id: str
    type: ElementType
    track_id: str
    timeline_start_ms: int
    timeline_end_ms: int
    source_start_ms: int | None = None
    source_end_ms: int | None = None
    asset_id: str | None = None
    speed: float = 1.0
    volume: float = 1.0
    opacity: float = 1.0
    text: str | None = None
    font_size: int | None = None
    font_color: str | None = None
    font_family: str | None = None
    font_weight: str | None = None
    position: Position | None = None
    placement: str | None = None
    caption_style: CaptionStyle | None = None
    transition_in: Transition | None = None
    transition_out: Transition | None = None
    properties: dict[str, Any] = field(default_factory=dict)

    @property
    def duration_ms(self) -> int:
        return self.timeline_end_ms - self.timeline_start_ms

    @property
    def has_source_trim(self) -> bool:
        return self.source_start_ms is not None and self.source_end_ms is not None

    @property
    def external_url(self) -> str | None:
        external = self.properties.get("externalAsset")
        if isinstance(external, dict):
            url = external.get("url")
            return url if isinstance(url, str) and url else None
        return None

    @property
    def is_external(self) -> bool:
        return self.external_url is not None or bool(self.asset_id and self.asset_id.startswith("external_"))


@dataclass(frozen=True)
class TrackInfo:
    """A rendering layer; ``index`` is the z-order / mix order."""

    id: str
    index: int
    type: str = "video"
    name: str | None = None
    muted: bool = False


@dataclass(frozen=True)
class ExportSettings:
    resolution: str
    fps: int
    quality: str
    orientation: str = "portrait"

    @property
    def dimensions(self) -> tuple[int, int]:
        width, height = RESOLUTIONS[self.resolution]
        if self.orientation == "landscape":
            return height, width
        return width, height

    @property
    def width(self) -> int:
        return self.dimensions[0]

    @property
    def height(self) -> int:
        return self.dimensions[1]

    def to_dict(self) -> dict[str, Any]:
        return {
            "resolution": self.resolution,
            "fps": self.fps,
            "quality": self.quality,
            "orientation": self.orientation,
        }
