"""Typed representation of an ffmpeg ``-filter_complex`` program.

A ``FilterGraph`` is an ordered list of ``FilterNode`` chains. Each node
consumes labelled pads (input streams such as ``0:v`` or labels produced by an
earlier node) and produces new labels. ``validate()`` checks connectivity
before anything is handed to ffmpeg:

- every consumed label is an input stream or was produced by an earlier node
- every produced label is unique and consumed exactly once, except the sinks
- exactly one video sink and one audio sink exist and are never consumed
- pad kinds (video/audio) match at both ends
"""

import re
from dataclasses import dataclass, field
from enum import Enum

from timeline_export.exceptions import RenderError, RenderErrorCategory

_INPUT_PAD_RE = re.compile(r"^(\d+):([va])$")


class StreamKind(str, Enum):
    VIDEO = "v"
    AUDIO = "a"


@dataclass(frozen=True)
class Pad:
    label: str
    kind: StreamKind

    def __str__(self) -> str:
        return f"[{self.label}]"


@dataclass
class FilterNode:
    """One filter chain: ``[in...]f1,f2,...[out...]``."""

    filters: list[str]
    inputs: list[Pad] = field(default_factory=list)
    outputs: list[Pad] = field(default_factory=list)

    def render(self) -> str:
        return "".join(str(p) for p in self.inputs) + ",".join(self.filters) + "".join(str(p) for p in self.outputs)


class FilterGraph:
    """Builder for a validated filter graph."""

    VIDEO_SINK = "final_video"
    AUDIO_SINK = "final_audio"

    def __init__(self, input_count: int = 0):
        self.input_count = input_count
        self.nodes: list[FilterNode] = []
        self._counters: dict[str, int] = {}
        self.video_sink: Pad | None = None
        self.audio_sink: Pad | None = None

    def input_pad(self, index: int, kind: StreamKind) -> Pad:
        return Pad(f"{index}:{kind.value}", kind)

    def new_pad(self, prefix: str, kind: StreamKind) -> Pad:
        n = self._counters.get(prefix, 0)
        self._counters[prefix] = n + 1
        return Pad(f"{prefix}{n}", kind)

    def add(self, filters: list[str] | str, inputs: list[Pad] | Pad | None = None, output: Pad | None = None) -> Pad | None:
        """Append a chain and return its output pad."""
        if isinstance(filters, str):
            filters = [filters]
        if isinstance(inputs, Pad):
            inputs = [inputs]
        self.nodes.append(FilterNode(list(filters), list(inputs or []), [output] if output else []))
        return output

    def set_sinks(self, video: Pad, audio: Pad) -> None:
        self.video_sink = video
        self.audio_sink = audio

    def _fail(self, message: str) -> None:
        raise RenderError(f"Invalid filter graph: {message}", category=RenderErrorCategory.FILTER_ERROR)

    def validate(self) -> None:
        """Raise ``RenderError(FilterError)`` on any connectivity problem."""
        if self.video_sink is None or self.audio_sink is None:
            self._fail("video and audio sinks must both be set")
        if self.video_sink.kind is not StreamKind.VIDEO:
            self._fail(f"video sink {self.video_sink} is not a video pad")
        if self.audio_sink.kind is not StreamKind.AUDIO:
            self._fail(f"audio sink {self.audio_sink} is not an audio pad")

        produced: dict[str, StreamKind] = {}
        consumed: dict[str, int] = {}

        for position, node in enumerate(self.nodes):
            if not node.filters or any(not f for f in node.filters):
                self._fail(f"node {position} has an empty filter")
            for pad in node.inputs:
                match = _INPUT_PAD_RE.match(pad.label)
                if match:
                    index = int(match.group(1))
                    if index >= self.input_count:
                        self._fail(f"{pad} refers to missing input {index}")
                    if match.group(2) != pad.kind.value:
                        self._fail(f"{pad} kind mismatch")
                    continue
                if pad.label not in produced:
                    self._fail(f"{pad} consumed before it is produced (node {position})")
                if produced[pad.label] is not pad.kind:
                    self._fail(f"{pad} consumed as {pad.kind.name.lower()}")
                consumed[pad.label] = consumed.get(pad.label, 0) + 1
            for pad in node.outputs:
                if _INPUT_PAD_RE.match(pad.label):
                    self._fail(f"{pad} shadows an input stream")
                if pad.label in produced:
                    self._fail(f"{pad} produced twice")
                produced[pad.label] = pad.kind

        sinks = {self.video_sink.label, self.audio_sink.label}
        for sink in (self.video_sink, self.audio_sink):
            if sink.label not in produced:
                self._fail(f"sink {sink} is never produced")
            if consumed.get(sink.label):
                self._fail(f"sink {sink} is consumed inside the graph")

        for label in produced:
            if label in sinks:
                continue
            count = consumed.get(label, 0)
            if count == 0:
                self._fail(f"[{label}] is dangling")
            if count > 1:
                self._fail(f"[{label}] consumed {count} times")

    def serialize(self) -> str:
        """Validated ``-filter_complex`` text."""
        self.validate()
        return ";".join(node.render() for node in self.nodes)
