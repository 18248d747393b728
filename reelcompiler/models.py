"""Data models for the reel composition compiler."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

POSITIONS = ("center", "center-left", "center-right", "center-bottom")


@dataclass
class Metadata:
    """Canvas parameters declared by the timeline."""
    width: int
    height: int
    fps: int
    aspect_ratio: str = ""
    total_duration: float = 0.0


@dataclass
class Transition:
    effect: str = ""
    easing: str = ""


@dataclass
class ImageSegment:
    """One still image held on screen for `duration` seconds."""
    ordering: int
    image_index: int
    start_time: float
    duration: float
    transition: Transition = field(default_factory=Transition)


@dataclass
class TextStyle:
    font_family: str = ""
    text_style: str = ""


@dataclass
class TextSegment:
    """One caption; its text is also spoken by the narration."""
    text: str
    start_time: float
    duration: float
    position: str = "center"
    narrative_source: str = ""


@dataclass
class TextTimeline:
    style: TextStyle = field(default_factory=TextStyle)
    segments: list[TextSegment] = field(default_factory=list)


@dataclass
class MusicSettings:
    enabled: bool = False
    genre: str = ""
    volume: float = 0.0

    @property
    def wanted(self) -> bool:
        """Whether a music stem belongs in the plan."""
        return self.enabled and self.genre != ""


@dataclass
class TimelineDocument:
    """Decoded timeline schema."""
    metadata: Metadata
    image_timeline: list[ImageSegment] = field(default_factory=list)
    text_timeline: TextTimeline = field(default_factory=TextTimeline)
    music: MusicSettings = field(default_factory=MusicSettings)
    theme: dict = field(default_factory=dict)

    def utterances(self) -> list[str]:
        """Non-empty caption texts in timeline order."""
        return [s.text for s in self.text_timeline.segments if s.text.strip()]


@dataclass(frozen=True)
class AssetHandle:
    """A file produced for one request.

    Attributes:
        absolute_path: Where the file lives.
        basename: File name without directory.
        owning_temp_dir: Request directory that owns the file, or None for
            read-only catalogue files that must not be deleted.
    """
    absolute_path: Path
    basename: str
    owning_temp_dir: Path | None = None

    @classmethod
    def from_path(cls, path: str | Path, owning_temp_dir: Path | None = None) -> AssetHandle:
        p = Path(path).resolve()
        return cls(absolute_path=p, basename=p.name, owning_temp_dir=owning_temp_dir)


# ------------------------------------------------------------------
# Compilation plan
# ------------------------------------------------------------------

@dataclass
class Canvas:
    width: int
    height: int
    fps: int
    duration: float


@dataclass
class VisualSegment:
    """A still image fit into the canvas for one window of the base track."""
    input_index: int
    window_start: float
    window_duration: float


@dataclass
class Overlay:
    """A drawtext node enabled between `start` and `end`."""
    text: str
    x_expr: str
    y_expr: str
    start: float
    end: float


@dataclass
class AudioPlan:
    """Audio stems and their gains.

    `narration_path` is None when there is nothing to narrate; the stem is
    then generated silence.
    """
    narration_input_index: int
    narration_path: Path | None
    narration_volume: float
    total_duration: float
    music_input_index: int | None = None
    music_path: Path | None = None
    music_volume: float = 0.0

    @property
    def has_music(self) -> bool:
        return self.music_input_index is not None


@dataclass
class CompilationPlan:
    canvas: Canvas
    media_paths: list[Path]
    visual_segments: list[VisualSegment]
    overlays: list[Overlay]
    audio: AudioPlan


@dataclass
class ProgressEvent:
    """A progress update for the client-facing event channel."""
    request_id: str
    stage: str  # decoded | assets | planned | encoding | encoded
    progress: int  # 0..100
    message: str = ""
