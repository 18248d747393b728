"""Filter-graph planner.

Turns a validated timeline plus resolved audio stems into a
CompilationPlan. The plan is typed; rendering it into encoder syntax is
the assembler's job.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

from reelcompiler.errors import PlanError
from reelcompiler.models import (
    AssetHandle,
    AudioPlan,
    Canvas,
    CompilationPlan,
    ImageSegment,
    Overlay,
    TimelineDocument,
    VisualSegment,
)

logger = logging.getLogger(__name__)

# position -> (x, y) drawtext expressions over text width/height tw, th
POSITION_XY: dict[str, tuple[str, str]] = {
    "center": ("(w-tw)/2", "(h-th)/2"),
    "center-left": ("(w-tw)/4", "(h-th)/2"),
    "center-right": ("3*(w-tw)/4", "(h-th)/2"),
    "center-bottom": ("(w-tw)/2", "h-th-20"),
}

OVERLAY_TIMINGS = ("visual", "text")


def position_xy(position: str) -> tuple[str, str]:
    return POSITION_XY.get(position, POSITION_XY["center"])


def clamp01(v: float) -> float:
    return min(max(v, 0.0), 1.0)


def _parse_ratio(aspect_ratio: str) -> float | None:
    parts = aspect_ratio.replace("/", ":").split(":")
    if len(parts) != 2:
        return None
    try:
        w, h = float(parts[0]), float(parts[1])
    except ValueError:
        return None
    if w <= 0 or h <= 0:
        return None
    return w / h


def derive_canvas(doc: TimelineDocument) -> Canvas:
    """Canvas from metadata; resolution wins over aspect_ratio."""
    md = doc.metadata
    ratio = _parse_ratio(md.aspect_ratio) if md.aspect_ratio else None
    if ratio is not None and abs(ratio - md.width / md.height) > 0.01:
        logger.warning(
            "aspectRatio %s does not match resolution %dx%d; using resolution",
            md.aspect_ratio, md.width, md.height,
        )

    visual_length = sum(s.duration for s in doc.image_timeline)
    duration = md.total_duration
    if duration <= 0:
        duration = visual_length
    elif visual_length and abs(duration - visual_length) > 1e-6:
        logger.warning(
            "totalDuration %.3fs differs from image timeline length %.3fs",
            duration, visual_length,
        )
    return Canvas(width=md.width, height=md.height, fps=md.fps, duration=duration)


def sort_segments(segments: Sequence[ImageSegment]) -> list[ImageSegment]:
    """Ascending start_time; ties keep their original order."""
    return sorted(segments, key=lambda s: s.start_time)


def _overlays(
    doc: TimelineDocument,
    visual_order: list[ImageSegment],
    overlay_timing: str,
) -> list[Overlay]:
    overlays: list[Overlay] = []
    texts = doc.text_timeline.segments

    if overlay_timing == "text":
        for seg in texts:
            x, y = position_xy(seg.position)
            overlays.append(Overlay(
                text=seg.text, x_expr=x, y_expr=y,
                start=seg.start_time, end=seg.start_time + seg.duration,
            ))
        return overlays

    # Text rank i takes the window of visual rank i
    for rank, seg in enumerate(texts):
        if rank >= len(visual_order):
            logger.debug("Dropping overlay %d: no visual segment of that rank", rank)
            break
        window = visual_order[rank]
        x, y = position_xy(seg.position)
        overlays.append(Overlay(
            text=seg.text, x_expr=x, y_expr=y,
            start=window.start_time, end=window.start_time + window.duration,
        ))
    return overlays


def check_references(doc: TimelineDocument, media_count: int) -> None:
    """Every image index must address a supplied media file."""
    for seg in doc.image_timeline:
        if seg.image_index < 0 or seg.image_index >= media_count:
            raise PlanError(
                f"image item {seg.ordering} references invalid image index {seg.image_index} "
                f"({media_count} media file(s) supplied)"
            )
    if not doc.image_timeline:
        raise PlanError("no visual segments present")


def plan(
    doc: TimelineDocument,
    media_paths: Sequence[str | Path],
    narration: AssetHandle | None,
    music: AssetHandle | None = None,
    overlay_timing: str = "visual",
    narration_volume: float = 1.0,
    music_stem_seconds: float | None = None,
) -> CompilationPlan:
    """Build the compilation plan.

    Args:
        doc: Decoded timeline.
        media_paths: Caller-supplied stills, addressed by image_index.
        narration: Voiced narration, or None when the timeline has no text.
        music: Trimmed music stem, or None.
        overlay_timing: "visual" pairs captions with visual windows by rank;
            "text" uses each caption's own timing.
        narration_volume: Gain for the narration stem; non-positive means 1.0.
        music_stem_seconds: Length of the music stem, used only to warn when
            the canvas outlasts it.

    Raises:
        PlanError: On out-of-range image indices, an empty image timeline,
            or missing narration for a timeline that has text.
    """
    if overlay_timing not in OVERLAY_TIMINGS:
        raise PlanError(f"unknown overlay timing '{overlay_timing}'")

    paths = [Path(p) for p in media_paths]
    check_references(doc, len(paths))
    if narration is None and doc.utterances():
        raise PlanError("narration is required for a timeline with text")

    canvas = derive_canvas(doc)
    ordered = sort_segments(doc.image_timeline)
    visual = [
        VisualSegment(input_index=s.image_index, window_start=s.start_time, window_duration=s.duration)
        for s in ordered
    ]

    n = len(paths)
    nv = narration_volume if narration_volume > 0 else 1.0
    audio = AudioPlan(
        narration_input_index=n,
        narration_path=narration.absolute_path if narration else None,
        narration_volume=nv,
        total_duration=canvas.duration,
    )
    if music is not None:
        audio.music_input_index = n + 1
        audio.music_path = music.absolute_path
        audio.music_volume = clamp01(doc.music.volume)
        if music_stem_seconds and canvas.duration > music_stem_seconds:
            logger.warning(
                "Video is %.1fs but the music stem is %.0fs; music ends early",
                canvas.duration, music_stem_seconds,
            )

    result = CompilationPlan(
        canvas=canvas,
        media_paths=paths,
        visual_segments=visual,
        overlays=_overlays(doc, ordered, overlay_timing),
        audio=audio,
    )
    logger.info(
        "Planned %d visual segment(s), %d overlay(s), music=%s, %.1fs at %dx%d@%d",
        len(visual), len(result.overlays), audio.has_music,
        canvas.duration, canvas.width, canvas.height, canvas.fps,
    )
    return result
