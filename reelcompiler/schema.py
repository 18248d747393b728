"""Timeline schema decoder.

Parses the JSON document produced by the timeline generator into a
TimelineDocument. Pure: no IO, no external calls.

Expected structure::

    {
      "metadata": {"resolution": [1080, 1920], "fps": "30",
                   "aspectRatio": "9:16", "totalDuration": 6},
      "theme": {"style": "...", "grading": "..."},
      "timeline": {
        "ImageTimeline": {"ImageSegments": [
          {"ordering": 0, "imageIndex": 0, "startTime": 0, "duration": 6,
           "Transition": {"effect": "fade", "easing": "linear"}}
        ]},
        "TextTimeline": {
          "TextStyle": {"fontFamily": "Inter", "textStyle": "bold"},
          "TextSegments": [
            {"text": "Hello", "startTime": 0, "duration": 6,
             "position": "center-bottom", "narrativeSource": "hook"}
          ]
        }
      },
      "music": {"enabled": true, "genre": "upbeat", "volume": 0.3}
    }

Snake_case names (``image_timeline``, ``text_timeline.segments``,
``start_time`` ...) are accepted as well, and the whole document may be
wrapped in a single-key ``{"output": ...}`` envelope.
"""

from __future__ import annotations

import json
import math
from typing import Any

from reelcompiler.errors import DecodeError
from reelcompiler.models import (
    POSITIONS,
    ImageSegment,
    Metadata,
    MusicSettings,
    TextSegment,
    TextStyle,
    TextTimeline,
    TimelineDocument,
    Transition,
)

_MISSING = object()


def _get(obj: dict, *names: str, default: Any = _MISSING, where: str = "") -> Any:
    """Return the first present key among `names`."""
    for name in names:
        if name in obj:
            return obj[name]
    if default is _MISSING:
        raise DecodeError(f"missing field {where + '.' if where else ''}{names[0]}")
    return default


def _mapping(value: Any, where: str) -> dict:
    if not isinstance(value, dict):
        raise DecodeError(f"{where} must be an object, got {type(value).__name__}")
    return value


def _sequence(value: Any, where: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise DecodeError(f"{where} must be an array, got {type(value).__name__}")
    return value


def _number(value: Any, where: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DecodeError(f"{where} must be a number, got {value!r}")
    try:
        number = float(value)
    except OverflowError as exc:
        raise DecodeError(f"{where} is out of range") from exc
    if not math.isfinite(number):
        raise DecodeError(f"{where} must be finite, got {value!r}")
    return number


def _integer(value: Any, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise DecodeError(f"{where} must be an integer, got {value!r}")
    return value


def _unwrap(raw: Any) -> Any:
    if isinstance(raw, dict) and len(raw) == 1 and "output" in raw:
        inner = raw["output"]
        if isinstance(inner, str):
            try:
                inner = json.loads(inner)
            except json.JSONDecodeError as exc:
                raise DecodeError(f"malformed JSON in output envelope: {exc}") from exc
        return inner
    return raw


def _decode_fps(value: Any) -> int:
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError as exc:
            raise DecodeError(f"metadata.fps is not numeric: {value!r}") from exc
    fps = _integer(value, "metadata.fps")
    if fps < 1:
        raise DecodeError(f"metadata.fps must be >= 1, got {fps}")
    return fps


def _decode_metadata(raw: dict) -> Metadata:
    resolution = _get(raw, "resolution", where="metadata")
    if (
        not isinstance(resolution, list)
        or len(resolution) != 2
        or any(isinstance(v, bool) or not isinstance(v, int) or v <= 0 for v in resolution)
    ):
        raise DecodeError(f"invalid resolution array {resolution!r}")

    fps = _decode_fps(_get(raw, "fps", where="metadata"))

    total = _number(
        _get(raw, "totalDuration", "total_duration", default=0), "metadata.totalDuration",
    )
    if total < 0:
        raise DecodeError(f"metadata.totalDuration must be >= 0, got {total}")

    aspect = _get(raw, "aspectRatio", "aspect_ratio", default="")
    if not isinstance(aspect, str):
        raise DecodeError("metadata.aspectRatio must be a string")

    return Metadata(
        width=resolution[0],
        height=resolution[1],
        fps=fps,
        aspect_ratio=aspect,
        total_duration=total,
    )


def _decode_image_segment(raw: Any, i: int) -> ImageSegment:
    where = f"ImageSegments[{i}]"
    raw = _mapping(raw, where)
    image_index = _integer(_get(raw, "imageIndex", "image_index", where=where), f"{where}.imageIndex")
    if image_index < 0:
        raise DecodeError(f"{where}.imageIndex must be >= 0, got {image_index}")
    duration = _number(_get(raw, "duration", where=where), f"{where}.duration")
    if duration <= 0:
        raise DecodeError(f"{where}.duration must be > 0, got {duration}")

    transition_raw = _get(raw, "Transition", "transition", default=None) or {}
    transition_raw = _mapping(transition_raw, f"{where}.Transition")

    return ImageSegment(
        ordering=_integer(_get(raw, "ordering", default=i), f"{where}.ordering"),
        image_index=image_index,
        start_time=_number(_get(raw, "startTime", "start_time", where=where), f"{where}.startTime"),
        duration=duration,
        transition=Transition(
            effect=str(transition_raw.get("effect", "")),
            easing=str(transition_raw.get("easing", "")),
        ),
    )


def _decode_text_segment(raw: Any, i: int) -> TextSegment:
    where = f"TextSegments[{i}]"
    raw = _mapping(raw, where)
    text = _get(raw, "text", where=where)
    if not isinstance(text, str):
        raise DecodeError(f"{where}.text must be a string")
    duration = _number(_get(raw, "duration", where=where), f"{where}.duration")
    if duration <= 0:
        raise DecodeError(f"{where}.duration must be > 0, got {duration}")
    position = _get(raw, "position", default="") or "center"
    if position not in POSITIONS:
        raise DecodeError(f"{where}.position must be one of {', '.join(POSITIONS)}, got {position!r}")

    return TextSegment(
        text=text,
        start_time=_number(_get(raw, "startTime", "start_time", where=where), f"{where}.startTime"),
        duration=duration,
        position=position,
        narrative_source=str(_get(raw, "narrativeSource", "narrative_source", default="")),
    )


def _decode_text_timeline(raw: Any) -> TextTimeline:
    raw = _mapping(raw, "TextTimeline")
    style_raw = _mapping(_get(raw, "TextStyle", "style", default=None) or {}, "TextStyle")
    segments = _sequence(_get(raw, "TextSegments", "segments", default=[]), "TextSegments")
    return TextTimeline(
        style=TextStyle(
            font_family=str(_get(style_raw, "fontFamily", "font_family", default="")),
            text_style=str(_get(style_raw, "textStyle", "text_style", default="")),
        ),
        segments=[_decode_text_segment(s, i) for i, s in enumerate(segments)],
    )


def _decode_music(raw: Any) -> MusicSettings:
    if raw is None:
        return MusicSettings()
    raw = _mapping(raw, "music")
    enabled = raw.get("enabled", False)
    if not isinstance(enabled, bool):
        raise DecodeError("music.enabled must be a boolean")
    genre = raw.get("genre", "") or ""
    if not isinstance(genre, str):
        raise DecodeError("music.genre must be a string")
    return MusicSettings(
        enabled=enabled,
        genre=genre,
        volume=_number(raw.get("volume", 0), "music.volume"),
    )


def decode_document(raw: Any) -> TimelineDocument:
    """Decode an already-parsed JSON value."""
    raw = _mapping(_unwrap(raw), "document")
    metadata = _decode_metadata(_mapping(_get(raw, "metadata"), "metadata"))

    # Timelines live under "timeline" upstream, at the top level in snake_case form
    container = raw.get("timeline")
    container = _mapping(container, "timeline") if container is not None else raw

    image_raw = _get(container, "ImageTimeline", "image_timeline", where="timeline")
    if isinstance(image_raw, dict):
        image_raw = _get(image_raw, "ImageSegments", "segments", where="ImageTimeline")
    image_segments = [
        _decode_image_segment(s, i)
        for i, s in enumerate(_sequence(image_raw, "ImageSegments"))
    ]

    text_raw = _get(container, "TextTimeline", "text_timeline", default=None)
    text_timeline = _decode_text_timeline(text_raw) if text_raw is not None else TextTimeline()

    theme = raw.get("theme") or {}
    return TimelineDocument(
        metadata=metadata,
        image_timeline=image_segments,
        text_timeline=text_timeline,
        music=_decode_music(raw.get("music")),
        theme=_mapping(theme, "theme"),
    )


def decode(data: bytes | str) -> TimelineDocument:
    """Parse timeline JSON into a TimelineDocument.

    Raises:
        DecodeError: If the JSON is malformed or structurally invalid.
    """
    try:
        raw = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise DecodeError(f"invalid composition json: {exc}") from exc
    return decode_document(raw)


def _num(value: float) -> int | float:
    return int(value) if float(value).is_integer() else value


def to_wire(doc: TimelineDocument) -> dict:
    """Canonical wire-format dict for a document."""
    md = doc.metadata
    return {
        "metadata": {
            "resolution": [md.width, md.height],
            "fps": str(md.fps),
            "aspectRatio": md.aspect_ratio,
            "totalDuration": _num(md.total_duration),
        },
        "theme": doc.theme,
        "timeline": {
            "ImageTimeline": {
                "ImageSegments": [
                    {
                        "ordering": s.ordering,
                        "imageIndex": s.image_index,
                        "startTime": _num(s.start_time),
                        "duration": _num(s.duration),
                        "Transition": {"effect": s.transition.effect, "easing": s.transition.easing},
                    }
                    for s in doc.image_timeline
                ],
            },
            "TextTimeline": {
                "TextStyle": {
                    "fontFamily": doc.text_timeline.style.font_family,
                    "textStyle": doc.text_timeline.style.text_style,
                },
                "TextSegments": [
                    {
                        "text": s.text,
                        "startTime": _num(s.start_time),
                        "duration": _num(s.duration),
                        "position": s.position,
                        "narrativeSource": s.narrative_source,
                    }
                    for s in doc.text_timeline.segments
                ],
            },
        },
        "music": {
            "enabled": doc.music.enabled,
            "genre": doc.music.genre,
            "volume": doc.music.volume,
        },
    }


def encode(doc: TimelineDocument) -> bytes:
    """Serialise a document back to canonical JSON."""
    return json.dumps(to_wire(doc), sort_keys=True, ensure_ascii=False).encode("utf-8")
