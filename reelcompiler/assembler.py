"""Command assembler: lower a CompilationPlan into an ffmpeg argument vector.

Input order is fixed: the caller's media in caller order (0..n-1), then
narration (n), then music (n+1) when present. The filter graph is
rendered in one pass from the plan, so the same plan always yields the
same vector.
"""

from __future__ import annotations

import shlex
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from reelcompiler.models import CompilationPlan

SILENCE_SOURCE = "anullsrc=r=44100:cl=stereo"


@dataclass(frozen=True)
class CodecProfile:
    """Encoder output settings. The flag grammar is identical across profiles."""
    name: str
    preset: str
    crf: int
    audio_bitrate: str | None = None


REELS = CodecProfile(name="reels", preset="fast", crf=23)
PRO = CodecProfile(name="pro", preset="slow", crf=18, audio_bitrate="192k")

PROFILES = {p.name: p for p in (REELS, PRO)}


@dataclass(frozen=True)
class TextOptions:
    font_size: int = 24
    font_color: str = "white"
    border_width: int = 2
    border_color: str = "black"
    font_file: str = ""


def escape_drawtext(text: str) -> str:
    """Escape caption text for drawtext: backslash, colon, single quote."""
    text = text.replace("\\", "\\\\")
    text = text.replace(":", "\\:")
    text = text.replace("'", "\\'")
    return text


def _sec(value: float) -> str:
    return f"{value:.3f}"


def _visual_sources(plan: CompilationPlan) -> tuple[list[str], list[str]]:
    """Source pad for each visual segment, plus split chains for shared inputs."""
    uses = Counter(seg.input_index for seg in plan.visual_segments)
    chains: list[str] = []
    pending: dict[int, list[str]] = {}
    for idx in sorted(uses):
        if uses[idx] > 1:
            labels = [f"[src{idx}_{k}]" for k in range(uses[idx])]
            chains.append(f"[{idx}:v]split={uses[idx]}{''.join(labels)}")
            pending[idx] = labels

    sources = []
    for seg in plan.visual_segments:
        if seg.input_index in pending:
            sources.append(pending[seg.input_index].pop(0))
        else:
            sources.append(f"[{seg.input_index}:v]")
    return chains, sources


def render_filter_graph(plan: CompilationPlan, text: TextOptions = TextOptions()) -> tuple[str, str, str]:
    """Render the plan's filter graph.

    Returns:
        (filter_complex, video_label, audio_label) where the labels are the
        pads to map into the output.
    """
    c = plan.canvas
    chains, sources = _visual_sources(plan)

    for k, (seg, src) in enumerate(zip(plan.visual_segments, sources)):
        d = _sec(seg.window_duration)
        chains.append(
            f"{src}scale={c.width}:{c.height}:force_original_aspect_ratio=decrease,"
            f"pad={c.width}:{c.height}:(ow-iw)/2:(oh-ih)/2,setsar=1,"
            f"format=yuv420p,fps={c.fps},"
            f"tpad=stop_mode=clone:stop_duration={d},trim=duration={d},"
            f"setpts=PTS-STARTPTS[seg{k}]"
        )

    n = len(plan.visual_segments)
    chains.append(f"{''.join(f'[seg{k}]' for k in range(n))}concat=n={n}:v=1:a=0[basev]")

    video_label = "[basev]"
    font = f":fontfile={escape_drawtext(text.font_file)}" if text.font_file else ""
    for i, ov in enumerate(plan.overlays):
        out = f"[vtx{i}]"
        chains.append(
            f"{video_label}drawtext=text={escape_drawtext(ov.text)}"
            f":fontcolor={text.font_color}:borderw={text.border_width}"
            f":bordercolor={text.border_color}:fontsize={text.font_size}{font}"
            f":x={ov.x_expr}:y={ov.y_expr}"
            f":enable='between(t,{_sec(ov.start)},{_sec(ov.end)})'{out}"
        )
        video_label = out
    if video_label == "[basev]":
        chains.append("[basev]copy[vout]")
        video_label = "[vout]"

    a = plan.audio
    total = _sec(a.total_duration)
    chains.append(
        f"[{a.narration_input_index}:a]volume={a.narration_volume:.2f},apad,"
        f"atrim=0:{total},asetpts=PTS-STARTPTS[na]"
    )
    audio_label = "[na]"
    if a.has_music:
        chains.append(
            f"[{a.music_input_index}:a]volume={a.music_volume:.2f},"
            f"atrim=0:{total},asetpts=PTS-STARTPTS[ma]"
        )
        chains.append("[na][ma]amix=inputs=2:duration=longest:dropout_transition=2[mixa]")
        audio_label = "[mixa]"

    return ";".join(chains), video_label, audio_label


def input_args(plan: CompilationPlan) -> list[str]:
    args: list[str] = []
    for p in plan.media_paths:
        args += ["-i", str(p)]
    if plan.audio.narration_path is not None:
        args += ["-i", str(plan.audio.narration_path)]
    else:
        args += ["-f", "lavfi", "-i", SILENCE_SOURCE]
    if plan.audio.has_music:
        args += ["-i", str(plan.audio.music_path)]
    return args


def assemble(
    plan: CompilationPlan,
    output_path: str | Path,
    profile: CodecProfile = REELS,
    text: TextOptions = TextOptions(),
) -> list[str]:
    """Build the encoder argument vector (without the binary itself)."""
    c = plan.canvas
    filter_complex, video_label, audio_label = render_filter_graph(plan, text)

    args = ["-y", *input_args(plan)]
    args += [
        "-filter_complex", filter_complex,
        "-map", video_label,
        "-map", audio_label,
        "-r", str(c.fps),
        "-s", f"{c.width}x{c.height}",
        "-c:v", "libx264",
        "-pix_fmt", "yuv420p",
        "-preset", profile.preset,
        "-crf", str(profile.crf),
        "-c:a", "aac",
    ]
    if profile.audio_bitrate:
        args += ["-b:a", profile.audio_bitrate]
    args += ["-movflags", "+faststart", "-f", "mp4", str(output_path)]
    return args


def command_line(argv: Sequence[str], ffmpeg_bin: str = "ffmpeg") -> str:
    """Shell-quoted command for logs and dry runs."""
    return shlex.join([ffmpeg_bin, *argv])
