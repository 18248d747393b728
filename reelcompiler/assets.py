"""Per-request workspace and asset resolution.

The workspace owns a scratch directory under the OS temp dir; every file
the request produces is registered there and deleted together with it.
"""

from __future__ import annotations

import logging
import os
import secrets
import shutil
import subprocess
import tempfile
import threading
import time
from pathlib import Path
from typing import Sequence

from reelcompiler.errors import AssetError, CancelledError, CompileError, PlanError
from reelcompiler.models import AssetHandle, TextSegment
from reelcompiler.music import MusicGeneration
from reelcompiler.voiceover import VoiceOver

logger = logging.getLogger(__name__)

MUSIC_STEM_SECONDS = 30.0


def new_request_id() -> str:
    return secrets.token_hex(12)


class RequestWorkspace:
    """Scoped scratch directory ``<temp_root>/<request_id>/``.

    Usage::

        with RequestWorkspace() as ws:
            out = ws.path("output.mp4")
            ...
    """

    def __init__(self, temp_root: str | Path | None = None, request_id: str | None = None) -> None:
        self.request_id = request_id or new_request_id()
        root = Path(temp_root) if temp_root else Path(tempfile.gettempdir())
        self.dir = root / self.request_id
        try:
            self.dir.mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            raise CompileError("io", f"failed to create temp dir {self.dir}: {exc}") from exc
        self.handles: list[AssetHandle] = []
        self._closed = False
        logger.debug("Workspace created: %s", self.dir)

    def __enter__(self) -> RequestWorkspace:
        return self

    def __exit__(self, *exc) -> None:
        self.cleanup()

    @property
    def closed(self) -> bool:
        return self._closed

    def path(self, name: str) -> Path:
        return self.dir / name

    def register(self, handle: AssetHandle) -> AssetHandle:
        """Track a handle so cleanup removes it.

        Owned handles registered after cleanup are deleted on the spot.
        """
        if self._closed:
            if handle.owning_temp_dir is not None:
                handle.absolute_path.unlink(missing_ok=True)
            return handle
        self.handles.append(handle)
        return handle

    def cleanup(self) -> None:
        """Delete every owned handle and the directory. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        for handle in self.handles:
            if handle.owning_temp_dir is None:
                continue
            handle.absolute_path.unlink(missing_ok=True)
        shutil.rmtree(self.dir, ignore_errors=True)
        logger.debug("Workspace removed: %s", self.dir)


def validate_media(paths: Sequence[str | Path]) -> None:
    """Fail fast on the first media path that is missing or unreadable."""
    for p in paths:
        path = Path(p)
        if not path.is_file():
            raise PlanError(f"missing input file: {path}")
        if not os.access(path, os.R_OK):
            raise PlanError(f"input file not readable: {path}")


def trim_audio(
    source: Path,
    dest: Path,
    seconds: float,
    ffmpeg_bin: str | Sequence[str] = "ffmpeg",
    timeout: float | None = None,
) -> Path:
    """Cut `source` to its first `seconds` seconds as MP3."""
    prefix = [ffmpeg_bin] if isinstance(ffmpeg_bin, str) else list(ffmpeg_bin)
    cmd = [
        *prefix, "-y",
        "-i", str(source),
        "-t", f"{seconds:.3f}",
        "-vn",
        "-c:a", "libmp3lame", "-b:a", "192k",
        str(dest),
    ]
    logger.debug("Running: %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as exc:
        raise AssetError("music", f"music trim timed out after {timeout:.0f}s") from exc
    except OSError as exc:
        raise AssetError("music", f"failed to start encoder for music trim: {exc}") from exc
    if result.returncode != 0:
        raise AssetError("music", f"music trim failed: {result.stderr[-500:]}")
    return dest


class AssetResolver:
    """Produces the narration and music stems for one request.

    `cancel` is handed to the collaborators and checked between steps; once
    it is set, no further work lands in the workspace. `deadline` is a
    `time.monotonic()` value bounding the music trim.
    """

    def __init__(
        self,
        workspace: RequestWorkspace,
        voice_over: VoiceOver,
        music: MusicGeneration | None,
        ffmpeg_bin: str | Sequence[str] = "ffmpeg",
        stem_seconds: float = MUSIC_STEM_SECONDS,
        timeout: float | None = 30.0,
        cancel: threading.Event | None = None,
        deadline: float | None = None,
    ) -> None:
        self.workspace = workspace
        self.voice_over = voice_over
        self.music = music
        self.ffmpeg_bin = ffmpeg_bin
        self.stem_seconds = stem_seconds
        self.timeout = timeout
        self.cancel = cancel
        self.deadline = deadline

    def _check_cancel(self, asset: str) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise CancelledError(f"{asset} resolution abandoned")

    def _remaining(self) -> float | None:
        if self.deadline is None:
            return self.timeout
        remaining = max(self.deadline - time.monotonic(), 0.1)
        return min(remaining, self.timeout) if self.timeout else remaining

    def resolve_narration(self, text_segments: Sequence[TextSegment]) -> AssetHandle | None:
        """Voice every non-empty caption as one utterance.

        Returns None when there is no text to speak. A handle the
        collaborator does not mark as owned (a shared cache file, say) is
        registered as-is and survives cleanup.
        """
        utterances = [s.text for s in text_segments if s.text.strip()]
        if not utterances:
            logger.info("No narration text; narration will be silence")
            return None
        self._check_cancel("narration")
        try:
            handle = self.voice_over.generate_voice_over(utterances, self.workspace.dir, cancel=self.cancel)
        except CompileError:
            raise
        except Exception as exc:
            raise AssetError("narration", f"tts generation failed: {exc}") from exc
        self.workspace.register(handle)
        self._check_cancel("narration")
        return handle

    def resolve_music(self, genre: str, enabled: bool) -> AssetHandle | None:
        """Fetch a clip for `genre` and trim it to the stem length.

        Returns None when music is disabled or no genre is given.
        """
        if not enabled:
            return None
        if not genre:
            logger.warning("Music enabled without a genre; continuing without music")
            return None
        if self.music is None:
            raise AssetError("music", "music is enabled but no music catalogue is configured")

        self._check_cancel("music")
        try:
            source = self.music.generate_music(
                genre, self.workspace.dir, seed=self.workspace.request_id, cancel=self.cancel,
            )
        except CompileError:
            raise
        except Exception as exc:
            raise AssetError("music", f"bgm download failed: {exc}") from exc
        if source.owning_temp_dir is not None:
            self.workspace.register(source)
        self._check_cancel("music")

        trimmed = trim_audio(
            source.absolute_path,
            self.workspace.path("music_trimmed.mp3"),
            self.stem_seconds,
            ffmpeg_bin=self.ffmpeg_bin,
            timeout=self._remaining(),
        )
        handle = self.workspace.register(AssetHandle.from_path(trimmed, owning_temp_dir=self.workspace.dir))
        self._check_cancel("music")
        logger.info("Music stem ready: %s (%s, %.0fs)", trimmed.name, genre, self.stem_seconds)
        return handle
