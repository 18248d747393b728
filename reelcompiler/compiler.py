"""Composition compiler: schema + media in, streamed MP4 out.

One call owns one request directory. Narration and music are resolved on
two worker threads, then the plan is built, assembled and encoded in the
calling thread. Whatever happens, the directory is gone once the returned
stream hits EOF or is closed, or as soon as compile() raises.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Sequence

from reelcompiler import schema
from reelcompiler.assembler import PROFILES, CodecProfile, TextOptions, assemble
from reelcompiler.assets import AssetResolver, RequestWorkspace, validate_media
from reelcompiler.config import Settings
from reelcompiler.encoder import EncoderRunner
from reelcompiler.errors import AssetError, CancelledError, CompileError
from reelcompiler.models import AssetHandle, ProgressEvent, TimelineDocument
from reelcompiler.music import CatalogueMusic, MusicGeneration
from reelcompiler.planner import check_references, plan
from reelcompiler.voiceover import ElevenLabsVoiceOver, VoiceOver

logger = logging.getLogger(__name__)

EventSink = Callable[[ProgressEvent], None]

_CHUNK_SIZE = 64 * 1024


class CompiledVideo:
    """Readable MP4 stream that removes its request directory when done.

    Cleanup runs on EOF, on close(), and on any read error.
    """

    def __init__(self, stream: BinaryIO, workspace: RequestWorkspace, path: Path) -> None:
        self._stream = stream
        self._workspace = workspace
        self.path = path
        self.request_id = workspace.request_id
        self.size = path.stat().st_size

    def __enter__(self) -> CompiledVideo:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __iter__(self) -> Iterator[bytes]:
        return self.iter_chunks()

    @property
    def closed(self) -> bool:
        return self._workspace.closed

    def read(self, size: int = -1) -> bytes:
        if self.closed:
            return b""
        try:
            data = self._stream.read(size)
        except OSError as exc:
            self.close()
            raise CompileError("io", f"failed to read rendered video: {exc}") from exc
        if not data and size != 0:
            self.close()
        return data

    def iter_chunks(self, chunk_size: int = _CHUNK_SIZE) -> Iterator[bytes]:
        try:
            while True:
                chunk = self.read(chunk_size)
                if not chunk:
                    return
                yield chunk
        finally:
            self.close()

    def close(self) -> None:
        if self.closed:
            return
        try:
            self._stream.close()
        finally:
            self._workspace.cleanup()
            logger.info("Request %s cleaned up", self.request_id)


class CompositionCompiler:
    """Drives decode, asset resolution, planning, assembly and encoding."""

    def __init__(
        self,
        voice_over: VoiceOver,
        music: MusicGeneration | None = None,
        settings: Settings | None = None,
        runner: EncoderRunner | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.settings.validate()
        self.voice_over = voice_over
        self.music = music
        self.runner = runner or EncoderRunner(self.settings.ffmpeg_bin)

    @classmethod
    def from_settings(cls, settings: Settings) -> CompositionCompiler:
        return cls(
            voice_over=ElevenLabsVoiceOver.from_settings(settings),
            music=CatalogueMusic.from_settings(settings),
            settings=settings,
        )

    @property
    def profile(self) -> CodecProfile:
        return PROFILES[self.settings.codec_profile]

    @property
    def text_options(self) -> TextOptions:
        return TextOptions(font_size=self.settings.font_size, font_file=self.settings.font_file)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _wait_asset(
        self,
        future: Future,
        asset: str,
        deadline: float,
        cancel: threading.Event | None,
    ) -> AssetHandle | None:
        while True:
            if cancel is not None and cancel.is_set():
                raise CancelledError("request cancelled while resolving assets")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise AssetError(asset, f"{asset} resolution timed out after {self.settings.asset_timeout:.0f}s")
            try:
                return future.result(timeout=min(0.2, remaining))
            except FutureTimeout:
                continue

    def _resolve_assets(
        self,
        doc: TimelineDocument,
        workspace: RequestWorkspace,
        cancel: threading.Event | None,
    ) -> tuple[AssetHandle | None, AssetHandle | None]:
        deadline = time.monotonic() + self.settings.asset_timeout
        # Set when the request stops waiting; workers poll it
        abandon = threading.Event()
        resolver = AssetResolver(
            workspace,
            self.voice_over,
            self.music,
            ffmpeg_bin=self.runner.prefix,
            stem_seconds=self.settings.music_stem_seconds,
            timeout=self.settings.asset_timeout,
            cancel=abandon,
            deadline=deadline,
        )
        pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"assets-{workspace.request_id[:8]}")
        futures: list[Future] = []
        try:
            futures.append(pool.submit(resolver.resolve_narration, doc.text_timeline.segments))
            futures.append(pool.submit(resolver.resolve_music, doc.music.genre, doc.music.enabled))

            # Both must settle before planning; narration errors win
            errors: list[BaseException] = []
            results: list[AssetHandle | None] = []
            for future, asset in zip(futures, ("narration", "music")):
                try:
                    results.append(self._wait_asset(future, asset, deadline, cancel))
                except CancelledError:
                    raise
                except Exception as exc:
                    errors.append(exc)
                    results.append(None)
            if errors:
                raise errors[0]
            return results[0], results[1]
        finally:
            settled = all(f.done() for f in futures)
            if not settled:
                abandon.set()
                logger.warning("Abandoning %d asset worker(s) still running", sum(not f.done() for f in futures))
            pool.shutdown(wait=settled, cancel_futures=True)

    def _emit(self, on_event: EventSink | None, request_id: str, stage: str, progress: int, message: str) -> None:
        logger.info("[%s] %s: %s", request_id[:8], stage, message)
        if on_event is not None:
            on_event(ProgressEvent(request_id=request_id, stage=stage, progress=progress, message=message))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def compile(
        self,
        schema_bytes: bytes | str,
        media_paths: Sequence[str | Path],
        cancel: threading.Event | None = None,
        on_event: EventSink | None = None,
        overlay_timing: str | None = None,
        request_id: str | None = None,
    ) -> CompiledVideo:
        """Compile a timeline and its media into a streamed MP4.

        Args:
            schema_bytes: Timeline JSON from the timeline generator.
            media_paths: Stills referenced by imageIndex. Must stay valid
                until the returned stream is closed.
            cancel: Set from another thread to abort the request.
            on_event: Receives a ProgressEvent per stage.
            overlay_timing: Overrides settings.overlay_timing.
            request_id: Names the request directory; random when omitted.

        Returns:
            A CompiledVideo; read it to EOF or close it to release the
            request directory.

        Raises:
            CompileError: Any failure, with `kind` set.
        """
        doc = schema.decode(schema_bytes)
        check_references(doc, len(media_paths))
        validate_media(media_paths)

        workspace = RequestWorkspace(self.settings.temp_root, request_id=request_id)
        rid = workspace.request_id
        stream = None
        try:
            self._emit(on_event, rid, "decoded", 10, f"{len(doc.image_timeline)} image segment(s)")

            narration, music = self._resolve_assets(doc, workspace, cancel)
            self._emit(on_event, rid, "assets", 40, f"narration={narration is not None} music={music is not None}")

            compilation = plan(
                doc,
                media_paths,
                narration,
                music,
                overlay_timing=overlay_timing or self.settings.overlay_timing,
                music_stem_seconds=self.settings.music_stem_seconds,
            )
            self._emit(on_event, rid, "planned", 50, f"{compilation.canvas.duration:.1f}s video")

            output_path = workspace.path("output.mp4")
            argv = assemble(compilation, output_path, self.profile, self.text_options)

            if cancel is not None and cancel.is_set():
                raise CancelledError()
            self._emit(on_event, rid, "encoding", 60, f"profile={self.profile.name}")
            stream = self.runner.run(
                argv,
                output_path,
                timeout=self.settings.encoder_timeout(compilation.canvas.duration),
                cancel=cancel,
            )
            workspace.register(AssetHandle.from_path(output_path, owning_temp_dir=workspace.dir))

            video = CompiledVideo(stream, workspace, output_path)
            self._emit(on_event, rid, "encoded", 100, f"{video.size / 1024:.1f} KB")
            return video
        except BaseException as exc:
            if stream is not None:
                stream.close()
            workspace.cleanup()
            if isinstance(exc, OSError):
                raise CompileError("io", str(exc)) from exc
            raise
