"""End-to-end tests for CompositionCompiler with fake collaborators."""

import json
import threading
import time
from pathlib import Path

import pytest

from reelcompiler.compiler import CompositionCompiler
from reelcompiler.config import Settings
from reelcompiler.encoder import EncoderRunner
from reelcompiler.errors import CompileError
from reelcompiler.models import AssetHandle


def _dump(obj) -> bytes:
    return json.dumps(obj).encode("utf-8")


@pytest.fixture
def compiler(settings, voice_over, music, fake_ffmpeg):
    return CompositionCompiler(voice_over, music, settings, runner=EncoderRunner(fake_ffmpeg))


def _leftovers(scratch):
    return list(scratch.iterdir()) if scratch.exists() else []


class SlowVoiceOver:
    """Blocks for `delay` seconds without looking at the cancel event."""

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.cancel = None

    def generate_voice_over(self, utterance_segments, output_dir, cancel=None):
        self.cancel = cancel
        time.sleep(self.delay)
        path = Path(output_dir) / "narration.mp3"
        path.write_bytes(b"ID3late")
        return AssetHandle.from_path(path, owning_temp_dir=Path(output_dir))


class TestCompile:
    def test_minimal_timeline(self, compiler, timeline, media, scratch, ffmpeg_calls, voice_over):
        events = []
        video = compiler.compile(_dump(timeline), media[:1], on_event=events.append)
        assert video.path.parent.parent == scratch
        assert video.path.exists()

        data = b"".join(video)
        assert data[4:8] == b"ftyp"
        assert video.closed
        assert _leftovers(scratch) == []

        assert voice_over.calls == [["Hello"]]
        argv = ffmpeg_calls()[0]
        fg = argv[argv.index("-filter_complex") + 1]
        assert "concat=n=1:v=1:a=0[basev]" in fg
        assert "drawtext=text=Hello" in fg
        assert "amix" not in fg
        assert [e.stage for e in events] == ["decoded", "assets", "planned", "encoding", "encoded"]
        assert events[-1].progress == 100

    def test_music_enabled(self, compiler, two_segment_timeline, media, scratch, ffmpeg_calls, music):
        two_segment_timeline["music"] = {"enabled": True, "genre": "upbeat", "volume": 0.3}
        with compiler.compile(_dump(two_segment_timeline), media) as video:
            assert video.read(4)
        calls = ffmpeg_calls()
        # music trim first, then the render
        assert len(calls) == 2
        render = calls[1]
        inputs = [render[i + 1] for i, a in enumerate(render) if a == "-i"]
        assert inputs[:2] == media
        assert inputs[3].endswith("music_trimmed.mp3")
        fg = render[render.index("-filter_complex") + 1]
        assert "amix=inputs=2" in fg
        assert "volume=0.30" in fg
        assert _leftovers(scratch) == []
        assert (music.catalogue_dir / "upbeat.mp3").exists()

    def test_no_text_skips_narration(self, compiler, timeline, media, ffmpeg_calls, voice_over, scratch):
        timeline["timeline"]["TextTimeline"]["TextSegments"] = []
        with compiler.compile(_dump(timeline), media) as video:
            pass
        assert video.closed
        assert voice_over.calls == []
        assert "anullsrc=r=44100:cl=stereo" in ffmpeg_calls()[0]
        assert _leftovers(scratch) == []

    def test_request_id(self, compiler, timeline, media, scratch):
        video = compiler.compile(_dump(timeline), media, request_id="abc123")
        assert video.request_id == "abc123"
        assert (scratch / "abc123").is_dir()
        video.close()
        assert not (scratch / "abc123").exists()


class TestCompileErrors:
    def test_out_of_range_index_spawns_nothing(self, compiler, timeline, media, ffmpeg_calls, voice_over, scratch):
        timeline["timeline"]["ImageTimeline"]["ImageSegments"][0]["imageIndex"] = 5
        with pytest.raises(CompileError) as info:
            compiler.compile(_dump(timeline), media)
        assert info.value.kind == "plan"
        assert info.value.http_status == 400
        assert ffmpeg_calls() == []
        assert voice_over.calls == []
        assert _leftovers(scratch) == []

    def test_decode_error(self, compiler, media, scratch):
        with pytest.raises(CompileError) as info:
            compiler.compile(b"{", media)
        assert info.value.kind == "decode"
        assert _leftovers(scratch) == []

    def test_narration_failure(self, settings, make_voice_over, music, fake_ffmpeg, ffmpeg_calls,
                               timeline, media, scratch):
        compiler = CompositionCompiler(make_voice_over(fail=True), music, settings, runner=EncoderRunner(fake_ffmpeg))
        with pytest.raises(CompileError) as info:
            compiler.compile(_dump(timeline), media)
        assert info.value.kind == "asset.narration"
        assert info.value.http_status == 502
        assert ffmpeg_calls() == []
        assert _leftovers(scratch) == []

    def test_encoder_failure(self, compiler, timeline, media, monkeypatch, scratch):
        monkeypatch.setenv("FAKE_FFMPEG_MODE", "fail")
        with pytest.raises(CompileError) as info:
            compiler.compile(_dump(timeline), media)
        assert info.value.kind == "encoder"
        assert "Error initializing complex filters." in info.value.detail
        assert info.value.to_dict()["kind"] == "encoder"
        assert _leftovers(scratch) == []

    def test_cancel_during_encode(self, compiler, timeline, media, monkeypatch, scratch, ffmpeg_calls):
        monkeypatch.setenv("FAKE_FFMPEG_MODE", "hang")
        cancel = threading.Event()
        errors = []

        def run():
            try:
                compiler.compile(_dump(timeline), media, cancel=cancel)
            except CompileError as exc:
                errors.append(exc)

        worker = threading.Thread(target=run)
        worker.start()
        deadline = time.monotonic() + 10
        while not ffmpeg_calls() and time.monotonic() < deadline:
            time.sleep(0.05)
        cancel.set()
        worker.join(timeout=15)

        assert not worker.is_alive()
        assert [e.kind for e in errors] == ["cancelled"]
        assert _leftovers(scratch) == []

    def test_cancel_before_start(self, compiler, timeline, media, ffmpeg_calls, scratch):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(CompileError) as info:
            compiler.compile(_dump(timeline), media, cancel=cancel)
        assert info.value.kind == "cancelled"
        assert ffmpeg_calls() == []
        assert _leftovers(scratch) == []

    def test_music_failure_when_enabled(self, compiler, timeline, media, scratch, voice_over):
        timeline["music"] = {"enabled": True, "genre": "polka", "volume": 0.3}
        with pytest.raises(CompileError) as info:
            compiler.compile(_dump(timeline), media)
        assert info.value.kind == "asset.music"
        assert info.value.http_status == 502
        assert voice_over.calls == [["Hello"]]
        assert _leftovers(scratch) == []

    def test_asset_deadline_does_not_wait_for_worker(self, settings, music, fake_ffmpeg, ffmpeg_calls,
                                                     timeline, media, scratch):
        settings.asset_timeout = 0.5
        slow = SlowVoiceOver(delay=3.0)
        compiler = CompositionCompiler(slow, music, settings, runner=EncoderRunner(fake_ffmpeg))
        started = time.monotonic()
        with pytest.raises(CompileError, match="timed out") as info:
            compiler.compile(_dump(timeline), media)
        assert time.monotonic() - started < 2.5
        assert info.value.kind == "asset.narration"
        assert slow.cancel.is_set()
        assert ffmpeg_calls() == []
        assert _leftovers(scratch) == []

    def test_cancel_during_asset_resolution(self, settings, music, fake_ffmpeg, ffmpeg_calls,
                                            timeline, media, scratch):
        slow = SlowVoiceOver(delay=3.0)
        compiler = CompositionCompiler(slow, music, settings, runner=EncoderRunner(fake_ffmpeg))
        cancel = threading.Event()
        threading.Timer(0.3, cancel.set).start()
        started = time.monotonic()
        with pytest.raises(CompileError) as info:
            compiler.compile(_dump(timeline), media, cancel=cancel)
        assert time.monotonic() - started < 2.0
        assert info.value.kind == "cancelled"
        assert slow.cancel.is_set()
        assert ffmpeg_calls() == []
        assert _leftovers(scratch) == []

        # the abandoned worker must not bring the request directory back
        time.sleep(3.2)
        assert _leftovers(scratch) == []

    def test_missing_media_file(self, compiler, timeline, tmp_path, scratch):
        with pytest.raises(CompileError) as info:
            compiler.compile(_dump(timeline), [str(tmp_path / "gone.jpg")])
        assert info.value.kind == "plan"
        assert _leftovers(scratch) == []


class TestCompiledVideo:
    def test_close_without_reading(self, compiler, timeline, media, scratch):
        video = compiler.compile(_dump(timeline), media)
        assert video.size > 0
        video.close()
        video.close()
        assert video.read() == b""
        assert _leftovers(scratch) == []

    def test_read_to_eof_cleans_up(self, compiler, timeline, media, scratch):
        video = compiler.compile(_dump(timeline), media)
        while video.read(1024):
            pass
        assert video.closed
        assert _leftovers(scratch) == []


class TestCompilerSettings:
    @pytest.mark.parametrize("field,value", [("codec_profile", "ultra"), ("overlay_timing", "audio")])
    def test_rejects_unknown_choices(self, voice_over, field, value):
        with pytest.raises(ValueError, match="Unknown"):
            CompositionCompiler(voice_over, settings=Settings(**{field: value}))
