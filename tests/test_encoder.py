"""Tests for the encoder runner, using the fake ffmpeg script."""

import threading
import time

import pytest

from reelcompiler.encoder import STDERR_TAIL_LINES, EncoderRunner
from reelcompiler.errors import CancelledError, RunError


@pytest.fixture
def output(tmp_path):
    return tmp_path / "output.mp4"


class TestEncoderRunner:
    def test_success_returns_open_stream(self, fake_ffmpeg, ffmpeg_calls, output):
        runner = EncoderRunner(fake_ffmpeg)
        with runner.run(["-y", "-i", "a.jpg", str(output)], output) as stream:
            assert stream.read(8)[4:8] == b"ftyp"
        assert ffmpeg_calls() == [["-y", "-i", "a.jpg", str(output)]]

    def test_failure_keeps_stderr_tail(self, fake_ffmpeg, monkeypatch, output):
        monkeypatch.setenv("FAKE_FFMPEG_MODE", "fail")
        runner = EncoderRunner(fake_ffmpeg)
        with pytest.raises(RunError) as info:
            runner.run(["-y", str(output)], output)
        err = info.value
        assert err.kind == "encoder"
        assert err.returncode == 1
        assert err.detail.endswith("Error initializing complex filters.")
        assert len(err.detail.splitlines()) == STDERR_TAIL_LINES
        assert "frame=0 " not in err.detail

    def test_timeout_terminates(self, fake_ffmpeg, monkeypatch, output):
        monkeypatch.setenv("FAKE_FFMPEG_MODE", "hang")
        runner = EncoderRunner(fake_ffmpeg)
        started = time.monotonic()
        with pytest.raises(RunError, match="timed out"):
            runner.run(["-y", str(output)], output, timeout=0.5)
        assert time.monotonic() - started < 10

    def test_cancel_terminates(self, fake_ffmpeg, monkeypatch, output):
        monkeypatch.setenv("FAKE_FFMPEG_MODE", "hang")
        runner = EncoderRunner(fake_ffmpeg)
        cancel = threading.Event()
        threading.Timer(0.5, cancel.set).start()
        started = time.monotonic()
        with pytest.raises(CancelledError) as info:
            runner.run(["-y", str(output)], output, cancel=cancel)
        assert info.value.kind == "cancelled"
        assert time.monotonic() - started < 10

    def test_missing_binary(self, output):
        with pytest.raises(RunError, match="failed to start"):
            EncoderRunner("/nonexistent/ffmpeg").run(["-y", str(output)], output)

    def test_check_available(self):
        with pytest.raises(RunError, match="not found on PATH"):
            EncoderRunner("definitely-not-ffmpeg-xyz").check_available()
