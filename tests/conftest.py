"""Shared test fixtures for reelcompiler tests.

The encoder is replaced by a small Python script so no ffmpeg install is
needed. Its behaviour is driven by FAKE_FFMPEG_MODE (ok | fail | hang) and
every invocation is appended to FAKE_FFMPEG_LOG as a JSON list.
"""

import copy
import json
import sys
import textwrap
from pathlib import Path

import pytest

from reelcompiler.config import Settings
from reelcompiler.errors import AssetError
from reelcompiler.models import AssetHandle

_FAKE_FFMPEG = textwrap.dedent("""\
    import json, os, sys, time

    args = sys.argv[1:]
    log = os.environ.get("FAKE_FFMPEG_LOG")
    if log:
        with open(log, "a") as f:
            f.write(json.dumps(args) + "\\n")

    mode = os.environ.get("FAKE_FFMPEG_MODE", "ok")
    if mode == "fail":
        for i in range(200):
            sys.stderr.write("frame=%d fps=0.0 q=0.0 size=0kB\\n" % i)
        sys.stderr.write("Error initializing complex filters.\\n")
        sys.exit(1)
    if mode == "hang":
        time.sleep(60)

    with open(args[-1], "wb") as f:
        f.write(b"\\x00\\x00\\x00\\x18ftypmp42" + b"\\x00" * 4096)
""")

BASE_TIMELINE = {
    "metadata": {
        "resolution": [1080, 1920],
        "totalDuration": 6,
        "aspectRatio": "9:16",
        "fps": "30",
    },
    "theme": {"style": "modern", "grading": "warm"},
    "timeline": {
        "totalDuration": 6,
        "ImageTimeline": {
            "ImageSegments": [
                {
                    "ordering": 0,
                    "imageIndex": 0,
                    "startTime": 0,
                    "duration": 6,
                    "Transition": {"effect": "fade", "easing": "linear"},
                },
            ],
        },
        "TextTimeline": {
            "TextStyle": {"fontFamily": "Inter", "textStyle": "bold"},
            "TextSegments": [
                {
                    "text": "Hello",
                    "startTime": 0,
                    "duration": 6,
                    "position": "center-bottom",
                    "narrativeSource": "hook",
                },
            ],
        },
    },
    "music": {"enabled": False, "genre": "", "volume": 0.3},
}


def _two_segment(timeline: dict) -> dict:
    timeline["metadata"]["totalDuration"] = 6
    timeline["timeline"]["ImageTimeline"]["ImageSegments"] = [
        {"ordering": 0, "imageIndex": 0, "startTime": 0, "duration": 3},
        {"ordering": 1, "imageIndex": 1, "startTime": 3, "duration": 3},
    ]
    timeline["timeline"]["TextTimeline"]["TextSegments"] = [
        {"text": "First", "startTime": 0, "duration": 3, "position": "center"},
        {"text": "Second", "startTime": 3, "duration": 3, "position": "center-left"},
    ]
    return timeline


class FakeVoiceOver:
    """Writes a dummy MP3 into the request directory."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[list[str]] = []

    def generate_voice_over(self, utterance_segments, output_dir, cancel=None):
        self.calls.append(list(utterance_segments))
        if self.fail:
            raise AssetError("narration", "TTS API returned status 503: upstream unavailable", status_code=503)
        path = Path(output_dir) / "narration.mp3"
        path.write_bytes(b"ID3fake-narration")
        return AssetHandle.from_path(path, owning_temp_dir=Path(output_dir))


class FakeMusic:
    """Serves one clip per genre from a read-only catalogue directory."""

    def __init__(self, catalogue_dir: Path, genres=("upbeat",)) -> None:
        self.catalogue_dir = catalogue_dir
        self.genres = genres
        self.calls: list[tuple[str, str]] = []
        catalogue_dir.mkdir(parents=True, exist_ok=True)
        for genre in genres:
            (catalogue_dir / f"{genre}.mp3").write_bytes(b"ID3fake-music")

    def generate_music(self, genre, output_dir, seed="", cancel=None):
        self.calls.append((genre, seed))
        if genre not in self.genres:
            raise AssetError("music", f"unknown music genre '{genre}'")
        return AssetHandle.from_path(self.catalogue_dir / f"{genre}.mp3")


@pytest.fixture
def timeline():
    """A fresh copy of the minimal one-image, one-caption timeline."""
    return copy.deepcopy(BASE_TIMELINE)


@pytest.fixture
def two_segment_timeline():
    return _two_segment(copy.deepcopy(BASE_TIMELINE))


@pytest.fixture
def media(tmp_path):
    """Two placeholder stills."""
    paths = []
    for name in ("a.jpg", "b.jpg"):
        p = tmp_path / "media" / name
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(b"\xff\xd8\xff\xe0fake-jpeg")
        paths.append(str(p))
    return paths


@pytest.fixture
def fake_ffmpeg(tmp_path, monkeypatch):
    """Command prefix for the fake encoder, logging to tmp_path/ffmpeg.log."""
    script = tmp_path / "fake_ffmpeg.py"
    script.write_text(_FAKE_FFMPEG)
    monkeypatch.setenv("FAKE_FFMPEG_LOG", str(tmp_path / "ffmpeg.log"))
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "ok")
    return [sys.executable, str(script)]


@pytest.fixture
def ffmpeg_calls(tmp_path):
    """Reads back the fake encoder's invocations."""
    def _calls():
        log = tmp_path / "ffmpeg.log"
        if not log.exists():
            return []
        return [json.loads(line) for line in log.read_text().splitlines() if line]
    return _calls


@pytest.fixture
def scratch(tmp_path):
    """Temp root for request directories."""
    return tmp_path / "scratch"


@pytest.fixture
def settings(scratch):
    return Settings(temp_root=str(scratch), asset_timeout=5.0, encoder_timeout_min=10.0)


@pytest.fixture
def voice_over():
    return FakeVoiceOver()


@pytest.fixture
def music(tmp_path):
    return FakeMusic(tmp_path / "catalogue")


@pytest.fixture
def make_voice_over():
    return FakeVoiceOver
