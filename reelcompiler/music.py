"""Background music catalogue.

Clips are grouped by genre and served either from a local directory or an
HTTP root, laid out as ``<root>/<genre>/<clip>``.
"""

from __future__ import annotations

import logging
import random
import threading
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

import httpx

from reelcompiler.config import Settings
from reelcompiler.errors import AssetError, CancelledError
from reelcompiler.models import AssetHandle

logger = logging.getLogger(__name__)

DEFAULT_CATALOGUE: dict[str, list[str]] = {
    "corporate": [
        "Aurora on the Boulevard - National Sweetheart.mp3",
        "Champion - Telecasted.mp3",
        "Crystaline - Quincas Moreira.mp3",
        "Final Soliloquy - Asher Fulero.mp3",
        "Hopeful - Nat Keefe.mp3",
        "Hopeful Freedom - Asher Fulero.mp3",
        "Name The Time And Place - Telecasted.mp3",
        "Organic Guitar House - Dyalla.mp3",
        "Phantom - Density & Time.mp3",
        "Touch - Anno Domini Beats.mp3",
        "Traversing - Godmode.mp3",
    ],
    "upbeat": [
        "Baby Animals Playing - Joel Cummins.mp3",
        "Banjo Doops - Joel Cummins.mp3",
        "Buckle Up - Jeremy Korpas.mp3",
        "Cafecito por la Manana - Cumbia Deli.mp3",
        "Jetski - Telecasted.mp3",
        "Like It Loud - Dyalla.mp3",
        "Oh Please - Telecasted.mp3",
        "Seagull - Telecasted.mp3",
        "Sly Sky - Telecasted.mp3",
        "Twin Engines - Jeremy Korpas.mp3",
    ],
    "realtor": [
        "Heartbeat Of The Wind - Asher Fulero.mp3",
        "Hopeful - Nat Keefe.mp3",
        "Hopeful Freedom - Asher Fulero.mp3",
        "No.2 Remembering Her - Esther Abrami.mp3",
        "Organic Guitar House - Dyalla.mp3",
        "Phantom - Density & Time.mp3",
        "Touch - Anno Domini Beats.mp3",
        "Traversing - Godmode.mp3",
    ],
    "traditional": [
        "Curse of the Witches - Jimena Contreras.mp3",
        "Delayed Baggage - Ryan Stasik.mp3",
        "Honey, I Dismembered The Kids - Ezra Lipp.mp3",
        "Hopeless - Jimena Contreras.mp3",
        "Night Hunt - Jimena Contreras.mp3",
        "On The Hunt - Andrew Langdon.mp3",
        "Restless Heart - Jimena Contreras.mp3",
        "Sinister - Anno Domini Beats.mp3",
    ],
}


class MusicGeneration(Protocol):
    """Returns an untrimmed clip (at least 30 s) for a genre."""

    def generate_music(
        self,
        genre: str,
        output_dir: Path,
        seed: str = "",
        cancel: threading.Event | None = None,
    ) -> AssetHandle:
        ...


def select_clip(catalogue: dict[str, list[str]], genre: str, seed: str = "") -> str:
    """Pick one clip for `genre`; the same seed always picks the same clip."""
    if genre not in catalogue:
        raise AssetError("music", f"unknown music genre '{genre}'")
    clips = catalogue[genre]
    if not clips:
        raise AssetError("music", f"no clips configured for genre '{genre}'")
    rng = random.Random(f"{genre}:{seed}")
    return clips[rng.randrange(len(clips))]


class CatalogueMusic:
    """Music collaborator backed by a clip catalogue.

    With `music_dir` set, clips are read in place and never copied or
    deleted. Otherwise they are downloaded from `base_url` into the
    request directory.
    """

    def __init__(
        self,
        catalogue: dict[str, list[str]] | None = None,
        music_dir: str | Path | None = None,
        base_url: str = "",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.catalogue = catalogue if catalogue is not None else DEFAULT_CATALOGUE
        self.music_dir = Path(music_dir) if music_dir else None
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, transport: httpx.BaseTransport | None = None) -> CatalogueMusic:
        return cls(
            catalogue=settings.music_catalogue,
            music_dir=settings.music_dir or None,
            base_url=settings.music_base_url,
            timeout=settings.asset_timeout,
            transport=transport,
        )

    def genres(self) -> list[str]:
        return sorted(self.catalogue)

    def generate_music(
        self,
        genre: str,
        output_dir: Path,
        seed: str = "",
        cancel: threading.Event | None = None,
    ) -> AssetHandle:
        clip = select_clip(self.catalogue, genre, seed)
        logger.info("Selected music clip for %s: %s", genre, clip)
        if self.music_dir is not None:
            return self._local_clip(genre, clip)
        if self.base_url:
            return self._download_clip(genre, clip, output_dir, cancel)
        raise AssetError("music", "no music catalogue configured (set MUSIC_DIR or MUSIC_BASE_URL)")

    def _local_clip(self, genre: str, clip: str) -> AssetHandle:
        path = self.music_dir / genre / clip
        if not path.is_file():
            raise AssetError("music", f"music clip not found: {path}")
        return AssetHandle.from_path(path)

    def _download_clip(
        self,
        genre: str,
        clip: str,
        output_dir: Path,
        cancel: threading.Event | None = None,
    ) -> AssetHandle:
        """Stream the clip into `output_dir`, which must already exist."""
        url = f"{self.base_url}/{quote(genre)}/{quote(clip)}"
        dest = output_dir / f"music_source{Path(clip).suffix or '.mp3'}"

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport, follow_redirects=True) as client:
                with client.stream("GET", url) as response:
                    if response.status_code >= 300:
                        raise AssetError(
                            "music",
                            f"music download failed: HTTP {response.status_code}",
                            status_code=response.status_code,
                        )
                    with open(dest, "wb") as f:
                        for chunk in response.iter_bytes():
                            if cancel is not None and cancel.is_set():
                                raise CancelledError("music download abandoned")
                            f.write(chunk)
        except CancelledError:
            dest.unlink(missing_ok=True)
            raise
        except httpx.HTTPError as exc:
            dest.unlink(missing_ok=True)
            raise AssetError("music", f"failed to GET music: {exc}") from exc
        except OSError as exc:
            dest.unlink(missing_ok=True)
            raise AssetError("music", f"failed to write music file: {exc}") from exc

        logger.info("Downloaded %s (%.1f KB)", dest, dest.stat().st_size / 1024)
        return AssetHandle.from_path(dest, owning_temp_dir=output_dir)

