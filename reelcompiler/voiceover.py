"""Narration via ElevenLabs text-to-speech."""

from __future__ import annotations

import logging
import secrets
import threading
from pathlib import Path
from typing import Protocol

import httpx

from reelcompiler.config import Settings
from reelcompiler.errors import AssetError, CancelledError
from reelcompiler.models import AssetHandle

logger = logging.getLogger(__name__)

_ELEVENLABS_BASE = "https://api.elevenlabs.io/v1"


class VoiceOver(Protocol):
    """Produces one spoken audio file for a list of utterances."""

    def generate_voice_over(
        self,
        utterance_segments: list[str],
        output_dir: Path,
        cancel: threading.Event | None = None,
    ) -> AssetHandle:
        ...


class ElevenLabsVoiceOver:
    """Text-to-speech through the ElevenLabs REST API.

    All segments are joined into one utterance and voiced in a single call;
    the MP3 body is streamed straight to disk.
    """

    def __init__(
        self,
        api_key: str,
        voice_id: str,
        base_url: str = _ELEVENLABS_BASE,
        model_id: str = "eleven_monolingual_v1",
        voice_settings: dict | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.voice_id = voice_id
        self.base_url = base_url.rstrip("/")
        self.model_id = model_id
        self.voice_settings = voice_settings or {}
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, transport: httpx.BaseTransport | None = None) -> ElevenLabsVoiceOver:
        return cls(
            api_key=settings.elevenlabs_api_key,
            voice_id=settings.elevenlabs_voice_id,
            base_url=settings.elevenlabs_base_url,
            model_id=settings.elevenlabs_model_id,
            voice_settings=settings.elevenlabs_voice_settings,
            timeout=settings.asset_timeout,
            transport=transport,
        )

    def _body(self, text: str) -> dict:
        return {
            "text": text,
            "model_id": self.model_id,
            "voice_settings": {
                "stability": self.voice_settings.get("stability", 0.5),
                "similarity_boost": self.voice_settings.get("similarity_boost", 0.5),
                "speed": self.voice_settings.get("speed", 1.0),
            },
        }

    def generate_voice_over(
        self,
        utterance_segments: list[str],
        output_dir: Path,
        cancel: threading.Event | None = None,
    ) -> AssetHandle:
        """Voice the joined segments into `output_dir`, which must exist.

        Setting `cancel` aborts the download between chunks.
        """
        text = " ".join(s.strip() for s in utterance_segments if s.strip())
        if not text:
            raise AssetError("narration", "nothing to narrate")
        if not self.api_key:
            raise AssetError("narration", "ElevenLabs API key is not configured")

        url = f"{self.base_url}/text-to-speech/{self.voice_id}"
        headers = {
            "xi-api-key": self.api_key,
            "Accept": "audio/mpeg",
            "Content-Type": "application/json",
        }

        audio_path = output_dir / f"narration_{secrets.token_hex(6)}.mp3"

        logger.info("Generating narration (voice=%s, model=%s): %r", self.voice_id, self.model_id, text[:80])

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                with client.stream("POST", url, headers=headers, json=self._body(text)) as response:
                    if response.status_code != 200:
                        response.read()
                        raise AssetError(
                            "narration",
                            f"TTS API returned status {response.status_code}: {response.text[:200]}",
                            status_code=response.status_code,
                        )
                    with open(audio_path, "wb") as f:
                        for chunk in response.iter_bytes():
                            if cancel is not None and cancel.is_set():
                                raise CancelledError("narration download abandoned")
                            f.write(chunk)
        except CancelledError:
            audio_path.unlink(missing_ok=True)
            raise
        except httpx.TimeoutException as exc:
            audio_path.unlink(missing_ok=True)
            raise AssetError("narration", f"TTS request timeout: {exc}") from exc
        except httpx.HTTPError as exc:
            audio_path.unlink(missing_ok=True)
            raise AssetError("narration", f"TTS request failed: {exc}") from exc
        except OSError as exc:
            audio_path.unlink(missing_ok=True)
            raise AssetError("narration", f"failed to save audio file: {exc}") from exc

        if audio_path.stat().st_size == 0:
            audio_path.unlink(missing_ok=True)
            raise AssetError("narration", "TTS API returned an empty audio body")

        logger.info("Narration saved: %s (%.1f KB)", audio_path, audio_path.stat().st_size / 1024)
        return AssetHandle.from_path(audio_path, owning_temp_dir=output_dir)
