"""Configuration loading.

Settings come from an optional config.yaml and are overridden by
environment variables.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

import yaml

_DEFAULT_CONFIG = "config.yaml"

# env name -> (yaml key, type)
_ENV_KEYS: dict[str, tuple[str, type]] = {
    "APP_ENV": ("app_env", str),
    "PORT": ("port", int),
    "API_KEY": ("api_key", str),
    "ELEVENLABS_API_KEY": ("elevenlabs.api_key", str),
    "ELEVENLABS_BASE_URL": ("elevenlabs.base_url", str),
    "ELEVENLABS_VOICE_ID": ("elevenlabs.voice_id", str),
    "ELEVENLABS_MODEL_ID": ("elevenlabs.model_id", str),
    "MUSIC_BASE_URL": ("music.base_url", str),
    "MUSIC_DIR": ("music.dir", str),
    "MUSIC_STEM_SECONDS": ("music.stem_seconds", float),
    "FFMPEG_BIN": ("ffmpeg_bin", str),
    "TEMP_ROOT": ("temp_root", str),
    "ASSET_TIMEOUT": ("asset_timeout", float),
    "ENCODER_TIMEOUT_PER_SECOND": ("encoder.timeout_per_second", float),
    "ENCODER_TIMEOUT_MIN": ("encoder.timeout_min", float),
    "CODEC_PROFILE": ("encoder.profile", str),
    "OVERLAY_TIMING": ("overlay_timing", str),
    "FONT_FILE": ("text.font_file", str),
    "FONT_SIZE": ("text.font_size", int),
}


@dataclass
class Settings:
    app_env: str = "development"
    port: int = 8080
    api_key: str = ""

    elevenlabs_api_key: str = ""
    elevenlabs_base_url: str = "https://api.elevenlabs.io/v1"
    elevenlabs_voice_id: str = "21m00Tcm4TlvDq8ikWAM"
    elevenlabs_model_id: str = "eleven_monolingual_v1"
    elevenlabs_voice_settings: dict = field(default_factory=dict)

    music_base_url: str = ""
    music_dir: str = ""
    music_stem_seconds: float = 30.0
    music_catalogue: dict[str, list[str]] | None = None

    ffmpeg_bin: str = "ffmpeg"
    temp_root: str = field(default_factory=tempfile.gettempdir)

    asset_timeout: float = 30.0
    encoder_timeout_per_second: float = 20.0
    encoder_timeout_min: float = 120.0
    codec_profile: str = "reels"
    overlay_timing: str = "visual"

    font_file: str = ""
    font_size: int = 24

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    def authorize(self, provided_key: str | None) -> bool:
        """Check a request's API key. Development and unset keys allow all."""
        if self.is_development or not self.api_key:
            return True
        return provided_key == self.api_key

    def validate(self) -> None:
        """Reject unknown codec profiles and overlay timings."""
        if self.codec_profile not in ("reels", "pro"):
            raise ValueError(f"Unknown codec profile: {self.codec_profile}")
        if self.overlay_timing not in ("visual", "text"):
            raise ValueError(f"Unknown overlay timing: {self.overlay_timing}")

    def encoder_timeout(self, duration: float) -> float:
        """Deadline for one encoder run rendering `duration` seconds."""
        return max(self.encoder_timeout_min, duration * self.encoder_timeout_per_second)


def load_config(config_path: str | None = None) -> dict:
    """Load the YAML configuration file.

    A missing default config.yaml is not an error; an explicitly named
    file that does not exist is.
    """
    path = Path(config_path or _DEFAULT_CONFIG)
    if not path.exists():
        if config_path:
            raise FileNotFoundError(f"Config not found: {path}")
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _lookup(config: dict, key_path: str):
    val = config
    for k in key_path.split("."):
        if not isinstance(val, dict) or k not in val:
            return None
        val = val[k]
    return val


def _attr_name(key_path: str) -> str:
    return {
        "music.dir": "music_dir",
        "encoder.profile": "codec_profile",
        "text.font_file": "font_file",
        "text.font_size": "font_size",
    }.get(key_path, key_path.replace(".", "_"))


def load_settings(
    config_path: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build Settings from config.yaml overlaid with the environment."""
    config = load_config(config_path)
    env = os.environ if environ is None else environ
    settings = Settings()

    for env_name, (key_path, typ) in _ENV_KEYS.items():
        raw = env.get(env_name)
        if raw in (None, ""):
            raw = _lookup(config, key_path)
        if raw is None:
            continue
        try:
            value = typ(raw)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid value for {env_name}: {raw!r}") from exc
        setattr(settings, _attr_name(key_path), value)

    voice_settings = _lookup(config, "elevenlabs.voice_settings")
    if isinstance(voice_settings, dict):
        settings.elevenlabs_voice_settings = voice_settings

    catalogue = _lookup(config, "music.catalogue")
    if isinstance(catalogue, dict):
        settings.music_catalogue = {str(k): [str(c) for c in v] for k, v in catalogue.items()}

    settings.validate()

    return settings
