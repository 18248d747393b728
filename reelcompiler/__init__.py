"""Reel compiler: timeline schema + stills to a narrated vertical MP4."""

from reelcompiler.compiler import CompiledVideo, CompositionCompiler
from reelcompiler.config import Settings, load_settings
from reelcompiler.errors import (
    AssetError,
    CancelledError,
    CompileError,
    DecodeError,
    PlanError,
    RunError,
)
from reelcompiler.schema import decode, encode

__all__ = [
    "CompiledVideo",
    "CompositionCompiler",
    "Settings",
    "load_settings",
    "CompileError",
    "DecodeError",
    "AssetError",
    "PlanError",
    "RunError",
    "CancelledError",
    "decode",
    "encode",
]
