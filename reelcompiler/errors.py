"""Error taxonomy for a compile request.

Every failure reaching the caller is a CompileError whose `kind` tells the
HTTP layer how to respond.
"""

from __future__ import annotations

from typing import Any

_HTTP_STATUS = {
    "decode": 400,
    "asset.narration": 502,
    "asset.music": 502,
    "plan": 400,
    "encoder": 500,
    "io": 500,
    "cancelled": 499,
}

MAX_DETAIL_CHARS = 4000


class CompileError(Exception):
    """Raised when a compile request cannot produce a video."""

    def __init__(self, kind: str, message: str, detail: str | None = None):
        if kind not in _HTTP_STATUS:
            raise ValueError(f"Unknown error kind: {kind}")
        self.kind = kind
        self.message = message
        if detail and len(detail) > MAX_DETAIL_CHARS:
            detail = detail[-MAX_DETAIL_CHARS:]
        self.detail = detail
        super().__init__(f"{kind}: {message}")

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.kind]

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.detail:
            body["detail"] = self.detail
        return body


class DecodeError(CompileError):
    def __init__(self, message: str):
        super().__init__("decode", message)


class AssetError(CompileError):
    """Narration or music could not be produced.

    `asset` is "narration" or "music".
    """

    def __init__(self, asset: str, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(f"asset.{asset}", message)


class PlanError(CompileError):
    def __init__(self, message: str):
        super().__init__("plan", message)


class RunError(CompileError):
    """The encoder exited non-zero or timed out; `detail` is its stderr tail."""

    def __init__(self, message: str, stderr_tail: str = "", returncode: int | None = None):
        self.returncode = returncode
        super().__init__("encoder", message, detail=stderr_tail or None)


class CancelledError(CompileError):
    def __init__(self, message: str = "request cancelled"):
        super().__init__("cancelled", message)
