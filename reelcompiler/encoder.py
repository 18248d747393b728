"""Encoder runner: execute ffmpeg and hand back the rendered file."""

from __future__ import annotations

import logging
import shutil
import subprocess
import threading
import time
from collections import deque
from pathlib import Path
from typing import BinaryIO, Sequence

from reelcompiler.errors import CancelledError, CompileError, RunError

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 40
_POLL_INTERVAL = 0.2
_TERMINATE_GRACE = 5.0


class StderrTail:
    """Drain a pipe on a background thread, keeping only the last lines."""

    def __init__(self, pipe, max_lines: int = STDERR_TAIL_LINES) -> None:
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._thread = threading.Thread(target=self._drain, args=(pipe,), daemon=True)
        self._thread.start()

    def _drain(self, pipe) -> None:
        with pipe:
            for raw in iter(pipe.readline, b""):
                self._lines.append(raw.decode("utf-8", errors="replace").rstrip())

    def text(self, join_timeout: float = 1.0) -> str:
        self._thread.join(join_timeout)
        return "\n".join(self._lines)


class EncoderRunner:
    """Runs one encoder process per call.

    `ffmpeg_bin` may be a binary name or a full command prefix.
    """

    def __init__(self, ffmpeg_bin: str | Sequence[str] = "ffmpeg") -> None:
        self.prefix = [ffmpeg_bin] if isinstance(ffmpeg_bin, str) else list(ffmpeg_bin)

    def check_available(self) -> None:
        if len(self.prefix) == 1 and shutil.which(self.prefix[0]) is None:
            raise RunError(
                f"{self.prefix[0]} not found on PATH. Install it (e.g. `apt install ffmpeg`) and retry."
            )

    def run(
        self,
        argv: Sequence[str],
        output_path: str | Path,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> BinaryIO:
        """Run the encoder and open its output for reading.

        Args:
            argv: Arguments after the binary, as built by the assembler.
            output_path: File the encoder writes; opened on success.
            timeout: Seconds before the process is terminated.
            cancel: Set to terminate the process early.

        Returns:
            The output file opened in binary read mode.

        Raises:
            RunError: Non-zero exit, timeout, or missing output.
            CancelledError: `cancel` was set while encoding.
        """
        cmd = [*self.prefix, *argv]
        logger.debug("Running: %s", " ".join(cmd))
        started = time.monotonic()
        try:
            proc = subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
        except OSError as exc:
            raise RunError(f"failed to start encoder: {exc}") from exc

        tail = StderrTail(proc.stderr)
        deadline = started + timeout if timeout else None
        try:
            while True:
                try:
                    proc.wait(timeout=_POLL_INTERVAL)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if cancel is not None and cancel.is_set():
                    self._terminate(proc)
                    raise CancelledError("request cancelled while encoding")
                if deadline is not None and time.monotonic() > deadline:
                    self._terminate(proc)
                    raise RunError(f"encoder timed out after {timeout:.0f}s", tail.text())
        except BaseException:
            if proc.poll() is None:
                self._terminate(proc)
            raise

        elapsed = time.monotonic() - started
        if proc.returncode != 0:
            stderr = tail.text()
            logger.error("Encoder failed (exit %d) after %.1fs", proc.returncode, elapsed)
            raise RunError(f"ffmpeg failed (exit {proc.returncode})", stderr, returncode=proc.returncode)

        output = Path(output_path)
        try:
            stream = open(output, "rb")
        except OSError as exc:
            raise CompileError("io", f"encoder produced no output at {output}: {exc}") from exc
        logger.info("Encoded %s in %.1fs (%.1f KB)", output.name, elapsed, output.stat().st_size / 1024)
        return stream

    @staticmethod
    def _terminate(proc: subprocess.Popen) -> None:
        """Ask the process to stop, then kill it if it ignores us."""
        proc.terminate()
        try:
            proc.wait(timeout=_TERMINATE_GRACE)
        except subprocess.TimeoutExpired:
            logger.warning("Encoder ignored SIGTERM; killing pid %d", proc.pid)
            proc.kill()
            proc.wait()
