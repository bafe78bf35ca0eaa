"""Operator-facing log stream shared by every phase."""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path


class Console:
    """Print progress lines and optionally mirror them into a log file."""

    def __init__(self, log_file: Path | None = None) -> None:
        self.log_file = log_file
        if self.log_file is not None:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)

    def step(self, message: str) -> None:
        self._emit(f"==> {message}")

    def info(self, message: str) -> None:
        self._emit(f"  {message}")

    def warn(self, message: str) -> None:
        self._emit(f"  [WARN] {message}")

    def error(self, message: str) -> None:
        self._emit(f"  [ERROR] {message}", stream=sys.stderr)

    def echo(self, message: str) -> None:
        self._emit(f"    {message}")

    def _emit(self, line: str, *, stream=None) -> None:
        print(line, file=stream or sys.stdout, flush=True)
        if self.log_file is None:
            return
        timestamp = datetime.now(timezone.utc).isoformat()
        with self.log_file.open("a", encoding="utf-8") as handle:
            handle.write(f"{timestamp} {line}\n")
