"""Utility helpers for running subprocesses consistently."""

from __future__ import annotations

import json
import os
import shlex
import shutil
import subprocess
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

EXIT_NOT_FOUND = 127
EXIT_TIMEOUT = 124


@dataclass(slots=True)
class CommandError(RuntimeError):
    """Raised when a subprocess exits with a non-zero status."""

    command: Sequence[str]
    returncode: int
    stderr: str | None = None

    def __str__(self) -> str:
        message = f"{format_command(self.command)} exited with status {self.returncode}"
        if self.stderr:
            stderr = self.stderr.strip()
            if stderr:
                message = f"{message}\n{stderr}"
        return message


@dataclass(slots=True)
class CommandResult:
    command: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def format_command(command: Sequence[str]) -> str:
    """Render a subprocess command for display or logging."""

    return " ".join(shlex.quote(part) for part in command)


def _merge_env(env: Mapping[str, str] | None) -> Mapping[str, str] | None:
    if env is None:
        return None
    merged = os.environ.copy()
    merged.update(env)
    return merged


def run_commands(
    commands: Iterable[Sequence[str]],
    *,
    dry_run: bool = False,
    env: Mapping[str, str] | None = None,
    cwd: os.PathLike[str] | str | None = None,
) -> None:
    """Run each command, stopping at the first failure.

    When ``dry_run`` is ``True`` the commands are only printed.
    """

    process_env = _merge_env(env)

    for command in commands:
        printable = format_command(command)
        print(f"$ {printable}", flush=True)
        if dry_run:
            continue
        result = subprocess.run(
            command,
            env=process_env,
            check=False,
            text=True,
            stderr=subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
        )
        if result.returncode != 0:
            raise CommandError(command, result.returncode, stderr=result.stderr)


class CommandRunner:
    """Execute commands with dry-run support and a default timeout.

    ``run`` raises :class:`CommandError` on a non-zero exit unless ``check`` is
    false. A missing executable surfaces as exit status 127 and a timeout as
    124 so callers only ever deal with one error type.
    """

    def __init__(
        self,
        *,
        dry_run: bool = False,
        timeout: float | None = None,
        echo: Callable[[str], None] | None = None,
    ) -> None:
        self.dry_run = dry_run
        self.timeout = timeout
        self._echo = echo or (lambda message: print(message, flush=True))

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        cwd: os.PathLike[str] | str | None = None,
        env: Mapping[str, str] | None = None,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
        quiet: bool = False,
    ) -> CommandResult:
        args = [str(part) for part in command]
        if not args:
            raise ValueError("command must not be empty")
        printable = format_command(args)
        if stdin_path is not None:
            printable = f"{printable} < {stdin_path}"
        if stdout_path is not None:
            printable = f"{printable} > {stdout_path}"

        if self.dry_run:
            if not quiet:
                self._echo(f"DRY-RUN: {printable}")
            return CommandResult(args, 0)
        if not quiet:
            self._echo(f"$ {printable}")

        stdin_handle: IO[str] | None = None
        stdout_handle: IO[str] | None = None
        try:
            if stdin_path is not None:
                stdin_handle = Path(stdin_path).open("r", encoding="utf-8", errors="replace")
            if stdout_path is not None:
                Path(stdout_path).parent.mkdir(parents=True, exist_ok=True)
                stdout_handle = Path(stdout_path).open("w", encoding="utf-8")
            result = self._spawn(
                args,
                cwd=str(cwd) if cwd is not None else None,
                env=_merge_env(env),
                stdin=stdin_handle,
                stdout=stdout_handle,
            )
        finally:
            if stdin_handle is not None:
                stdin_handle.close()
            if stdout_handle is not None:
                stdout_handle.close()

        if check and result.returncode != 0:
            raise CommandError(args, result.returncode, stderr=result.stderr)
        return result

    def capture(self, command: Sequence[str], **kwargs: Any) -> str:
        kwargs.setdefault("quiet", True)
        result = self.run(command, **kwargs)
        return (result.stdout or "").strip()

    def json(self, command: Sequence[str], **kwargs: Any) -> Any:
        output = self.capture(command, **kwargs)
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError:
            return None

    def succeeds(self, command: Sequence[str]) -> bool:
        """Return whether ``command`` exits zero; used for probes."""

        if self.dry_run:
            return False
        return self.run(command, check=False, quiet=True).ok

    def which(self, name: str) -> str | None:
        return shutil.which(name)

    def _spawn(
        self,
        args: list[str],
        *,
        cwd: str | None,
        env: Mapping[str, str] | None,
        stdin: IO[str] | None,
        stdout: IO[str] | None,
    ) -> CommandResult:
        try:
            completed = subprocess.run(
                args,
                check=False,
                text=True,
                cwd=cwd,
                env=env,
                stdin=stdin,
                stdout=stdout if stdout is not None else subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            return CommandResult(args, EXIT_NOT_FOUND, "", f"executable not found: {exc}")
        except subprocess.TimeoutExpired as exc:
            stdout_text = exc.stdout if isinstance(exc.stdout, str) else ""
            stderr_text = exc.stderr if isinstance(exc.stderr, str) else ""
            return CommandResult(args, EXIT_TIMEOUT, stdout_text, stderr_text + "\ncommand timed out")
        return CommandResult(
            args,
            completed.returncode,
            completed.stdout if stdout is None else "",
            completed.stderr or "",
        )
