from __future__ import annotations

import logging
import os
import pty
import re
import shlex
from pathlib import Path
from typing import Callable

from .errors import ToolError
from .session import Session
from .tools.codeexec import DEFAULT_TIMEOUT_SEC, MAX_OUTPUT_BYTES, SHELL, run_command


logger = logging.getLogger(__name__)

CD_RE = re.compile(r"^\s*cd(?:\s+(.+))?\s*$")
EXPORT_RE = re.compile(r"^\s*export\s+([A-Za-z_]\w*)=(.*)$")
ANSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07]*\x07")
SHELL_OPERATOR_RE = re.compile(r"[\n;|&]")

Spawner = Callable[..., int]


class CommandExecutor:
    def __init__(
        self,
        session: Session,
        timeout_sec: int = DEFAULT_TIMEOUT_SEC,
        spawner: Spawner = pty.spawn,
    ) -> None:
        self.session = session
        self.timeout_sec = timeout_sec
        self.spawner = spawner

    def run(self, command: str) -> str:
        if not SHELL_OPERATOR_RE.search(command.strip()):
            cd_match = CD_RE.match(command)
            if cd_match:
                return self.change_dir(cd_match.group(1) or "~")
            export_match = EXPORT_RE.match(command)
            if export_match:
                return self.export(export_match.group(1), export_match.group(2))

        try:
            result = run_command(
                command,
                cwd=self.session.working_dir,
                env=self.session.env,
                timeout_sec=self.timeout_sec,
            )
        except ToolError as exc:
            logger.warning("Command failed: %s", exc)
            return f"Error: {exc}"

        if result.ok:
            output = result.stdout
            if result.stderr:
                output = f"{output}{result.stderr}" if output else result.stderr
            return output or "(command completed successfully)"
        detail = result.stderr or result.stdout or "(no output)"
        return f"Error (exit code {result.exit_code}):\n{detail}"

    def change_dir(self, raw_target: str) -> str:
        target = _unquote(raw_target)
        path = Path(target).expanduser()
        if not path.is_absolute():
            path = self.session.working_dir / path
        path = path.resolve()
        if not path.is_dir():
            return f"Error: Directory not found: {path}"
        self.session.change_dir(path)
        return f"Changed directory to: {self.session.working_dir}"

    def export(self, name: str, raw_value: str) -> str:
        value = _unquote(raw_value)
        self.session.export(name, value)
        return f"Exported: {name}={value}"

    def run_interactive(self, command: str) -> str:
        """Run a terminal-owning program attached to a pseudoterminal.

        ``pty.spawn`` switches stdin to raw mode for the duration and restores
        the previous terminal attributes on exit, including when the child is
        killed or the copy loop raises.
        """
        chunks: list[bytes] = []
        size = 0

        def _master_read(fd: int) -> bytes:
            nonlocal size
            data = os.read(fd, 1024)
            if size < MAX_OUTPUT_BYTES:
                chunks.append(data)
                size += len(data)
            return data

        argv = self._interactive_argv(command)
        logger.info("Starting interactive session: %s", command)
        try:
            status = self.spawner(argv, _master_read)
        except OSError as exc:
            return f"Error: could not start interactive session: {exc}"

        transcript = ANSI_RE.sub("", b"".join(chunks).decode("utf-8", errors="replace")).replace("\r\n", "\n")
        transcript = transcript.strip()
        exit_code = os.waitstatus_to_exitcode(status) if isinstance(status, int) and status > 0 else 0
        if exit_code:
            transcript = f"{transcript}\n(exit code {exit_code})".strip()
        return transcript or "(interactive session completed)"

    def _interactive_argv(self, command: str) -> list[str]:
        overlay = [f"{k}={v}" for k, v in self.session.env_overlay.items()]
        script = f"cd {shlex.quote(str(self.session.working_dir))} && exec {command}"
        return ["env", *overlay, SHELL, "-c", script]


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value
