from __future__ import annotations

import logging
import os
import re
import selectors
import shlex
import shutil
import signal
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from ..errors import ToolError, ToolTimeoutError


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 30
INSTALL_TIMEOUT_SEC = 120
MAX_OUTPUT_BYTES = 64 * 1024
READ_CHUNK_BYTES = 8192
SHELL = shutil.which("bash") or "/bin/sh"

LANGUAGE_TEMPLATES: dict[str, str] = {
    ".py": "{python} {file}",
    ".js": "node {file}",
    ".mjs": "node {file}",
    ".ts": "npx --yes tsx {file}",
    ".sh": "bash {file}",
    ".rb": "ruby {file}",
    ".php": "php {file}",
    ".go": "go run {file}",
    ".c": "gcc {file} -o {out} && {out}",
    ".cpp": "g++ -std=c++17 {file} -o {out} && {out}",
    ".cc": "g++ -std=c++17 {file} -o {out} && {out}",
    ".cxx": "g++ -std=c++17 {file} -o {out} && {out}",
    ".java": "javac -d {outdir} {file} && java -cp {outdir} {stem}",
    ".rs": "rustc {file} -o {out} && {out}",
}

INSTALLERS: dict[str, str] = {
    "pip": "{python} -m pip install",
    "npm": "npm install",
    "yarn": "yarn add",
    "pnpm": "pnpm add",
    "cargo": "cargo add",
    "go": "go get",
    "gem": "gem install",
    "apt": "sudo apt-get install -y",
    "brew": "brew install",
}
PACKAGE_NAME_RE = re.compile(r"^[A-Za-z0-9@._/:=<>~^+\-\[\],]+$")


@dataclass
class CodeCommandResult:
    ok: bool
    command: str
    cwd: str
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int

    def render(self) -> str:
        lines = [f"Exit: {self.exit_code}", f"Duration ms: {self.duration_ms}"]
        if self.stdout:
            lines.append("")
            lines.append("STDOUT:")
            lines.append(self.stdout.rstrip("\n"))
        if self.stderr:
            lines.append("")
            lines.append("STDERR:")
            lines.append(self.stderr.rstrip("\n"))
        if not self.stdout and not self.stderr:
            lines.append("(no output)")
        return "\n".join(lines)


def run_command(
    command: str,
    cwd: Path,
    env: Mapping[str, str] | None = None,
    timeout_sec: int = DEFAULT_TIMEOUT_SEC,
    max_output_bytes: int = MAX_OUTPUT_BYTES,
) -> CodeCommandResult:
    command = (command or "").strip()
    if not command:
        raise ToolError("Command is empty")

    workdir = Path(cwd).expanduser().resolve()
    started = time.monotonic()
    proc = subprocess.Popen(
        [SHELL, "-c", command],
        cwd=str(workdir),
        env=dict(env) if env is not None else None,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=True,
    )
    try:
        raw_out, raw_err = _read_bounded(proc, started + max(1, int(timeout_sec)), max(1, int(max_output_bytes)))
    except subprocess.TimeoutExpired as exc:
        _kill_process_group(proc)
        raise ToolTimeoutError(f"Command '{_preview(command)}'", timeout_sec) from exc
    except _OutputLimitExceeded:
        _kill_process_group(proc)
        raise ToolError(
            f"Command '{_preview(command)}' produced more than {max_output_bytes} bytes of output; process killed"
        ) from None
    finally:
        for stream in (proc.stdout, proc.stderr):
            if stream is not None:
                stream.close()
    elapsed_ms = int((time.monotonic() - started) * 1000)

    return CodeCommandResult(
        ok=proc.returncode == 0,
        command=command,
        cwd=str(workdir),
        exit_code=int(proc.returncode),
        stdout=_decode(raw_out),
        stderr=_decode(raw_err),
        duration_ms=elapsed_ms,
    )


def build_execute_command(path: Path, args: list[str] | None = None) -> str:
    suffix = path.suffix.lower()
    template = LANGUAGE_TEMPLATES.get(suffix)
    if template is None:
        raise ToolError(
            f"Unsupported file type '{suffix or path.name}'. Supported: {', '.join(sorted(LANGUAGE_TEMPLATES))}"
        )
    outdir = Path(tempfile.gettempdir()) / "termagent-build"
    command = template.format(
        python=shlex.quote(sys.executable),
        file=shlex.quote(str(path)),
        out=shlex.quote(str(outdir / path.stem)),
        outdir=shlex.quote(str(outdir)),
        stem=shlex.quote(path.stem),
    )
    if "{out}" in template or "{outdir}" in template:
        command = f"mkdir -p {shlex.quote(str(outdir))} && {command}"
    if args:
        command += " " + " ".join(shlex.quote(str(a)) for a in args)
    return command


def build_install_command(manager: str, packages: list[str]) -> str:
    key = (manager or "").strip().lower()
    template = INSTALLERS.get(key)
    if template is None:
        raise ToolError(f"Unknown package manager '{manager}'. Supported: {', '.join(sorted(INSTALLERS))}")
    if not packages:
        raise ToolError("No packages given")
    for name in packages:
        if not PACKAGE_NAME_RE.match(name):
            raise ToolError(f"Invalid package name: {name!r}")
    base = template.format(python=shlex.quote(sys.executable))
    return base + " " + " ".join(shlex.quote(p) for p in packages)


class _OutputLimitExceeded(Exception):
    pass


def _read_bounded(proc: subprocess.Popen[bytes], deadline: float, limit: int) -> tuple[bytes, bytes]:
    assert proc.stdout is not None and proc.stderr is not None
    buffers = {proc.stdout.fileno(): bytearray(), proc.stderr.fileno(): bytearray()}
    total = 0
    with selectors.DefaultSelector() as selector:
        for fd in buffers:
            selector.register(fd, selectors.EVENT_READ)
        while selector.get_map():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise subprocess.TimeoutExpired(proc.args, 0)
            for key, _ in selector.select(timeout=remaining):
                data = os.read(key.fd, READ_CHUNK_BYTES)
                if not data:
                    selector.unregister(key.fd)
                    continue
                total += len(data)
                if total > limit:
                    raise _OutputLimitExceeded()
                buffers[key.fd] += data
    proc.wait(timeout=max(0.1, deadline - time.monotonic()))
    return bytes(buffers[proc.stdout.fileno()]), bytes(buffers[proc.stderr.fileno()])


def _kill_process_group(proc: subprocess.Popen[bytes]) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError, OSError):
        proc.kill()
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        logger.warning("Process %s did not exit after SIGKILL", proc.pid)


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def _preview(command: str) -> str:
    first = command.split("\n", 1)[0]
    return first if len(first) <= 80 else first[:77] + "..."
