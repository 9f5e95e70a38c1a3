from pathlib import Path
import shlex
import sys
import time

import pytest

from termagent.errors import ToolError, ToolTimeoutError
from termagent.tools.codeexec import build_execute_command, build_install_command, run_command


def test_run_command_python_smoke(tmp_path: Path) -> None:
    result = run_command(f"{shlex.quote(sys.executable)} -c \"print('codeexec-ok')\"", cwd=tmp_path)
    assert result.ok is True
    assert result.exit_code == 0
    assert "codeexec-ok" in result.stdout
    assert result.render().startswith("Exit: 0\nDuration ms:")


def test_run_command_nonzero_exit(tmp_path: Path) -> None:
    result = run_command("echo bad >&2; exit 4", cwd=tmp_path)
    assert result.ok is False
    assert result.exit_code == 4
    assert "STDERR:\nbad" in result.render()


def test_run_command_rejects_empty(tmp_path: Path) -> None:
    with pytest.raises(ToolError):
        run_command("   ", cwd=tmp_path)


def test_run_command_kills_on_timeout(tmp_path: Path) -> None:
    with pytest.raises(ToolTimeoutError):
        run_command("sleep 10", cwd=tmp_path, timeout_sec=1)


def test_run_command_rejects_output_over_limit(tmp_path: Path) -> None:
    cmd = f"{shlex.quote(sys.executable)} -c \"print('x' * 5000)\""
    with pytest.raises(ToolError, match="more than 1000 bytes of output"):
        run_command(cmd, cwd=tmp_path, max_output_bytes=1000)


def test_run_command_output_at_limit_is_kept(tmp_path: Path) -> None:
    cmd = f"{shlex.quote(sys.executable)} -c \"import sys; sys.stdout.write('x' * 1000)\""
    result = run_command(cmd, cwd=tmp_path, max_output_bytes=1000)
    assert result.ok is True
    assert result.stdout == "x" * 1000


def test_run_command_stops_endless_output_early(tmp_path: Path) -> None:
    started = time.monotonic()
    with pytest.raises(ToolError, match="process killed") as excinfo:
        run_command("yes", cwd=tmp_path, timeout_sec=20, max_output_bytes=64 * 1024)
    assert not isinstance(excinfo.value, ToolTimeoutError)
    assert time.monotonic() - started < 10


def test_run_command_unquoted_path_with_spaces(tmp_path: Path) -> None:
    spaced = tmp_path / "folder with spaces"
    spaced.mkdir()
    result = run_command("pwd", cwd=spaced)
    assert result.ok is True
    assert result.stdout.strip().endswith("folder with spaces")


def test_build_execute_command_templates() -> None:
    assert build_execute_command(Path("/w/app.py")) == f"{shlex.quote(sys.executable)} /w/app.py"
    assert build_execute_command(Path("/w/app.js"), ["--port", "80"]) == "node /w/app.js --port 80"
    compiled = build_execute_command(Path("/w/main.c"))
    assert compiled.startswith("mkdir -p ")
    assert "gcc /w/main.c -o " in compiled
    with pytest.raises(ToolError, match="Unsupported file type"):
        build_execute_command(Path("/w/notes.txt"))


def test_build_install_command() -> None:
    assert build_install_command("npm", ["left-pad", "@types/node"]) == "npm install left-pad @types/node"
    assert build_install_command("PIP", ["requests>=2"]).endswith("-m pip install 'requests>=2'")
    with pytest.raises(ToolError):
        build_install_command("conda", ["numpy"])
    with pytest.raises(ToolError):
        build_install_command("pip", [])
    with pytest.raises(ToolError):
        build_install_command("pip", ["$(reboot)"])
