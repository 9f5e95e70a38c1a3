from __future__ import annotations

import fnmatch
import logging
import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import Callable

from ..diff import format_file_change
from ..errors import ToolError, ToolTimeoutError


logger = logging.getLogger(__name__)

IGNORED_DIRS = frozenset(
    {".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build", ".mypy_cache", ".pytest_cache"}
)
MAX_GREP_HITS = 50
MAX_FIND_RESULTS = 200
GREP_TIMEOUT_SEC = 10


class FileBrowser:
    def __init__(self, root: Path | Callable[[], Path], confine: bool = False) -> None:
        self._root = root
        self.confine = confine

    @property
    def root(self) -> Path:
        raw = self._root() if callable(self._root) else self._root
        return Path(raw).expanduser().resolve()

    def resolve(self, user_path: str) -> Path:
        if not str(user_path or "").strip():
            raise ToolError("Missing required parameter: path")
        root = self.root
        candidate = Path(str(user_path)).expanduser()
        full = candidate.resolve() if candidate.is_absolute() else (root / candidate).resolve()
        if self.confine and not _is_relative_to(full, root):
            raise ToolError(f"Path escapes root: {full}")
        return full

    def display(self, path: Path) -> str:
        root = self.root
        return str(path.relative_to(root)) if _is_relative_to(path, root) else str(path)

    def read_text(self, user_path: str) -> str:
        target = self.resolve(user_path)
        if not target.exists():
            raise FileNotFoundError(f"No such file: {target}")
        if target.is_dir():
            raise IsADirectoryError(f"Is a directory: {target}")

        data = target.read_bytes()
        for enc in ("utf-8", "utf-16"):
            try:
                return data.decode(enc)
            except UnicodeDecodeError:
                continue
        return data.decode("utf-8", errors="replace")

    def write_text(self, user_path: str, content: str) -> str:
        target = self.resolve(user_path)
        old = self.read_text(user_path) if target.is_file() else None
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return format_file_change(old, content, self.display(target))

    def append_text(self, user_path: str, content: str) -> str:
        target = self.resolve(user_path)
        old = self.read_text(user_path) if target.is_file() else None
        new = (old or "") + content
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(new, encoding="utf-8")
        return format_file_change(old, new, self.display(target))

    def list_dir(self, user_path: str = ".") -> list[str]:
        target = self.resolve(user_path or ".")
        if not target.exists():
            raise FileNotFoundError(f"No such directory: {target}")
        if not target.is_dir():
            raise NotADirectoryError(f"Not a directory: {target}")
        entries = sorted(target.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
        return [f"{p.name}/" if p.is_dir() else p.name for p in entries]

    def search_text(
        self,
        pattern: str,
        user_path: str = ".",
        ignore_case: bool = False,
        max_hits: int = MAX_GREP_HITS,
        timeout_sec: int = GREP_TIMEOUT_SEC,
    ) -> list[dict[str, str | int]]:
        if not pattern:
            raise ToolError("Missing required parameter: pattern")
        target = self.resolve(user_path or ".")
        if not target.exists():
            raise FileNotFoundError(f"No such path: {target}")

        rg = shutil.which("rg")
        if rg:
            cmd = [rg, "-n", "--no-heading", "--with-filename", "--max-count", str(max_hits)]
            if ignore_case:
                cmd.append("-i")
            cmd.extend(["-e", pattern, str(target)])
            try:
                out = subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=timeout_sec)
            except subprocess.TimeoutExpired as exc:
                raise ToolTimeoutError("grep", timeout_sec) from exc
            if out.returncode in (0, 1):
                return _parse_grep_output(out.stdout, max_hits)
            logger.info("rg failed (%s); falling back to Python search", out.stderr.strip()[:200])

        return _slow_search(pattern, target, ignore_case, max_hits)

    def find_files(self, pattern: str, user_path: str = ".", max_results: int = MAX_FIND_RESULTS) -> list[str]:
        if not pattern:
            raise ToolError("Missing required parameter: pattern")
        target = self.resolve(user_path or ".")
        if not target.is_dir():
            raise NotADirectoryError(f"Not a directory: {target}")
        found: list[str] = []
        for dirpath, dirnames, filenames in os.walk(target):
            dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS)
            for name in sorted(filenames + dirnames):
                if fnmatch.fnmatch(name, pattern):
                    found.append(self.display(Path(dirpath) / name))
                    if len(found) >= max_results:
                        return found
        return found

    def read_lines(self, user_path: str, start: int = 1, end: int | None = None) -> str:
        lines = self.read_text(user_path).split("\n")
        first = max(1, int(start))
        last = len(lines) if end is None else min(len(lines), int(end))
        if first > len(lines):
            raise ToolError(f"start line {first} is past end of file ({len(lines)} lines)")
        if last < first:
            raise ToolError(f"end line {last} is before start line {first}")
        return "\n".join(f"{n:>5}: {lines[n - 1]}" for n in range(first, last + 1))

    def replace_unique(self, user_path: str, old: str, new: str) -> str:
        if not old:
            raise ToolError("Missing required parameter: old")
        target = self.resolve(user_path)
        content = self.read_text(user_path)
        count = content.count(old)
        if count == 0:
            raise ToolError(f"Target string not found in {self.display(target)}")
        if count > 1:
            raise ToolError(
                f"Ambiguous match: target string occurs {count} times in {self.display(target)}; "
                "include more surrounding context"
            )
        updated = content.replace(old, new, 1)
        target.write_text(updated, encoding="utf-8")
        return format_file_change(content, updated, self.display(target))

    def insert_lines(self, user_path: str, line: int, content: str) -> str:
        target = self.resolve(user_path)
        existing = self.read_text(user_path)
        lines = existing.split("\n") if existing else []
        position = int(line)
        if position < 1 or position > len(lines) + 1:
            raise ToolError(f"line must be between 1 and {len(lines) + 1}, got {position}")
        lines[position - 1 : position - 1] = content.split("\n")
        updated = "\n".join(lines)
        target.write_text(updated, encoding="utf-8")
        return format_file_change(existing, updated, self.display(target))

    def tree(self, user_path: str = ".", max_depth: int = 3, max_entries: int = 500) -> str:
        target = self.resolve(user_path or ".")
        if not target.is_dir():
            raise NotADirectoryError(f"Not a directory: {target}")
        rows = [f"{target.name or str(target)}/"]
        count = 0

        def _walk(directory: Path, prefix: str, depth: int) -> None:
            nonlocal count
            if depth > max_depth:
                return
            try:
                children = sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
            except PermissionError:
                rows.append(f"{prefix}└── [permission denied]")
                return
            children = [c for c in children if c.name not in IGNORED_DIRS]
            for idx, child in enumerate(children):
                if count >= max_entries:
                    rows.append(f"{prefix}└── ... (truncated)")
                    return
                count += 1
                last = idx == len(children) - 1
                branch = "└── " if last else "├── "
                rows.append(f"{prefix}{branch}{child.name}{'/' if child.is_dir() else ''}")
                if child.is_dir() and not child.is_symlink():
                    _walk(child, prefix + ("    " if last else "│   "), depth + 1)

        _walk(target, "", 1)
        return "\n".join(rows)


def _parse_grep_output(output: str, max_hits: int) -> list[dict[str, str | int]]:
    rows: list[dict[str, str | int]] = []
    for line in output.splitlines():
        parts = line.split(":", 2)
        if len(parts) != 3 or not parts[1].isdigit():
            continue
        rows.append({"path": parts[0], "line": int(parts[1]), "text": parts[2].strip()})
        if len(rows) >= max_hits:
            break
    return rows


def _slow_search(pattern: str, target: Path, ignore_case: bool, max_hits: int) -> list[dict[str, str | int]]:
    try:
        regex = re.compile(pattern, flags=re.IGNORECASE if ignore_case else 0)
    except re.error as exc:
        raise ToolError(f"Invalid pattern: {exc}") from exc

    rows: list[dict[str, str | int]] = []
    candidates = [target] if target.is_file() else _walk_files(target)
    for path in candidates:
        try:
            text = path.read_text(encoding="utf-8", errors="ignore")
        except OSError:
            continue
        for idx, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                rows.append({"path": str(path), "line": idx, "text": line.strip()})
                if len(rows) >= max_hits:
                    return rows
    return rows


def _walk_files(root: Path) -> list[Path]:
    out: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS)
        out.extend(Path(dirpath) / name for name in sorted(filenames))
    return out


def _is_relative_to(path: Path, base: Path) -> bool:
    try:
        path.relative_to(base)
        return True
    except ValueError:
        return False
