from __future__ import annotations

import os
import re
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path

from .filesystem import IGNORED_DIRS


LANGUAGES: dict[str, str] = {
    ".py": "Python",
    ".js": "JavaScript",
    ".mjs": "JavaScript",
    ".jsx": "JavaScript",
    ".ts": "TypeScript",
    ".tsx": "TypeScript",
    ".go": "Go",
    ".rs": "Rust",
    ".c": "C",
    ".h": "C",
    ".cpp": "C++",
    ".cc": "C++",
    ".cxx": "C++",
    ".hpp": "C++",
    ".java": "Java",
    ".rb": "Ruby",
    ".php": "PHP",
    ".sh": "Shell",
    ".html": "HTML",
    ".css": "CSS",
    ".md": "Markdown",
}

SYMBOL_PATTERNS: dict[str, re.Pattern[str]] = {
    "Python": re.compile(r"^(?:async\s+)?(def|class)\s+([A-Za-z_]\w*)"),
    "JavaScript": re.compile(r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?(function|class)\s+([A-Za-z_$][\w$]*)"),
    "TypeScript": re.compile(
        r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?(function|class|interface|type)\s+([A-Za-z_$][\w$]*)"
    ),
    "Go": re.compile(r"^(func|type)\s+(?:\([^)]*\)\s*)?([A-Za-z_]\w*)"),
    "Rust": re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?(fn|struct|enum|trait|impl)\s+([A-Za-z_]\w*)"),
    "Java": re.compile(r"^(?:public\s+|private\s+|protected\s+)?(?:abstract\s+|final\s+)?(class|interface|enum)\s+(\w+)"),
    "Ruby": re.compile(r"^(def|class|module)\s+([A-Za-z_][\w.?!]*)"),
}
MAX_SYMBOLS = 60
MAX_FILE_BYTES = 2 * 1024 * 1024


@dataclass
class LanguageStats:
    files: int = 0
    lines: int = 0
    blank: int = 0


@dataclass
class CodeStats:
    root: Path
    languages: dict[str, LanguageStats] = field(default_factory=dict)
    symbols: list[tuple[str, int, str, str]] = field(default_factory=list)
    symbols_truncated: bool = False

    def render(self) -> str:
        if not self.languages:
            return f"No recognised source files under {self.root}"
        lines = [f"Code statistics for {self.root}", ""]
        lines.append(f"{'Language':<12} {'Files':>6} {'Lines':>8} {'Blank':>7}")
        total_files = total_lines = 0
        for name, stats in sorted(self.languages.items(), key=lambda kv: -kv[1].lines):
            lines.append(f"{name:<12} {stats.files:>6} {stats.lines:>8} {stats.blank:>7}")
            total_files += stats.files
            total_lines += stats.lines
        lines.append(f"{'Total':<12} {total_files:>6} {total_lines:>8}")
        if self.symbols:
            lines.append("")
            lines.append("Top-level symbols:")
            for path, line, kind, name in self.symbols:
                lines.append(f"  {path}:{line} {kind} {name}")
            if self.symbols_truncated:
                lines.append("  ... (more symbols omitted)")
        return "\n".join(lines)


def collect_code_stats(root: Path, max_symbols: int = MAX_SYMBOLS) -> CodeStats:
    root = Path(root).resolve()
    stats = CodeStats(root=root)
    languages: dict[str, LanguageStats] = defaultdict(LanguageStats)
    files = [root] if root.is_file() else _source_files(root)

    for path in files:
        language = LANGUAGES.get(path.suffix.lower())
        if language is None:
            continue
        try:
            if path.stat().st_size > MAX_FILE_BYTES:
                continue
            text = path.read_text(encoding="utf-8", errors="ignore")
        except OSError:
            continue

        body = text.splitlines()
        entry = languages[language]
        entry.files += 1
        entry.lines += len(body)
        entry.blank += sum(1 for line in body if not line.strip())

        pattern = SYMBOL_PATTERNS.get(language)
        if pattern is None:
            continue
        rel = str(path.relative_to(root)) if path != root else path.name
        for number, line in enumerate(body, start=1):
            match = pattern.match(line)
            if not match:
                continue
            if len(stats.symbols) >= max_symbols:
                stats.symbols_truncated = True
                break
            stats.symbols.append((rel, number, match.group(1), match.group(2)))

    stats.languages = dict(languages)
    return stats


def _source_files(root: Path) -> list[Path]:
    out: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS and not d.startswith("."))
        out.extend(Path(dirpath) / name for name in sorted(filenames))
    return out
