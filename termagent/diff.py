from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Literal, Sequence


DiffKind = Literal["same", "add", "delete"]

CONTEXT_LINES = 2
CREATE_PREVIEW_LINES = 10


@dataclass(frozen=True)
class DiffEntry:
    kind: DiffKind
    content: str
    old_line: int | None = None
    new_line: int | None = None


def split_lines(text: str | None) -> list[str]:
    if not text:
        return []
    return text.split("\n")


def compute_diff(old_lines: Sequence[str], new_lines: Sequence[str]) -> list[DiffEntry]:
    """Greedy two-cursor line diff.

    An old line is reported as deleted only when it no longer occurs anywhere
    in the unconsumed part of the new sequence; otherwise the new line under
    the cursor is reported as added. The result is not a minimal edit script.
    """
    remaining = Counter(new_lines)
    entries: list[DiffEntry] = []
    i = j = 0
    while i < len(old_lines) or j < len(new_lines):
        if i < len(old_lines) and j < len(new_lines) and old_lines[i] == new_lines[j]:
            entries.append(DiffEntry("same", old_lines[i], old_line=i + 1, new_line=j + 1))
            remaining[new_lines[j]] -= 1
            i += 1
            j += 1
        elif i < len(old_lines) and (j >= len(new_lines) or remaining[old_lines[i]] <= 0):
            entries.append(DiffEntry("delete", old_lines[i], old_line=i + 1))
            i += 1
        else:
            entries.append(DiffEntry("add", new_lines[j], new_line=j + 1))
            remaining[new_lines[j]] -= 1
            j += 1
    return entries


def replay_new(entries: Sequence[DiffEntry]) -> list[str]:
    return [e.content for e in entries if e.kind in ("same", "add")]


def replay_old(entries: Sequence[DiffEntry]) -> list[str]:
    return [e.content for e in entries if e.kind in ("same", "delete")]


def has_changes(entries: Sequence[DiffEntry]) -> bool:
    return any(e.kind != "same" for e in entries)


def render_diff(entries: Sequence[DiffEntry], path: str, context: int = CONTEXT_LINES) -> str:
    if not has_changes(entries):
        return f"{path}: no changes"

    added = sum(1 for e in entries if e.kind == "add")
    deleted = sum(1 for e in entries if e.kind == "delete")
    lines = [f"--- {path} (+{added} -{deleted})"]

    changed = [idx for idx, e in enumerate(entries) if e.kind != "same"]
    last_shown = -1
    for idx, entry in enumerate(entries):
        if entry.kind == "same" and not _near_change(idx, changed, context):
            continue
        if last_shown >= 0 and idx > last_shown + 1:
            lines.append("     ...")
        lines.append(_render_entry(entry))
        last_shown = idx
    return "\n".join(lines)


def render_create(content: str, path: str, preview_lines: int = CREATE_PREVIEW_LINES) -> str:
    body = split_lines(content)
    lines = [f"+++ {path} (new file, {len(body)} lines)"]
    for number, text in enumerate(body[:preview_lines], start=1):
        lines.append(f"{number:>4} | + {text}")
    if len(body) > preview_lines:
        lines.append(f"     ... +{len(body) - preview_lines} more lines")
    return "\n".join(lines)


def format_file_change(old_content: str | None, new_content: str, path: str) -> str:
    if old_content is None:
        return render_create(new_content, path)
    entries = compute_diff(split_lines(old_content), split_lines(new_content))
    return render_diff(entries, path)


def _near_change(idx: int, changed: list[int], context: int) -> bool:
    return any(abs(idx - c) <= context for c in changed)


def _render_entry(entry: DiffEntry) -> str:
    if entry.kind == "delete":
        return f"{entry.old_line:>4} | - {entry.content}"
    if entry.kind == "add":
        return f"{entry.new_line:>4} | + {entry.content}"
    return f"{entry.new_line or entry.old_line:>4} |   {entry.content}"
