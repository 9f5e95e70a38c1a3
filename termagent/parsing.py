from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any


logger = logging.getLogger(__name__)

TOOL_OPEN = "<tool>"
TOOL_CLOSE = "</tool>"
PARAMS_OPEN = "<params>"
PARAMS_CLOSE = "</params>"

SHELL_FENCE_TAGS = {"", "bash", "sh", "shell"}
LABEL_RE = re.compile(r"^\s*(bash|shell)\s*$", flags=re.IGNORECASE)
HEREDOC_RE = re.compile(r"(?<!<)<<(?!<)-?\s*(['\"]?)(\w+)\1")
CONTINUATION_RE = re.compile(r"\\\s*\n")

DEGRADED_PATH_RE = re.compile(r'"path"\s*:\s*"([^"]+)"')
DEGRADED_CONTENT_RE = re.compile(r'"content"\s*:\s*"([\s\S]*?)"\s*}?\s*$')
JSON_ESCAPE_RE = re.compile(r"\\(u[0-9a-fA-F]{4}|[\"\\/bfnrt])")
JSON_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}


@dataclass(frozen=True)
class ToolCall:
    tool: str
    params: dict[str, Any] = field(default_factory=dict)


class ToolCallScanner:
    """Scans model output for ``<tool>NAME</tool><params>JSON</params>`` pairs.

    The scanner walks the text tag by tag instead of matching one large
    pattern. A ``<tool>`` tag that is not directly followed by ``<params>`` is
    skipped and scanning resumes after it, so one malformed fragment never
    swallows the pairs that follow. Unterminated tags end the scan, which is
    what a truncated stream looks like.
    """

    def __init__(self, text: str) -> None:
        self.text = text or ""
        self.pos = 0

    def scan(self) -> list[ToolCall]:
        calls: list[ToolCall] = []
        while True:
            fragment = self._next_fragment()
            if fragment is None:
                break
            name, body = fragment
            call = _build_call(name, body)
            if call is not None:
                calls.append(call)
        return calls

    def _next_fragment(self) -> tuple[str, str] | None:
        while True:
            start = self.text.find(TOOL_OPEN, self.pos)
            if start < 0:
                return None
            name_start = start + len(TOOL_OPEN)
            name_end = self.text.find(TOOL_CLOSE, name_start)
            if name_end < 0:
                logger.warning("Unterminated <tool> tag at offset %d", start)
                return None

            raw_name = self.text[name_start:name_end]
            if TOOL_OPEN in raw_name:
                raw_name = raw_name.rsplit(TOOL_OPEN, 1)[1]
            self.pos = name_end + len(TOOL_CLOSE)

            cursor = self._skip_whitespace(self.pos)
            if not self.text.startswith(PARAMS_OPEN, cursor):
                logger.warning("Tool tag '%s' has no <params> block; skipping", raw_name.strip())
                continue

            body_start = cursor + len(PARAMS_OPEN)
            body_end = self.text.find(PARAMS_CLOSE, body_start)
            if body_end < 0:
                logger.warning("Unterminated <params> block for tool '%s'", raw_name.strip())
                return None
            self.pos = body_end + len(PARAMS_CLOSE)
            return raw_name, self.text[body_start:body_end]

    def _skip_whitespace(self, pos: int) -> int:
        while pos < len(self.text) and self.text[pos].isspace():
            pos += 1
        return pos


def parse_tool_calls(text: str) -> list[ToolCall]:
    return ToolCallScanner(text).scan()


def clean_params_body(body: str) -> str:
    cleaned = body.strip().replace("}>", "}")
    while cleaned.endswith(">"):
        cleaned = cleaned[:-1].rstrip()
    return cleaned


def decode_params(body: str) -> dict[str, Any] | None:
    cleaned = clean_params_body(body)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.warning("JSON parse failed (%s); attempting degraded extraction", exc)
        return degraded_params(cleaned)
    if not isinstance(parsed, dict):
        logger.warning("Tool params decoded to %s, expected an object", type(parsed).__name__)
        return None
    return parsed


def degraded_params(body: str) -> dict[str, Any] | None:
    path_match = DEGRADED_PATH_RE.search(body)
    content_match = DEGRADED_CONTENT_RE.search(body)
    if not path_match or not content_match:
        return None
    return {"path": path_match.group(1), "content": unescape_json_string(content_match.group(1))}


def unescape_json_string(value: str) -> str:
    def _replace(match: re.Match[str]) -> str:
        token = match.group(1)
        if token.startswith("u"):
            return chr(int(token[1:], 16))
        return JSON_ESCAPES[token]

    return JSON_ESCAPE_RE.sub(_replace, value)


def extract_commands(text: str) -> list[str]:
    commands = _fenced_commands(text or "")
    _label_commands(text or "", commands)
    return commands


def _build_call(raw_name: str, body: str) -> ToolCall | None:
    name = raw_name.strip()
    if not name:
        logger.warning("Dropping tool call with empty name")
        return None
    params = decode_params(body)
    if params is None:
        logger.warning("Failed to parse params for tool '%s'; call dropped", name)
        return None
    return ToolCall(tool=name, params=params)


def _fenced_commands(text: str) -> list[str]:
    commands: list[str] = []
    lines = text.split("\n")
    idx = 0
    while idx < len(lines):
        stripped = lines[idx].strip()
        if not stripped.startswith("```"):
            idx += 1
            continue

        tag = stripped[3:].strip().lower()
        close = idx + 1
        while close < len(lines) and not lines[close].strip().startswith("```"):
            close += 1
        if close >= len(lines):
            break

        if tag in SHELL_FENCE_TAGS:
            body = "\n".join(lines[idx + 1 : close]).strip()
            commands.extend(_split_fenced_body(body))
        idx = close + 1
    return commands


def _split_fenced_body(body: str) -> list[str]:
    if not body:
        return []
    if HEREDOC_RE.search(body) or CONTINUATION_RE.search(body):
        return [] if body.startswith("#") else [body]
    out: list[str] = []
    for line in body.split("\n"):
        cmd = line.strip()
        if cmd and not cmd.startswith("#"):
            out.append(cmd)
    return out


def _label_commands(text: str, commands: list[str]) -> None:
    lines = text.split("\n")
    idx = 0
    while idx < len(lines):
        if not LABEL_RE.match(lines[idx]):
            idx += 1
            continue
        idx += 1
        if idx >= len(lines):
            break

        first = lines[idx]
        heredoc = HEREDOC_RE.search(first)
        if heredoc:
            marker = heredoc.group(2)
            span = [first]
            idx += 1
            while idx < len(lines) and lines[idx].strip() != marker:
                span.append(lines[idx])
                idx += 1
            if idx < len(lines):
                span.append(lines[idx])
                idx += 1
            commands.append("\n".join(span))
            continue

        block: list[str] = []
        while idx < len(lines) and lines[idx].strip() and not LABEL_RE.match(lines[idx]):
            block.append(lines[idx])
            idx += 1
        for line in block:
            cmd = line.strip()
            if cmd and not cmd.startswith("#") and cmd not in commands:
                commands.append(cmd)
