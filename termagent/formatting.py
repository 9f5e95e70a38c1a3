from __future__ import annotations


MAX_OUTPUT_LINES = 50


def format_output(output: str | None, max_lines: int = MAX_OUTPUT_LINES) -> str:
    if not output:
        return "(no output)"
    lines = output.split("\n")
    if len(lines) <= max_lines:
        return output
    remaining = len(lines) - max_lines
    return "\n".join(lines[:max_lines]) + f"\n... ({remaining} more lines, output truncated)"


def command_preview(command: str) -> str:
    if "\n" in command:
        return command.split("\n", 1)[0] + "..."
    return command
