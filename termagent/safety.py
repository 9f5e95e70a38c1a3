from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Callable


logger = logging.getLogger(__name__)

Asker = Callable[[str], str]

DANGEROUS_PATTERNS: tuple[str, ...] = (
    "rm -rf",
    "rm -fr",
    "dd if=",
    "mkfs",
    ":(){:|:&};:",
    ":(){ :|:& };:",
    "chmod -R 777",
    "> /dev/sda",
)
INTERACTIVE_PROGRAMS: frozenset[str] = frozenset(
    {
        "vim",
        "vi",
        "nvim",
        "nano",
        "emacs",
        "ssh",
        "python",
        "python3",
        "node",
        "irb",
        "mysql",
        "psql",
        "sqlite3",
        "top",
        "htop",
        "less",
        "more",
        "man",
    }
)
PRIVILEGE_PREFIXES: tuple[str, ...] = ("sudo", "doas")


@dataclass(frozen=True)
class CommandPolicy:
    dangerous_patterns: tuple[str, ...] = DANGEROUS_PATTERNS
    interactive_programs: frozenset[str] = field(default=INTERACTIVE_PROGRAMS)
    privilege_prefixes: tuple[str, ...] = PRIVILEGE_PREFIXES

    def is_dangerous(self, command: str) -> bool:
        return any(pattern in command for pattern in self.dangerous_patterns)

    def is_interactive(self, command: str) -> bool:
        program = self.program_name(command)
        return bool(program) and program in self.interactive_programs

    def program_name(self, command: str) -> str:
        parts = command.strip().split()
        while parts and parts[0] in self.privilege_prefixes:
            parts = parts[1:]
        if not parts:
            return ""
        return PurePosixPath(parts[0]).name

    def confirm_dangerous(self, command: str, asker: Asker) -> bool:
        logger.warning("Dangerous command detected: %s", command)
        reply = asker(f"DANGEROUS COMMAND DETECTED: {command}\nAre you sure? (yes/no): ")
        return str(reply or "").strip().lower() == "yes"


DEFAULT_POLICY = CommandPolicy()


def is_dangerous(command: str, policy: CommandPolicy = DEFAULT_POLICY) -> bool:
    return policy.is_dangerous(command)


def is_interactive(command: str, policy: CommandPolicy = DEFAULT_POLICY) -> bool:
    return policy.is_interactive(command)


def confirm_dangerous(command: str, asker: Asker, policy: CommandPolicy = DEFAULT_POLICY) -> bool:
    return policy.confirm_dangerous(command, asker)
