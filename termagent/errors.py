from __future__ import annotations


class TermagentError(Exception):
    pass


class ConfigError(TermagentError):
    pass


class TransportError(TermagentError):
    pass


class ToolError(TermagentError):
    pass


class UnknownToolError(ToolError, LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Tool not found: {name}")
        self.name = name


class ToolTimeoutError(ToolError):
    def __init__(self, what: str, timeout_sec: float) -> None:
        super().__init__(f"{what} timed out after {timeout_sec:g}s")
        self.timeout_sec = timeout_sec
