from __future__ import annotations

import getpass
import logging
import platform
from typing import Callable

from .errors import TransportError
from .llm import ChatClient
from .session import Session


logger = logging.getLogger(__name__)

ChunkHandler = Callable[[str], None]

FORMAT_INSTRUCTION = "[INSTRUCTION: Format shell commands in bash code blocks. Keep responses concise and technical.]"


class Conversation:
    """Owns the transcript sent to the model and the pending outgoing turn."""

    def __init__(self, client: ChatClient, session: Session, system_prompt: str = "") -> None:
        self.client = client
        self.session = session
        self.system_prompt = system_prompt
        self.messages: list[dict[str, str]] = []
        self._pending = False

    def system_context(self) -> str:
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = "unknown"
        return (
            f"[SYSTEM: OS={platform.system().lower()}, User={user}, Dir={self.session.working_dir}]\n"
            f"{FORMAT_INSTRUCTION}"
        )

    def send(self, message: str, include_system_context: bool = True) -> None:
        content = f"{self.system_context()}\n\n{message}" if include_system_context else message
        self.messages.append({"role": "user", "content": content})
        self._pending = True

    def stream(self, on_chunk: ChunkHandler | None = None) -> str:
        if not self._pending:
            return ""
        payload = list(self.messages)
        if self.system_prompt:
            payload = [{"role": "system", "content": self.system_prompt}, *payload]

        parts: list[str] = []
        try:
            for chunk in self.client.stream_chat(payload):
                parts.append(chunk)
                if on_chunk is not None:
                    on_chunk(chunk)
        except TransportError:
            self._abandon_pending()
            raise
        except Exception as exc:
            self._abandon_pending()
            raise TransportError(f"Transport failed: {exc}") from exc

        self._pending = False
        reply = "".join(parts)
        self.messages.append({"role": "assistant", "content": reply})
        return reply

    def _abandon_pending(self) -> None:
        self._pending = False
        if self.messages and self.messages[-1]["role"] == "user":
            self.messages.pop()

    def reset(self) -> None:
        self.messages = []
        self._pending = False
