from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Protocol

import requests

from .errors import TransportError


logger = logging.getLogger(__name__)

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
SSE_DONE = "[DONE]"


@dataclass
class LLMStatus:
    available: bool
    model: str
    reason: str = ""


class ChatClient(Protocol):
    model: str

    def status(self) -> LLMStatus: ...

    def stream_chat(self, messages: list[dict[str, str]]) -> Iterator[str]: ...


class OpenRouterClient:
    def __init__(self, api_key: str, model: str, base_url: str = OPENROUTER_URL, timeout: int = 120) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout

    def status(self) -> LLMStatus:
        if not self.api_key:
            return LLMStatus(available=False, model=self.model, reason="No API key configured")
        return LLMStatus(available=True, model=self.model)

    def stream_chat(self, messages: list[dict[str, str]]) -> Iterator[str]:
        if not self.api_key:
            raise TransportError("OpenRouter API key missing; set TERMAGENT_API_KEY or OPENROUTER_API_KEY")
        payload = {"model": self.model, "messages": messages, "stream": True}
        try:
            response = requests.post(
                self.base_url,
                data=json.dumps(payload),
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                stream=True,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise TransportError(f"OpenRouter request failed: {exc}") from exc

        try:
            yield from iter_sse_content(response.iter_lines(decode_unicode=True))
        except requests.RequestException as exc:
            raise TransportError(f"OpenRouter stream interrupted: {exc}") from exc
        finally:
            response.close()


class OllamaClient:
    def __init__(self, model: str, base_url: str = "http://127.0.0.1:11434", timeout: int = 120) -> None:
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._resolved_model = model

    def status(self) -> LLMStatus:
        try:
            response = requests.get(f"{self.base_url}/api/tags", timeout=5)
            response.raise_for_status()
            payload = response.json()
            names = [item.get("name", "") for item in payload.get("models", []) if item.get("name")]
            chosen = self._choose_model(names)
            if chosen:
                self._resolved_model = chosen
                reason = ""
                if chosen != self.model:
                    reason = f"Requested model '{self.model}' not found; using '{chosen}'"
                return LLMStatus(available=True, model=chosen, reason=reason)
            return LLMStatus(available=False, model=self.model, reason="No local models installed in Ollama")
        except (requests.RequestException, ValueError) as exc:
            return LLMStatus(available=False, model=self.model, reason=str(exc))

    def stream_chat(self, messages: list[dict[str, str]]) -> Iterator[str]:
        status = self.status()
        if not status.available:
            raise TransportError(status.reason or "Ollama model unavailable")

        payload = {
            "model": self._resolved_model,
            "messages": messages,
            "stream": True,
            "options": {"temperature": 0.2},
        }
        try:
            response = requests.post(
                f"{self.base_url}/api/chat",
                data=json.dumps(payload),
                headers={"Content-Type": "application/json"},
                stream=True,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise TransportError(f"Ollama request failed: {exc}") from exc

        try:
            yield from iter_ndjson_content(response.iter_lines(decode_unicode=True))
        except requests.RequestException as exc:
            raise TransportError(f"Ollama stream interrupted: {exc}") from exc
        finally:
            response.close()

    def _choose_model(self, names: list[str]) -> str:
        if not names:
            return ""

        if self.model in names:
            return self.model

        requested_base = self.model.split(":", 1)[0]
        for name in names:
            if name.split(":", 1)[0] == requested_base:
                return name

        return names[0]


def iter_sse_content(lines: Iterable[str | bytes | None]) -> Iterator[str]:
    for raw in lines:
        if not raw:
            continue
        line = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        if not line.startswith("data:"):
            continue
        data = line[len("data:") :].strip()
        if data == SSE_DONE:
            return
        event = _loads(data)
        if event is None:
            continue
        if "error" in event:
            error = event["error"]
            message = error.get("message") if isinstance(error, dict) else error
            raise TransportError(f"Model stream error: {message}")
        for choice in event.get("choices") or []:
            content = (choice.get("delta") or {}).get("content") or (choice.get("message") or {}).get("content")
            if content:
                yield str(content)


def iter_ndjson_content(lines: Iterable[str | bytes | None]) -> Iterator[str]:
    for raw in lines:
        if not raw:
            continue
        line = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        event = _loads(line)
        if event is None:
            continue
        if event.get("error"):
            raise TransportError(f"Model stream error: {event['error']}")
        content = (event.get("message") or {}).get("content")
        if content:
            yield str(content)
        if event.get("done"):
            return


def build_client(provider: str, model: str, api_key: str = "", ollama_url: str = "http://127.0.0.1:11434") -> ChatClient:
    if provider == "ollama":
        return OllamaClient(model=model, base_url=ollama_url)
    return OpenRouterClient(api_key=api_key, model=model)


def _loads(data: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(data)
    except ValueError:
        logger.debug("Skipping undecodable stream line: %r", data[:200])
        return None
    return parsed if isinstance(parsed, dict) else None
