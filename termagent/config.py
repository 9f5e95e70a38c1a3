from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigError


PROVIDERS = {"openrouter", "ollama"}
DEFAULT_OPENROUTER_MODEL = "arcee-ai/trinity-large-preview:free"
DEFAULT_OLLAMA_MODEL = "llama3.2:3b"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class Settings:
    provider: str = "openrouter"
    model: str = DEFAULT_OPENROUTER_MODEL
    api_key: str = ""
    ollama_url: str = "http://127.0.0.1:11434"
    max_iterations: int = 10
    repeat_threshold: int = 3
    auto_execute: bool = False
    command_timeout: int = 30
    session_file: Path = Path.home() / ".termagent-session.json"
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> "Settings":
        env = dict(os.environ if env is None else env)
        provider = env.get("TERMAGENT_PROVIDER", "openrouter").strip().lower() or "openrouter"
        default_model = DEFAULT_OLLAMA_MODEL if provider == "ollama" else DEFAULT_OPENROUTER_MODEL
        settings = cls(
            provider=provider,
            model=env.get("TERMAGENT_MODEL", "").strip() or default_model,
            api_key=(env.get("TERMAGENT_API_KEY") or env.get("OPENROUTER_API_KEY") or "").strip(),
            ollama_url=env.get("TERMAGENT_OLLAMA_URL", "http://127.0.0.1:11434").strip(),
            max_iterations=_int_env(env, "TERMAGENT_MAX_ITERATIONS", 10),
            repeat_threshold=_int_env(env, "TERMAGENT_REPEAT_THRESHOLD", 3),
            auto_execute=env_flag(env.get("TERMAGENT_AUTO_EXEC", env.get("AUTO_EXEC", "0"))),
            command_timeout=_int_env(env, "TERMAGENT_COMMAND_TIMEOUT", 30),
            session_file=Path(
                env.get("TERMAGENT_SESSION_FILE", str(Path.home() / ".termagent-session.json"))
            ).expanduser(),
            log_level=env.get("TERMAGENT_LOG_LEVEL", "WARNING").strip().upper() or "WARNING",
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.provider not in PROVIDERS:
            raise ConfigError(f"Unknown provider '{self.provider}'. Expected one of: {', '.join(sorted(PROVIDERS))}")
        if self.max_iterations < 1:
            raise ConfigError("max_iterations must be at least 1")
        if self.repeat_threshold < 2:
            raise ConfigError("repeat_threshold must be at least 2")
        if self.command_timeout < 1:
            raise ConfigError("command_timeout must be at least 1 second")


def env_flag(value: str | None) -> bool:
    return str(value or "").strip().lower() not in {"", "0", "false", "no", "off"}


def configure_logging(level: str = "WARNING") -> None:
    numeric = logging.getLevelName(str(level).upper())
    if not isinstance(numeric, int):
        numeric = logging.WARNING
    logging.basicConfig(level=numeric, format=LOG_FORMAT)


def _int_env(env: dict[str, str], key: str, default: int) -> int:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got '{raw}'") from exc
