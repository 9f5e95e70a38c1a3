from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path


logger = logging.getLogger(__name__)


class Session:
    def __init__(self, session_file: Path | None = None, working_dir: Path | None = None) -> None:
        self.session_file = Path(session_file).expanduser() if session_file else None
        self._initial_dir = Path(working_dir or Path.cwd()).resolve()
        self.working_dir = self._initial_dir
        self.env_overlay: dict[str, str] = {}

    @property
    def env(self) -> dict[str, str]:
        merged = dict(os.environ)
        merged.update(self.env_overlay)
        return merged

    def change_dir(self, target: Path) -> None:
        self.working_dir = Path(target).resolve()
        self.save()

    def export(self, name: str, value: str) -> None:
        self.env_overlay[name] = value
        self.save()

    def save(self) -> None:
        if self.session_file is None:
            return
        payload = {
            "working_dir": str(self.working_dir),
            "env": self.env_overlay,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self.session_file.parent.mkdir(parents=True, exist_ok=True)
            self.session_file.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not save session to %s: %s", self.session_file, exc)

    def load(self) -> bool:
        if self.session_file is None or not self.session_file.exists():
            return False
        try:
            payload = json.loads(self.session_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Could not load session from %s: %s", self.session_file, exc)
            return False
        if not isinstance(payload, dict):
            return False

        working_dir = Path(str(payload.get("working_dir") or ""))
        if str(working_dir) and working_dir.is_dir():
            self.working_dir = working_dir.resolve()
        env = payload.get("env")
        if isinstance(env, dict):
            self.env_overlay = {str(k): str(v) for k, v in env.items()}
        return True

    def reset(self) -> None:
        self.working_dir = self._initial_dir
        self.env_overlay = {}
        self.save()

    def forget(self) -> None:
        self.working_dir = self._initial_dir
        self.env_overlay = {}
        if self.session_file is not None and self.session_file.exists():
            try:
                self.session_file.unlink()
            except OSError as exc:
                logger.warning("Could not remove session file %s: %s", self.session_file, exc)
