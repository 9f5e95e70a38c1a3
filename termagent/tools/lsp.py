from __future__ import annotations

import json
import logging
import os
import queue
import shutil
import subprocess
import threading
import time
from pathlib import Path
from typing import IO, Any, Callable
from urllib.parse import unquote, urlparse

from ..errors import ToolError, ToolTimeoutError


logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SEC = 20
SHUTDOWN_TIMEOUT_SEC = 2
DIAGNOSTICS_WAIT_SEC = 1.5

LANGUAGE_IDS: dict[str, str] = {
    ".js": "javascript",
    ".mjs": "javascript",
    ".jsx": "javascriptreact",
    ".ts": "typescript",
    ".tsx": "typescriptreact",
    ".py": "python",
    ".rs": "rust",
    ".go": "go",
    ".java": "java",
    ".c": "c",
    ".h": "cpp",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".hpp": "cpp",
    ".html": "html",
    ".htm": "html",
    ".css": "css",
}

SERVER_CANDIDATES: dict[str, list[list[str]]] = {
    "python": [["pyright-langserver", "--stdio"], ["pylsp"]],
    "javascript": [["typescript-language-server", "--stdio"]],
    "typescript": [["typescript-language-server", "--stdio"]],
    "rust": [["rust-analyzer"]],
    "go": [["gopls"]],
    "c": [["clangd"]],
    "cpp": [["clangd"]],
}
SYMBOL_KINDS = {
    5: "class",
    6: "method",
    9: "constructor",
    10: "enum",
    11: "interface",
    12: "function",
    13: "variable",
    14: "constant",
    23: "struct",
}
SEVERITIES = {1: "error", 2: "warning", 3: "info", 4: "hint"}


def language_id(path: str | Path) -> str:
    return LANGUAGE_IDS.get(Path(path).suffix.lower(), "plaintext")


def encode_message(payload: dict[str, Any]) -> bytes:
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return f"Content-Length: {len(body)}\r\n\r\n".encode("ascii") + body


def read_message(stream: IO[bytes]) -> dict[str, Any] | None:
    length = None
    while True:
        line = stream.readline()
        if not line:
            return None
        line = line.strip()
        if not line:
            break
        name, _, value = line.decode("ascii", errors="replace").partition(":")
        if name.strip().lower() == "content-length":
            length = int(value.strip())
    if length is None:
        raise ToolError("LSP message without Content-Length header")
    body = stream.read(length)
    if len(body) < length:
        return None
    return json.loads(body.decode("utf-8"))


def path_to_uri(path: Path) -> str:
    return Path(path).resolve().as_uri()


def uri_to_path(uri: str) -> str:
    parsed = urlparse(uri)
    return unquote(parsed.path) if parsed.scheme == "file" else uri


class LSPClient:
    def __init__(self, command: list[str], root: Path, request_timeout_sec: float = REQUEST_TIMEOUT_SEC) -> None:
        self.command = list(command)
        self.root = Path(root).resolve()
        self.request_timeout_sec = request_timeout_sec
        self.process: subprocess.Popen[bytes] | None = None
        self.initialized = False
        self.diagnostics: dict[str, list[dict[str, Any]]] = {}
        self._next_id = 0
        self._responses: queue.Queue[dict[str, Any]] = queue.Queue()
        self._write_lock = threading.Lock()
        self._reader: threading.Thread | None = None
        self._opened: dict[str, int] = {}

    @staticmethod
    def command_exists(cmd: str) -> bool:
        return shutil.which(cmd) is not None

    def start(self) -> dict[str, Any]:
        if not self.command_exists(self.command[0]):
            raise ToolError(f"{self.command[0]} not found")
        self.process = subprocess.Popen(
            self.command,
            cwd=str(self.root),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
        )
        try:
            self._reader = threading.Thread(target=self._read_loop, name=f"lsp-{self.command[0]}", daemon=True)
            self._reader.start()
            result = self._initialize()
            self.notify("initialized", {})
        except BaseException:
            self.close()
            raise
        self.initialized = True
        return result or {}

    def _initialize(self) -> Any:
        return self.request(
            "initialize",
            {
                "processId": os.getpid(),
                "rootUri": path_to_uri(self.root),
                "capabilities": {
                    "textDocument": {
                        "hover": {"contentFormat": ["plaintext"]},
                        "definition": {"linkSupport": False},
                        "references": {},
                        "documentSymbol": {"hierarchicalDocumentSymbolSupport": True},
                        "rename": {},
                        "publishDiagnostics": {},
                    }
                },
            },
        )

    def request(self, method: str, params: Any, timeout_sec: float | None = None) -> Any:
        if timeout_sec is None:
            timeout_sec = self.request_timeout_sec
        self._next_id += 1
        request_id = self._next_id
        self._send({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})

        deadline = time.monotonic() + timeout_sec
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ToolTimeoutError(f"LSP request '{method}'", timeout_sec)
            try:
                message = self._responses.get(timeout=remaining)
            except queue.Empty:
                continue
            if message.get("id") == "__eof__":
                raise ToolError(f"Language server {self.command[0]} exited")
            if message.get("id") != request_id:
                continue
            if "error" in message:
                error = message["error"] or {}
                raise ToolError(f"LSP {method} failed: {error.get('message', error)}")
            return message.get("result")

    def notify(self, method: str, params: Any) -> None:
        self._send({"jsonrpc": "2.0", "method": method, "params": params})

    def open_document(self, path: Path) -> str:
        uri = path_to_uri(path)
        text = Path(path).read_text(encoding="utf-8", errors="replace")
        version = self._opened.get(uri, 0) + 1
        self._opened[uri] = version
        if version == 1:
            self.notify(
                "textDocument/didOpen",
                {"textDocument": {"uri": uri, "languageId": language_id(path), "version": version, "text": text}},
            )
        else:
            self.notify(
                "textDocument/didChange",
                {"textDocument": {"uri": uri, "version": version}, "contentChanges": [{"text": text}]},
            )
        return uri

    def definition(self, path: Path, line: int, character: int) -> Any:
        uri = self._require_open(path)
        return self.request(
            "textDocument/definition",
            {"textDocument": {"uri": uri}, "position": {"line": line, "character": character}},
        )

    def references(self, path: Path, line: int, character: int) -> Any:
        uri = self._require_open(path)
        return self.request(
            "textDocument/references",
            {
                "textDocument": {"uri": uri},
                "position": {"line": line, "character": character},
                "context": {"includeDeclaration": True},
            },
        )

    def hover(self, path: Path, line: int, character: int) -> Any:
        uri = self._require_open(path)
        return self.request(
            "textDocument/hover",
            {"textDocument": {"uri": uri}, "position": {"line": line, "character": character}},
        )

    def document_symbols(self, path: Path) -> Any:
        uri = self._require_open(path)
        return self.request("textDocument/documentSymbol", {"textDocument": {"uri": uri}})

    def rename(self, path: Path, line: int, character: int, new_name: str) -> Any:
        uri = self._require_open(path)
        return self.request(
            "textDocument/rename",
            {"textDocument": {"uri": uri}, "position": {"line": line, "character": character}, "newName": new_name},
        )

    def workspace_symbols(self, query: str) -> Any:
        if not self.initialized:
            raise ToolError("LSP not initialized")
        return self.request("workspace/symbol", {"query": query})

    def wait_for_diagnostics(self, path: Path, timeout_sec: float = DIAGNOSTICS_WAIT_SEC) -> list[dict[str, Any]]:
        self.diagnostics.pop(path_to_uri(path), None)
        uri = self._require_open(path)
        deadline = time.monotonic() + timeout_sec
        while time.monotonic() < deadline:
            if uri in self.diagnostics:
                break
            time.sleep(0.05)
        return self.diagnostics.get(uri, [])

    def close(self) -> None:
        proc = self.process
        if proc is None:
            return
        try:
            if self.initialized and proc.poll() is None:
                self.request("shutdown", None, timeout_sec=SHUTDOWN_TIMEOUT_SEC)
                self.notify("exit", None)
        except (ToolError, OSError) as exc:
            logger.info("LSP %s did not shut down cleanly: %s", self.command[0], exc)
        finally:
            if not self.initialized and proc.poll() is None:
                proc.kill()
            try:
                proc.wait(timeout=SHUTDOWN_TIMEOUT_SEC)
            except subprocess.TimeoutExpired:
                logger.warning("Killing language server %s (pid %s)", self.command[0], proc.pid)
                proc.kill()
                proc.wait()
            if self._reader is not None:
                self._reader.join(timeout=SHUTDOWN_TIMEOUT_SEC)
            for stream in (proc.stdin, proc.stdout):
                if stream is not None:
                    try:
                        stream.close()
                    except OSError:
                        pass
            self.process = None
            self.initialized = False

    def _require_open(self, path: Path) -> str:
        if not self.initialized:
            raise ToolError("LSP not initialized")
        return self.open_document(path)

    def _send(self, payload: dict[str, Any]) -> None:
        proc = self.process
        if proc is None or proc.stdin is None:
            raise ToolError("Language server is not running")
        with self._write_lock:
            proc.stdin.write(encode_message(payload))
            proc.stdin.flush()

    def _read_loop(self) -> None:
        proc = self.process
        if proc is None or proc.stdout is None:
            return
        try:
            while True:
                message = read_message(proc.stdout)
                if message is None:
                    break
                self._dispatch(message)
        except (OSError, ValueError, ToolError) as exc:
            logger.info("LSP reader for %s stopped: %s", self.command[0], exc)
        finally:
            self._responses.put({"id": "__eof__"})

    def _dispatch(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        if method is None:
            self._responses.put(message)
            return
        if method == "textDocument/publishDiagnostics":
            params = message.get("params") or {}
            self.diagnostics[str(params.get("uri"))] = list(params.get("diagnostics") or [])
            return
        if "id" in message:
            # Server-initiated requests (workspace/configuration, window/workDoneProgress/create, ...)
            result: Any = [None] * len((message.get("params") or {}).get("items", [])) or None
            try:
                self._send({"jsonrpc": "2.0", "id": message["id"], "result": result})
            except (ToolError, OSError) as exc:
                logger.debug("Could not answer server request %s: %s", method, exc)


class LSPManager:
    """Starts one language server per command on demand and owns their lifetime."""

    def __init__(self, root: Path | Callable[[], Path], request_timeout_sec: float = REQUEST_TIMEOUT_SEC) -> None:
        self._root = root
        self.request_timeout_sec = request_timeout_sec
        self._clients: dict[tuple[str, ...], LSPClient] = {}

    @property
    def root(self) -> Path:
        raw = self._root() if callable(self._root) else self._root
        return Path(raw).resolve()

    @staticmethod
    def available_servers() -> list[str]:
        found = []
        for candidates in SERVER_CANDIDATES.values():
            for cmd in candidates:
                if shutil.which(cmd[0]) and cmd[0] not in found:
                    found.append(cmd[0])
        return found

    def client_for(self, path: Path) -> LSPClient:
        lang = language_id(path)
        lang = {"javascriptreact": "javascript", "typescriptreact": "typescript"}.get(lang, lang)
        for cmd in SERVER_CANDIDATES.get(lang, []):
            if not shutil.which(cmd[0]):
                continue
            key = tuple(cmd)
            client = self._clients.get(key)
            if client is None or client.process is None or client.process.poll() is not None:
                client = LSPClient(cmd, self.root, request_timeout_sec=self.request_timeout_sec)
                client.start()
                self._clients[key] = client
            return client
        raise ToolError(f"No language server available for {lang} files")

    def any_client(self) -> LSPClient:
        for client in self._clients.values():
            if client.initialized:
                return client
        raise ToolError("No language server is running; query a file first")

    def close(self) -> None:
        while self._clients:
            _, client = self._clients.popitem()
            try:
                client.close()
            except Exception:
                logger.exception("Failed to stop language server %s", client.command[0])


def format_locations(result: Any) -> str:
    if not result:
        return "No results"
    items = result if isinstance(result, list) else [result]
    rows = []
    for item in items:
        uri = item.get("uri") or item.get("targetUri") or ""
        rng = item.get("range") or item.get("targetSelectionRange") or {}
        start = rng.get("start") or {}
        rows.append(f"{uri_to_path(uri)}:{int(start.get('line', 0)) + 1}:{int(start.get('character', 0)) + 1}")
    return "\n".join(rows)


def format_hover(result: Any) -> str:
    if not result:
        return "No hover information"
    contents = result.get("contents") if isinstance(result, dict) else result
    if isinstance(contents, list):
        return "\n".join(_hover_text(c) for c in contents).strip() or "No hover information"
    return _hover_text(contents).strip() or "No hover information"


def format_symbols(result: Any) -> str:
    if not result:
        return "No symbols"
    rows: list[str] = []

    def _walk(symbols: list[dict[str, Any]], depth: int) -> None:
        for sym in symbols:
            kind = SYMBOL_KINDS.get(int(sym.get("kind", 0)), f"kind{sym.get('kind')}")
            rng = sym.get("range") or (sym.get("location") or {}).get("range") or {}
            line = int((rng.get("start") or {}).get("line", 0)) + 1
            location = ""
            if "location" in sym:
                location = f"{uri_to_path(sym['location'].get('uri', ''))}:"
            rows.append(f"{'  ' * depth}{kind} {sym.get('name')} ({location}{line})")
            _walk(sym.get("children") or [], depth + 1)

    _walk(result, 0)
    return "\n".join(rows)


def format_diagnostics(items: list[dict[str, Any]]) -> str:
    if not items:
        return "No diagnostics"
    rows = []
    for diag in items:
        start = (diag.get("range") or {}).get("start") or {}
        severity = SEVERITIES.get(int(diag.get("severity", 1)), "error")
        rows.append(f"{int(start.get('line', 0)) + 1}:{int(start.get('character', 0)) + 1} {severity}: {diag.get('message')}")
    return "\n".join(rows)


def format_workspace_edit(result: Any) -> str:
    if not result:
        return "Rename produced no edits"
    changes: dict[str, list[Any]] = dict(result.get("changes") or {})
    for doc_change in result.get("documentChanges") or []:
        doc = doc_change.get("textDocument") or {}
        changes.setdefault(doc.get("uri", ""), []).extend(doc_change.get("edits") or [])
    rows = [f"{uri_to_path(uri)}: {len(edits)} edit(s)" for uri, edits in changes.items()]
    return "\n".join(rows) or "Rename produced no edits"


def _hover_text(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("value", ""))
    return str(value or "")
