from __future__ import annotations

import json
from typing import Any

from ..errors import ToolError
from ..registry import ToolRegistry
from ..session import Session
from .codeexec import (
    DEFAULT_TIMEOUT_SEC,
    INSTALL_TIMEOUT_SEC,
    build_execute_command,
    build_install_command,
    run_command,
)
from .codestats import collect_code_stats
from .filesystem import FileBrowser
from .lsp import (
    LSPManager,
    format_diagnostics,
    format_hover,
    format_locations,
    format_symbols,
    format_workspace_edit,
)


LSP_ACTIONS = ("definition", "references", "hover", "symbols", "workspace_symbols", "diagnostics", "rename")


def register_builtin_tools(
    registry: ToolRegistry,
    session: Session,
    timeout_sec: int = DEFAULT_TIMEOUT_SEC,
    enable_lsp: bool | None = None,
) -> FileBrowser:
    files = FileBrowser(lambda: session.working_dir)

    def read_file(params: dict[str, Any]) -> str:
        return files.read_text(_require(params, "path"))

    def write_file(params: dict[str, Any]) -> str:
        return files.write_text(_require(params, "path"), _text(params, "content"))

    def append_file(params: dict[str, Any]) -> str:
        return files.append_text(_require(params, "path"), _text(params, "content"))

    def list_dir(params: dict[str, Any]) -> str:
        entries = files.list_dir(str(params.get("path") or "."))
        return "\n".join(entries) or "(empty directory)"

    def grep(params: dict[str, Any]) -> str:
        hits = files.search_text(
            _require(params, "pattern"),
            str(params.get("path") or "."),
            ignore_case=bool(params.get("ignore_case", False)),
        )
        if not hits:
            return "No matches found"
        return "\n".join(f"{h['path']}:{h['line']}: {h['text']}" for h in hits)

    def find_files(params: dict[str, Any]) -> str:
        found = files.find_files(_require(params, "pattern"), str(params.get("path") or "."))
        return "\n".join(found) or "No files found"

    def read_lines(params: dict[str, Any]) -> str:
        end = params.get("end")
        return files.read_lines(
            _require(params, "path"),
            start=_int(params, "start", 1),
            end=None if end is None else _int(params, "end", 0),
        )

    def str_replace(params: dict[str, Any]) -> str:
        return files.replace_unique(_require(params, "path"), _text(params, "old"), _text(params, "new"))

    def insert_lines(params: dict[str, Any]) -> str:
        return files.insert_lines(_require(params, "path"), _int(params, "line", 1), _text(params, "content"))

    def execute_file(params: dict[str, Any]) -> str:
        target = files.resolve(_require(params, "path"))
        if not target.is_file():
            raise ToolError(f"No such file: {target}")
        args = params.get("args") or []
        if not isinstance(args, list):
            raise ToolError("args must be a list of strings")
        command = build_execute_command(target, [str(a) for a in args])
        result = run_command(command, cwd=target.parent, env=session.env, timeout_sec=timeout_sec)
        return result.render()

    def shell(params: dict[str, Any]) -> str:
        result = run_command(
            _require(params, "command"),
            cwd=session.working_dir,
            env=session.env,
            timeout_sec=timeout_sec,
        )
        return result.render()

    def tree(params: dict[str, Any]) -> str:
        return files.tree(str(params.get("path") or "."), max_depth=_int(params, "max_depth", 3))

    def code_stats(params: dict[str, Any]) -> str:
        return collect_code_stats(files.resolve(str(params.get("path") or "."))).render()

    def install_package(params: dict[str, Any]) -> str:
        packages = params.get("packages") or params.get("package") or []
        if isinstance(packages, str):
            packages = packages.split()
        command = build_install_command(_require(params, "manager"), [str(p) for p in packages])
        result = run_command(command, cwd=session.working_dir, env=session.env, timeout_sec=INSTALL_TIMEOUT_SEC)
        return f"$ {command}\n{result.render()}"

    registry.register("read_file", read_file, 'Read file content. Params: {"path": "file.txt"}')
    registry.register(
        "write_file",
        write_file,
        'Create or overwrite a file; returns a diff. Params: {"path": "file.txt", "content": "..."}',
    )
    registry.register(
        "append_file", append_file, 'Append text to a file; returns a diff. Params: {"path": "file.txt", "content": "..."}'
    )
    registry.register("list_dir", list_dir, 'List directory. Params: {"path": "."}')
    registry.register(
        "grep", grep, 'Search file contents recursively (regex). Params: {"pattern": "TODO", "path": ".", "ignore_case": false}'
    )
    registry.register("find_files", find_files, 'Find files by name glob. Params: {"pattern": "*.py", "path": "."}')
    registry.register(
        "read_lines", read_lines, 'Read a 1-based inclusive line range. Params: {"path": "file.txt", "start": 1, "end": 40}'
    )
    registry.register(
        "str_replace",
        str_replace,
        'Replace one exact, unique occurrence of text. Params: {"path": "file.txt", "old": "...", "new": "..."}',
    )
    registry.register(
        "insert_lines",
        insert_lines,
        'Insert text before a 1-based line. Params: {"path": "file.txt", "line": 3, "content": "..."}',
    )
    registry.register(
        "execute_file", execute_file, 'Compile if needed and run a source file. Params: {"path": "main.py", "args": []}'
    )
    registry.register("shell", shell, 'Run a shell command and capture output. Params: {"command": "ls -la"}')
    registry.register("tree", tree, 'Show a directory tree. Params: {"path": ".", "max_depth": 3}')
    registry.register("code_stats", code_stats, 'Line counts and top-level symbols. Params: {"path": "."}')
    registry.register(
        "install_package",
        install_package,
        'Install packages. Params: {"manager": "pip|npm|yarn|pnpm|cargo|go|gem|apt|brew", "packages": ["requests"]}',
    )

    if enable_lsp is None:
        enable_lsp = bool(LSPManager.available_servers())
    if enable_lsp:
        _register_lsp(registry, files, LSPManager(lambda: session.working_dir))

    return files


def _register_lsp(registry: ToolRegistry, files: FileBrowser, manager: LSPManager) -> None:
    registry.add_resource(manager)

    def lsp(params: dict[str, Any]) -> str:
        action = str(params.get("action") or "").strip()
        if action not in LSP_ACTIONS:
            raise ToolError(f"Unknown lsp action '{action}'. Expected one of: {', '.join(LSP_ACTIONS)}")
        if action == "workspace_symbols":
            client = manager.any_client()
            return format_symbols(client.workspace_symbols(_require(params, "query")))

        path = files.resolve(_require(params, "path"))
        client = manager.client_for(path)
        if action == "symbols":
            return format_symbols(client.document_symbols(path))
        if action == "diagnostics":
            return format_diagnostics(client.wait_for_diagnostics(path))

        line = _int(params, "line", 1) - 1
        character = _int(params, "character", 1) - 1
        if action == "definition":
            return format_locations(client.definition(path, line, character))
        if action == "references":
            return format_locations(client.references(path, line, character))
        if action == "hover":
            return format_hover(client.hover(path, line, character))
        return format_workspace_edit(client.rename(path, line, character, _require(params, "new_name")))

    registry.register(
        "lsp",
        lsp,
        "Code intelligence via a language server. Params: "
        + json.dumps({"action": "|".join(LSP_ACTIONS), "path": "src/app.py", "line": 10, "character": 5}),
    )


def _require(params: dict[str, Any], key: str) -> str:
    value = params.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ToolError(f"Missing required parameter: {key}")
    return str(value)


def _text(params: dict[str, Any], key: str) -> str:
    value = params.get(key)
    if value is None:
        raise ToolError(f"Missing required parameter: {key}")
    return value if isinstance(value, str) else json.dumps(value, indent=2)


def _int(params: dict[str, Any], key: str, default: int) -> int:
    value = params.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ToolError(f"Parameter '{key}' must be an integer, got {value!r}") from exc
