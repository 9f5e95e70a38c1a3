from __future__ import annotations

import argparse
import logging
import re
import sys
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.prompt import Prompt
from rich.text import Text

from .agent import AgentLoop, AgentRunConfig, StopReason, build_system_prompt
from .config import Settings, configure_logging
from .errors import ConfigError, TermagentError, TransportError
from .executor import CommandExecutor
from .llm import build_client
from .message import Conversation
from .registry import ToolRegistry
from .session import Session
from .tools.builtin import register_builtin_tools


logger = logging.getLogger(__name__)

MODES = ("tools", "shell")
DIFF_LINE_RE = re.compile(r"^\s*\d+ \| ([+-]) ")


class RichUI:
    def __init__(self, console: Console) -> None:
        self.console = console

    def reply_started(self) -> None:
        self.console.print("\n[bold magenta]ai>[/bold magenta] ", end="")

    def reply_chunk(self, chunk: str) -> None:
        self.console.print(chunk, end="", markup=False, highlight=False, soft_wrap=True)

    def reply_finished(self) -> None:
        self.console.print()

    def show_action(self, preview: str) -> None:
        self.console.print(f"\n[cyan]{escape(preview)}[/cyan]")

    def show_result(self, text: str) -> None:
        self.console.print(render_result(text))

    def warn(self, message: str) -> None:
        self.console.print(f"[yellow]! {escape(message)}[/yellow]")

    def ask(self, prompt: str) -> str:
        return Prompt.ask(f"[yellow]{escape(prompt)}[/yellow]", console=self.console, default="", show_default=False)


def render_result(text: str) -> Text:
    out = Text()
    for idx, line in enumerate(text.split("\n")):
        if idx:
            out.append("\n")
        marker = DIFF_LINE_RE.match(line)
        if line.startswith("+++ ") or (marker and marker.group(1) == "+"):
            out.append(line, style="green")
        elif line.startswith("--- ") or (marker and marker.group(1) == "-"):
            out.append(line, style="red")
        elif line.startswith("Error") or "] Error:" in line:
            out.append(line, style="bold red")
        else:
            out.append(line)
    return out


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Terminal chat agent with local tools")
    parser.add_argument("--provider", default=settings.provider, choices=["openrouter", "ollama"])
    parser.add_argument("--model", default=settings.model)
    parser.add_argument("--api-key", default=settings.api_key)
    parser.add_argument("--ollama-url", default=settings.ollama_url)
    parser.add_argument("--mode", default="tools", choices=MODES, help="tools: tag protocol agent; shell: command suggestions")
    parser.add_argument("--max-iterations", type=int, default=settings.max_iterations)
    parser.add_argument("--auto-exec", action="store_true", default=settings.auto_execute)
    parser.add_argument("--timeout", type=int, default=settings.command_timeout, help="Command timeout in seconds.")
    parser.add_argument("--session-file", default=str(settings.session_file))
    parser.add_argument("--no-session", action="store_true", help="Do not restore or persist the working directory.")
    parser.add_argument("--no-lsp", action="store_true", help="Do not register the language-server tool.")
    parser.add_argument("--stdin", action="store_true", help="Read one prompt from stdin, print the reply, and exit.")
    parser.add_argument("--log-level", default=settings.log_level)
    return parser


def main(argv: list[str] | None = None) -> int:
    console = Console()
    try:
        settings = Settings.from_env()
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {escape(str(exc))}[/red]")
        return 2

    args = build_parser(settings).parse_args(argv)
    configure_logging(args.log_level)

    session = Session(None if args.no_session else Path(args.session_file))
    if session.load():
        console.print(f"[cyan]Restored session: {escape(str(session.working_dir))}[/cyan]")

    client = build_client(args.provider, args.model, api_key=args.api_key, ollama_url=args.ollama_url)
    if args.stdin:
        return _run_stdin(Conversation(client, session))

    registry = ToolRegistry()
    register_builtin_tools(registry, session, timeout_sec=args.timeout, enable_lsp=False if args.no_lsp else None)
    ui = RichUI(console)
    conversation = Conversation(client, session)
    loop = AgentLoop(
        conversation,
        registry,
        CommandExecutor(session, timeout_sec=args.timeout),
        ui=ui,
        config=AgentRunConfig(
            max_iterations=args.max_iterations,
            repeat_threshold=settings.repeat_threshold,
            auto_execute=args.auto_exec,
        ),
    )
    mode = args.mode
    _apply_mode(conversation, registry, mode)

    status = client.status()
    if not status.available:
        console.print(f"[yellow]Model not ready: {escape(status.reason)}[/yellow]")
    console.print(
        f"[green]Ready! Using {escape(status.model)} in {mode} mode.[/green] "
        "Type 'exit' to quit, 'clear' to start a new conversation, '/mode tools|shell' to switch."
    )

    with registry:
        while True:
            try:
                user = Prompt.ask("\n[bold]you[/bold]", console=console).strip()
            except (EOFError, KeyboardInterrupt):
                console.print("\nGoodbye!")
                break
            if not user:
                continue

            lowered = user.lower()
            if lowered in {"exit", "quit"}:
                console.print("Goodbye!")
                break
            if lowered == "clear":
                conversation.reset()
                session.reset()
                console.print("[cyan]New conversation started (working directory and env vars reset)[/cyan]")
                continue
            if lowered == "logout":
                conversation.reset()
                session.forget()
                console.print("[cyan]Session forgotten.[/cyan]")
                continue
            if lowered.startswith("/model"):
                name = user[len("/model") :].strip()
                if name:
                    client.model = name
                    conversation.reset()
                    console.print(f"[cyan]Switched model to {escape(name)}; conversation reset.[/cyan]")
                else:
                    console.print(f"Current model: {escape(client.model)}")
                continue
            if lowered.startswith("/mode"):
                requested = lowered[len("/mode") :].strip()
                if requested in MODES:
                    mode = requested
                    _apply_mode(conversation, registry, mode)
                    console.print(f"[cyan]Switched to {mode} mode; conversation reset.[/cyan]")
                else:
                    console.print(f"Current mode: {mode}. Available: {', '.join(MODES)}")
                continue
            if lowered == "/tools":
                console.print(escape(registry.get_tool_list()))
                continue

            try:
                result = loop.run_tool_turn(user) if mode == "tools" else loop.run_shell_turn(user)
            except TransportError as exc:
                logger.debug("Turn aborted by transport failure", exc_info=True)
                console.print(f"[red]Model transport failed: {escape(str(exc))}[/red]")
                continue
            except KeyboardInterrupt:
                console.print("\n[yellow]Interrupted.[/yellow]")
                continue
            if result.reason is StopReason.NO_REPLY:
                console.print("[yellow]No response received.[/yellow]")
    return 0


def _apply_mode(conversation: Conversation, registry: ToolRegistry, mode: str) -> None:
    conversation.reset()
    conversation.system_prompt = build_system_prompt(registry) if mode == "tools" else ""


def _run_stdin(conversation: Conversation) -> int:
    errors = Console(stderr=True)
    prompt = sys.stdin.read().strip()
    if not prompt:
        errors.print("[red]No input provided[/red]")
        return 1
    try:
        conversation.send(prompt)
        reply = conversation.stream()
    except TermagentError as exc:
        errors.print(f"[red]Error: {escape(str(exc))}[/red]")
        return 1
    if not reply:
        errors.print("[red]No response received[/red]")
        return 1
    print(reply)
    return 0


if __name__ == "__main__":
    sys.exit(main())
