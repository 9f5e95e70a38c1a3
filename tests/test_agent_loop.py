from pathlib import Path
from typing import Iterator

import pytest

from termagent.agent import AgentLoop, AgentRunConfig, SilentUI, StopReason, build_system_prompt
from termagent.errors import TransportError
from termagent.executor import CommandExecutor
from termagent.llm import LLMStatus
from termagent.message import Conversation
from termagent.registry import ToolRegistry
from termagent.session import Session
from termagent.tools.builtin import register_builtin_tools


LIST_CALL = '<tool>list_dir</tool><params>{"path": "."}</params>'


class _ScriptedClient:
    def __init__(self, replies: list[str], repeat_last: bool = False) -> None:
        self.model = "stub-model"
        self.replies = list(replies)
        self.repeat_last = repeat_last
        self.calls: list[list[dict[str, str]]] = []

    def status(self) -> LLMStatus:
        return LLMStatus(available=True, model=self.model)

    def stream_chat(self, messages: list[dict[str, str]]) -> Iterator[str]:
        self.calls.append([dict(m) for m in messages])
        if self.repeat_last and len(self.replies) == 1:
            reply = self.replies[0]
        else:
            reply = self.replies.pop(0) if self.replies else ""
        middle = len(reply) // 2
        yield reply[:middle]
        yield reply[middle:]


class _FailingClient(_ScriptedClient):
    def stream_chat(self, messages: list[dict[str, str]]) -> Iterator[str]:
        raise TransportError("connection refused")
        yield ""


class _RecordingUI(SilentUI):
    def __init__(self, answers: list[str] | None = None) -> None:
        self.answers = list(answers or [])
        self.prompts: list[str] = []
        self.warnings: list[str] = []
        self.results: list[str] = []

    def ask(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.answers.pop(0) if self.answers else ""

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def show_result(self, text: str) -> None:
        self.results.append(text)


def _make_loop(
    tmp_path: Path,
    client: _ScriptedClient,
    ui: _RecordingUI | None = None,
    **config: object,
) -> AgentLoop:
    session = Session(working_dir=tmp_path)
    registry = ToolRegistry()
    register_builtin_tools(registry, session, enable_lsp=False)
    conversation = Conversation(client, session, system_prompt=build_system_prompt(registry))
    return AgentLoop(
        conversation,
        registry,
        CommandExecutor(session, timeout_sec=10),
        ui=ui,
        config=AgentRunConfig(**config),  # type: ignore[arg-type]
    )


def _last_user_message(call: list[dict[str, str]]) -> str:
    return [m for m in call if m["role"] == "user"][-1]["content"]


def test_plain_reply_converges_without_tools(tmp_path: Path) -> None:
    client = _ScriptedClient(["Nothing to do here."])
    result = _make_loop(tmp_path, client).run_tool_turn("hello")
    assert result.reason is StopReason.CONVERGED
    assert result.iterations == 0
    assert result.replies == ["Nothing to do here."]
    assert len(client.calls) == 1
    assert client.calls[0][0]["role"] == "system"
    assert "- read_file:" in client.calls[0][0]["content"]


def test_write_then_read_round_trip(tmp_path: Path) -> None:
    client = _ScriptedClient(
        [
            'Creating it.\n<tool>write_file</tool><params>{"path": "hello.txt", "content": "hello world"}</params>',
            '<tool>read_file</tool><params>{"path": "hello.txt"}</params>',
            "The file says hello world.",
        ]
    )
    result = _make_loop(tmp_path, client).run_tool_turn("create hello.txt")

    assert result.reason is StopReason.CONVERGED
    assert result.iterations == 2
    assert (tmp_path / "hello.txt").read_text(encoding="utf-8") == "hello world"

    first_feedback = _last_user_message(client.calls[1])
    assert first_feedback.startswith("[Tool Results]\n[write_file]\n+++ hello.txt (new file, 1 lines)")
    second_feedback = _last_user_message(client.calls[2])
    assert second_feedback == "[Tool Results]\n[read_file]\nhello world"
    assert [e.status for e in result.events] == ["ok", "ok"]


def test_write_and_read_in_same_reply_run_in_order(tmp_path: Path) -> None:
    client = _ScriptedClient(
        [
            '<tool>write_file</tool>\n<params>{"path": "notes/todo.md", "content": "- ship it\\n- test it"}</params>\n'
            '<tool>read_file</tool>\n<params>{"path": "notes/todo.md"}</params>',
            "Done.",
        ]
    )
    result = _make_loop(tmp_path, client).run_tool_turn("make a todo list")

    assert result.iterations == 1
    feedback = _last_user_message(client.calls[1])
    write_part, read_part = feedback.split("\n\n")
    assert write_part.startswith("[Tool Results]\n[write_file]\n+++ notes/todo.md (new file, 2 lines)")
    assert read_part == "[read_file]\n- ship it\n- test it"


def test_multiple_calls_in_one_reply_share_feedback(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("A", encoding="utf-8")
    client = _ScriptedClient(
        [
            '<tool>read_file</tool><params>{"path": "a.txt"}</params>\n'
            '<tool>read_file</tool><params>{"path": "missing.txt"}</params>',
            "done",
        ]
    )
    result = _make_loop(tmp_path, client).run_tool_turn("read both")
    feedback = _last_user_message(client.calls[1])
    assert feedback.startswith("[Tool Results]\n[read_file]\nA\n\n[read_file] Error: No such file:")
    assert result.iterations == 1
    assert [e.status for e in result.events] == ["ok", "error"]


def test_unknown_tool_error_is_fed_back(tmp_path: Path) -> None:
    client = _ScriptedClient(['<tool>teleport</tool><params>{"to": "mars"}</params>', "Sorry."])
    result = _make_loop(tmp_path, client).run_tool_turn("go")
    assert result.reason is StopReason.CONVERGED
    assert _last_user_message(client.calls[1]) == "[Tool Results]\n[teleport] Error: Tool not found: teleport"


def test_feedback_turns_skip_system_context(tmp_path: Path) -> None:
    client = _ScriptedClient([LIST_CALL, "ok"])
    _make_loop(tmp_path, client).run_tool_turn("look around")
    users = [m["content"] for m in client.calls[1] if m["role"] == "user"]
    assert users[0].startswith("[SYSTEM: OS=")
    assert users[1].startswith("[Tool Results]")


def test_iteration_cap_is_exact(tmp_path: Path) -> None:
    client = _ScriptedClient([LIST_CALL], repeat_last=True)
    ui = _RecordingUI()
    result = _make_loop(tmp_path, client, ui=ui, max_iterations=3, repeat_threshold=10).run_tool_turn("loop")

    assert result.reason is StopReason.CAPPED
    assert result.iterations == 3
    assert len(result.events) == 3
    assert len(client.calls) == 4
    cap_warnings = [w for w in ui.warnings if "maximum iterations" in w]
    assert cap_warnings == ["Reached maximum iterations (3); stopping tool loop."]


def test_repeated_identical_call_warns_once(tmp_path: Path) -> None:
    client = _ScriptedClient([LIST_CALL], repeat_last=True)
    result = _make_loop(tmp_path, client, max_iterations=6, repeat_threshold=3).run_tool_turn("loop")
    stuck = [w for w in result.warnings if "may be stuck" in w]
    assert len(stuck) == 1
    assert "'list_dir' was called 3 times" in stuck[0]


def test_changing_params_do_not_count_as_repetition(tmp_path: Path) -> None:
    (tmp_path / "sub").mkdir()
    other = '<tool>list_dir</tool><params>{"path": "sub"}</params>'
    client = _ScriptedClient([LIST_CALL, other, LIST_CALL, other, "done"])
    result = _make_loop(tmp_path, client, repeat_threshold=2).run_tool_turn("alternate")
    assert result.reason is StopReason.CONVERGED
    assert result.warnings == []


def test_dangerous_shell_tool_needs_confirmation(tmp_path: Path) -> None:
    (tmp_path / "build").mkdir()
    client = _ScriptedClient(['<tool>shell</tool><params>{"command": "rm -rf build"}</params>', "Okay, skipped."])
    ui = _RecordingUI(answers=["no"])
    result = _make_loop(tmp_path, client, ui=ui).run_tool_turn("clean up")

    assert (tmp_path / "build").is_dir()
    assert ui.prompts[0].startswith("DANGEROUS COMMAND DETECTED: rm -rf build")
    assert "declined" in _last_user_message(client.calls[1])
    assert result.events[0].status == "refused"


def test_interactive_shell_tool_runs_on_a_terminal(tmp_path: Path) -> None:
    client = _ScriptedClient(['<tool>shell</tool><params>{"command": "vim notes.txt"}</params>', "Edited."])
    loop = _make_loop(tmp_path, client)
    spawned: list[list[str]] = []

    def _spawn(argv, master_read):  # type: ignore[no-untyped-def]
        spawned.append(list(argv))
        return 0

    loop.executor.spawner = _spawn
    result = loop.run_tool_turn("edit my notes")

    assert spawned and spawned[0][-1].endswith("&& exec vim notes.txt")
    assert _last_user_message(client.calls[1]) == "[Tool Results]\n[shell]\n(interactive session completed)"
    assert [e.status for e in result.events] == ["ok"]


def test_empty_reply_stops_turn(tmp_path: Path) -> None:
    result = _make_loop(tmp_path, _ScriptedClient([""])).run_tool_turn("anything")
    assert result.reason is StopReason.NO_REPLY


def test_transport_error_propagates_without_dangling_turn(tmp_path: Path) -> None:
    loop = _make_loop(tmp_path, _FailingClient([]))
    with pytest.raises(TransportError):
        loop.run_tool_turn("hi")
    assert loop.conversation.messages == []


def test_shell_mode_runs_selected_commands(tmp_path: Path) -> None:
    (tmp_path / "keep").mkdir()
    client = _ScriptedClient(["```bash\necho one\nrm -rf keep\n```", "All set."])
    ui = _RecordingUI(answers=["y", "no"])
    result = _make_loop(tmp_path, client, ui=ui).run_shell_turn("do things")

    assert result.reason is StopReason.CONVERGED
    assert result.iterations == 1
    assert (tmp_path / "keep").is_dir()
    feedback = _last_user_message(client.calls[1])
    assert feedback == "[Command Results]\n$ echo one\none\n"
    assert [e.status for e in result.events] == ["ok", "refused"]


def test_shell_mode_decline_stops(tmp_path: Path) -> None:
    client = _ScriptedClient(["```bash\nls\n```"])
    result = _make_loop(tmp_path, client, ui=_RecordingUI(answers=["n"])).run_shell_turn("list")
    assert result.reason is StopReason.REFUSED
    assert len(client.calls) == 1


def test_shell_mode_select_single_command(tmp_path: Path) -> None:
    client = _ScriptedClient(["```bash\necho first\necho second\n```", "ok"])
    ui = _RecordingUI(answers=["select", "2"])
    _make_loop(tmp_path, client, ui=ui).run_shell_turn("pick")
    assert _last_user_message(client.calls[1]) == "[Command Results]\n$ echo second\nsecond\n"
    assert ui.results[0] == "1. echo first\n2. echo second"


def test_shell_mode_auto_execute_skips_prompts(tmp_path: Path) -> None:
    client = _ScriptedClient(["```bash\necho hi\n```", "```bash\necho again\n```", "finished"])
    ui = _RecordingUI()
    result = _make_loop(tmp_path, client, ui=ui, auto_execute=True).run_shell_turn("go")
    assert ui.prompts == []
    assert result.iterations == 2
    assert result.reason is StopReason.CONVERGED


def test_shell_mode_auto_answer_sticks_for_the_turn(tmp_path: Path) -> None:
    client = _ScriptedClient(["```bash\necho a\n```", "```bash\necho b\n```", "done"])
    ui = _RecordingUI(answers=["auto"])
    result = _make_loop(tmp_path, client, ui=ui).run_shell_turn("go")
    assert len(ui.prompts) == 1
    assert result.iterations == 2
