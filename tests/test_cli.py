import io
from pathlib import Path
from typing import Iterator

import pytest

from termagent import cli
from termagent.errors import TransportError
from termagent.llm import LLMStatus


class _EchoClient:
    def __init__(self) -> None:
        self.model = "stub-model"
        self.payloads: list[list[dict[str, str]]] = []

    def status(self) -> LLMStatus:
        return LLMStatus(available=True, model=self.model)

    def stream_chat(self, messages: list[dict[str, str]]) -> Iterator[str]:
        self.payloads.append(list(messages))
        yield "echo: "
        yield messages[-1]["content"].rsplit("\n", 1)[-1]


@pytest.fixture
def echo_client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> _EchoClient:
    client = _EchoClient()
    monkeypatch.setattr(cli, "build_client", lambda *args, **kwargs: client)
    monkeypatch.chdir(tmp_path)
    for key in ("TERMAGENT_PROVIDER", "TERMAGENT_MAX_ITERATIONS", "TERMAGENT_COMMAND_TIMEOUT"):
        monkeypatch.delenv(key, raising=False)
    return client


def test_stdin_mode_prints_reply(
    echo_client: _EchoClient, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("what is here?\n"))
    assert cli.main(["--stdin", "--no-session"]) == 0
    assert capsys.readouterr().out.strip().endswith("echo: what is here?")


def test_stdin_mode_rejects_empty_input(
    echo_client: _EchoClient, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("   "))
    assert cli.main(["--stdin", "--no-session"]) == 1
    assert echo_client.payloads == []
    captured = capsys.readouterr()
    assert "No input provided" in captured.err
    assert captured.out == ""


def test_stdin_mode_reports_transport_failure(
    echo_client: _EchoClient, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def _refuse(messages: list[dict[str, str]]) -> Iterator[str]:
        raise TransportError("connection refused")
        yield ""

    monkeypatch.setattr(echo_client, "stream_chat", _refuse)
    monkeypatch.setattr("sys.stdin", io.StringIO("hello\n"))
    assert cli.main(["--stdin", "--no-session"]) == 1
    assert "Error: connection refused" in capsys.readouterr().err


def test_stdin_mode_reports_empty_reply(
    echo_client: _EchoClient, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(echo_client, "stream_chat", lambda messages: iter(()))
    monkeypatch.setattr("sys.stdin", io.StringIO("hello\n"))
    assert cli.main(["--stdin", "--no-session"]) == 1
    assert "No response received" in capsys.readouterr().err


def test_repl_commands(echo_client: _EchoClient, monkeypatch: pytest.MonkeyPatch) -> None:
    inputs = iter(["/model other/model", "/mode shell", "hello", "clear", "exit"])
    monkeypatch.setattr(cli.Prompt, "ask", lambda *args, **kwargs: next(inputs))

    assert cli.main(["--no-session", "--no-lsp"]) == 0
    assert echo_client.model == "other/model"
    assert len(echo_client.payloads) == 1
    assert echo_client.payloads[0][0]["role"] == "user"


def test_invalid_environment_exits_with_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TERMAGENT_PROVIDER", "nowhere")
    assert cli.main([]) == 2


def test_render_result_styles_diff_lines() -> None:
    text = cli.render_result("--- a.txt (+1 -1)\n   2 | - old\n   2 | + new\n   3 |   same")
    styles = {span.style for span in text.spans}
    assert "green" in styles
    assert "red" in styles
    assert text.plain.endswith("same")
