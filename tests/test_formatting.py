from pathlib import Path

from termagent.formatting import command_preview, format_output
from termagent.tools.codestats import collect_code_stats


def test_format_output_truncates_long_text() -> None:
    text = "\n".join(str(n) for n in range(60))
    out = format_output(text)
    assert out.split("\n")[49] == "49"
    assert out.endswith("\n... (10 more lines, output truncated)")
    assert format_output("short") == "short"
    assert format_output("") == "(no output)"


def test_command_preview_first_line() -> None:
    assert command_preview("ls -la") == "ls -la"
    assert command_preview("cat <<EOF\nx\nEOF") == "cat <<EOF..."


def test_code_stats_empty_and_mixed(tmp_path: Path) -> None:
    assert collect_code_stats(tmp_path).render() == f"No recognised source files under {tmp_path.resolve()}"

    (tmp_path / "web").mkdir()
    (tmp_path / "web" / "app.js").write_text("export function start() {}\n\nclass Store {}\n", encoding="utf-8")
    (tmp_path / ".hidden").mkdir()
    (tmp_path / ".hidden" / "skip.py").write_text("def hidden():\n    pass\n", encoding="utf-8")
    stats = collect_code_stats(tmp_path)
    assert set(stats.languages) == {"JavaScript"}
    assert stats.languages["JavaScript"].blank == 1
    assert [s[3] for s in stats.symbols] == ["start", "Store"]
