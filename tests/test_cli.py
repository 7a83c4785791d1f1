import pytest

from live_engine.cli import ConsoleConfirmer, _print_event, build_parser, main
from live_engine.core.models import Source


@pytest.mark.unit
def test_parser_voice_options():
    args = build_parser().parse_args(["--log-level", "debug", "voice", "--no-mic"])
    assert args.command == "voice"
    assert args.no_mic is True
    assert args.log_level == "debug"
    assert args.config is None


@pytest.mark.unit
def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


@pytest.mark.asyncio
@pytest.mark.unit
@pytest.mark.parametrize("answer,expected", [("y", True), (" YES ", True), ("n", False), ("", False)])
async def test_console_confirmer(monkeypatch, answer, expected):
    prompts = []

    def fake_input(prompt):
        prompts.append(prompt)
        return answer

    monkeypatch.setattr("builtins.input", fake_input)

    assert await ConsoleConfirmer().confirm("Delete: /tmp/x", tool_name="delete_item") is expected
    assert "Delete: /tmp/x" in prompts[0]


@pytest.mark.unit
def test_print_event_text_and_sources(capsys):
    _print_event({"type": "Text", "text": "Hello"})
    _print_event({"type": "TurnComplete", "sources": [Source(uri="https://s.example", title="S")]})
    _print_event({"type": "Error", "message": "boom"})

    captured = capsys.readouterr()
    assert captured.out == "Hello\n  [S] https://s.example\n"
    assert "! boom" in captured.err


@pytest.mark.unit
def test_main_without_api_key_exits_with_error(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    config = tmp_path / "engine.yaml"
    config.write_text("voice_name: Aoede\n")

    assert main(["--config", str(config), "voice", "--no-mic"]) == 1
