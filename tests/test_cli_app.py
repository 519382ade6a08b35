from __future__ import annotations

from typer.testing import CliRunner

from duplex.cli import app

runner = CliRunner()


def test_run_prints_every_outbound_event() -> None:
    result = runner.invoke(app, ["run", 'say hi\n$text.upper {"text": "loud"}', "--pool-capacity", "2"])

    assert result.exit_code == 0, result.output
    assert "tool.announced" in result.output
    assert "tool.outcome" in result.output
    assert "LOUD" in result.output
    assert "turn.complete" in result.output
    assert "session.closed" in result.output


def test_run_rejects_invalid_settings() -> None:
    result = runner.invoke(app, ["run", "hi", "--pool-capacity", "0"])

    assert result.exit_code == 2


def test_tools_lists_builtin_tools() -> None:
    result = runner.invoke(app, ["tools"])

    assert result.exit_code == 0
    for name in ("clock.wait", "math.running_total", "text.upper"):
        assert name in result.output


def test_hooks_lists_builtin_plugin() -> None:
    result = runner.invoke(app, ["hooks"])

    assert result.exit_code == 0
    assert "provide_model: builtin" in result.output
