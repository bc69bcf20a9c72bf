from __future__ import annotations

import textwrap

import yaml
from typer.testing import CliRunner

from planmode.cli import app


def _write_config(tmp_path, body: str = ""):
    config_path = tmp_path / "planmode.yaml"
    config_path.write_text(textwrap.dedent(body).strip() + "\n", encoding="utf-8")
    return config_path


def test_init_writes_default_config_once(tmp_path) -> None:
    config_path = tmp_path / "planmode.yaml"
    runner = CliRunner()

    result = runner.invoke(app, ["init", "--config", str(config_path)], catch_exceptions=False)
    assert result.exit_code == 0, result.output
    data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    assert data["rounds"]["max_rounds"] == 5
    assert data["session"]["default_mode"] == "normal"

    again = runner.invoke(app, ["init", "--config", str(config_path)], catch_exceptions=False)
    assert "already exists" in again.output


def test_mode_shows_and_updates_default(tmp_path) -> None:
    config_path = _write_config(tmp_path, "session:\n  default_mode: normal\n")
    runner = CliRunner()

    shown = runner.invoke(app, ["mode", "--config", str(config_path)], catch_exceptions=False)
    assert shown.exit_code == 0, shown.output
    assert "Default: normal mode (shift+tab to cycle)" in shown.output

    updated = runner.invoke(app, ["mode", "plan", "--config", str(config_path)], catch_exceptions=False)
    assert updated.exit_code == 0, updated.output
    data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    assert data["session"]["default_mode"] == "plan"


def test_mode_rejects_auto_when_disabled(tmp_path) -> None:
    config_path = _write_config(tmp_path, "session:\n  auto_mode: false\n")

    result = CliRunner().invoke(app, ["mode", "auto", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "disabled" in result.output


def test_invalid_config_exits_with_message(tmp_path) -> None:
    config_path = _write_config(tmp_path, "rounds:\n  max_rounds: 9\n")

    result = CliRunner().invoke(app, ["mode", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "Invalid plan-mode configuration" in result.output


def test_session_runs_offline_plan_to_finish(tmp_path) -> None:
    config_path = _write_config(
        tmp_path,
        """
        paths:
          logs: logs
        """,
    )
    runner = CliRunner()

    result = runner.invoke(
        app,
        ["session", "--config", str(config_path), "--goal", "add request caching"],
        input="1\n1\n/exit\n",
        catch_exceptions=False,
    )

    assert result.exit_code == 0, result.output
    assert "Using offline planner." in result.output
    assert "Decision points (round 1 of 5)" in result.output
    assert "scope: Minimal change" in result.output
    assert "Finished" in result.output
    assert "Run log:" in result.output
    logs = list((tmp_path / "logs").glob("run__*.json"))
    assert len(logs) == 1

    shown = runner.invoke(app, ["show-log", str(logs[0])], catch_exceptions=False)
    assert shown.exit_code == 0, shown.output
    assert "Goal: add request caching" in shown.output
    assert "Final state: FINISHED" in shown.output
    assert "- verification: Run the test suite" in shown.output


def test_session_passes_plain_text_through_in_normal_mode(tmp_path) -> None:
    config_path = _write_config(tmp_path, "session:\n  default_mode: normal\n")

    result = CliRunner().invoke(
        app,
        ["session", "--config", str(config_path)],
        input="hello there\n/toggle\n/exit\n",
        catch_exceptions=False,
    )

    assert result.exit_code == 0, result.output
    assert "(sent to assistant in normal mode)" in result.output
    assert "plan mode (shift+tab to cycle)" in result.output


def test_show_log_reports_missing_file(tmp_path) -> None:
    result = CliRunner().invoke(app, ["show-log", str(tmp_path / "missing.json")])

    assert result.exit_code == 1
    assert "Failed to read run log" in result.output
