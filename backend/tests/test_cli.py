"""Tests for the command-line runner."""

from __future__ import annotations

import json

import pytest

from flowrunner import cli


@pytest.fixture
def run_cli(tmp_path, monkeypatch, capsys):
    """Invoke cli.main() against a temporary SQLite database."""
    monkeypatch.setattr(cli, "setup_logger", lambda **kwargs: None)
    monkeypatch.delenv("OTLP_ENDPOINT", raising=False)
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"

    def _run(workflow: dict, prompt: str = "", *extra: str) -> tuple[int, str]:
        path = tmp_path / "workflow.json"
        path.write_text(json.dumps(workflow), encoding="utf-8")
        code = cli.main([
            str(path), "--conversation", "c1", "--user", "u1", "--prompt", prompt, "--db-url", db_url, *extra,
        ])
        return code, capsys.readouterr().out

    return _run


class TestCli:
    """Tests for cli.main()."""

    def test_parser_requires_ids(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["wf.json"])

    def test_slot_turns_persist_between_invocations(self, run_cli, slot_workflow):
        code, out = run_cli(slot_workflow, "plan a trip")
        assert code == 0
        assert json.loads(out) == {
            "status": "halted",
            "awaitingInputFor": "city",
            "output": "Which city?",
            "intent": None,
        }

        _, out = run_cli(slot_workflow, "Oslo")
        assert json.loads(out)["awaitingInputFor"] == "email"

        _, out = run_cli(slot_workflow, "me@example.com")
        report = json.loads(out)
        assert report["status"] == "completed"
        assert report["output"] == "Trip to Oslo"

    def test_metrics_printed(self, run_cli):
        workflow = {
            "id": "wf1",
            "entryPoint": "fmt",
            "nodes": [{"id": "fmt", "type": "Format", "config": {"template": "Hi {{user.id}}"}}],
        }
        code, out = run_cli(workflow, "", "--metrics")
        assert code == 0
        assert '"output": "Hi u1"' in out
        assert 'flowrunner_workflow_runs_total{status="succeeded"} 1' in out

    def test_config_error_reported(self, run_cli):
        workflow = {"entryPoint": "a", "nodes": [{"id": "a", "type": "Teleport"}]}
        code, out = run_cli(workflow)
        assert code == 1
        assert json.loads(out)["status"] == "failed"
