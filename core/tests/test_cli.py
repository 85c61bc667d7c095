"""Tests for the reactree command-line interface."""

import json
import logging
import sys

import pytest

from reactree import cli
from reactree.cli import build_parser, main

EXECUTORS_MODULE = """
from reactree.tree.task import FactWrite, TaskResult


async def model(spec, memory):
    return TaskResult.succeeded(output=f"model {spec['name']}")


async def specs(spec, memory):
    return TaskResult.succeeded(facts=[FactWrite(key="tests.result", value="passed")])


EXECUTORS = {"rails.model": model, "rspec": specs}
"""

PLAN = {
    "id": "feature",
    "type": "sequence",
    "children": [
        {"id": "model", "type": "leaf", "capability": "rails.model", "spec": {"name": "User"}},
        {
            "id": "green",
            "type": "loop",
            "condition": {"kind": "test_result"},
            "children": [{"id": "specs", "type": "leaf", "capability": "rspec"}],
        },
    ],
}


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    (tmp_path / "cli_test_executors.py").write_text(EXECUTORS_MODULE)
    (tmp_path / "plan.json").write_text(json.dumps(PLAN))
    monkeypatch.syspath_prepend(str(tmp_path))
    monkeypatch.setenv("REACTREE_CONFIG", str(tmp_path / "absent.json"))
    monkeypatch.chdir(tmp_path)
    root = logging.getLogger()
    level = root.level
    yield tmp_path
    sys.modules.pop("cli_test_executors", None)
    # main() reconfigures the root logger; hand it back to pytest clean
    root.handlers.clear()
    root.setLevel(level)


def _run(workspace, *argv: str) -> int:
    return main(["--storage", str(workspace / "store"), "--log-level", "warning", *argv])


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_start_status_and_runs(workspace, capsys):
    code = _run(
        workspace,
        "start",
        "plan.json",
        "--goal",
        "Add users",
        "--executors",
        "cli_test_executors:EXECUTORS",
        "--run-id",
        "run_cli",
    )
    report = json.loads(capsys.readouterr().out)

    assert code == 0
    assert report["status"] == "succeeded"
    assert report["goal"] == "Add users"
    assert (workspace / "store" / "runs" / "run_cli" / "summary.json").exists()

    assert _run(workspace, "status", "run_cli") == 0
    status = json.loads(capsys.readouterr().out)
    assert status["node_states"]["specs"] == "succeeded"

    assert _run(workspace, "runs") == 0
    [line] = capsys.readouterr().out.strip().splitlines()
    assert json.loads(line) == {"run_id": "run_cli", "status": "succeeded", "goal": "Add users"}


def test_failed_run_exits_nonzero(workspace, capsys):
    plan = dict(PLAN, children=[{"id": "model", "type": "leaf", "capability": "rails.model", "spec": {}}])
    (workspace / "broken.json").write_text(json.dumps(plan))

    code = _run(workspace, "start", "broken.json", "--executors", "cli_test_executors:EXECUTORS")
    report = json.loads(capsys.readouterr().out)

    assert code == 1
    assert report["failure_path"] == ["feature", "model"]


def test_engine_errors_exit_with_2(workspace):
    assert _run(workspace, "status", "missing_run") == 2
    assert _run(workspace, "resume", "missing_run", "--executors", "cli_test_executors:EXECUTORS") == 2
    assert _run(workspace, "start", "plan.json", "--executors", "no_such_module:EXECUTORS") == 2
    assert _run(workspace, "start", "plan.json", "--executors", "cli_test_executors:MISSING") == 2


def test_programming_errors_are_not_masked(workspace, monkeypatch):
    def broken(args):
        raise AttributeError("'NoneType' object has no attribute 'run_id'")

    monkeypatch.setattr(cli, "cmd_status", broken)

    with pytest.raises(AttributeError):
        _run(workspace, "status", "run_cli")
