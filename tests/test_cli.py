"""Tests for the CLI."""

import json
import sys
import textwrap
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from taskrail import __version__
from taskrail.cli.main import app
from taskrail.config import get_home_dir
from taskrail.models import RunKey, RunStatus, TaskRunStatus
from taskrail.storage.sqlite import SQLiteStorage

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path, monkeypatch):
    monkeypatch.setenv("TASKRAIL_HOME", str(tmp_path / "home"))
    monkeypatch.delenv("TASKRAIL_RUN_PARALLELISM_LIMIT", raising=False)
    monkeypatch.setenv("USER", "tester")
    get_home_dir.cache_clear()
    yield
    get_home_dir.cache_clear()


def _python(code: str) -> str:
    return json.dumps([sys.executable, "-c", code])


def _write_pipeline(tmp_path, second_code: str = "pass", triggers: str = "") -> str:
    path = tmp_path / "pipeline.yaml"
    path.write_text(
        textwrap.dedent(f"""\
            apiVersion: taskrail/v1
            kind: Pipeline
            metadata:
              id: demo
            spec:
              tasks:
                - id: first
                  image: python:3
                  command: {_python("import os; assert os.environ['GREETING'] == 'hi'")}
                - id: second
                  image: python:3
                  command: {_python(second_code)}
                  depends_on:
                    first: success
                - id: on-failure
                  image: python:3
                  command: {_python("pass")}
                  depends_on:
                    second: failure
        """)
        + triggers
    )
    return str(path)


class TestVersion:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert "validate" in result.output


class TestValidate:
    def test_valid_pipeline(self, tmp_path):
        result = runner.invoke(app, ["validate", _write_pipeline(tmp_path)])
        assert result.exit_code == 0
        assert "Valid" in result.output
        assert "3 task(s), 2 dependency edge(s)" in result.output
        assert "parallelism unlimited" in result.output

    def test_cycle(self, tmp_path):
        path = tmp_path / "cycle.yaml"
        path.write_text(
            textwrap.dedent("""\
                kind: Pipeline
                metadata: {id: loop}
                spec:
                  tasks:
                    - {id: a, image: x, depends_on: {b: any}}
                    - {id: b, image: x, depends_on: {a: any}}
            """)
        )
        result = runner.invoke(app, ["validate", str(path)])
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_missing_file(self, tmp_path):
        result = runner.invoke(app, ["validate", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 1
        assert "Cannot read" in result.output


class TestRun:
    def test_successful_run(self, tmp_path):
        db = tmp_path / "runs.db"
        result = runner.invoke(
            app, ["run", _write_pipeline(tmp_path), "--var", "GREETING=hi", "--db", str(db)]
        )
        assert result.exit_code == 0, result.output
        assert "Started run default/demo#1" in result.output

        with SQLiteStorage(db) as storage:
            run = storage.get_run(RunKey("default", "demo", 1))
            statuses = {tr.task_id: tr.status for tr in storage.list_task_runs(run.key)}
            assert storage.list_registrations() == set()
        assert run.status == RunStatus.SUCCESSFUL
        assert run.initiator.name == "tester"
        assert run.variables == {"GREETING": "hi"}
        assert statuses == {
            "first": TaskRunStatus.SUCCESSFUL,
            "second": TaskRunStatus.SUCCESSFUL,
            "on-failure": TaskRunStatus.SKIPPED,
        }

    def test_failed_run_exits_nonzero(self, tmp_path):
        db = tmp_path / "runs.db"
        pipeline = _write_pipeline(tmp_path, second_code="raise SystemExit(2)")
        result = runner.invoke(app, ["run", pipeline, "--var", "GREETING=hi", "--db", str(db)])
        assert result.exit_code == 1

        with SQLiteStorage(db) as storage:
            key = RunKey("default", "demo", 1)
            run = storage.get_run(key)
            on_failure = storage.get_task_run(key, "on-failure")
        assert run.status == RunStatus.FAILED
        assert on_failure.status == TaskRunStatus.SUCCESSFUL

    def test_output_dir(self, tmp_path):
        logs = tmp_path / "logs"
        pipeline = _write_pipeline(tmp_path, second_code="print('from second')")
        result = runner.invoke(
            app,
            [
                "run",
                pipeline,
                "--var",
                "GREETING=hi",
                "--db",
                str(tmp_path / "runs.db"),
                "--output-dir",
                str(logs),
            ],
        )
        assert result.exit_code == 0, result.output
        assert "from second" in (logs / "default_demo_1_second.log").read_text()

    def test_bad_var(self, tmp_path):
        result = runner.invoke(app, ["run", _write_pipeline(tmp_path), "--var", "novalue"])
        assert result.exit_code == 1
        assert "Invalid variable format" in result.output

    def test_bad_settings(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TASKRAIL_RUN_PARALLELISM_LIMIT", "many")
        result = runner.invoke(
            app, ["run", _write_pipeline(tmp_path), "--db", str(tmp_path / "runs.db")]
        )
        assert result.exit_code == 1
        assert "TASKRAIL_RUN_PARALLELISM_LIMIT" in result.output


class TestRuns:
    def _seed(self, tmp_path):
        db = tmp_path / "runs.db"
        pipeline = _write_pipeline(tmp_path)
        for _ in range(2):
            result = runner.invoke(
                app, ["run", pipeline, "--var", "GREETING=hi", "--db", str(db)]
            )
            assert result.exit_code == 0, result.output
        return db

    def test_list(self, tmp_path):
        db = self._seed(tmp_path)
        result = runner.invoke(app, ["runs", "list", "demo", "--db", str(db)])
        assert result.exit_code == 0
        assert "Runs: default/demo" in result.output

    def test_list_empty(self, tmp_path):
        db = self._seed(tmp_path)
        result = runner.invoke(app, ["runs", "list", "other", "--db", str(db)])
        assert result.exit_code == 0
        assert "No runs found for default/other." in result.output

    def test_get(self, tmp_path):
        db = self._seed(tmp_path)
        result = runner.invoke(app, ["runs", "get", "demo", "2", "--db", str(db)])
        assert result.exit_code == 0
        assert "Run default/demo#2" in result.output
        assert "Task runs (3)" in result.output

    def test_get_missing_run(self, tmp_path):
        db = self._seed(tmp_path)
        result = runner.invoke(app, ["runs", "get", "demo", "99", "--db", str(db)])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_namespace_defaults_from_settings(self, tmp_path):
        db = self._seed(tmp_path)
        home = tmp_path / "home"
        home.mkdir(exist_ok=True)
        (home / "settings.yaml").write_text("default_namespace: ops\n")

        result = runner.invoke(app, ["runs", "list", "demo", "--db", str(db)])
        assert result.exit_code == 0
        assert "No runs found for ops/demo." in result.output

        result = runner.invoke(app, ["runs", "get", "demo", "1", "--db", str(db)])
        assert result.exit_code == 1
        assert "ops/demo#1" in result.output

        result = runner.invoke(app, ["runs", "list", "demo", "-n", "default", "--db", str(db)])
        assert result.exit_code == 0
        assert "Runs: default/demo" in result.output

    def test_missing_database(self, tmp_path):
        result = runner.invoke(app, ["runs", "list", "demo", "--db", str(tmp_path / "none.db")])
        assert result.exit_code == 1
        assert "Run database not found" in result.output


class _ImmediateShutdown:
    """Stands in for ShutdownSignals and behaves as if Ctrl+C arrived on entry."""

    def __init__(self, stop, *, on_first_signal=None):
        self._stop = stop
        self._on_first_signal = on_first_signal

    def __enter__(self):
        if self._on_first_signal is not None:
            self._on_first_signal()
        self._stop.set()
        return self

    def __exit__(self, *exc):
        return None


class TestDaemon:
    def test_requires_triggers(self, tmp_path):
        result = runner.invoke(app, ["daemon", _write_pipeline(tmp_path)])
        assert result.exit_code == 1
        assert "No triggers configured" in result.output

    def test_starts_and_stops(self, tmp_path):
        triggers = "  triggers:\n    - {type: interval, every_seconds: 3600}\n"
        pipeline = _write_pipeline(tmp_path, triggers=triggers)

        with patch("taskrail._signal.ShutdownSignals", _ImmediateShutdown):
            result = runner.invoke(
                app, ["daemon", pipeline, "--db", str(tmp_path / "runs.db")]
            )
        assert result.exit_code == 0, result.output
        assert "Registered default/demo version 1" in result.output
        assert "1 trigger(s)" in result.output
        assert "Daemon stopped." in result.output

    def test_resumes_leftover_runs(self, tmp_path):
        db = tmp_path / "runs.db"
        pipeline = _write_pipeline(tmp_path)
        assert runner.invoke(
            app, ["run", pipeline, "--var", "GREETING=hi", "--db", str(db)]
        ).exit_code == 0
        with SQLiteStorage(db) as storage:
            storage.register_run(RunKey("default", "demo", 1))

        triggers = "  triggers:\n    - {type: interval, every_seconds: 3600}\n"
        daemon_pipeline = _write_pipeline(tmp_path, triggers=triggers)
        with patch("taskrail._signal.ShutdownSignals", _ImmediateShutdown):
            result = runner.invoke(app, ["daemon", daemon_pipeline, "--db", str(db)])
        assert result.exit_code == 0, result.output
        with SQLiteStorage(db) as storage:
            assert storage.list_registrations() == set()


class TestBackendSelection:
    def test_docker_flag(self):
        from taskrail.cli._helpers import create_backend
        from taskrail.executor.local import DockerBackend, ProcessBackend

        assert isinstance(create_backend(True), DockerBackend)
        backend = create_backend(False)
        assert isinstance(backend, ProcessBackend)
        assert not isinstance(backend, DockerBackend)

    def test_close_called_after_run(self, tmp_path):
        backend = MagicMock()
        backend.dispatch.return_value = "h"

        def _dispatch(request, notify):
            from taskrail.executor.base import TaskRunEvent, TaskRunEventKind

            notify(
                TaskRunEvent(
                    task_id=request.task_id, kind=TaskRunEventKind.COMPLETED, exit_code=0
                )
            )
            return "h"

        backend.dispatch.side_effect = _dispatch
        with patch("taskrail.cli.run_cmd.create_backend", return_value=backend):
            result = runner.invoke(
                app, ["run", _write_pipeline(tmp_path), "--db", str(tmp_path / "runs.db")]
            )
        assert result.exit_code == 0, result.output
        backend.close.assert_called_once()
