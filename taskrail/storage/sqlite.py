"""SQLite-backed storage."""

from __future__ import annotations

import json
import sqlite3
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path

from taskrail._log import get_logger
from taskrail.errors import AlreadyExistsError, NotFoundError, StorageError
from taskrail.models import (
    Initiator,
    InitiatorKind,
    PipelineVersion,
    ReasonKind,
    Run,
    RunKey,
    RunState,
    RunStatus,
    StatusReason,
    TaskRun,
    TaskRunState,
    TaskRunStatus,
)
from taskrail.pipeline.schema import PipelineDefinition
from taskrail.storage.base import Storage

logger = get_logger("storage.sqlite")

_SCHEMA = [
    """\
CREATE TABLE IF NOT EXISTS pipeline_versions (
    namespace TEXT NOT NULL,
    pipeline_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    definition TEXT NOT NULL,
    registered TEXT NOT NULL,
    PRIMARY KEY (namespace, pipeline_id, version)
);
""",
    """\
CREATE TABLE IF NOT EXISTS runs (
    namespace TEXT NOT NULL,
    pipeline_id TEXT NOT NULL,
    run_id INTEGER NOT NULL,
    version INTEGER NOT NULL,
    initiator TEXT NOT NULL,
    variables TEXT NOT NULL,
    state TEXT NOT NULL,
    status TEXT NOT NULL,
    status_reason TEXT,
    started TEXT NOT NULL,
    ended TEXT,
    task_runs TEXT NOT NULL,
    PRIMARY KEY (namespace, pipeline_id, run_id)
);
""",
    """\
CREATE TABLE IF NOT EXISTS task_runs (
    namespace TEXT NOT NULL,
    pipeline_id TEXT NOT NULL,
    run_id INTEGER NOT NULL,
    task_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    state TEXT NOT NULL,
    status TEXT NOT NULL,
    status_reason TEXT,
    created TEXT NOT NULL,
    scheduled TEXT,
    started TEXT,
    ended TEXT,
    exit_code INTEGER,
    handle TEXT,
    PRIMARY KEY (namespace, pipeline_id, run_id, task_id)
);
""",
    """\
CREATE TABLE IF NOT EXISTS run_registry (
    namespace TEXT NOT NULL,
    pipeline_id TEXT NOT NULL,
    run_id INTEGER NOT NULL,
    PRIMARY KEY (namespace, pipeline_id, run_id)
);
""",
    "CREATE INDEX IF NOT EXISTS idx_runs_state ON runs (namespace, pipeline_id, state);",
]

_INSERT_RUN = """\
INSERT INTO runs (
    namespace, pipeline_id, run_id, version, initiator, variables,
    state, status, status_reason, started, ended, task_runs
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
"""

_UPDATE_RUN = """\
UPDATE runs SET
    version = ?, initiator = ?, variables = ?, state = ?, status = ?,
    status_reason = ?, started = ?, ended = ?, task_runs = ?
WHERE namespace = ? AND pipeline_id = ? AND run_id = ?;
"""

_INSERT_TASK_RUN = """\
INSERT INTO task_runs (
    namespace, pipeline_id, run_id, task_id, seq, state, status, status_reason,
    created, scheduled, started, ended, exit_code, handle
) VALUES (
    ?, ?, ?, ?,
    (SELECT COUNT(*) FROM task_runs WHERE namespace = ? AND pipeline_id = ? AND run_id = ?),
    ?, ?, ?, ?, ?, ?, ?, ?, ?
);
"""

_UPDATE_TASK_RUN = """\
UPDATE task_runs SET
    state = ?, status = ?, status_reason = ?, created = ?, scheduled = ?,
    started = ?, ended = ?, exit_code = ?, handle = ?
WHERE namespace = ? AND pipeline_id = ? AND run_id = ? AND task_id = ?;
"""


def _reason_to_json(reason: StatusReason | None) -> str | None:
    return json.dumps(asdict(reason)) if reason is not None else None


def _reason_from_json(raw: str | None) -> StatusReason | None:
    if not raw:
        return None
    data = json.loads(raw)
    return StatusReason(kind=ReasonKind(data["kind"]), description=data["description"])


def _row_to_run(row: sqlite3.Row) -> Run:
    initiator = json.loads(row["initiator"])
    return Run(
        namespace=row["namespace"],
        pipeline_id=row["pipeline_id"],
        run_id=row["run_id"],
        version=row["version"],
        initiator=Initiator(
            kind=InitiatorKind(initiator["kind"]),
            name=initiator["name"],
            reason=initiator["reason"],
        ),
        variables=json.loads(row["variables"]),
        state=RunState(row["state"]),
        status=RunStatus(row["status"]),
        status_reason=_reason_from_json(row["status_reason"]),
        started=row["started"],
        ended=row["ended"],
        task_runs=json.loads(row["task_runs"]),
    )


def _row_to_task_run(row: sqlite3.Row) -> TaskRun:
    return TaskRun(
        namespace=row["namespace"],
        pipeline_id=row["pipeline_id"],
        run_id=row["run_id"],
        task_id=row["task_id"],
        state=TaskRunState(row["state"]),
        status=TaskRunStatus(row["status"]),
        status_reason=_reason_from_json(row["status_reason"]),
        created=row["created"],
        scheduled=row["scheduled"],
        started=row["started"],
        ended=row["ended"],
        exit_code=row["exit_code"],
        handle=row["handle"],
    )


def _row_to_pipeline_version(row: sqlite3.Row) -> PipelineVersion:
    return PipelineVersion(
        namespace=row["namespace"],
        pipeline_id=row["pipeline_id"],
        version=row["version"],
        definition=PipelineDefinition.model_validate_json(row["definition"]),
        registered=row["registered"],
    )


class SQLiteStorage(Storage):
    """Storage on a single SQLite connection shared across threads.

    The connection runs in autocommit mode; ``transaction()`` opens a
    ``BEGIN IMMEDIATE`` block on first entry so other processes sharing the
    file are excluded too, and commits (or rolls back) on the outermost exit.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        if sys.platform != "win32":
            db_path.parent.chmod(0o700)
        self._conn = sqlite3.connect(
            str(db_path), check_same_thread=False, timeout=30, isolation_level=None
        )
        self._lock = threading.RLock()
        self._depth = 0
        try:
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL;")
            for stmt in _SCHEMA:
                self._conn.execute(stmt)
            if sys.platform != "win32":
                db_path.chmod(0o600)
        except Exception:
            self._conn.close()
            raise

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._execute("BEGIN IMMEDIATE;")
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._execute("ROLLBACK;")
                raise
            self._depth -= 1
            if outermost:
                self._execute("COMMIT;")

    def _execute(self, sql: str, params: tuple | list = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                return self._conn.execute(sql, params)
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as e:
                logger.error("SQLite error on %s: %s", self._db_path, e)
                raise StorageError(str(e)) from e

    def _insert(self, sql: str, params: tuple, what: str) -> None:
        try:
            self._execute(sql, params)
        except sqlite3.IntegrityError:
            raise AlreadyExistsError(f"{what} already exists") from None

    def _fetchone(self, sql: str, params: tuple) -> sqlite3.Row | None:
        with self._lock:
            return self._execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple | list) -> list[sqlite3.Row]:
        with self._lock:
            return self._execute(sql, params).fetchall()

    # -- pipelines ---------------------------------------------------------

    def insert_pipeline_version(self, version: PipelineVersion) -> None:
        self._insert(
            "INSERT INTO pipeline_versions VALUES (?, ?, ?, ?, ?);",
            (
                version.namespace,
                version.pipeline_id,
                version.version,
                version.definition.model_dump_json(),
                version.registered,
            ),
            f"pipeline {version.pipeline_id!r} version {version.version}",
        )

    def get_pipeline_version(
        self, namespace: str, pipeline_id: str, version: int | None = None
    ) -> PipelineVersion:
        if version is None:
            row = self._fetchone(
                "SELECT * FROM pipeline_versions WHERE namespace = ? AND pipeline_id = ? "
                "ORDER BY version DESC LIMIT 1;",
                (namespace, pipeline_id),
            )
        else:
            row = self._fetchone(
                "SELECT * FROM pipeline_versions WHERE namespace = ? AND pipeline_id = ? "
                "AND version = ?;",
                (namespace, pipeline_id, version),
            )
        if row is None:
            suffix = "" if version is None else f" version {version}"
            raise NotFoundError(f"pipeline {namespace}/{pipeline_id}{suffix} not found")
        return _row_to_pipeline_version(row)

    def list_pipeline_versions(self, namespace: str, pipeline_id: str) -> list[PipelineVersion]:
        rows = self._fetchall(
            "SELECT * FROM pipeline_versions WHERE namespace = ? AND pipeline_id = ? "
            "ORDER BY version ASC;",
            (namespace, pipeline_id),
        )
        return [_row_to_pipeline_version(r) for r in rows]

    def latest_pipeline_version(self, namespace: str, pipeline_id: str) -> int:
        row = self._fetchone(
            "SELECT COALESCE(MAX(version), 0) AS v FROM pipeline_versions "
            "WHERE namespace = ? AND pipeline_id = ?;",
            (namespace, pipeline_id),
        )
        return int(row["v"]) if row is not None else 0

    # -- runs --------------------------------------------------------------

    def insert_run(self, run: Run) -> None:
        self._insert(
            _INSERT_RUN,
            (
                run.namespace,
                run.pipeline_id,
                run.run_id,
                run.version,
                json.dumps(asdict(run.initiator)),
                json.dumps(run.variables),
                str(run.state),
                str(run.status),
                _reason_to_json(run.status_reason),
                run.started,
                run.ended,
                json.dumps(run.task_runs),
            ),
            f"run {run.key}",
        )

    def get_run(self, key: RunKey) -> Run:
        row = self._fetchone(
            "SELECT * FROM runs WHERE namespace = ? AND pipeline_id = ? AND run_id = ?;",
            (key.namespace, key.pipeline_id, key.run_id),
        )
        if row is None:
            raise NotFoundError(f"run {key} not found")
        return _row_to_run(row)

    def list_runs(
        self, namespace: str, pipeline_id: str, *, offset: int = 0, limit: int = 0
    ) -> list[Run]:
        sql = (
            "SELECT * FROM runs WHERE namespace = ? AND pipeline_id = ? "
            "ORDER BY run_id DESC LIMIT ? OFFSET ?;"
        )
        rows = self._fetchall(sql, (namespace, pipeline_id, limit if limit else -1, offset))
        return [_row_to_run(r) for r in rows]

    def update_run(self, run: Run) -> None:
        cur = self._execute(
            _UPDATE_RUN,
            (
                run.version,
                json.dumps(asdict(run.initiator)),
                json.dumps(run.variables),
                str(run.state),
                str(run.status),
                _reason_to_json(run.status_reason),
                run.started,
                run.ended,
                json.dumps(run.task_runs),
                run.namespace,
                run.pipeline_id,
                run.run_id,
            ),
        )
        if cur.rowcount == 0:
            raise NotFoundError(f"run {run.key} not found")

    def max_run_id(self, namespace: str, pipeline_id: str) -> int:
        row = self._fetchone(
            "SELECT COALESCE(MAX(run_id), 0) AS m FROM runs WHERE namespace = ? AND pipeline_id = ?;",
            (namespace, pipeline_id),
        )
        return int(row["m"]) if row is not None else 0

    def count_active_runs(self, namespace: str, pipeline_id: str) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS n FROM runs WHERE namespace = ? AND pipeline_id = ? "
            "AND state IN (?, ?);",
            (namespace, pipeline_id, str(RunState.PENDING), str(RunState.RUNNING)),
        )
        return int(row["n"]) if row is not None else 0

    # -- task runs ---------------------------------------------------------

    def insert_task_run(self, task_run: TaskRun) -> None:
        self._insert(
            _INSERT_TASK_RUN,
            (
                task_run.namespace,
                task_run.pipeline_id,
                task_run.run_id,
                task_run.task_id,
                task_run.namespace,
                task_run.pipeline_id,
                task_run.run_id,
                str(task_run.state),
                str(task_run.status),
                _reason_to_json(task_run.status_reason),
                task_run.created,
                task_run.scheduled,
                task_run.started,
                task_run.ended,
                task_run.exit_code,
                task_run.handle,
            ),
            f"task run {task_run.task_id!r} of run {task_run.run_key}",
        )

    def get_task_run(self, key: RunKey, task_id: str) -> TaskRun:
        row = self._fetchone(
            "SELECT * FROM task_runs WHERE namespace = ? AND pipeline_id = ? AND run_id = ? "
            "AND task_id = ?;",
            (key.namespace, key.pipeline_id, key.run_id, task_id),
        )
        if row is None:
            raise NotFoundError(f"task run {task_id!r} of run {key} not found")
        return _row_to_task_run(row)

    def list_task_runs(self, key: RunKey) -> list[TaskRun]:
        rows = self._fetchall(
            "SELECT * FROM task_runs WHERE namespace = ? AND pipeline_id = ? AND run_id = ? "
            "ORDER BY seq ASC;",
            (key.namespace, key.pipeline_id, key.run_id),
        )
        return [_row_to_task_run(r) for r in rows]

    def update_task_run(self, task_run: TaskRun) -> None:
        cur = self._execute(
            _UPDATE_TASK_RUN,
            (
                str(task_run.state),
                str(task_run.status),
                _reason_to_json(task_run.status_reason),
                task_run.created,
                task_run.scheduled,
                task_run.started,
                task_run.ended,
                task_run.exit_code,
                task_run.handle,
                task_run.namespace,
                task_run.pipeline_id,
                task_run.run_id,
                task_run.task_id,
            ),
        )
        if cur.rowcount == 0:
            raise NotFoundError(
                f"task run {task_run.task_id!r} of run {task_run.run_key} not found"
            )

    # -- run registrations -------------------------------------------------

    def register_run(self, key: RunKey) -> None:
        self._insert(
            "INSERT INTO run_registry VALUES (?, ?, ?);",
            (key.namespace, key.pipeline_id, key.run_id),
            f"registration for run {key}",
        )

    def unregister_run(self, key: RunKey) -> None:
        self._execute(
            "DELETE FROM run_registry WHERE namespace = ? AND pipeline_id = ? AND run_id = ?;",
            (key.namespace, key.pipeline_id, key.run_id),
        )

    def registration_exists(self, key: RunKey) -> bool:
        row = self._fetchone(
            "SELECT 1 FROM run_registry WHERE namespace = ? AND pipeline_id = ? AND run_id = ?;",
            (key.namespace, key.pipeline_id, key.run_id),
        )
        return row is not None

    def list_registrations(self) -> set[RunKey]:
        rows = self._fetchall("SELECT * FROM run_registry;", ())
        return {RunKey(r["namespace"], r["pipeline_id"], r["run_id"]) for r in rows}

    # -- lifecycle ---------------------------------------------------------

    def close(self) -> None:
        with self._lock:
            self._conn.close()
