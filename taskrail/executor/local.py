"""Backends that run task workloads as local processes or Docker containers."""

from __future__ import annotations

import os
import shutil
import subprocess
import threading
import uuid
from pathlib import Path

from taskrail._log import get_logger
from taskrail.errors import DispatchError
from taskrail.executor.base import (
    DispatchRequest,
    ExecutionBackend,
    Notify,
    TaskRunEvent,
    TaskRunEventKind,
    status_for_exit,
)
from taskrail.models import TaskRunStatus

logger = get_logger("executor.local")

_STOP_TIMEOUT = 10


class ProcessBackend(ExecutionBackend):
    """Runs ``entrypoint + command`` as a subprocess; the image is ignored.

    Each workload gets a watcher thread that waits for the process and
    reports completion. When *output_dir* is set, stdout and stderr of each
    task run go to ``<output_dir>/<namespace>_<pipeline>_<run>_<task>.log``;
    otherwise they are inherited from the parent process.
    """

    def __init__(self, output_dir: Path | None = None) -> None:
        self._output_dir = output_dir
        self._lock = threading.Lock()
        self._procs: dict[str, subprocess.Popen[bytes]] = {}
        self._cancelled: set[str] = set()

    def build_argv(self, request: DispatchRequest, handle: str) -> list[str]:
        argv = list(request.entrypoint or []) + list(request.command or [])
        if not argv:
            raise DispatchError(f"task {request.task_id!r} has no command or entrypoint")
        return argv

    def _open_output(self, request: DispatchRequest):
        if self._output_dir is None:
            return None
        self._output_dir.mkdir(parents=True, exist_ok=True)
        name = f"{request.namespace}_{request.pipeline_id}_{request.run_id}_{request.task_id}.log"
        return open(self._output_dir / name, "ab")  # noqa: SIM115

    def dispatch(self, request: DispatchRequest, notify: Notify) -> str:
        handle = uuid.uuid4().hex[:12]
        argv = self.build_argv(request, handle)
        env = {**os.environ, **request.env}
        try:
            output = self._open_output(request)
        except OSError as e:
            raise DispatchError(f"could not open output for {request.label}: {e}") from e
        try:
            proc = subprocess.Popen(
                argv,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=subprocess.STDOUT if output is not None else None,
            )
        except OSError as e:
            raise DispatchError(f"could not start {request.label}: {e}") from e
        finally:
            if output is not None:
                output.close()

        with self._lock:
            self._procs[handle] = proc
        logger.debug("Dispatched %s as pid %d (handle %s)", request.label, proc.pid, handle)

        thread = threading.Thread(
            target=self._watch,
            args=(handle, request.task_id, proc, notify),
            daemon=True,
            name=f"task-{request.task_id}",
        )
        thread.start()
        return handle

    def _watch(
        self, handle: str, task_id: str, proc: subprocess.Popen[bytes], notify: Notify
    ) -> None:
        notify(TaskRunEvent(task_id=task_id, kind=TaskRunEventKind.STARTED))
        exit_code = proc.wait()
        with self._lock:
            self._procs.pop(handle, None)
            cancelled = handle in self._cancelled
            self._cancelled.discard(handle)
        self._report(task_id, exit_code, cancelled, notify)

    @staticmethod
    def _report(task_id: str, exit_code: int, cancelled: bool, notify: Notify) -> None:
        if cancelled:
            status = TaskRunStatus.CANCELLED
            message = "workload was stopped on request"
        else:
            status = status_for_exit(exit_code)
            message = "" if exit_code == 0 else f"workload exited with code {exit_code}"
        notify(
            TaskRunEvent(
                task_id=task_id,
                kind=TaskRunEventKind.COMPLETED,
                exit_code=exit_code,
                status=status,
                message=message,
            )
        )

    def cancel(self, handle: str) -> None:
        with self._lock:
            proc = self._procs.get(handle)
            if proc is None:
                return
            self._cancelled.add(handle)
        self._stop(handle, proc)

    def _stop(self, handle: str, proc: subprocess.Popen[bytes]) -> None:
        logger.debug("Terminating pid %d (handle %s)", proc.pid, handle)
        try:
            proc.terminate()
        except ProcessLookupError:
            pass

    def close(self) -> None:
        with self._lock:
            remaining = list(self._procs.items())
        for handle, proc in remaining:
            self.cancel(handle)
            try:
                proc.wait(timeout=_STOP_TIMEOUT)
            except subprocess.TimeoutExpired:
                logger.warning("pid %d did not exit after terminate; killing", proc.pid)
                proc.kill()


class DockerBackend(ProcessBackend):
    """Runs each task in ``docker run --rm`` and stops it with ``docker stop``.

    Containers are named ``taskrail-<handle>`` so a later process can find
    them again with ``docker wait``.
    """

    def __init__(self, output_dir: Path | None = None, docker: str = "docker") -> None:
        super().__init__(output_dir)
        self._docker = docker

    @staticmethod
    def container_name(handle: str) -> str:
        return f"taskrail-{handle}"

    def _docker_bin(self) -> str:
        path = shutil.which(self._docker)
        if path is None:
            raise DispatchError(f"{self._docker!r} executable not found on PATH")
        return path

    def build_argv(self, request: DispatchRequest, handle: str) -> list[str]:
        argv = [self._docker_bin(), "run", "--rm", "--name", self.container_name(handle)]
        # Values are read from the client's environment so they stay off the command line.
        for key in sorted(request.env):
            argv += ["-e", key]
        entrypoint = list(request.entrypoint or [])
        if entrypoint:
            argv += ["--entrypoint", entrypoint[0]]
        argv.append(request.image)
        argv += entrypoint[1:]
        argv += list(request.command or [])
        return argv

    def _stop(self, handle: str, proc: subprocess.Popen[bytes]) -> None:
        name = self.container_name(handle)
        logger.debug("Stopping container %s", name)
        try:
            subprocess.run(
                [self._docker_bin(), "stop", name],
                capture_output=True,
                timeout=_STOP_TIMEOUT + 5,
                check=False,
            )
        except (OSError, DispatchError, subprocess.TimeoutExpired) as e:
            logger.warning("docker stop %s failed (%s); terminating client", name, e)
            super()._stop(handle, proc)

    def attach(self, handle: str, task_id: str, notify: Notify) -> None:
        name = self.container_name(handle)
        docker = self._docker_bin()
        try:
            inspect = subprocess.run(
                [docker, "inspect", "--format", "{{.State.Running}}", name],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise DispatchError(f"could not inspect container {name}: {e}") from e
        if inspect.returncode != 0:
            raise DispatchError(f"container {name} no longer exists")
        try:
            proc = subprocess.Popen(
                [docker, "wait", name],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise DispatchError(f"could not wait on container {name}: {e}") from e

        with self._lock:
            self._procs[handle] = proc
        logger.info("Re-attached to container %s", name)

        def _wait() -> None:
            out, _ = proc.communicate()
            with self._lock:
                self._procs.pop(handle, None)
                cancelled = handle in self._cancelled
                self._cancelled.discard(handle)
            try:
                exit_code = int(out.decode().strip())
            except ValueError:
                exit_code = proc.returncode or 1
            self._report(task_id, exit_code, cancelled, notify)

        threading.Thread(target=_wait, daemon=True, name=f"attach-{handle}").start()
