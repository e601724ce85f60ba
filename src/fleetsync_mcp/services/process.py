from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path
from typing import IO, Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class WorkerHandle(Protocol):
    """Live handle to a worker process, as handed over by the spawner."""

    stdin: IO[Any] | None
    stdout: IO[Any] | None

    def kill(self) -> None: ...

    def is_running(self) -> bool: ...


class ProcessHandle:
    """``WorkerHandle`` over a ``subprocess.Popen`` with piped stdio."""

    def __init__(self, proc: subprocess.Popen, session_ref: str | None = None):
        self.proc = proc
        self.session_ref = session_ref

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def stdin(self) -> IO[Any] | None:
        return self.proc.stdin

    @property
    def stdout(self) -> IO[Any] | None:
        return self.proc.stdout

    def is_running(self) -> bool:
        return self.proc.poll() is None

    def kill(self, timeout: float = 5.0) -> None:
        """Terminate, escalating to SIGKILL if the process ignores SIGTERM."""
        if not self.is_running():
            return
        self.proc.terminate()
        try:
            self.proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Worker pid %d ignored SIGTERM, killing", self.proc.pid)
            self.proc.kill()
            self.proc.wait(timeout=timeout)


class SubprocessSpawner:
    """Start worker processes with piped stdin/stdout."""

    def __init__(self, resume_flag: str = "--resume"):
        self.resume_flag = resume_flag

    def spawn(self, command: str | list[str], cwd: str | Path | None = None) -> ProcessHandle:
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            text=True,
            bufsize=1,
        )
        logger.info("Spawned worker pid %d: %s", proc.pid, shlex.join(argv))
        return ProcessHandle(proc)

    def spawn_with_resume(
        self,
        command: str | list[str],
        session_ref: str | None,
        cwd: str | Path | None = None,
    ) -> ProcessHandle:
        """Spawn ``command``, continuing ``session_ref`` when one is known."""
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        if session_ref:
            argv += [self.resume_flag, session_ref]
        handle = self.spawn(argv, cwd=cwd)
        handle.session_ref = session_ref
        return handle
