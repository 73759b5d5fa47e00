"""Sequential stage orchestrator with fail-closed gating and a run-level lock."""

from __future__ import annotations

import fcntl
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, Optional

from errors import ExternalProcessError, NetSyncError, NotifyError, RunLockedError
from host_manager import HostManager

logger = logging.getLogger(__name__)

# Exit status of the command-line entry point
EXIT_OK = 0
EXIT_ABORTED = 1  # failed before anything on the host was changed
EXIT_PARTIAL = 2  # something was changed, but services were not (all) restarted
EXIT_LOCKED = 3
EXIT_CONFIG = 4

# Exit code recorded when the command itself could not be started
COMMAND_NOT_STARTED = 127

# Lines of stderr/stdout carried into a failure detail
DETAIL_TAIL_LINES = 5


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


def _tail(text: str, lines: int = DETAIL_TAIL_LINES) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


@dataclass
class StageResult:
    name: str
    command: list[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def check(self) -> "StageResult":
        """Return self, or raise ExternalProcessError if the command failed."""
        if self.ok:
            return self
        output = _tail(self.stderr) or _tail(self.stdout)
        message = f"`{' '.join(self.command)}` exited with {self.exit_code}"
        if output:
            message += f": {output}"
        raise ExternalProcessError(message, stage=self.name, exit_code=self.exit_code, stderr=self.stderr)


@dataclass
class StageRecord:
    name: str
    mutates: bool
    depends_on: tuple[str, ...]
    status: StageStatus = StageStatus.PENDING
    results: list[StageResult] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class RunResult:
    status: RunStatus
    stage: str
    detail: str
    stages: list[StageRecord] = field(default_factory=list)
    mutated: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCESS


class Orchestrator:
    """Runs declared stages in order; a failed stage halts every stage depending on it.

    Nothing is retried. Stage actions signal failure by raising NetSyncError;
    any other exception is a bug and propagates.
    """

    def __init__(self, command_timeout: Optional[float] = None) -> None:
        self.command_timeout = command_timeout
        self._stages: list[tuple[StageRecord, Callable[[], None]]] = []
        self._records: dict[str, StageRecord] = {}
        self._notes: list[str] = []
        self._on_finished: list[Callable[[RunResult], None]] = []

    @property
    def stages(self) -> list[StageRecord]:
        return [record for record, _ in self._stages]

    def add_stage(self, name: str, action: Callable[[], None], mutates: bool = False, depends_on: Optional[list[str]] = None) -> None:
        """Declare a stage. Without `depends_on` it depends on every stage declared before it."""
        if name in self._records:
            raise ValueError(f"Stage '{name}' already declared")
        deps = tuple(self._records) if depends_on is None else tuple(depends_on)
        for dep in deps:
            if dep not in self._records:
                raise ValueError(f"Stage '{name}' depends on undeclared stage '{dep}'")
        record = StageRecord(name=name, mutates=mutates, depends_on=deps)
        self._records[name] = record
        self._stages.append((record, action))

    def add_on_finished(self, callback: Callable[[RunResult], None]) -> None:
        """Register an observer called with the final RunResult.

        Observers cannot change the result; a NotifyError they raise is logged.
        """
        self._on_finished.append(callback)

    def note(self, message: str) -> None:
        """Add a line to the detail reported for a successful run."""
        self._notes.append(message)

    def run_stage(self, name: str, command: list[str], input: Optional[str] = None, timeout: Optional[float] = None) -> StageResult:
        """Run one external command on behalf of stage `name` and record its output."""
        if name not in self._records:
            raise ValueError(f"Stage '{name}' is not declared")
        record = self._records[name]
        timeout = timeout if timeout is not None else self.command_timeout
        logger.info("[%s] running: %s", name, " ".join(command))
        try:
            (returncode, stdout, stderr) = HostManager._run_command(command, input=input, check=False, timeout=timeout)
        except OSError as e:
            returncode, stdout, stderr = COMMAND_NOT_STARTED, "", str(e)

        result = StageResult(name=name, command=list(command), exit_code=returncode, stdout=stdout, stderr=stderr)
        record.results.append(result)
        if not result.ok:
            logger.warning("[%s] %s exited with %d", name, command[0], returncode)
        return result

    def run(self) -> RunResult:
        first_failure: Optional[StageRecord] = None
        mutated = False

        for record, action in self._stages:
            blocked = [d for d in record.depends_on if self._records[d].status != StageStatus.SUCCEEDED]
            if blocked:
                logger.warning("Stage %s not run: depends on %s", record.name, ", ".join(blocked))
                continue

            record.status = StageStatus.RUNNING
            logger.info("Stage %s started", record.name)
            try:
                action()
            except NetSyncError as e:
                if e.stage is None:
                    e.stage = record.name
                record.status = StageStatus.FAILED
                record.error = str(e)
                logger.error("Stage %s failed: %s", record.name, e)
                if first_failure is None:
                    first_failure = record
                # A failed mutating stage counts as a change once it touched the host
                if record.mutates and record.results:
                    mutated = True
                continue

            record.status = StageStatus.SUCCEEDED
            if record.mutates:
                mutated = True
            logger.info("Stage %s succeeded", record.name)

        if first_failure is None:
            last = self._stages[-1][0].name if self._stages else ""
            result = RunResult(status=RunStatus.SUCCESS, stage=last, detail="\n".join(self._notes) or "All stages succeeded", stages=self.stages, mutated=mutated)
        else:
            result = RunResult(status=RunStatus.FAILURE, stage=first_failure.name, detail=first_failure.error or "", stages=self.stages, mutated=mutated)

        for callback in self._on_finished:
            try:
                callback(result)
            except NotifyError as e:
                logger.error("Run observer failed: %s", e)
        return result


def exit_code_for(result: RunResult) -> int:
    if result.succeeded:
        return EXIT_OK
    return EXIT_PARTIAL if result.mutated else EXIT_ABORTED


@contextmanager
def run_lock(path: str) -> Iterator[None]:
    """Hold an exclusive, non-blocking lock on `path` for the duration of a run.

    Raises RunLockedError immediately when another run holds it.
    """
    try:
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    except OSError as e:
        raise NetSyncError(f"Cannot open run lock {path}: {e}") from e
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise RunLockedError(f"Another run holds the lock {path}") from None
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        yield
    finally:
        os.close(fd)
