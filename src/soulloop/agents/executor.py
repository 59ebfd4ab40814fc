"""Agent executor contract and a subprocess-backed implementation.

The iteration controller only relies on the :class:`AgentExecutor` protocol:
launch a job with a prompt, look up its handle, register a completion
callback, and ask whether a folder is busy. :class:`SubprocessAgentExecutor`
runs a command-line coding agent (``claude --print`` by default) on a worker
thread per agent and serialises agents that target the same folder.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Protocol, Sequence
from uuid import uuid4

from ..memory.schema import utc_now

LOGGER = logging.getLogger(__name__)

DEFAULT_AGENT_COMMAND: tuple[str, ...] = (
    "claude",
    "--print",
    "--dangerously-skip-permissions",
    "{prompt}",
)
PROMPT_PLACEHOLDER = "{prompt}"


class AgentStatus(str, Enum):
    """Lifecycle states reported by an executor."""

    PENDING = "pending"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self in {AgentStatus.FINISHED, AgentStatus.FAILED, AgentStatus.KILLED}


class AgentError(RuntimeError):
    """Base error raised by agent executors."""


class AgentLaunchError(AgentError):
    """Raised when the executor cannot start an agent process."""


class AgentNotFoundError(AgentError):
    """Raised when an agent identifier is unknown to the executor."""


CompletionCallback = Callable[["AgentHandle"], None]


class AgentHandle(Protocol):
    """View of a launched agent."""

    id: str
    folder: str
    status: AgentStatus
    output: str
    error: str

    def set_completion_callback(self, callback: CompletionCallback) -> None:
        """Register ``callback``; it fires once, after a terminal status."""


class AgentExecutor(Protocol):
    """Minimal surface the controller needs from an executor."""

    def launch(self, project_path: str, prompt: str) -> str:
        """Start an agent in ``project_path`` and return its identifier."""

    def get(self, agent_id: str) -> AgentHandle:
        """Return the handle for ``agent_id`` or raise :class:`AgentNotFoundError`."""

    def is_agent_running_in_folder(self, folder: str) -> bool:
        """Return True while an agent is pending or running in ``folder``."""


@dataclass(eq=False)
class AgentRecord:
    """Concrete :class:`AgentHandle` with exactly-once completion delivery."""

    id: str
    folder: str
    prompt: str
    status: AgentStatus = AgentStatus.PENDING
    output: str = ""
    error: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    _callback: Optional[CompletionCallback] = field(default=None, repr=False)
    _delivered: bool = field(default=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def set_completion_callback(self, callback: CompletionCallback) -> None:
        with self._lock:
            self._callback = callback
            ready = self.status.is_terminal and not self._delivered
            if ready:
                self._delivered = True
        if ready:
            self._deliver(callback)

    def finish(self, status: AgentStatus, *, output: str = "", error: str = "") -> None:
        """Move to a terminal ``status`` and fire the callback once."""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal agent status")
        with self._lock:
            if self.status.is_terminal:
                return
            self.status = status
            self.output = output
            self.error = error
            self.finished_at = utc_now()
            callback = self._callback
            deliver = callback is not None and not self._delivered
            if deliver:
                self._delivered = True
        if deliver and callback is not None:
            self._deliver(callback)

    def _deliver(self, callback: CompletionCallback) -> None:
        try:
            callback(self)
        except Exception:  # noqa: BLE001 - callbacks must not break the executor
            LOGGER.exception("Completion callback for agent %s failed", self.id)


def build_agent_command(template: Sequence[str], prompt: str) -> List[str]:
    """Substitute ``prompt`` into ``template`` or append it as the last argument."""
    if any(PROMPT_PLACEHOLDER in part for part in template):
        return [part.replace(PROMPT_PLACEHOLDER, prompt) for part in template]
    return [*template, prompt]


class SubprocessAgentExecutor:
    """Run a command-line coding agent per launch, one at a time per folder."""

    def __init__(
        self,
        command: Sequence[str] = DEFAULT_AGENT_COMMAND,
        *,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        if not command:
            raise ValueError("Agent command must not be empty")
        self._command = tuple(command)
        self._timeout = timeout
        self._env = env
        self._agents: Dict[str, AgentRecord] = {}
        self._queues: Dict[str, Deque[AgentRecord]] = {}
        self._processes: Dict[str, subprocess.Popen[str]] = {}
        self._killed: set[str] = set()
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "SubprocessAgentExecutor":
        agent = config.get("agent") or {}
        command = agent.get("command") or DEFAULT_AGENT_COMMAND
        if isinstance(command, str):
            command = shlex.split(command)
        timeout = agent.get("timeout")
        env = agent.get("env") or None
        return cls(
            [str(part) for part in command],
            timeout=float(timeout) if timeout else None,
            env={str(key): str(value) for key, value in env.items()} if env else None,
        )

    # Public API ----------------------------------------------------------------------
    def launch(self, project_path: str, prompt: str) -> str:
        folder = os.path.abspath(os.path.expanduser(project_path))
        if not os.path.isdir(folder):
            raise AgentLaunchError(f"Project folder does not exist: {folder}")
        if shutil.which(self._command[0]) is None:
            raise AgentLaunchError(f"Agent command not found: {self._command[0]}")

        record = AgentRecord(id=f"agent-{uuid4().hex[:12]}", folder=folder, prompt=prompt)
        with self._lock:
            busy = self._folder_busy(folder)
            self._agents[record.id] = record
            if busy:
                self._queues.setdefault(folder, deque()).append(record)
                LOGGER.info("Queued agent %s behind running agent in %s", record.id, folder)
                return record.id
            try:
                self._start(record)
            except OSError as error:
                del self._agents[record.id]
                raise AgentLaunchError(f"Failed to start agent in {folder}: {error}") from error
        return record.id

    def get(self, agent_id: str) -> AgentRecord:
        with self._lock:
            record = self._agents.get(agent_id)
        if record is None:
            raise AgentNotFoundError(f"Agent {agent_id} not found")
        return record

    def is_agent_running_in_folder(self, folder: str) -> bool:
        with self._lock:
            return self._folder_busy(os.path.abspath(os.path.expanduser(folder)))

    def running_count(self) -> int:
        with self._lock:
            return sum(1 for record in self._agents.values() if not record.status.is_terminal)

    def kill(self, agent_id: str) -> None:
        """Stop a running agent or drop a queued one."""
        record = self.get(agent_id)
        with self._lock:
            queue = self._queues.get(record.folder)
            if record.status == AgentStatus.PENDING and queue and record in queue:
                queue.remove(record)
                dequeued = True
            else:
                dequeued = False
                process = self._processes.get(agent_id)
                if process is not None:
                    self._killed.add(agent_id)
                    process.kill()
        if dequeued:
            record.finish(AgentStatus.KILLED, error="Killed before start")

    # Internals -----------------------------------------------------------------------
    def _folder_busy(self, folder: str) -> bool:
        return any(
            record.folder == folder and not record.status.is_terminal
            for record in self._agents.values()
        )

    def _start(self, record: AgentRecord) -> None:
        argv = build_agent_command(self._command, record.prompt)
        env = os.environ.copy()
        if self._env:
            env.update(self._env)
        process = subprocess.Popen(  # noqa: S603 - argv built from configuration
            argv,
            cwd=record.folder,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
        self._processes[record.id] = process
        record.status = AgentStatus.RUNNING
        record.started_at = utc_now()
        LOGGER.info("Started agent %s in %s (pid %s)", record.id, record.folder, process.pid)
        worker = threading.Thread(
            target=self._wait,
            args=(record, process),
            name=f"agent-{record.id}",
            daemon=True,
        )
        worker.start()

    def _wait(self, record: AgentRecord, process: subprocess.Popen[str]) -> None:
        status = AgentStatus.FINISHED
        error = ""
        try:
            stdout, stderr = process.communicate(timeout=self._timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            stdout, stderr = process.communicate()
            status = AgentStatus.FAILED
            error = f"Agent timed out after {self._timeout} seconds"
        with self._lock:
            self._processes.pop(record.id, None)
            killed = record.id in self._killed
            self._killed.discard(record.id)
        if killed:
            status = AgentStatus.KILLED
            error = "Killed"
        elif status == AgentStatus.FINISHED and process.returncode != 0:
            status = AgentStatus.FAILED
            detail = (stderr or "").strip()
            error = f"exit status {process.returncode}" + (f": {detail}" if detail else "")
        LOGGER.info("Agent %s completed with status %s", record.id, status.value)
        record.finish(status, output=stdout or "", error=error)
        self._start_next(record.folder)

    def _start_next(self, folder: str) -> None:
        while True:
            with self._lock:
                queue = self._queues.get(folder)
                if not queue:
                    self._queues.pop(folder, None)
                    return
                record = queue.popleft()
                try:
                    self._start(record)
                    return
                except OSError as error:
                    failure = f"Failed to start agent: {error}"
            LOGGER.error("Queued agent %s could not start: %s", record.id, failure)
            record.finish(AgentStatus.FAILED, error=failure)


__all__ = [
    "AgentError",
    "AgentExecutor",
    "AgentHandle",
    "AgentLaunchError",
    "AgentNotFoundError",
    "AgentRecord",
    "AgentStatus",
    "CompletionCallback",
    "DEFAULT_AGENT_COMMAND",
    "SubprocessAgentExecutor",
    "build_agent_command",
]
