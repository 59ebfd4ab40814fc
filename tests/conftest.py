from __future__ import annotations

import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from soulloop.agents.executor import (  # noqa: E402
    AgentLaunchError,
    AgentNotFoundError,
    AgentRecord,
    AgentStatus,
)
from soulloop.controller import IterationController  # noqa: E402
from soulloop.memory.store import SoulStore  # noqa: E402


@dataclass(slots=True)
class Launch:
    """One call made to :meth:`FakeExecutor.launch`."""

    agent_id: str
    project_path: str
    prompt: str


class FakeExecutor:
    """In-memory executor whose agents only finish when a test says so."""

    def __init__(self) -> None:
        self.launches: List[Launch] = []
        self.agents: Dict[str, AgentRecord] = {}
        self.busy_folders: set[str] = set()
        self.launch_error: Optional[AgentLaunchError] = None
        self._lock = threading.Lock()

    def launch(self, project_path: str, prompt: str) -> str:
        with self._lock:
            if self.launch_error is not None:
                raise self.launch_error
            agent_id = f"agent-{len(self.launches) + 1}"
            record = AgentRecord(
                id=agent_id,
                folder=project_path,
                prompt=prompt,
                status=AgentStatus.RUNNING,
            )
            self.agents[agent_id] = record
            self.launches.append(Launch(agent_id, project_path, prompt))
        return agent_id

    def get(self, agent_id: str) -> AgentRecord:
        with self._lock:
            record = self.agents.get(agent_id)
        if record is None:
            raise AgentNotFoundError(agent_id)
        return record

    def is_agent_running_in_folder(self, folder: str) -> bool:
        with self._lock:
            if folder in self.busy_folders:
                return True
            return any(
                record.folder == folder and not record.status.is_terminal
                for record in self.agents.values()
            )

    def running_count(self) -> int:
        with self._lock:
            return sum(1 for record in self.agents.values() if not record.status.is_terminal)

    def complete(
        self,
        agent_id: str,
        output: str = "",
        *,
        status: AgentStatus = AgentStatus.FINISHED,
        error: str = "",
    ) -> None:
        self.get(agent_id).finish(status, output=output, error=error)

    @property
    def last(self) -> Launch:
        return self.launches[-1]


class FinishingExecutor(FakeExecutor):
    """Executor whose agents finish as soon as they start."""

    def __init__(self, output: str = "PRODUCTION READY") -> None:
        super().__init__()
        self.output = output

    def launch(self, project_path: str, prompt: str) -> str:
        agent_id = super().launch(project_path, prompt)
        self.complete(agent_id, self.output)
        return agent_id


@dataclass
class RecordingPublisher:
    """Publisher double that remembers which projects it pushed."""

    published: List[str] = field(default_factory=list)
    event: threading.Event = field(default_factory=threading.Event)

    def publish(self, project_path: str) -> None:
        self.published.append(project_path)
        self.event.set()


@pytest.fixture()
def store(tmp_path: Path) -> SoulStore:
    with SoulStore(tmp_path / "souls.db") as soul_store:
        yield soul_store


@pytest.fixture()
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture()
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture()
def controller(
    store: SoulStore,
    executor: FakeExecutor,
    publisher: RecordingPublisher,
) -> IterationController:
    loop = IterationController(store, executor, publisher=publisher, settle_seconds=0)
    yield loop
    loop.shutdown()


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    folder = tmp_path / "todo-app"
    folder.mkdir()
    return folder


@pytest.fixture()
def finishing_executor() -> FinishingExecutor:
    return FinishingExecutor()
