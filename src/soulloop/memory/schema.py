"""Typed records describing a soul and the feedback gathered about it."""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePath
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def generate_soul_id(now: Optional[datetime] = None) -> str:
    """Return a time-ordered identifier with a short random suffix."""
    stamp = (now or utc_now()).strftime("%Y%m%d%H%M%S")
    return f"{stamp}-{secrets.token_hex(3)}"


def generate_bug_id() -> str:
    return f"bug-{secrets.token_hex(4)}"


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class SoulStatus(str, Enum):
    """Lifecycle states for a soul."""

    STANDBY = "standby"
    WORKING = "working"


class BugSeverity(str, Enum):
    """Severity inferred from a bug description."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class BugStatus(str, Enum):
    OPEN = "open"
    FIXED = "fixed"


class IterationKind(str, Enum):
    """Which half of the development loop an iteration belongs to."""

    DEVELOPMENT = "development"
    TEST = "test"


class Feature(RecordModel):
    """Capability the agent reported as implemented."""

    name: str
    description: str
    implemented_at: datetime = Field(default_factory=utc_now)
    agent_id: str = ""


class Bug(RecordModel):
    """Defect reported by an agent transcript."""

    id: str = Field(default_factory=generate_bug_id)
    description: str
    severity: BugSeverity = BugSeverity.MEDIUM
    status: BugStatus = BugStatus.OPEN
    found_at: datetime = Field(default_factory=utc_now)
    fixed_at: Optional[datetime] = None
    agent_id: str = ""

    @property
    def is_open(self) -> bool:
        return self.status != BugStatus.FIXED and self.fixed_at is None

    def mark_fixed(self, when: Optional[datetime] = None) -> None:
        self.status = BugStatus.FIXED
        self.fixed_at = when or utc_now()


class TestResult(RecordModel):
    """Outcome of a test mentioned by an agent."""

    __test__ = False  # not a pytest test class

    test_name: str
    passed: bool
    message: str = ""
    executed_at: datetime = Field(default_factory=utc_now)
    agent_id: str = ""


class SoulFeedback(RecordModel):
    """Accumulated knowledge about the implementation state of a soul."""

    implemented_features: List[Feature] = Field(default_factory=list)
    known_bugs: List[Bug] = Field(default_factory=list)
    test_results: List[TestResult] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utc_now)

    def open_bugs(self) -> List[Bug]:
        return [bug for bug in self.known_bugs if bug.is_open]

    def passed_tests(self) -> int:
        return sum(1 for result in self.test_results if result.passed)


class SoulIteration(RecordModel):
    """One agent run launched against the soul's project."""

    number: int
    agent_id: str
    purpose: str
    kind: IterationKind = IterationKind.DEVELOPMENT
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    result: str = ""

    @property
    def is_running(self) -> bool:
        return self.completed_at is None


class Soul(RecordModel):
    """A project under autonomous, iterative development.

    Every mutator bumps ``updated_at``. Callers must not hold on to the
    iteration returned by :meth:`start_iteration` across further mutations;
    the store hands out fresh copies on every read.
    """

    id: str = Field(default_factory=generate_soul_id)
    name: str
    project_path: str
    objectives: List[str] = Field(default_factory=list)
    requirements: List[str] = Field(default_factory=list)
    status: SoulStatus = SoulStatus.STANDBY
    feedback: SoulFeedback = Field(default_factory=SoulFeedback)
    iterations: List[SoulIteration] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def new(cls, project_path: str, name: Optional[str] = None) -> "Soul":
        """Create a standby soul, naming it after the project folder if needed."""
        if not name:
            name = PurePath(project_path).name or project_path
        now = utc_now()
        return cls(
            id=generate_soul_id(now),
            name=name,
            project_path=project_path,
            feedback=SoulFeedback(last_updated=now),
            created_at=now,
            updated_at=now,
        )

    def touch(self) -> datetime:
        now = utc_now()
        self.updated_at = now if now >= self.created_at else self.created_at
        return self.updated_at

    # Objectives / requirements -------------------------------------------------------
    def add_objective(self, objective: str) -> None:
        self.objectives.append(objective)
        self.touch()

    def add_requirement(self, requirement: str) -> None:
        self.requirements.append(requirement)
        self.touch()

    def set_objectives(self, objectives: List[str]) -> None:
        self.objectives = list(objectives)
        self.touch()

    def set_requirements(self, requirements: List[str]) -> None:
        self.requirements = list(requirements)
        self.touch()

    def set_status(self, status: SoulStatus) -> None:
        self.status = status
        self.touch()

    # Iterations ----------------------------------------------------------------------
    def start_iteration(
        self,
        agent_id: str,
        purpose: str,
        kind: IterationKind = IterationKind.DEVELOPMENT,
    ) -> SoulIteration:
        iteration = SoulIteration(
            number=len(self.iterations) + 1,
            agent_id=agent_id,
            purpose=purpose,
            kind=kind,
            started_at=utc_now(),
        )
        self.iterations.append(iteration)
        self.touch()
        return self.iterations[-1]

    def complete_iteration(self, agent_id: str, result: str) -> Optional[SoulIteration]:
        """Stamp the first running iteration owned by ``agent_id``.

        Duplicate or unknown completion signals are ignored.
        """
        for iteration in self.iterations:
            if iteration.agent_id == agent_id and iteration.completed_at is None:
                iteration.completed_at = utc_now()
                iteration.result = result
                self.touch()
                return iteration
        return None

    def latest_iteration(self) -> Optional[SoulIteration]:
        return self.iterations[-1] if self.iterations else None

    # Feedback ------------------------------------------------------------------------
    def add_implemented_feature(self, feature: Feature) -> None:
        self.feedback.implemented_features.append(feature)
        self._feedback_changed()

    def add_bug(self, bug: Bug) -> None:
        self.feedback.known_bugs.append(bug)
        self._feedback_changed()

    def add_test_result(self, result: TestResult) -> None:
        self.feedback.test_results.append(result)
        self._feedback_changed()

    def _feedback_changed(self) -> None:
        self.feedback.last_updated = self.touch()


__all__ = [
    "Bug",
    "BugSeverity",
    "BugStatus",
    "Feature",
    "IterationKind",
    "RecordModel",
    "Soul",
    "SoulFeedback",
    "SoulIteration",
    "SoulStatus",
    "TestResult",
    "generate_bug_id",
    "generate_soul_id",
    "utc_now",
]
