"""Iteration controller driving each soul through test and development runs.

A soul alternates between test iterations, which judge whether the project is
production ready, and development iterations, which fix one reported issue.
Completions arrive on executor threads and are forwarded to the soul's
dispatcher queue, so every decision for one soul runs serially.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Iterable, List, Mapping, Optional, Protocol

from .agents.executor import AgentExecutor, AgentHandle, AgentNotFoundError, AgentStatus
from .memory.pause import PauseFlag
from .memory.schema import IterationKind, Soul, SoulStatus, TestResult, utc_now
from .memory.store import SoulStore
from .prompts import (
    DEVELOPMENT_PURPOSE,
    READINESS_TEST_NAME,
    TEST_PURPOSE,
    is_production_ready,
    render_development_prompt,
    render_test_prompt,
    render_unfixed_bugs_feedback,
)
from .scheduler import SoulDispatcher
from .tools.feedback_parser import parse_agent_output
from .tools.vcs import GitPublisher

LOGGER = logging.getLogger(__name__)

DEFAULT_SETTLE_SECONDS = 2.0
BUG_FIX_PURPOSE = "Fix the bugs that remain open before production release"


class SoulStateError(RuntimeError):
    """Raised when a soul is not in the state an operation requires."""


class Publisher(Protocol):
    def publish(self, project_path: str) -> None:
        """Publish the finished project."""


class IterationController:
    """Launch iterations and react to their completion."""

    def __init__(
        self,
        store: SoulStore,
        executor: AgentExecutor,
        *,
        pause: Optional[PauseFlag] = None,
        publisher: Optional[Publisher] = None,
        dispatcher: Optional[SoulDispatcher] = None,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
    ) -> None:
        self.store = store
        self.executor = executor
        self.pause = pause or store.pause
        self.publisher = publisher
        self.dispatcher = dispatcher or SoulDispatcher()
        self.settle_seconds = settle_seconds

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        store: SoulStore,
        executor: AgentExecutor,
    ) -> "IterationController":
        loop = config.get("loop") or {}
        publish = config.get("publish") or {}
        publisher: Optional[Publisher] = None
        if publish.get("enabled", True):
            publisher = GitPublisher(
                remote=str(publish.get("remote") or "ai"),
                timeout=float(publish.get("timeout") or 30),
            )
        return cls(
            store,
            executor,
            publisher=publisher,
            settle_seconds=float(loop.get("settle_seconds", DEFAULT_SETTLE_SECONDS)),
        )

    # Souls ---------------------------------------------------------------------------
    def create_soul(
        self,
        project_path: str,
        *,
        name: Optional[str] = None,
        objectives: Iterable[str] = (),
        requirements: Iterable[str] = (),
        start: bool = True,
    ) -> Soul:
        """Persist a new soul and, when ``start`` is set, queue its first test."""
        soul = self.store.create_soul(
            project_path,
            name=name,
            objectives=objectives,
            requirements=requirements,
        )
        LOGGER.info("Created soul %s (%s) for %s", soul.id, soul.name, soul.project_path)
        if start:
            self._queue_launch(soul.id, IterationKind.TEST)
        return soul

    def run_again(self, soul_id: str) -> Optional[str]:
        """Restart the loop for a soul that previously reached standby."""
        soul = self.store.get(soul_id)
        if soul.status != SoulStatus.STANDBY:
            raise SoulStateError(f"Soul {soul_id} is {soul.status.value}; only standby souls can run again")
        self.store.set_status(soul_id, SoulStatus.WORKING)
        return self.launch_test_iteration(soul_id)

    # Launching -----------------------------------------------------------------------
    def launch_iteration(
        self,
        soul_id: str,
        kind: IterationKind,
        *,
        feedback: Optional[str] = None,
        purpose: Optional[str] = None,
    ) -> Optional[str]:
        """Start one iteration and return the agent ID, or None while paused.

        Raises :class:`SoulNotFoundError` for unknown souls and lets
        :class:`AgentLaunchError` from the executor propagate. A failed launch
        leaves the soul marked working and is not retried.
        """
        kind = IterationKind(kind)
        if self.pause.is_paused():
            LOGGER.info("Iterations are paused; not launching %s iteration for soul %s", kind.value, soul_id)
            return None

        soul = self.store.mutate(soul_id, _mark_working)
        if kind == IterationKind.TEST:
            prompt = render_test_prompt(soul)
            iteration_purpose = TEST_PURPOSE
        elif purpose:
            prompt = render_development_prompt(soul, feedback, purpose=purpose)
            iteration_purpose = purpose
        else:
            prompt = render_development_prompt(soul, feedback)
            iteration_purpose = DEVELOPMENT_PURPOSE

        agent_id = self.executor.launch(soul.project_path, prompt)
        iteration = self.store.start_iteration(soul_id, agent_id, iteration_purpose, kind)
        LOGGER.info(
            "Launched %s iteration #%d for soul %s (agent %s)",
            kind.value,
            iteration.number,
            soul_id,
            agent_id,
        )
        handle = self.executor.get(agent_id)
        handle.set_completion_callback(
            lambda finished: self._on_agent_completed(soul_id, kind, finished)
        )
        return agent_id

    def launch_test_iteration(self, soul_id: str) -> Optional[str]:
        return self.launch_iteration(soul_id, IterationKind.TEST)

    def launch_development_iteration(
        self,
        soul_id: str,
        feedback: Optional[str] = None,
        purpose: Optional[str] = None,
    ) -> Optional[str]:
        return self.launch_iteration(
            soul_id,
            IterationKind.DEVELOPMENT,
            feedback=feedback,
            purpose=purpose,
        )

    # Pause ---------------------------------------------------------------------------
    def is_paused(self) -> bool:
        return self.pause.is_paused()

    def set_paused(self, paused: bool) -> List[str]:
        """Update the pause flag; clearing a set flag resumes interrupted souls."""
        was_paused = self.pause.is_paused()
        self.pause.set_paused(paused)
        if was_paused and not paused:
            return self.resume_working_souls()
        return []

    def toggle_pause(self) -> bool:
        paused = not self.pause.is_paused()
        self.set_paused(paused)
        return paused

    def resume_working_souls(self) -> List[str]:
        """Queue a test iteration for every working soul that is idle.

        A soul is idle when no agent runs in its folder and nothing is queued
        for it on the dispatcher, such as a follow-up waiting out its delay.
        """
        resumed: List[str] = []
        for soul in self.store.list(status=SoulStatus.WORKING):
            if self.dispatcher.has_pending(soul.id):
                LOGGER.debug("Soul %s already has queued work; not resuming", soul.id)
                continue
            if self.executor.is_agent_running_in_folder(soul.project_path):
                LOGGER.debug("Soul %s already has an agent running; not resuming", soul.id)
                continue
            self._queue_launch(soul.id, IterationKind.TEST)
            resumed.append(soul.id)
        if resumed:
            LOGGER.info("Resuming %d working soul(s): %s", len(resumed), ", ".join(resumed))
        return resumed

    # Lifecycle -----------------------------------------------------------------------
    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self.dispatcher.wait_idle(timeout)

    def shutdown(self) -> None:
        self.dispatcher.shutdown()

    # Completion handling -------------------------------------------------------------
    def _on_agent_completed(self, soul_id: str, kind: IterationKind, handle: AgentHandle) -> None:
        self.dispatcher.submit(soul_id, self._handle_completion, soul_id, kind, handle)

    def _handle_completion(self, soul_id: str, kind: IterationKind, handle: AgentHandle) -> None:
        status = AgentStatus(handle.status)
        result = handle.output
        if handle.error:
            result = f"Error: {handle.error}\n\n{handle.output}"
        LOGGER.info(
            "Agent %s for soul %s finished %s iteration with status %s",
            handle.id,
            soul_id,
            kind.value,
            status.value,
        )

        self.store.complete_iteration(soul_id, handle.id, result)
        self._record_feedback(soul_id, handle.id, result)

        if status in (AgentStatus.FAILED, AgentStatus.KILLED):
            self._queue_follow_up(soul_id, IterationKind.TEST)
            return

        if kind == IterationKind.DEVELOPMENT:
            self._queue_follow_up(soul_id, IterationKind.TEST)
            return

        if is_production_ready(result):
            self._handle_production_ready(soul_id)
            return

        self.store.add_test_result(
            soul_id,
            TestResult(
                test_name=READINESS_TEST_NAME,
                passed=False,
                message=result,
                executed_at=utc_now(),
                agent_id=handle.id,
            ),
        )
        self._queue_follow_up(soul_id, IterationKind.DEVELOPMENT, feedback=result)

    def _handle_production_ready(self, soul_id: str) -> None:
        soul = self.store.get(soul_id)
        open_bugs = soul.feedback.open_bugs()
        if open_bugs:
            LOGGER.warning(
                "Soul %s reported production ready with %d unfixed bug(s); continuing development",
                soul_id,
                len(open_bugs),
            )
            self._queue_follow_up(
                soul_id,
                IterationKind.DEVELOPMENT,
                feedback=render_unfixed_bugs_feedback(open_bugs),
                purpose=BUG_FIX_PURPOSE,
            )
            return

        self.store.set_status(soul_id, SoulStatus.STANDBY)
        LOGGER.info("Soul %s is production ready", soul_id)
        self._publish(soul)

    def _record_feedback(self, soul_id: str, agent_id: str, result: str) -> None:
        parsed = parse_agent_output(result, agent_id)
        if parsed.empty:
            return
        self.store.record_feedback(
            soul_id,
            features=parsed.features,
            bugs=parsed.bugs,
            test_results=parsed.test_results,
        )
        LOGGER.debug(
            "Recorded %d feature(s), %d bug(s), %d test result(s) for soul %s",
            len(parsed.features),
            len(parsed.bugs),
            len(parsed.test_results),
            soul_id,
        )

    def _queue_follow_up(
        self,
        soul_id: str,
        kind: IterationKind,
        *,
        feedback: Optional[str] = None,
        purpose: Optional[str] = None,
    ) -> None:
        if self.pause.is_paused():
            LOGGER.info("Iterations are paused; soul %s will wait for resume", soul_id)
            return
        self._queue_launch(soul_id, kind, feedback=feedback, purpose=purpose)

    def _queue_launch(
        self,
        soul_id: str,
        kind: IterationKind,
        *,
        feedback: Optional[str] = None,
        purpose: Optional[str] = None,
    ) -> None:
        self.dispatcher.submit(
            soul_id,
            self._launch_quietly,
            soul_id,
            kind,
            feedback,
            purpose,
            delay=self.settle_seconds,
        )

    def _launch_quietly(
        self,
        soul_id: str,
        kind: IterationKind,
        feedback: Optional[str],
        purpose: Optional[str],
    ) -> None:
        try:
            if self._iteration_in_flight(soul_id):
                LOGGER.info(
                    "Soul %s already has an iteration in flight; dropping queued %s launch",
                    soul_id,
                    kind.value,
                )
                return
            self.launch_iteration(soul_id, kind, feedback=feedback, purpose=purpose)
        except Exception as error:  # noqa: BLE001 - nobody is waiting on automatic launches
            LOGGER.error("Automatic %s launch for soul %s failed: %s", kind.value, soul_id, error)

    def _iteration_in_flight(self, soul_id: str) -> bool:
        soul = self.store.get(soul_id)
        if self.executor.is_agent_running_in_folder(soul.project_path):
            return True
        latest = soul.latest_iteration()
        if latest is None or not latest.is_running:
            return False
        try:
            self.executor.get(latest.agent_id)
        except AgentNotFoundError:
            # left running by a process that no longer supervises it
            return False
        return True

    def _publish(self, soul: Soul) -> None:
        if self.publisher is None:
            return
        publisher = self.publisher

        def _run() -> None:
            try:
                publisher.publish(soul.project_path)
            except Exception as error:  # noqa: BLE001 - publishing is best effort
                LOGGER.error("Publishing %s failed: %s", soul.project_path, error)

        threading.Thread(target=_run, name=f"publish-{soul.id}", daemon=True).start()


def _mark_working(soul: Soul) -> Soul:
    soul.set_status(SoulStatus.WORKING)
    return soul.model_copy(deep=True)


__all__ = [
    "BUG_FIX_PURPOSE",
    "DEFAULT_SETTLE_SECONDS",
    "IterationController",
    "Publisher",
    "SoulStateError",
]
