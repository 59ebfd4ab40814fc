from __future__ import annotations

import os
import threading
from datetime import datetime, timedelta, timezone

import pytest

from soulloop.memory.errors import SoulConflictError, SoulNotFoundError, StoreError
from soulloop.memory.schema import (
    Bug,
    BugSeverity,
    Feature,
    IterationKind,
    Soul,
    SoulStatus,
    TestResult,
)
from soulloop.memory.store import SoulStore


def test_soul_roundtrip_preserves_nested_state(tmp_path) -> None:
    db_path = tmp_path / "souls.db"
    with SoulStore(db_path) as store:
        soul = Soul.new("/work/todo-app")
        soul.add_objective("Users can add todos")
        soul.add_requirement("Runs on Python 3.12")
        soul.add_implemented_feature(Feature(name="Add todo", description="Add todo form", agent_id="a-1"))
        soul.add_bug(Bug(description="Crash on empty title", severity=BugSeverity.CRITICAL))
        soul.add_test_result(TestResult(test_name="Unit", passed=True, message="ok"))
        soul.start_iteration("a-1", "Build the form")
        soul.complete_iteration("a-1", "done")
        soul.start_iteration("a-2", "Check everything", IterationKind.TEST)
        store.create(soul)

        loaded = store.get(soul.id)
        assert loaded == soul
        assert loaded.iterations[1].kind == IterationKind.TEST
        assert loaded.iterations[1].completed_at is None

    with SoulStore(db_path) as reopened:
        assert reopened.get_by_project_path("/work/todo-app") == soul


def test_create_rejects_duplicate_project_path(store) -> None:
    store.create_soul("/work/app")
    with pytest.raises(SoulConflictError):
        store.create_soul("/work/app", name="Other")


def test_missing_soul_raises_not_found(store) -> None:
    with pytest.raises(SoulNotFoundError):
        store.get("nope")
    with pytest.raises(SoulNotFoundError):
        store.delete("nope")
    with pytest.raises(SoulNotFoundError):
        store.update(Soul.new("/work/ghost"))
    with pytest.raises(SoulNotFoundError):
        store.get_by_project_path("/work/ghost")


def test_list_orders_by_most_recent_update(store) -> None:
    base = datetime(2024, 5, 1, tzinfo=timezone.utc)
    older = Soul(name="older", project_path="/work/older", created_at=base, updated_at=base)
    newer = Soul(
        name="newer",
        project_path="/work/newer",
        created_at=base,
        updated_at=base + timedelta(minutes=5),
    )
    store.create(older)
    store.create(newer)
    assert [soul.name for soul in store.list()] == ["newer", "older"]

    older.updated_at = base + timedelta(minutes=10)
    older.status = SoulStatus.WORKING
    store.update(older)
    assert [soul.name for soul in store.list()] == ["older", "newer"]
    assert [soul.name for soul in store.list(status=SoulStatus.WORKING)] == ["older"]
    assert [soul.name for soul in store.list(status=SoulStatus.STANDBY)] == ["newer"]


def test_delete_removes_soul(store) -> None:
    soul = store.create_soul("/work/app")
    store.delete(soul.id)
    assert store.list() == []


def test_helpers_update_lists_and_status(store) -> None:
    soul = store.create_soul("/work/app", objectives=[" Ship it ", ""], requirements=["Tests pass"])
    assert soul.objectives == ["Ship it"]

    store.update_objectives(soul.id, ["One", "Two"])
    store.update_requirements(soul.id, [])
    store.set_status(soul.id, SoulStatus.WORKING)

    loaded = store.get(soul.id)
    assert loaded.objectives == ["One", "Two"]
    assert loaded.requirements == []
    assert loaded.status == SoulStatus.WORKING
    assert loaded.updated_at >= loaded.created_at


def test_iteration_helpers_number_and_complete(store) -> None:
    soul = store.create_soul("/work/app")
    first = store.start_iteration(soul.id, "agent-1", "Test it", IterationKind.TEST)
    second = store.start_iteration(soul.id, "agent-2", "Fix it")
    assert (first.number, second.number) == (1, 2)

    completed = store.complete_iteration(soul.id, "agent-1", "PRODUCTION READY")
    assert completed is not None
    assert completed.result == "PRODUCTION READY"
    assert store.complete_iteration(soul.id, "agent-1", "again") is None
    assert store.complete_iteration(soul.id, "unknown", "noise") is None

    loaded = store.get(soul.id)
    assert loaded.iterations[0].result == "PRODUCTION READY"
    assert loaded.iterations[1].is_running


def test_record_feedback_appends_batch(store) -> None:
    soul = store.create_soul("/work/app")
    store.record_feedback(
        soul.id,
        features=[Feature(name="Search", description="Search")],
        bugs=[Bug(description="Slow"), Bug(description="Typo in footer")],
        test_results=[TestResult(test_name="Suite", passed=False)],
    )
    loaded = store.get(soul.id)
    assert len(loaded.feedback.implemented_features) == 1
    assert [bug.description for bug in loaded.feedback.known_bugs] == ["Slow", "Typo in footer"]
    assert loaded.feedback.passed_tests() == 0
    assert loaded.feedback.last_updated == loaded.updated_at


def test_concurrent_helpers_do_not_lose_updates(store) -> None:
    soul = store.create_soul("/work/app")

    def add_bugs(prefix: str) -> None:
        for index in range(10):
            store.add_bug(soul.id, Bug(description=f"{prefix}-{index}"))

    workers = [threading.Thread(target=add_bugs, args=(name,)) for name in ("a", "b", "c")]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert len(store.get(soul.id).feedback.known_bugs) == 30


def test_pause_flag_defaults_off_and_survives_restart(tmp_path) -> None:
    db_path = tmp_path / "souls.db"
    with SoulStore(db_path) as store:
        assert store.is_paused() is False
        store.set_paused(True)
        assert store.is_paused() is True
        assert (tmp_path / "souls_pause_state").read_text(encoding="utf-8") == "true"

    with SoulStore(db_path) as restarted:
        assert restarted.is_paused() is True
        assert restarted.toggle_pause() is False
        assert restarted.is_paused() is False


def test_pause_flag_ignores_unexpected_content(tmp_path) -> None:
    pause_file = tmp_path / "flag"
    pause_file.write_text("yes please", encoding="utf-8")
    with SoulStore(tmp_path / "souls.db", pause_path=pause_file) as store:
        assert store.is_paused() is False


def test_closed_store_raises(tmp_path) -> None:
    store = SoulStore(tmp_path / "souls.db")
    store.close()
    with pytest.raises(StoreError):
        store.list()


def test_from_config_uses_configured_paths(tmp_path) -> None:
    config = {
        "paths": {
            "db_path": str(tmp_path / "state" / "loop.db"),
            "pause_file": str(tmp_path / "state" / "paused"),
        }
    }
    with SoulStore.from_config(config) as store:
        store.set_paused(True)
        assert store.db_path == (tmp_path / "state" / "loop.db").resolve()
    assert (tmp_path / "state" / "paused").read_text(encoding="utf-8") == "true"


def test_soul_store_falls_back_when_db_path_readonly(tmp_path) -> None:
    readonly_dir = tmp_path / "readonly"
    readonly_dir.mkdir()
    db_path = readonly_dir / "souls.db"
    db_path.write_text("", encoding="utf-8")
    db_path.chmod(0o444)
    if os.access(db_path, os.W_OK):
        pytest.skip("running with privileges that ignore file permissions")

    with SoulStore(db_path) as store:
        fallback_path = store.db_path
        soul = store.create_soul("/work/fallback")
        assert store.get(soul.id) is not None

    with SoulStore(db_path) as store_again:
        assert store_again.db_path == fallback_path
        assert store_again.get(soul.id).project_path == "/work/fallback"

    assert fallback_path != db_path.resolve()
    if fallback_path.exists():
        fallback_path.unlink()
        try:
            fallback_path.parent.rmdir()
        except OSError:
            pass
