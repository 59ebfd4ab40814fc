from __future__ import annotations

from soulloop.memory.schema import Bug, BugSeverity, Feature, Soul, TestResult
from soulloop.prompts import (
    is_production_ready,
    render_development_prompt,
    render_feedback_summary,
    render_test_prompt,
    render_unfixed_bugs_feedback,
)


def _soul() -> Soul:
    soul = Soul.new("/work/todo", name="Todo")
    soul.add_objective("Users can add todos")
    soul.add_requirement("Persist to SQLite")
    return soul


def test_production_ready_requires_exact_token() -> None:
    assert is_production_ready("PRODUCTION READY")
    assert is_production_ready("\n  PRODUCTION READY  \n")
    assert not is_production_ready("The app is PRODUCTION READY")
    assert not is_production_ready("production ready")
    assert not is_production_ready("")


def test_test_prompt_lists_goals() -> None:
    prompt = render_test_prompt(_soul())
    assert prompt.startswith("Soul: Todo")
    assert "Objectives:\n- Users can add todos" in prompt
    assert "Requirements:\n- Persist to SQLite" in prompt
    assert "PRODUCTION READY" in prompt
    assert "Already implemented" not in prompt


def test_development_prompt_includes_feedback_and_summary() -> None:
    soul = _soul()
    soul.add_implemented_feature(Feature(name="Add", description="Add todo form"))
    soul.add_test_result(TestResult(test_name="Suite", passed=True))
    soul.add_test_result(TestResult(test_name="Readiness", passed=False))

    prompt = render_development_prompt(soul, "Saving fails")
    assert "Test Feedback:\nSaving fails" in prompt
    assert "Already implemented 1 features:" in prompt
    assert "Test Results: 1/2 tests passed" in prompt
    assert "Pick ONE specific issue" in prompt


def test_development_prompt_without_feedback() -> None:
    prompt = render_development_prompt(_soul(), purpose="Add search")
    assert "Purpose: Add search" in prompt
    assert "Test Feedback" not in prompt


def test_feedback_summary_shows_bug_severity_and_status() -> None:
    soul = _soul()
    bug = Bug(description="Crash on save", severity=BugSeverity.CRITICAL)
    soul.add_bug(bug)
    summary = render_feedback_summary(soul.feedback)
    assert "There are 1 known bugs:" in summary
    assert "- [critical] Crash on save (Status: open)" in summary


def test_unfixed_bugs_feedback_lists_each_bug() -> None:
    bugs = [
        Bug(description="Checkout does nothing", severity=BugSeverity.HIGH),
        Bug(description="Footer typo", severity=BugSeverity.LOW),
    ]
    text = render_unfixed_bugs_feedback(bugs)
    assert "still 2 unfixed bugs" in text
    assert "- [high] Checkout does nothing" in text
    assert "- [low] Footer typo" in text
