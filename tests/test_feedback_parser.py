from __future__ import annotations

from soulloop.memory.schema import Bug, BugSeverity, Feature, TestResult
from soulloop.tools.feedback_parser import (
    clean_text,
    deduplicate_bugs,
    deduplicate_features,
    deduplicate_tests,
    extract_feature_name,
    guess_severity,
    parse_agent_output,
)


def test_guess_severity_prefers_critical_keywords() -> None:
    assert guess_severity("Minor crash when the list is empty") == BugSeverity.CRITICAL
    assert guess_severity("SECURITY hole in login") == BugSeverity.CRITICAL
    assert guess_severity("Save button is broken") == BugSeverity.HIGH
    assert guess_severity("Cosmetic typo on the about page") == BugSeverity.LOW
    assert guess_severity("Sorting order is unexpected") == BugSeverity.MEDIUM


def test_extract_feature_name_keeps_short_text() -> None:
    assert extract_feature_name("short text") == "short text"


def test_extract_feature_name_windows_around_keyword() -> None:
    description = (
        "A fully working sign-in flow backed by token based authentication "
        "with refresh handling and logout"
    )
    name = extract_feature_name(description)
    assert "authentication" in name
    assert name.endswith("...")
    assert len(name) < len(description)


def test_extract_feature_name_truncates_without_keyword() -> None:
    description = "x" * 80
    assert extract_feature_name(description) == "x" * 50 + "..."


def test_clean_text_strips_markers_and_quotes() -> None:
    assert clean_text('  - "Quoted item".') == "Quoted item"
    assert clean_text("* trailing comma,") == "trailing comma"


def test_sections_yield_features_and_bugs() -> None:
    transcript = "Implemented features:\n- User auth\n- Search\n\nKnown bugs:\n- Login fails"
    parsed = parse_agent_output(transcript, "agent-7")

    descriptions = [feature.description for feature in parsed.features]
    assert "User auth" in descriptions
    assert "Search" in descriptions
    assert len(parsed.features) >= 2
    assert any(bug.description == "Login fails" for bug in parsed.bugs)
    assert all(bug.agent_id == "agent-7" for bug in parsed.bugs)


def test_fixed_lines_do_not_produce_bugs() -> None:
    parsed = parse_agent_output("Fixed the bug: login crash on submit", "agent-1")
    assert parsed.bugs == []


def test_numbered_bug_section_items() -> None:
    transcript = "Issues found:\n1. Export is broken\n2. Missing favicon\nTests run: none"
    parsed = parse_agent_output(transcript, "agent-1")
    by_description = {bug.description: bug for bug in parsed.bugs}
    assert by_description["Export is broken"].severity == BugSeverity.HIGH
    assert "Missing favicon" in by_description


def test_summary_counts_produce_failing_suite() -> None:
    parsed = parse_agent_output("Ran suite: 10 passed, 2 failed", "agent-1")
    suites = [result for result in parsed.test_results if result.test_name == "Test Suite"]
    assert len(suites) == 1
    assert suites[0].passed is False
    assert suites[0].message == "10 passed, 2 failed"


def test_summary_counts_with_zero_failures_pass() -> None:
    parsed = parse_agent_output("Summary: 12 passed, 0 failed", "agent-1")
    suite = next(result for result in parsed.test_results if result.test_name == "Test Suite")
    assert suite.passed is True


def test_all_tests_passed_summary() -> None:
    parsed = parse_agent_output("All tests passed", "agent-1")
    assert any(result.test_name == "All Tests" and result.passed for result in parsed.test_results)


def test_single_count_summaries_yield_no_suite() -> None:
    for phrase in ("3 test(s) failed", "Tests: 5 passed", "Test: 1 passed"):
        parsed = parse_agent_output(phrase, "agent-1")
        assert not any(result.test_name == "Test Suite" for result in parsed.test_results), phrase


def test_line_with_pass_and_fail_keeps_only_the_pass() -> None:
    parsed = parse_agent_output("passed: login flow, failed: export", "agent-3")
    assert len(parsed.test_results) == 1
    result = parsed.test_results[0]
    assert result.passed is True
    assert result.message == "Test passed"
    assert result.agent_id == "agent-3"


def test_line_without_pass_falls_back_to_fail() -> None:
    parsed = parse_agent_output("❌ export to csv", "agent-1")
    assert len(parsed.test_results) == 1
    assert parsed.test_results[0].passed is False
    assert parsed.test_results[0].message == "Test failed"


def test_one_line_can_yield_feature_bug_and_test() -> None:
    parsed = parse_agent_output("Implemented export, bug: save fails, tests passed: all", "agent-1")

    assert [feature.description for feature in parsed.features] == [
        "export, bug: save fails, tests passed: all"
    ]
    assert [bug.description for bug in parsed.bugs] == ["save fails, tests passed: all"]
    assert parsed.bugs[0].severity == BugSeverity.HIGH
    assert len(parsed.test_results) == 1
    assert parsed.test_results[0].passed is True


def test_section_reads_at_most_nineteen_lines() -> None:
    bullets = "\n".join(f"- Widget {number}" for number in range(1, 26))
    parsed = parse_agent_output(f"New features:\n{bullets}", "agent-1")
    assert [feature.description for feature in parsed.features] == [
        f"Widget {number}" for number in range(1, 20)
    ]


def test_feature_section_stops_at_test_or_issue_line() -> None:
    for stop_line in ("Test notes:", "Issue tracker:"):
        transcript = f"New features:\n- Search\n- Export\n{stop_line}\n- Dark mode"
        parsed = parse_agent_output(transcript, "agent-1")
        assert [feature.description for feature in parsed.features] == ["Search", "Export"], stop_line


def test_extract_feature_name_window_survives_case_folding_width() -> None:
    description = "İİİİİİİİİİİİİİİİİİİİİİİİİİİİİİ plus a login page for returning users"
    idx = description.index("login")
    expected = description[max(idx - 20, 0) : idx + len("login") + 20].strip() + "..."
    assert extract_feature_name(description) == expected


def test_empty_output_yields_nothing() -> None:
    parsed = parse_agent_output("", "agent-1")
    assert parsed.empty
    features, bugs, results = parsed
    assert (features, bugs, results) == ([], [], [])


def test_deduplication_is_case_insensitive_and_keeps_first() -> None:
    features = [
        Feature(name="a", description="Search"),
        Feature(name="b", description="search"),
        Feature(name="c", description="Login"),
    ]
    assert [feature.name for feature in deduplicate_features(features)] == ["a", "c"]

    bugs = [Bug(description="Slow"), Bug(description="SLOW"), Bug(description="Crash")]
    assert [bug.description for bug in deduplicate_bugs(bugs)] == ["Slow", "Crash"]

    results = [
        TestResult(test_name="Suite", passed=True),
        TestResult(test_name="suite", passed=False),
    ]
    assert deduplicate_tests(results) == [results[0]]
