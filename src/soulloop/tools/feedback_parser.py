"""Heuristic extraction of features, bugs and test results from agent transcripts.

The rules below are shallow: agents answer in free-form prose and
the parser only needs to surface plausible facts for the next prompt. False
positives and negatives are expected. The parser never raises; any string,
including an empty one, yields (possibly empty) lists.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Sequence, TypeVar

from ..memory.schema import Bug, BugSeverity, BugStatus, Feature, TestResult, utc_now

__all__ = [
    "ParsedFeedback",
    "clean_text",
    "deduplicate_bugs",
    "deduplicate_features",
    "deduplicate_tests",
    "extract_feature_name",
    "guess_severity",
    "parse_agent_output",
]

T = TypeVar("T")

_FEATURE_RE = re.compile(r"(?:implemented|added|created|built|developed)\s*[:：]?\s*(.+)", re.IGNORECASE)
_BUG_RE = re.compile(r"(?:bug|issue|problem|error|defect|broken)\s*[:：]?\s*(.+)", re.IGNORECASE)
_FIXED_RE = re.compile(r"(?:fixed|resolved|solved|repaired)\s*[:：]?\s*(.+)", re.IGNORECASE)
_TEST_PASS_RE = re.compile(r"(?:✅|passed?|success(?:ful)?)\s*[:：]?\s*(.+?)(?:\s*test)?", re.IGNORECASE)
_TEST_FAIL_RE = re.compile(r"(?:❌|failed?|error)\s*[:：]?\s*(.+?)(?:\s*test)?", re.IGNORECASE)

_BULLET_RE = re.compile(r"^[-*•]\s*(.+)")
_NUMBERED_RE = re.compile(r"^\d+\.\s*(.+)")

_FEATURE_SECTIONS: tuple[str, ...] = (
    "features implemented",
    "implemented features",
    "new features",
    "features added",
    "completed features",
)
_BUG_SECTIONS: tuple[str, ...] = (
    "known bugs",
    "bugs found",
    "issues found",
    "problems found",
    "current issues",
)
# Words that mark the start of a different section.
_FEATURE_SECTION_STOPS: tuple[str, ...] = ("bug", "test", "issue")
_BUG_SECTION_STOPS: tuple[str, ...] = ("feature", "test", "implement")
_SECTION_LINE_LIMIT = 20

# Single-count phrasings such as "Tests: 5 passed" or "2 test(s) failed" are
# not recognised; only a passed/failed pair or the literal phrase yields a result.
_SUITE_COUNTS_RE = re.compile(r"(\d+) passed.* (\d+) failed")
_ALL_PASSED_RE = re.compile(r"All tests passed")

_SEVERITY_KEYWORDS: tuple[tuple[BugSeverity, tuple[str, ...]], ...] = (
    (BugSeverity.CRITICAL, ("crash", "security", "data loss", "critical", "urgent")),
    (BugSeverity.HIGH, ("broken", "fail", "error", "cannot", "doesn't work")),
    (BugSeverity.LOW, ("minor", "cosmetic", "typo", "improvement")),
)

_FEATURE_NAME_KEYWORDS: tuple[str, ...] = (
    "API",
    "authentication",
    "login",
    "database",
    "UI",
    "frontend",
    "backend",
    "endpoint",
    "route",
    "component",
    "function",
    "method",
    "class",
    "module",
)
_FEATURE_NAME_LIMIT = 50
_FEATURE_NAME_CONTEXT = 20
_ELLIPSIS = "..."


@dataclass(slots=True)
class ParsedFeedback:
    """Facts extracted from one transcript."""

    features: List[Feature] = field(default_factory=list)
    bugs: List[Bug] = field(default_factory=list)
    test_results: List[TestResult] = field(default_factory=list)

    def __iter__(self) -> Iterator[list]:
        return iter((self.features, self.bugs, self.test_results))

    @property
    def empty(self) -> bool:
        return not (self.features or self.bugs or self.test_results)


def clean_text(text: str) -> str:
    """Strip punctuation, bullet markers and surrounding quotes from a capture."""
    text = text.strip()
    text = text.removesuffix(".")
    text = text.removesuffix(",")
    for marker in ("- ", "* ", "• "):
        text = text.removeprefix(marker)
    return text.strip("\"'")


def guess_severity(description: str) -> BugSeverity:
    """Infer severity from keywords; the first matching tier wins."""
    lower = description.lower()
    for severity, keywords in _SEVERITY_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            return severity
    return BugSeverity.MEDIUM


def extract_feature_name(description: str) -> str:
    """Derive a short label for a feature description."""
    if len(description) <= _FEATURE_NAME_LIMIT:
        return description

    for keyword in _FEATURE_NAME_KEYWORDS:
        match = re.search(re.escape(keyword), description, re.IGNORECASE)
        if match is None:
            continue
        start = max(match.start() - _FEATURE_NAME_CONTEXT, 0)
        end = min(match.end() + _FEATURE_NAME_CONTEXT, len(description))
        return description[start:end].strip() + _ELLIPSIS

    return description[:_FEATURE_NAME_LIMIT] + _ELLIPSIS


def parse_agent_output(
    output: str,
    agent_id: str,
    *,
    now: Optional[datetime] = None,
) -> ParsedFeedback:
    """Extract candidate features, bugs and test results from ``output``."""
    stamp = now or utc_now()
    parsed = ParsedFeedback()
    text = output or ""

    for raw_line in text.split("\n"):
        line = raw_line.strip()
        if not line:
            continue
        _scan_line(line, agent_id, stamp, parsed)

    parsed.features.extend(
        _make_feature(item, agent_id, stamp)
        for item in _section_items(text, _FEATURE_SECTIONS, _FEATURE_SECTION_STOPS)
    )
    parsed.bugs.extend(
        _make_bug(item, agent_id, stamp)
        for item in _section_items(text, _BUG_SECTIONS, _BUG_SECTION_STOPS)
    )
    parsed.test_results.extend(_summary_results(text, agent_id, stamp))

    parsed.features = deduplicate_features(parsed.features)
    parsed.bugs = deduplicate_bugs(parsed.bugs)
    parsed.test_results = deduplicate_tests(parsed.test_results)
    return parsed


def _scan_line(line: str, agent_id: str, stamp: datetime, parsed: ParsedFeedback) -> None:
    match = _FEATURE_RE.search(line)
    if match:
        description = clean_text(match.group(1))
        if description:
            parsed.features.append(_make_feature(description, agent_id, stamp))

    match = _BUG_RE.search(line)
    if match and not _FIXED_RE.search(line):
        description = clean_text(match.group(1))
        if description:
            parsed.bugs.append(_make_bug(description, agent_id, stamp))

    match = _TEST_PASS_RE.search(line)
    passed = True
    if match is None:
        match = _TEST_FAIL_RE.search(line)
        passed = False
    if match:
        name = clean_text(match.group(1))
        if name:
            parsed.test_results.append(
                TestResult(
                    test_name=name,
                    passed=passed,
                    message="Test passed" if passed else "Test failed",
                    executed_at=stamp,
                    agent_id=agent_id,
                )
            )


def _section_items(text: str, titles: Sequence[str], stop_words: Sequence[str]) -> List[str]:
    """Collect list items following each section title found in ``text``."""
    items: List[str] = []
    lower_text = text.lower()
    for title in titles:
        idx = lower_text.find(title)
        if idx == -1:
            continue
        lines = text[idx:].split("\n")
        for raw_line in lines[1:_SECTION_LINE_LIMIT]:
            line = raw_line.strip()
            lower_line = line.lower()
            if any(word in lower_line for word in stop_words):
                break
            match = _BULLET_RE.match(line) or _NUMBERED_RE.match(line)
            if match is None:
                continue
            item = clean_text(match.group(1))
            if item:
                items.append(item)
    return items


def _summary_results(text: str, agent_id: str, stamp: datetime) -> List[TestResult]:
    results: List[TestResult] = []

    def _suite(passed: bool, message: str, name: str = "Test Suite") -> TestResult:
        return TestResult(
            test_name=name,
            passed=passed,
            message=message,
            executed_at=stamp,
            agent_id=agent_id,
        )

    match = _SUITE_COUNTS_RE.search(text)
    if match:
        results.append(_suite(match.group(2) == "0", match.group(0)))
    if _ALL_PASSED_RE.search(text):
        results.append(_suite(True, "All tests passed", name="All Tests"))
    return results


def _make_feature(description: str, agent_id: str, stamp: datetime) -> Feature:
    return Feature(
        name=extract_feature_name(description),
        description=description,
        implemented_at=stamp,
        agent_id=agent_id,
    )


def _make_bug(description: str, agent_id: str, stamp: datetime) -> Bug:
    return Bug(
        description=description,
        severity=guess_severity(description),
        status=BugStatus.OPEN,
        found_at=stamp,
        agent_id=agent_id,
    )


def _deduplicate(items: Sequence[T], key: Callable[[T], str]) -> List[T]:
    seen: set[str] = set()
    unique: List[T] = []
    for item in items:
        marker = key(item).lower()
        if marker in seen:
            continue
        seen.add(marker)
        unique.append(item)
    return unique


def deduplicate_features(features: Sequence[Feature]) -> List[Feature]:
    return _deduplicate(features, lambda feature: feature.description)


def deduplicate_bugs(bugs: Sequence[Bug]) -> List[Bug]:
    return _deduplicate(bugs, lambda bug: bug.description)


def deduplicate_tests(results: Sequence[TestResult]) -> List[TestResult]:
    return _deduplicate(results, lambda result: result.test_name)
