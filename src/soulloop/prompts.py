"""Prompt templates for development and test iterations."""

from __future__ import annotations

from typing import Optional, Sequence

from .memory.schema import Bug, Soul, SoulFeedback

TEST_PURPOSE = "Test that the application meets all objectives"
DEVELOPMENT_PURPOSE = "Address test feedback and continue development"
PRODUCTION_READY = "PRODUCTION READY"
READINESS_TEST_NAME = "Production Readiness Test"

_TEST_BRIEF = (
    "IMPORTANT: You are testing whether this application is production ready.\n\n"
    "Your task is to thoroughly test that the application meets ALL the objectives "
    "and requirements listed below.\n"
    "At the end of your testing, you MUST output one of the following:\n"
    f'1. The exact text "{PRODUCTION_READY}" (without quotes) ONLY if:\n'
    "   - ALL objectives are met\n"
    "   - ALL requirements are satisfied\n"
    "   - There are NO bugs or errors in the application\n"
    "   - Everything is working correctly\n"
    "2. If NOT ready, provide a PRIORITIZED list of issues. Start with the MOST "
    "CRITICAL issue that blocks production readiness.\n\n"
    "When listing issues:\n"
    "- List them in order of priority (most critical first)\n"
    "- Be specific about what needs to be fixed\n"
    "- Include any bugs or errors you find\n"
    "- Focus on functional issues rather than nice-to-haves\n"
    "- Remember: The next agent will work on ONE issue at a time\n"
)

_TEST_REMINDER = (
    f'Remember: After testing, output either "{PRODUCTION_READY}" or a prioritized '
    "list of issues (most critical first).\n"
    "The development process is iterative - the next agent will tackle one issue at a time.\n"
)

_DEVELOPMENT_BRIEF = (
    "IMPORTANT: Focus on ONE specific task at a time. The development process is "
    "iterative - you don't need to fix everything in one go.\n"
)

_DEVELOPMENT_INSTRUCTIONS = (
    "INSTRUCTIONS:\n"
    "1. Read through all the feedback\n"
    "2. Pick ONE specific issue or feature to work on\n"
    "3. Focus only on that single task\n"
    "4. Make sure your changes are complete and working\n"
    "5. After you finish, another agent will be launched to continue with the remaining work\n\n"
    "Remember: Quality over quantity. It's better to fully complete one task than to "
    "partially complete many."
)


def is_production_ready(output: str) -> bool:
    """Return True only when the whole transcript is the readiness token."""
    return output.strip() == PRODUCTION_READY


def render_bullets(title: str, items: Sequence[str]) -> str:
    """Format ``items`` as a titled bullet block, or nothing when empty."""
    body = "\n".join(f"- {item}" for item in items)
    if not body:
        return ""
    return f"{title}:\n{body}\n"


def render_feedback_summary(feedback: SoulFeedback) -> str:
    """Summarise what earlier iterations reported about the project."""
    sections: list[str] = []
    if feedback.implemented_features:
        lines = [f"Already implemented {len(feedback.implemented_features)} features:"]
        lines.extend(f"- {feature.name}: {feature.description}" for feature in feedback.implemented_features)
        sections.append("\n".join(lines))
    if feedback.known_bugs:
        lines = [f"There are {len(feedback.known_bugs)} known bugs:"]
        lines.extend(
            f"- [{bug.severity.value}] {bug.description} (Status: {bug.status.value})"
            for bug in feedback.known_bugs
        )
        sections.append("\n".join(lines))
    if feedback.test_results:
        sections.append(
            f"Test Results: {feedback.passed_tests()}/{len(feedback.test_results)} tests passed"
        )
    return "\n\n".join(sections)


def render_test_prompt(soul: Soul) -> str:
    """Build the prompt for a readiness check of ``soul``."""
    parts = [f"Soul: {soul.name}\n", _TEST_BRIEF]
    parts.extend(_render_goals(soul))
    summary = render_feedback_summary(soul.feedback)
    if summary:
        parts.append(summary + "\n")
    parts.append(_TEST_REMINDER)
    return "\n".join(part for part in parts if part)


def render_development_prompt(
    soul: Soul,
    feedback: Optional[str] = None,
    *,
    purpose: str = "Address ONE of the most critical issues from the test feedback below",
) -> str:
    """Build the prompt for a single-issue development iteration."""
    parts = [f"Soul: {soul.name}\n", _DEVELOPMENT_BRIEF, f"Purpose: {purpose}\n"]
    parts.extend(_render_goals(soul))
    if feedback:
        parts.append(f"Test Feedback:\n{feedback}\n")
    summary = render_feedback_summary(soul.feedback)
    if summary:
        parts.append(summary + "\n")
    parts.append(_DEVELOPMENT_INSTRUCTIONS)
    return "\n".join(part for part in parts if part)


def render_unfixed_bugs_feedback(bugs: Sequence[Bug]) -> str:
    """Explain why a readiness claim was overruled by open bugs."""
    lines = [
        f"The test agent reported {PRODUCTION_READY}, but there are still {len(bugs)} unfixed bugs:",
        "",
    ]
    lines.extend(f"- [{bug.severity.value}] {bug.description}" for bug in bugs)
    lines.append("")
    lines.append("Please fix these bugs before the application can be considered production ready.")
    return "\n".join(lines)


def _render_goals(soul: Soul) -> list[str]:
    return [
        render_bullets("Objectives", soul.objectives),
        render_bullets("Requirements", soul.requirements),
    ]


__all__ = [
    "DEVELOPMENT_PURPOSE",
    "PRODUCTION_READY",
    "READINESS_TEST_NAME",
    "TEST_PURPOSE",
    "is_production_ready",
    "render_bullets",
    "render_development_prompt",
    "render_feedback_summary",
    "render_test_prompt",
    "render_unfixed_bugs_feedback",
]
