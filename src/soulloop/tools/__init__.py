"""Tool integrations used by the iteration controller."""

from .feedback_parser import ParsedFeedback, guess_severity, parse_agent_output
from .vcs import GitError, GitPublisher, GitRepository

__all__ = [
    "GitError",
    "GitPublisher",
    "GitRepository",
    "ParsedFeedback",
    "guess_severity",
    "parse_agent_output",
]
