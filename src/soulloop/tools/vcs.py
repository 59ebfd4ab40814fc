"""Minimal git helpers used to publish a project once it is production ready."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence

LOGGER = logging.getLogger(__name__)

DEFAULT_REMOTE = "ai"
DEFAULT_PUSH_TIMEOUT = 30.0


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).expanduser().resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    # ------------------------------------------------------------------ git IO
    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess[str]:
        command = ["git", *args]
        try:
            process = subprocess.run(
                command,
                cwd=self.root,
                capture_output=True,
                text=False,
                check=False,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as error:
            raise GitError(f"git {' '.join(args)} timed out after {timeout} seconds") from error
        except OSError as error:
            raise GitError(f"Unable to run git: {error}") from error
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return result

    # -------------------------------------------------------------- remotes
    def push(
        self,
        remote: str,
        branch: str | None = None,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        """Push ``branch`` (or the upstream default) to ``remote``."""

        args: List[str] = ["push", remote]
        if branch:
            args.append(branch)
        self._run_git(args, check=True, timeout=timeout)


class GitPublisher:
    """Push a finished project to a fixed remote."""

    def __init__(self, remote: str = DEFAULT_REMOTE, timeout: float = DEFAULT_PUSH_TIMEOUT) -> None:
        self.remote = remote
        self.timeout = timeout

    def publish(self, project_path: str) -> None:
        repo = GitRepository(project_path)
        LOGGER.info("Pushing %s to remote %s", repo.root, self.remote)
        repo.push(self.remote, timeout=self.timeout)
        LOGGER.info("Pushed %s to remote %s", repo.root, self.remote)


__all__ = ["DEFAULT_REMOTE", "GitError", "GitPublisher", "GitRepository"]
