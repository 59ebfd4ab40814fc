"""Process-wide pause flag persisted in a small side file."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path

from .errors import StoreError

LOGGER = logging.getLogger(__name__)

PAUSE_FILE_NAME = "souls_pause_state"


class PauseFlag:
    """Boolean gate that stops new iterations from being launched.

    The file holds exactly ``true`` or ``false``. Every read goes back to disk so
    a successful :meth:`set_paused` is visible to the very next
    :meth:`is_paused` call, from any thread or process sharing the file.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def is_paused(self) -> bool:
        with self._lock:
            try:
                raw = self.path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return False
            except OSError as error:
                LOGGER.warning("Unable to read pause state from %s: %s", self.path, error)
                return False
        return raw.strip() == "true"

    def set_paused(self, paused: bool) -> None:
        payload = "true" if paused else "false"
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    prefix=f".{self.path.name}.", dir=self.path.parent
                )
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as handle:
                        handle.write(payload)
                    os.replace(tmp_name, self.path)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
            except OSError as error:
                raise StoreError(f"Failed to persist pause state to {self.path}: {error}") from error
        LOGGER.info("Soul iterations %s", "paused" if paused else "resumed")

    def toggle(self) -> bool:
        """Flip the flag and return the new state."""
        new_state = not self.is_paused()
        self.set_paused(new_state)
        return new_state


__all__ = ["PAUSE_FILE_NAME", "PauseFlag"]
