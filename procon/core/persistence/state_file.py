"""
State file persistence — atomic read/write for the AppliedSnapshot.

State is stored as JSON in <state_dir>/state.json. Writes are atomic
(write to temp file, fsync, then rename) so a crash mid-write leaves
either the old snapshot or the new one, never a torn file.

Mutating commands hold an exclusive advisory lock on
<state_dir>/state.lock for their whole run. The lock file carries the
holder's pid so a contending invocation can say who it is waiting on.
"""

from __future__ import annotations

import errno
import fcntl
import json
import logging
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from pydantic import ValidationError

from procon.core.errors import ConfigError, LockContention
from procon.core.models.state import AppliedSnapshot

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = "state.json"
DEFAULT_LOCK_FILE = "state.lock"


class StateStore:
    """The applied snapshot of one state directory, plus its lock."""

    def __init__(self, state_dir: Path):
        self._dir = Path(state_dir)

    @property
    def state_dir(self) -> Path:
        return self._dir

    @property
    def path(self) -> Path:
        return self._dir / DEFAULT_STATE_FILE

    @property
    def lock_path(self) -> Path:
        return self._dir / DEFAULT_LOCK_FILE

    @property
    def artifacts_dir(self) -> Path:
        return self._dir / "artifacts"

    def load(self) -> AppliedSnapshot:
        """Load the snapshot.

        Returns:
            AppliedSnapshot. A missing file means nothing was ever
            applied and gives an empty snapshot.

        Raises:
            ConfigError: The file exists but cannot be parsed. Starting
                fresh here would re-add every project, so refuse.
        """
        if not self.path.is_file():
            logger.info("No state file at %s — starting fresh", self.path)
            return AppliedSnapshot()

        try:
            raw = self.path.read_text(encoding="utf-8")
            snapshot = AppliedSnapshot.model_validate(json.loads(raw))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Corrupt state file {self.path}: {e}") from e
        except ValidationError as e:
            raise ConfigError(f"Unreadable state file {self.path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Cannot read state file {self.path}: {e}") from e

        logger.debug(
            "Loaded state from %s (%d entries, updated_at=%s)",
            self.path,
            len(snapshot.entries),
            snapshot.updated_at,
        )
        return snapshot

    def save(self, snapshot: AppliedSnapshot) -> None:
        """Persist the snapshot atomically."""
        snapshot.touch()
        self._dir.mkdir(parents=True, exist_ok=True)

        data = snapshot.model_dump(mode="json")
        content = json.dumps(data, indent=2, ensure_ascii=False, sort_keys=True) + "\n"

        fd, tmp_path = tempfile.mkstemp(dir=self._dir, prefix=".state_", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
            logger.debug("State saved to %s", self.path)
        except Exception as e:
            tmp.unlink(missing_ok=True)
            logger.error("Failed to save state to %s: %s", self.path, e)
            raise

    def is_locked(self) -> bool:
        """Whether some process holds the state lock right now."""
        try:
            handle = self.lock_path.open("r", encoding="utf-8")
        except OSError:
            return False
        with handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError as e:
                if e.errno not in (errno.EAGAIN, errno.EACCES):
                    raise
                return True
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        return False

    def holder(self) -> str:
        """Pid of the current lock holder; empty when nobody holds it.

        A pid left behind by a process that died holding the lock is
        not reported: the kernel released its lock.
        """
        if not self.is_locked():
            return ""
        try:
            return self.lock_path.read_text(encoding="utf-8").strip()
        except OSError:
            return ""

    @contextmanager
    def lock(self, wait: bool = False, timeout: float | None = None) -> Iterator[None]:
        """Hold the exclusive state lock.

        Args:
            wait: Block until the lock is free instead of failing.
            timeout: With ``wait``, give up after this many seconds.

        Raises:
            LockContention: The lock is held and we are not waiting, or
                the wait timed out.
        """
        self._dir.mkdir(parents=True, exist_ok=True)
        handle = self.lock_path.open("a+", encoding="utf-8")
        try:
            deadline = None if timeout is None else time.monotonic() + timeout
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except OSError as e:
                    if e.errno not in (errno.EAGAIN, errno.EACCES):
                        raise
                    if not wait or (deadline is not None and time.monotonic() >= deadline):
                        raise LockContention(str(self.lock_path), self.holder()) from e
                    time.sleep(0.2)

            handle.seek(0)
            handle.truncate()
            handle.write(f"{os.getpid()}\n")
            handle.flush()
            logger.debug("Acquired state lock %s", self.lock_path)
            try:
                yield
            finally:
                handle.seek(0)
                handle.truncate()
                handle.flush()
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                logger.debug("Released state lock %s", self.lock_path)
        finally:
            handle.close()
