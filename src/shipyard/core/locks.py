"""File locks with automatic expiry.

WHY
───
Two CI jobs deploying the same app at once would both read the registry,
both pick a port and both write back, and one set of version history would
silently vanish. A lock file created with ``O_CREAT | O_EXCL`` is atomic on
every local filesystem, and a holder that crashed leaves a lock that is
broken once it is older than ``stale_after``.

ARCHITECTURE
────────────
::

    FileLock(path, timeout=30, stale_after=300)
      ├── .acquire()     ─ poll until created or timeout (LockTimeout)
      ├── .release()     ─ remove if we still own it
      ├── .is_locked()   ─ check without acquiring
      └── with lock: ... ─ context manager

    Lock naming convention:
      <locks_dir>/registry.lock      ─ registry document writes
      <locks_dir>/app-<name>.lock    ─ one orchestration per app

Example::

    with FileLock(ctx.locks_dir / "app-demo.lock", owner=ctx.run_id):
        orchestrator.run(config)
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Any

from shipyard.core.errors import LockTimeout, PermissionDeniedError
from shipyard.core.logging import get_logger

logger = get_logger(__name__)


class FileLock:
    """Exclusive lock backed by a lock file.

    Parameters
    ----------
    path
        Lock file location. Parent directories are created on demand.
    timeout
        Seconds to wait for the lock before raising :class:`LockTimeout`.
    stale_after
        Age in seconds after which an existing lock file is considered
        abandoned and removed.
    owner
        Identifier written into the lock file for diagnostics.
    """

    def __init__(
        self,
        path: str | Path,
        timeout: float = 30.0,
        stale_after: float = 300.0,
        owner: str | None = None,
        poll_interval: float = 0.1,
    ) -> None:
        self.path = Path(path)
        self.timeout = timeout
        self.stale_after = stale_after
        self.owner = owner or str(os.getpid())
        self.poll_interval = poll_interval
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        """Acquire the lock, breaking stale locks, or raise ``LockTimeout``."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise PermissionDeniedError(
                f"Cannot create lock directory {self.path.parent}", cause=e
            ).with_context(path=str(self.path.parent))

        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except FileExistsError:
                if self._break_if_stale():
                    continue
                if time.monotonic() >= deadline:
                    raise LockTimeout(
                        f"Timed out after {self.timeout}s waiting for lock {self.path.name}"
                    ).with_context(path=str(self.path), holder=self.holder())
                time.sleep(self.poll_interval)
                continue
            except PermissionError as e:
                raise PermissionDeniedError(
                    f"Cannot create lock file {self.path}", cause=e
                ).with_context(path=str(self.path))
            with os.fdopen(fd, "w") as fh:
                fh.write(self.owner)
            self._held = True
            logger.debug("lock.acquired", path=str(self.path), owner=self.owner)
            return

    def release(self) -> None:
        """Release the lock if held by this instance."""
        if not self._held:
            return
        self._held = False
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.warning("lock.already_removed", path=str(self.path))
            return
        logger.debug("lock.released", path=str(self.path))

    def is_locked(self) -> bool:
        """True if some holder currently owns a non-stale lock."""
        if not self.path.exists():
            return False
        return not self._is_stale()

    def holder(self) -> str | None:
        """Owner string written by the current holder, if readable."""
        try:
            return self.path.read_text().strip() or None
        except OSError:
            return None

    def _is_stale(self) -> bool:
        try:
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return False
        return age > self.stale_after

    def _break_if_stale(self) -> bool:
        if not self._is_stale():
            return False
        logger.warning("lock.stale_removed", path=str(self.path), holder=self.holder())
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        return True

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(self, *args: Any) -> None:
        self.release()


__all__ = ["FileLock"]
