"""
Filesystem coordination primitives shared between processes.

FlagFile is an idempotent marker whose existence and mtime carry the
meaning. PidLock is an advisory lock holding the owner's pid; a lock
whose pid is gone is cleared by whoever looks at it next.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Optional

from .cache import atomic_write_text, now_ms

logger = logging.getLogger(__name__)


def is_pid_alive(pid: Optional[int]) -> bool:
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    except OSError:
        return False
    return True


def _remove(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.debug(f"Cannot remove {path}: {e}")


class FlagFile:
    def __init__(self, path: Path, *, clock: Optional[Callable[[], int]] = None):
        self.path = Path(path)
        self._clock = clock or now_ms

    def raise_flag(self) -> bool:
        """Create or touch the flag. Content is the current time in ms."""
        return atomic_write_text(self.path, str(self._clock()))

    def exists(self) -> bool:
        return self.path.is_file()

    def mtime_ms(self) -> Optional[int]:
        try:
            return int(self.path.stat().st_mtime * 1000)
        except OSError:
            return None

    def age_ms(self) -> Optional[int]:
        mtime = self.mtime_ms()
        if mtime is None:
            return None
        return max(0, self._clock() - mtime)

    def read_timestamp(self) -> Optional[int]:
        try:
            return int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None

    def lower(self) -> None:
        _remove(self.path)


class PidLock:
    def __init__(self, path: Path, *, pid: Optional[int] = None):
        self.path = Path(path)
        self.pid = pid if pid is not None else os.getpid()

    def holder(self) -> Optional[int]:
        """Pid recorded in the lock file, or None if absent or unparseable."""
        try:
            return int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None

    def is_held(self) -> bool:
        """True if a live process holds the lock. Clears a stale lock file."""
        if not self.path.exists():
            return False
        pid = self.holder()
        if is_pid_alive(pid):
            return True
        logger.debug(f"Removing stale lock {self.path} (pid {pid})")
        _remove(self.path)
        return False

    def is_held_by_me(self) -> bool:
        return self.holder() == self.pid

    def try_acquire(self) -> bool:
        """Create the lock exclusively. False if any live process holds it."""
        if self.is_held():
            return False
        return self._create()

    def _create(self) -> bool:
        # Hard-link a complete temp file so readers never see an empty lock
        tmp = self.path.with_name(f"{self.path.name}.{self.pid}.{threading.get_ident()}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(str(self.pid))
            os.link(tmp, self.path)
            return True
        except FileExistsError:
            logger.debug(f"Lock {self.path} taken by another process")
            return False
        except OSError as e:
            logger.debug(f"Cannot create lock {self.path}: {e}")
            return False
        finally:
            _remove(tmp)

    def claim(self) -> bool:
        """Write our pid unconditionally, replacing any holder."""
        return atomic_write_text(self.path, str(self.pid))

    def release(self) -> None:
        _remove(self.path)

    def age_ms(self, now: int) -> Optional[int]:
        try:
            return max(0, now - int(self.path.stat().st_mtime * 1000))
        except OSError:
            return None
