"""
Refresh intents: cross-process "please refresh" / "refreshing now" markers.

Per category the base directory holds ``<category>.intent`` (a FlagFile
whose mtime is when the refresh was first wanted) and
``<category>.inprogress`` (a PidLock naming the refresher).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from .cache import now_ms
from .locks import FlagFile, PidLock

logger = logging.getLogger(__name__)

INTENT_SUFFIX = ".intent"
IN_PROGRESS_SUFFIX = ".inprogress"

ALREADY_IN_PROGRESS = "already_in_progress"


@dataclass
class AcquireResult:
    acquired: bool
    reason: Optional[str] = None


class RefreshIntentCoordinator:
    def __init__(
        self,
        base_dir: Path,
        *,
        clock: Optional[Callable[[], int]] = None,
        pid: Optional[int] = None,
    ):
        self.base_dir = Path(base_dir)
        self._clock = clock or now_ms
        self._pid = pid if pid is not None else os.getpid()

    def _intent(self, category: str) -> FlagFile:
        return FlagFile(self.base_dir / f"{category}{INTENT_SUFFIX}", clock=self._clock)

    def _in_progress(self, category: str) -> PidLock:
        return PidLock(self.base_dir / f"{category}{IN_PROGRESS_SUFFIX}", pid=self._pid)

    # ── Signals ─────────────────────────────────────────────────────────

    def signal_refresh_needed(self, category: str) -> bool:
        """Mark the category as wanting a refresh. An existing intent keeps its age."""
        flag = self._intent(category)
        if flag.exists():
            return True
        return flag.raise_flag()

    def signal_refresh_in_progress(self, category: str) -> bool:
        return self._in_progress(category).claim()

    def is_refresh_requested(self, category: str) -> bool:
        return self._intent(category).exists()

    def is_refresh_in_progress(self, category: str) -> bool:
        return self._in_progress(category).is_held()

    def clear_intent(self, category: str) -> None:
        """Remove both markers; the refresh is done."""
        self._intent(category).lower()
        self._in_progress(category).release()

    def clear_in_progress(self, category: str) -> None:
        self._in_progress(category).release()

    def get_intent_age(self, category: str) -> Optional[int]:
        return self._intent(category).age_ms()

    def get_pending_intents(self) -> List[str]:
        try:
            names = [p.name for p in self.base_dir.iterdir() if p.is_file()]
        except OSError:
            return []
        return sorted(
            n[: -len(INTENT_SUFFIX)] for n in names if n.endswith(INTENT_SUFFIX)
        )

    def clean_stale(self, max_age_ms: int = 600_000) -> int:
        """Remove intent and in-progress markers older than max_age_ms."""
        now = self._clock()
        removed = 0
        try:
            entries = list(self.base_dir.iterdir())
        except OSError:
            return 0
        for path in entries:
            if not path.name.endswith((INTENT_SUFFIX, IN_PROGRESS_SUFFIX)):
                continue
            try:
                age = now - int(path.stat().st_mtime * 1000)
                if age > max_age_ms:
                    path.unlink()
                    removed += 1
            except OSError:
                continue
        if removed:
            logger.info(f"Removed {removed} stale refresh markers from {self.base_dir}")
        return removed

    # ── Single flight ───────────────────────────────────────────────────

    def try_acquire(self, category: str) -> AcquireResult:
        """Record the intent, then claim the refresh unless a live process has it."""
        self.signal_refresh_needed(category)
        if not self._in_progress(category).try_acquire():
            return AcquireResult(acquired=False, reason=ALREADY_IN_PROGRESS)
        return AcquireResult(acquired=True)

    def release(self, category: str, success: bool) -> None:
        """On success the intent is satisfied; on failure it stays pending."""
        if success:
            self.clear_intent(category)
        else:
            self.clear_in_progress(category)

    def try_acquire_many(self, categories: Iterable[str]) -> List[str]:
        return [c for c in categories if self.try_acquire(c).acquired]

    def release_many(self, categories: Iterable[str], success: bool) -> None:
        for category in categories:
            self.release(category, success)
