from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from compliance_monitor.errors import JobLockBusy
from compliance_monitor.models import utcnow_iso


class JobLock:
    """Process-local guard so only one monitoring run executes at a time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._current_job: str | None = None
        self._locked_since: str | None = None

    @contextmanager
    def hold(self, job_name: str) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            current, since = self.status_pair()
            raise JobLockBusy(
                f"job {current or 'unknown'} is already running",
                current_job=current,
                locked_since=since,
            )
        with self._state_lock:
            self._current_job = job_name
            self._locked_since = utcnow_iso()
        try:
            yield
        finally:
            with self._state_lock:
                self._current_job = None
                self._locked_since = None
            self._lock.release()

    def status_pair(self) -> tuple[str | None, str | None]:
        with self._state_lock:
            return self._current_job, self._locked_since

    def status(self) -> dict[str, Any]:
        current, since = self.status_pair()
        return {"locked": current is not None, "current_job": current, "locked_since": since}
