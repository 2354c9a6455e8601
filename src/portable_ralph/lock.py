"""Cross-process single-instance locking keyed by plan identity.

A lock is a small JSON file created with `O_CREAT | O_EXCL`, so exactly one
process can create it. A lock whose owner process is gone, or whose heartbeat
is older than the staleness threshold, may be reclaimed by anyone. Reclaim,
heartbeat, and release run under a short `filelock.FileLock` guard so two
reclaimers cannot both delete and recreate the same file.
"""

from __future__ import annotations

import os
import random
import threading
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from filelock import FileLock
from loguru import logger

from .constants import CONFIG_FILE_MODE, LOCK_POLL_BASE_SECONDS, LOCK_POLL_MAX_SECONDS
from .errors import LockContentionError
from .io_utils import _atomic_write_text
from .models import LockRecord, PlanIdentity
from .utils import _pid_is_running

# A lock file that exists but has no parsable record yet is given this long
# to be filled in by its creator before it is treated as garbage.
_UNREADABLE_GRACE_SECONDS = 5.0


@dataclass(frozen=True)
class LockHandle:
    identity: PlanIdentity
    path: Path
    record: LockRecord


def _to_datetime(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def lock_is_stale(record: LockRecord, now: datetime, stale_seconds: float) -> bool:
    return (now - record.last_heartbeat).total_seconds() > stale_seconds


def owner_is_alive(record: LockRecord, pid_alive: Callable[[int], bool] = _pid_is_running) -> bool:
    return pid_alive(record.owner_pid)


class LockManager:
    """Acquire and release per-plan lock files under `lock_dir`."""

    def __init__(
        self,
        lock_dir: Path,
        *,
        stale_seconds: float,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        pid_alive: Callable[[int], bool] = _pid_is_running,
        rng: Optional[random.Random] = None,
    ):
        self.lock_dir = lock_dir
        self.stale_seconds = stale_seconds
        self._clock = clock
        self._sleep = sleep
        self._pid_alive = pid_alive
        self._rng = rng or random.Random()

    def lock_path(self, identity: PlanIdentity) -> Path:
        return self.lock_dir / f"{identity.key}.lock"

    def _guard(self, path: Path) -> FileLock:
        return FileLock(str(path) + ".guard", timeout=10)

    def read_record(self, path: Path) -> Optional[LockRecord]:
        try:
            return LockRecord.decode(path.read_text(encoding="utf-8"))
        except OSError:
            return None

    def read_owner(self, identity: PlanIdentity) -> Optional[LockRecord]:
        return self.read_record(self.lock_path(identity))

    def _new_record(self) -> LockRecord:
        now = _to_datetime(self._clock())
        return LockRecord(owner_pid=os.getpid(), token=uuid.uuid4().hex, acquired_at=now, last_heartbeat=now)

    def _try_create(self, path: Path, record: LockRecord) -> bool:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, CONFIG_FILE_MODE)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(record.encode())
            handle.flush()
            os.fsync(handle.fileno())
        return True

    def _is_reclaimable(self, path: Path, record: Optional[LockRecord]) -> bool:
        now = _to_datetime(self._clock())
        if record is None:
            try:
                age = self._clock() - path.stat().st_mtime
            except FileNotFoundError:
                return False
            return age > _UNREADABLE_GRACE_SECONDS
        if not owner_is_alive(record, self._pid_alive):
            return True
        return lock_is_stale(record, now, self.stale_seconds)

    def _reclaim(self, path: Path, seen: Optional[LockRecord]) -> bool:
        with self._guard(path):
            current = self.read_record(path)
            if current != seen or not self._is_reclaimable(path, current):
                return False
            try:
                path.unlink()
            except FileNotFoundError:
                return True
        if seen is None:
            logger.warning("Removed unreadable lock file {}", path)
        else:
            logger.warning(
                "Reclaimed lock {} from pid {} (heartbeat {})",
                path,
                seen.owner_pid,
                seen.last_heartbeat.isoformat(),
            )
        return True

    def acquire(self, identity: PlanIdentity, timeout: float = 0.0) -> LockHandle:
        """Take the lock for `identity`, waiting up to `timeout` seconds.

        Raises:
            LockContentionError: If a live owner still holds the lock when the
                timeout expires.
        """
        path = self.lock_path(identity)
        deadline = self._clock() + max(0.0, timeout)
        attempt = 0
        while True:
            record = self._new_record()
            if self._try_create(path, record):
                logger.debug("Acquired lock {} (pid {})", path, record.owner_pid)
                return LockHandle(identity=identity, path=path, record=record)

            existing = self.read_record(path)
            if self._is_reclaimable(path, existing) and self._reclaim(path, existing):
                continue

            remaining = deadline - self._clock()
            if remaining <= 0:
                owner = existing.owner_pid if existing else None
                raise LockContentionError(
                    f"Plan {identity.path} is locked by pid {owner if owner else 'unknown'} ({path}); "
                    "try again once that run finishes",
                    owner_pid=owner,
                )
            attempt += 1
            delay = min(LOCK_POLL_MAX_SECONDS, LOCK_POLL_BASE_SECONDS * (2 ** min(attempt, 6)))
            delay = delay / 2 + self._rng.uniform(0, delay / 2)
            self._sleep(min(delay, remaining))

    def heartbeat(self, handle: LockHandle) -> LockHandle:
        """Refresh the heartbeat timestamp if this process still owns the lock."""
        with self._guard(handle.path):
            current = self.read_record(handle.path)
            if current is None or current.token != handle.record.token:
                logger.warning("Lock {} is no longer owned by this process", handle.path)
                return handle
            updated = replace(current, last_heartbeat=_to_datetime(self._clock()))
            _atomic_write_text(handle.path, updated.encode(), mode=CONFIG_FILE_MODE)
        return replace(handle, record=updated)

    def release(self, handle: LockHandle) -> bool:
        """Delete the lock file only if it still carries this handle's ownership token."""
        with self._guard(handle.path):
            current = self.read_record(handle.path)
            if current is None or current.token != handle.record.token:
                logger.warning("Not releasing {}: lock was reclaimed by another process", handle.path)
                return False
            try:
                handle.path.unlink()
            except FileNotFoundError:
                return False
        logger.debug("Released lock {}", handle.path)
        return True


class LockHeartbeat:
    """Refresh a held lock from a daemon thread while long worker runs are in flight."""

    def __init__(self, manager: LockManager, handle: LockHandle, interval: float):
        self._manager = manager
        self.handle = handle
        self._interval = max(1.0, interval)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="ralph-lock-heartbeat", daemon=True)

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.handle = self._manager.heartbeat(self.handle)
            except Exception as exc:
                logger.warning("Lock heartbeat failed: {}", exc)

    def start(self) -> "LockHeartbeat":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=5)

    def __enter__(self) -> "LockHeartbeat":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
