"""
Job Registry - who is armed, right now

Single source of truth for outstanding dead-hand checks.

Rules:
- At most one non-consumed ScheduledCheck per user
- A job is consumed exactly once: by fire() OR by cancel(), never both
- Every transition is a compare-and-set under one lock, so callers on
  different threads (API worker pool, scheduler loop) cannot double-arm
  or double-consume

Durability: with a storage path, outstanding jobs are written to disk on
every transition (atomic write: tmp file then rename) and reloaded on start,
so Armed users survive a process restart.
"""

import os
import json
import math
import time
import uuid
import logging
import tempfile
import threading
from collections import deque
from pathlib import Path
from typing import Callable, Optional

from .errors import AlreadyArmedError, ValidationError
from .models import ScheduledCheck
from .rules import SWITCH_RULES

logger = logging.getLogger("deadhand.job_registry")


class JobRegistry:
    """
    Atomic arm / fire / cancel over the per-user job index.

    Usage:
        registry = JobRegistry(storage_path="data/switch/jobs.json")
        job_id = registry.arm(user, 3600)
        if registry.fire(job_id):
            ...  # we won the race, run the check
    """

    def __init__(self, storage_path: Optional[str] = None,
                 clock: Callable[[], float] = time.time):
        self._lock = threading.Lock()
        self._clock = clock
        self._jobs: dict[str, ScheduledCheck] = {}      # job_id -> outstanding job
        self._by_user: dict[str, str] = {}              # user -> outstanding job_id
        self._completed: deque = deque(maxlen=SWITCH_RULES.COMPLETED_JOBS_KEPT)
        self._storage_path = Path(storage_path) if storage_path else None

        if self._storage_path:
            self._load()

    # ============================================================
    # TRANSITIONS
    # ============================================================

    def arm(self, user_address: str, timeout_seconds: float, start_at: Optional[float] = None) -> str:
        """
        Install a new outstanding job due at start_at (default now) + timeout.
        Raises AlreadyArmedError if one exists.
        """
        if not math.isfinite(timeout_seconds) or not timeout_seconds > SWITCH_RULES.MIN_TIMEOUT_SECONDS:
            raise ValidationError(f"timeout must be positive, got {timeout_seconds}")

        with self._lock:
            existing = self._by_user.get(user_address)
            if existing is not None:
                raise AlreadyArmedError(user_address, existing)

            job = ScheduledCheck(
                id=f"deadhand_{user_address}_{uuid.uuid4().hex[:12]}",
                user_address=user_address,
                due_at=(self._clock() if start_at is None else start_at) + timeout_seconds,
                timeout_seconds=timeout_seconds,
            )
            self._jobs[job.id] = job
            self._by_user[user_address] = job.id
            self._persist_locked()

        logger.info(f"Armed {job.id} for {user_address} in {timeout_seconds}s")
        return job.id

    def fire(self, job_id: str) -> bool:
        """outstanding -> consumed. True only for the caller that made the transition."""
        return self._consume(job_id, "fired")

    def cancel(self, job_id: str) -> bool:
        """outstanding -> consumed. False if already fired or cancelled."""
        return self._consume(job_id, "cancelled")

    def _consume(self, job_id: str, how: str) -> bool:
        with self._lock:
            job = self._jobs.pop(job_id, None)
            if job is None:
                return False
            job.consumed = True
            if self._by_user.get(job.user_address) == job_id:
                del self._by_user[job.user_address]
            self._completed.append((job_id, how, self._clock()))
            self._persist_locked()

        logger.debug(f"Job {job_id} {how}")
        return True

    # ============================================================
    # QUERIES
    # ============================================================

    def get(self, job_id: str) -> Optional[ScheduledCheck]:
        with self._lock:
            return self._jobs.get(job_id)

    def outstanding_for(self, user_address: str) -> Optional[ScheduledCheck]:
        with self._lock:
            job_id = self._by_user.get(user_address)
            return self._jobs.get(job_id) if job_id else None

    def outstanding(self) -> list[ScheduledCheck]:
        """Outstanding jobs ordered by due time."""
        with self._lock:
            return sorted(self._jobs.values(), key=lambda j: j.due_at)

    def status(self) -> dict:
        with self._lock:
            active = len(self._jobs)
            completed = len(self._completed)
        return {
            "total_jobs": active + completed,
            "active_jobs": active,
            "completed_jobs": completed,
            "durable": self._storage_path is not None,
        }

    # ============================================================
    # PERSISTENCE
    # ============================================================

    def _persist_locked(self):
        """Write outstanding jobs to disk. Caller holds the lock."""
        if not self._storage_path:
            return

        data = {
            "jobs": [
                {
                    "id": j.id,
                    "user": j.user_address,
                    "due_at": j.due_at,
                    "timeout": j.timeout_seconds,
                    "created_at": j.created_at,
                }
                for j in self._jobs.values()
            ],
            "saved_at": self._clock(),
        }

        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=str(self._storage_path.parent), suffix=".tmp", prefix="jobs_"
        )
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, str(self._storage_path))
        except Exception as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            logger.error(f"Failed to persist job index: {e}")

    def _load(self):
        path = self._storage_path
        if not path.exists():
            logger.info("No job index found, starting fresh")
            return

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except Exception as e:
            logger.error(f"Failed to load job index {path}: {e}")
            return

        for raw in data.get("jobs", []):
            try:
                job = ScheduledCheck(
                    id=raw["id"],
                    user_address=raw["user"],
                    due_at=float(raw["due_at"]),
                    timeout_seconds=float(raw["timeout"]),
                    created_at=float(raw.get("created_at", 0.0)),
                )
                if not (math.isfinite(job.due_at) and math.isfinite(job.timeout_seconds)):
                    raise ValueError("non-finite due_at or timeout")
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed job entry {raw!r}: {e}")
                continue
            if job.user_address in self._by_user:
                logger.warning(f"Duplicate job for {job.user_address} in index, keeping first")
                continue
            self._jobs[job.id] = job
            self._by_user[job.user_address] = job.id

        logger.info(f"Loaded {len(self._jobs)} outstanding jobs from {path}")
