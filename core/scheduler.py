"""
Scheduler - one timing loop for every user's deadline

Design:
- A single asyncio task sleeps until the earliest due time (heap ordered by
  due_at) or until a new entry wakes it. No per-user timers.
- Arming goes through the JobRegistry; the heap only holds (due_at, job_id).
- At due time the loop calls registry.fire(job_id). Only the winner of that
  compare-and-set runs on_fire(user), exactly once. Cancelled jobs are
  dropped silently.
- Callbacks run as tasks bounded by a semaphore (worker pool). A callback
  exception is logged and never reaches the timing loop; the job was already
  consumed before the callback started.
- reschedule = cancel + schedule. Due times are never mutated in place.
- Cancelled entries stay in the heap until popped, or until they outnumber
  live ones and the heap is rebuilt.

All methods must be called from the event loop thread.
"""

import time
import heapq
import asyncio
import inspect
import logging
import itertools
from typing import Awaitable, Callable, Optional, Union

from .job_registry import JobRegistry
from .models import ScheduledCheck
from .rules import SWITCH_RULES

logger = logging.getLogger("deadhand.scheduler")

OnFire = Callable[[str], Union[Awaitable[None], None]]


class Scheduler:
    """
    Deadline-ordered timer facility on top of JobRegistry.

    Usage:
        scheduler = Scheduler(registry)
        scheduler.start()
        job_id = scheduler.schedule(user, 3600, on_fire)
        ...
        await scheduler.stop()
    """

    def __init__(self, registry: JobRegistry, max_workers: int = SWITCH_RULES.MAX_FIRE_WORKERS,
                 clock: Callable[[], float] = time.time):
        self.registry = registry
        self._clock = clock
        self._heap: list[tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._callbacks: dict[str, OnFire] = {}
        self._stale: int = 0
        self._wakeup = asyncio.Event()
        self._workers = asyncio.Semaphore(max_workers)
        self._in_flight: set[asyncio.Task] = set()
        self._task: Optional[asyncio.Task] = None

        self._fired: int = 0
        self._callback_errors: int = 0

    # ============================================================
    # PUBLIC API
    # ============================================================

    def schedule(self, user_address: str, timeout_seconds: float, on_fire: OnFire,
                 start_at: Optional[float] = None) -> str:
        """Arm a job for the user and queue its deadline. Raises AlreadyArmedError."""
        job_id = self.registry.arm(user_address, timeout_seconds, start_at=start_at)
        job = self.registry.get(job_id)
        self._push(job, on_fire)
        return job_id

    def cancel(self, job_id: str) -> bool:
        """First event wins: False if the job already fired or was cancelled."""
        cancelled = self.registry.cancel(job_id)
        if cancelled and self._callbacks.pop(job_id, None) is not None:
            self._stale += 1
            self._compact()
        return cancelled

    def reschedule(self, user_address: str, timeout_seconds: float, on_fire: OnFire,
                   job_id: Optional[str] = None) -> Optional[str]:
        """
        Cancel then schedule.

        With job_id, only that job is replaced: if it already fired, returns
        None and schedules nothing (the in-flight fire owns the user now).
        Without job_id, whatever is outstanding for the user is replaced.
        """
        if job_id is None:
            current = self.registry.outstanding_for(user_address)
            job_id = current.id if current else None
            if job_id:
                self.cancel(job_id)
        elif not self.cancel(job_id):
            logger.info(f"Reschedule lost race for {user_address}: {job_id} already consumed")
            return None
        return self.schedule(user_address, timeout_seconds, on_fire)

    def restore(self, on_fire: OnFire) -> list[ScheduledCheck]:
        """Queue every outstanding job loaded by a durable registry."""
        restored = []
        for job in self.registry.outstanding():
            if job.id in self._callbacks:
                continue
            self._push(job, on_fire)
            restored.append(job)
        if restored:
            overdue = sum(1 for j in restored if j.due_at <= self._clock())
            logger.info(f"Restored {len(restored)} scheduled checks ({overdue} overdue)")
        return restored

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="deadhand-scheduler")
            logger.info("Scheduler started")

    async def stop(self):
        """Stop the timing loop and wait for in-flight callbacks."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.drain()
        logger.info("Scheduler stopped")

    async def drain(self):
        """Wait until every callback started so far has finished."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    def status(self) -> dict:
        return {
            **self.registry.status(),
            "running": self._task is not None and not self._task.done(),
            "queued": len(self._callbacks),
            "heap_entries": len(self._heap),
            "in_flight": len(self._in_flight),
            "fired": self._fired,
            "callback_errors": self._callback_errors,
        }

    # ============================================================
    # TIMING LOOP
    # ============================================================

    def _compact(self):
        """Rebuild the heap from live jobs once cancelled entries outnumber them."""
        if self._stale * 2 <= len(self._heap):
            return
        self._heap = [entry for entry in self._heap if entry[2] in self._callbacks]
        heapq.heapify(self._heap)
        self._stale = 0
        self._wakeup.set()

    def _push(self, job: ScheduledCheck, on_fire: OnFire):
        self._callbacks[job.id] = on_fire
        heapq.heappush(self._heap, (job.due_at, next(self._seq), job.id))
        self._wakeup.set()

    async def _run(self):
        while True:
            if not self._heap:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            due_at, _, job_id = self._heap[0]
            delay = due_at - self._clock()
            if delay > 0:
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
                continue

            heapq.heappop(self._heap)
            on_fire = self._callbacks.pop(job_id, None)
            job = self.registry.get(job_id)
            if on_fire is None or job is None:
                self._stale = max(0, self._stale - 1)
                continue  # cancelled
            if not self.registry.fire(job_id):
                continue  # lost the race to cancel

            self._fired += 1
            task = asyncio.create_task(self._run_callback(job, on_fire))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _run_callback(self, job: ScheduledCheck, on_fire: OnFire):
        async with self._workers:
            logger.info(f"Firing {job.id} for {job.user_address}")
            try:
                result = on_fire(job.user_address)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._callback_errors += 1
                logger.exception(f"on_fire failed for {job.user_address} ({job.id}): {e}")
