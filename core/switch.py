"""
Dead Hand Switch - the check-and-trigger state machine

    arm() ──> ARMED ──(deadline)──> CHECKING ──found──────> ARMED (new job)
                                         └────no activity──> TRIGGERED (terminal)

One arm cycle per user:
- arm() is the only way into ARMED. A user that is ARMED or CHECKING cannot
  be armed again (AlreadyArmedError), so two checks never overlap.
- On fire the delegation is re-read: current timeout and beneficiary win
  over whatever was captured at arm time.
- found -> a genuinely new job due one timeout after the fire time (the
  fired job is already consumed, nothing is mutated).
- not found -> TRIGGERED, delegation deactivated, sweep planned exactly
  once, plan handed to the notification boundary. The engine never signs.
- Everything after a fire is contained here: oracle, balance and quote
  failures are logged and the cycle still ends in ARMED or TRIGGERED.
"""

import math
import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .activity_oracle import ActivityOracle
from .chain import is_valid_address, normalize_address
from .delegations import DelegationStore
from .errors import AlreadyArmedError, NotFoundError, SweepPlanningError, ValidationError
from .events import NotificationSink
from .models import ActivityResult, Delegation, EventType, SweepPlan, SwitchState
from .rules import SWITCH_RULES
from .scheduler import Scheduler
from .sweep_planner import SweepPlanner

logger = logging.getLogger("deadhand.switch")


@dataclass
class _Cycle:
    state: SwitchState
    timeout_seconds: float
    job_id: Optional[str] = None
    due_at: Optional[float] = None
    armed_at: float = 0.0
    triggered_at: Optional[float] = None
    last_plan: Optional[SweepPlan] = None
    last_error: str = ""


class DeadHandSwitch:
    """
    Orchestrates Scheduler -> ActivityOracle -> (re-arm | SweepPlanner).

    Usage:
        switch = DeadHandSwitch(store, scheduler, oracle, planner, events,
                                target_asset=USDC_ARB, target_chain=42161)
        switch.restore()            # re-attach jobs from a durable registry
        scheduler.start()
        await switch.arm(user)
    """

    def __init__(
        self,
        store: DelegationStore,
        scheduler: Scheduler,
        oracle: ActivityOracle,
        planner: SweepPlanner,
        events: NotificationSink,
        target_asset: str,
        target_chain: int,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._scheduler = scheduler
        self._oracle = oracle
        self._planner = planner
        self._events = events
        self.target_asset = normalize_address(target_asset)
        self.target_chain = target_chain
        self._clock = clock

        self._lock = threading.Lock()
        self._cycles: dict[str, _Cycle] = {}

        self._resets: int = 0
        self._triggers: int = 0

    # ============================================================
    # CALLER API
    # ============================================================

    async def arm(self, user_address: str, timeout_seconds: Optional[float] = None,
                  beneficiary_address: Optional[str] = None) -> dict:
        """
        Start an arm cycle. Arguments left out are taken from the delegation;
        arguments given must match it (the store owns the configuration).

        Raises ValidationError, NotFoundError, AlreadyArmedError.
        """
        user = self._validate_user(user_address)
        if timeout_seconds is not None:
            _validate_timeout(timeout_seconds)
        if beneficiary_address is not None:
            if not is_valid_address(beneficiary_address):
                raise ValidationError(f"invalid beneficiary address: {beneficiary_address!r}")
            if normalize_address(beneficiary_address) == user:
                raise ValidationError("beneficiary must differ from the user")

        delegation = await self._store.get(user)
        if delegation is None:
            raise NotFoundError(f"no delegation configured for {user}")

        if timeout_seconds is not None and timeout_seconds != delegation.timeout_seconds:
            raise ValidationError(
                f"timeout {timeout_seconds}s does not match delegation ({delegation.timeout_seconds}s)"
            )
        if (beneficiary_address is not None
                and normalize_address(beneficiary_address) != delegation.beneficiary_address):
            raise ValidationError("beneficiary does not match delegation")

        timeout = delegation.timeout_seconds
        with self._lock:
            cycle = self._cycles.get(user)
            if cycle is not None and cycle.state in (SwitchState.ARMED, SwitchState.CHECKING):
                raise AlreadyArmedError(user, cycle.job_id or "")

            job_id = self._scheduler.schedule(user, timeout, self._on_fire)
            job = self._scheduler.registry.get(job_id)
            self._cycles[user] = _Cycle(
                state=SwitchState.ARMED,
                timeout_seconds=timeout,
                job_id=job_id,
                due_at=job.due_at if job else None,
                armed_at=self._clock(),
            )

        if not delegation.active:
            await self._store.set_active(user, True)

        logger.info(f"Switch ARMED for {user}: {timeout}s, beneficiary {delegation.beneficiary_address}")
        return self.status(user)

    async def cancel(self, user_address: str) -> bool:
        """
        Disarm an ARMED user. False when there is nothing outstanding to
        cancel, including when the deadline already fired (the check runs
        to completion).
        """
        user = normalize_address(user_address)
        with self._lock:
            cycle = self._cycles.get(user)
            if cycle is None or cycle.state is not SwitchState.ARMED or not cycle.job_id:
                return False
            if not self._scheduler.cancel(cycle.job_id):
                return False
            del self._cycles[user]

        try:
            await self._store.set_active(user, False)
        except Exception as e:
            logger.warning(f"Could not deactivate delegation for {user}: {e}")

        logger.info(f"Switch cancelled for {user}")
        return True

    async def record_activity(self, user_address: str) -> dict:
        """
        Explicit activity signal while ARMED: restart the countdown from now
        (cancel + schedule). If the deadline fired first the in-flight check
        decides instead and this is a no-op.
        """
        user = normalize_address(user_address)
        rescheduled = None
        with self._lock:
            cycle = self._cycles.get(user)
            if cycle is None or cycle.state is not SwitchState.ARMED:
                raise NotFoundError(f"switch for {user} is not armed")

            rescheduled = self._scheduler.reschedule(
                user, cycle.timeout_seconds, self._on_fire, job_id=cycle.job_id
            )
            if rescheduled:
                job = self._scheduler.registry.get(rescheduled)
                cycle.job_id = rescheduled
                cycle.due_at = job.due_at if job else None

        if rescheduled:
            self._resets += 1
            await self._events.emit(user, EventType.TIMER_RESET.value, {
                "timeout_seconds": cycle.timeout_seconds,
                "due_at": cycle.due_at,
                "job_id": rescheduled,
                "reason": "activity_reported",
            })
        return self.status(user)

    def status(self, user_address: str) -> dict:
        user = normalize_address(user_address)
        with self._lock:
            cycle = self._cycles.get(user)
            if cycle is None:
                raise NotFoundError(f"no switch for {user}")
            return {
                "user_address": user,
                "state": cycle.state.value,
                "due_at": cycle.due_at,
                "job_id": cycle.job_id,
                "timeout_seconds": cycle.timeout_seconds,
                "triggered_at": cycle.triggered_at,
            }

    def last_plan(self, user_address: str) -> Optional[SweepPlan]:
        with self._lock:
            cycle = self._cycles.get(normalize_address(user_address))
            return cycle.last_plan if cycle else None

    def restore(self) -> int:
        """Re-attach ARMED state for jobs loaded from a durable registry."""
        jobs = self._scheduler.restore(self._on_fire)
        with self._lock:
            for job in jobs:
                self._cycles[job.user_address] = _Cycle(
                    state=SwitchState.ARMED,
                    timeout_seconds=job.timeout_seconds,
                    job_id=job.id,
                    due_at=job.due_at,
                    armed_at=job.created_at,
                )
        return len(jobs)

    def get_status(self) -> dict:
        with self._lock:
            counts = {s.value: 0 for s in SwitchState}
            for cycle in self._cycles.values():
                counts[cycle.state.value] += 1
        return {
            "states": counts,
            "resets": self._resets,
            "triggers": self._triggers,
            "target_asset": self.target_asset,
            "target_chain": self.target_chain,
        }

    # ============================================================
    # CHECK-AND-TRIGGER CYCLE (scheduler callback)
    # ============================================================

    async def _on_fire(self, user: str):
        with self._lock:
            cycle = self._cycles.get(user)
            if cycle is None:
                logger.warning(f"Fired for {user} with no switch cycle, ignoring")
                return
            fired_job = {
                "job_id": cycle.job_id,
                "due_at": cycle.due_at,
                "timeout_seconds": cycle.timeout_seconds,
            }
            cycle.state = SwitchState.CHECKING
            cycle.job_id = None
            cycle.due_at = None

        fired_at = self._clock()
        await self._events.emit(user, EventType.CHECK_STARTED.value, {"fired_at": fired_at, **fired_job})

        try:
            delegation = await self._store.get(user)
        except Exception as e:
            # Store outage is not evidence of inactivity: retry at the next deadline
            logger.error(f"Delegation lookup failed for {user}: {e}, re-arming")
            await self._rearm(user, cycle, cycle.timeout_seconds, reason="store_unavailable")
            return

        if delegation is None or not delegation.active:
            logger.warning(f"Delegation for {user} is gone or inactive, discarding switch cycle")
            self._discard(user)
            return

        try:
            result = await self._oracle.check(user, delegation.timeout_seconds)
        except Exception as e:
            logger.error(f"Activity oracle crashed for {user}: {e}")
            result = self._oracle.unavailable_result(str(e))

        if result.found:
            await self._rearm(user, cycle, delegation.timeout_seconds, reason="activity_found",
                              result=result, start_at=fired_at)
        else:
            await self._trigger(user, cycle, delegation, result)

    async def _rearm(self, user: str, cycle: _Cycle, timeout: float, reason: str,
                     result: Optional[ActivityResult] = None, start_at: Optional[float] = None):
        with self._lock:
            job_id = self._scheduler.schedule(user, timeout, self._on_fire, start_at=start_at)
            job = self._scheduler.registry.get(job_id)
            cycle.state = SwitchState.ARMED
            cycle.timeout_seconds = timeout
            cycle.job_id = job_id
            cycle.due_at = job.due_at if job else None

        self._resets += 1
        logger.info(f"Switch RESET for {user} ({reason}): next check in {timeout}s")

        payload = {
            "timeout_seconds": timeout,
            "due_at": cycle.due_at,
            "job_id": job_id,
            "reason": reason,
        }
        if result is not None:
            payload["evidence"] = {"onchain": result.evidence.onchain, "social": result.evidence.social}
            payload["summary"] = result.summary
        await self._events.emit(user, EventType.TIMER_RESET.value, payload)

    async def _trigger(self, user: str, cycle: _Cycle, delegation: Delegation, result: ActivityResult):
        with self._lock:
            cycle.state = SwitchState.TRIGGERED
            cycle.triggered_at = self._clock()
        self._triggers += 1

        logger.warning(f"Switch TRIGGERED for {user}: no activity in {delegation.timeout_seconds}s")
        if result.errors:
            logger.warning(f"Trigger for {user} followed source failures: {list(result.errors)}")

        try:
            await self._store.set_active(user, False)
        except Exception as e:
            logger.warning(f"Could not deactivate delegation for {user}: {e}")

        plan = None
        error = ""
        try:
            plan = await self._planner.plan(
                user, delegation.beneficiary_address, self.target_asset, self.target_chain
            )
        except SweepPlanningError as e:
            error = str(e)
            logger.error(f"Sweep planning failed for {user}: {e}")

        with self._lock:
            cycle.last_plan = plan
            cycle.last_error = error

        await self._events.emit(user, EventType.SWITCH_TRIGGERED.value, {
            "beneficiary_address": delegation.beneficiary_address,
            "execution_account": delegation.execution_account,
            "evidence": {"onchain": result.evidence.onchain, "social": result.evidence.social},
            "oracle_errors": list(result.errors),
            "plan": plan.to_dict() if plan else None,
            "error": error,
            "requires_signature": bool(plan and plan.intents),
        })

    def _discard(self, user: str):
        with self._lock:
            self._cycles.pop(user, None)

    # ============================================================
    # VALIDATION
    # ============================================================

    @staticmethod
    def _validate_user(user_address: str) -> str:
        if not is_valid_address(user_address):
            raise ValidationError(f"invalid user address: {user_address!r}")
        return normalize_address(user_address)


def _validate_timeout(timeout_seconds):
    if not isinstance(timeout_seconds, (int, float)) or isinstance(timeout_seconds, bool):
        raise ValidationError(f"timeout must be a number, got {timeout_seconds!r}")
    if not math.isfinite(timeout_seconds) or not timeout_seconds > SWITCH_RULES.MIN_TIMEOUT_SECONDS:
        raise ValidationError(f"timeout must be positive, got {timeout_seconds}")
    if timeout_seconds > SWITCH_RULES.MAX_TIMEOUT_SECONDS:
        raise ValidationError(f"timeout too large: {timeout_seconds}")
