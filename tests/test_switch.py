"""Tests for the switch state machine (Scenarios A-D, races, validation)."""

import asyncio

import pytest

from core.errors import AlreadyArmedError, CollaboratorError, NotFoundError, ValidationError
from core.job_registry import JobRegistry
from core.models import Delegation, IntentKind

from conftest import BENEFICIARY, EXECUTOR, FakeBalances, FakeOnchain, FakeQuotes, USER, WETH_ARB


async def _armed(make_harness, delegation, **kwargs):
    h = make_harness(**kwargs)
    await h.store.put(delegation)
    h.scheduler.start()
    await h.switch.arm(USER)
    return h


class TestArm:

    @pytest.mark.asyncio
    async def test_arm_uses_delegation_defaults(self, make_harness, delegation) -> None:
        h = make_harness()
        await h.store.put(delegation)

        status = await h.switch.arm(USER)

        assert status["state"] == "armed"
        assert status["timeout_seconds"] == 0.05
        assert status["job_id"] == h.registry.outstanding_for(USER).id
        assert (await h.store.get(USER)).active is True

    @pytest.mark.asyncio
    async def test_arm_without_delegation(self, make_harness) -> None:
        with pytest.raises(NotFoundError):
            await make_harness().switch.arm(USER)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"timeout_seconds": 0},
        {"timeout_seconds": -1},
        {"timeout_seconds": float("nan")},
        {"beneficiary_address": "0xnot-an-address"},
        {"beneficiary_address": USER},
        {"timeout_seconds": 999},
    ])
    async def test_arm_validation(self, make_harness, delegation, kwargs) -> None:
        h = make_harness()
        await h.store.put(delegation)

        with pytest.raises(ValidationError):
            await h.switch.arm(USER, **kwargs)
        assert h.registry.outstanding() == []

    @pytest.mark.asyncio
    async def test_nan_timeout_never_reaches_the_scheduler(self, make_harness, delegation) -> None:
        h = make_harness()
        delegation.timeout_seconds = float("nan")

        with pytest.raises(ValidationError):
            await h.store.put(delegation)
        assert await h.store.get(USER) is None
        assert h.registry.outstanding() == []

    @pytest.mark.asyncio
    async def test_arm_rejects_bad_user(self, make_harness) -> None:
        with pytest.raises(ValidationError):
            await make_harness().switch.arm("alice")

    @pytest.mark.asyncio
    async def test_arm_twice_is_rejected(self, make_harness, delegation) -> None:
        h = make_harness()
        await h.store.put(delegation)
        await h.switch.arm(USER)

        with pytest.raises(AlreadyArmedError):
            await h.switch.arm(USER, timeout_seconds=0.05, beneficiary_address=BENEFICIARY)
        assert len(h.registry.outstanding()) == 1

    @pytest.mark.asyncio
    async def test_arm_reactivates_delegation(self, make_harness, delegation) -> None:
        h = make_harness()
        delegation.active = False
        await h.store.put(delegation)

        await h.switch.arm(USER)

        assert (await h.store.get(USER)).active is True


class TestScenarios:

    @pytest.mark.asyncio
    async def test_no_activity_triggers_and_plans_once(self, make_harness, delegation, holdings) -> None:
        """Scenario A: inactive user -> Triggered, one plan, delegation deactivated."""
        h = await _armed(make_harness, delegation, holdings=holdings)

        await h.wait_for_event("switch_triggered")
        await asyncio.sleep(0.1)
        await h.scheduler.stop()

        assert h.switch.status(USER)["state"] == "triggered"
        assert h.events.types() == ["check_started", "switch_triggered"]
        assert h.balances.calls == 1
        assert h.registry.outstanding() == []
        assert (await h.store.get(USER)).active is False

        _, _, payload = h.events.emitted[-1]
        assert payload["beneficiary_address"] == BENEFICIARY
        assert payload["execution_account"] == EXECUTOR
        assert payload["requires_signature"] is True
        assert len(payload["plan"]["intents"]) == 4

        plan = h.switch.last_plan(USER)
        assert plan.intents[0].kind is IntentKind.APPROVE

    @pytest.mark.asyncio
    async def test_activity_found_rearms_with_new_job(self, make_harness, delegation) -> None:
        h = await _armed(make_harness, delegation, onchain=FakeOnchain(found=True))
        first_job = h.switch.status(USER)["job_id"]

        await h.wait_for_event("timer_reset")
        await h.scheduler.stop()

        status = h.switch.status(USER)
        assert status["state"] == "armed"
        assert status["job_id"] != first_job
        assert h.registry.outstanding_for(USER).id == status["job_id"]
        assert h.balances.calls == 0

        _, _, started = h.events.emitted[h.events.types().index("check_started")]
        assert started["job_id"] == first_job
        assert started["timeout_seconds"] == 0.05
        assert started["due_at"] <= started["fired_at"]
        _, _, payload = h.events.emitted[h.events.types().index("timer_reset")]
        assert payload["due_at"] == pytest.approx(started["fired_at"] + 0.05)
        assert payload["reason"] == "activity_found"
        assert payload["evidence"] == {"onchain": True, "social": False}

    @pytest.mark.asyncio
    async def test_activity_keeps_switch_alive_until_it_stops(self, make_harness, delegation) -> None:
        h = await _armed(make_harness, delegation, onchain=FakeOnchain(found=True))

        await h.wait_for_event("timer_reset", count=2)
        h.onchain.found = False
        await h.wait_for_event("switch_triggered")
        await h.scheduler.stop()

        assert h.events.types().count("switch_triggered") == 1
        assert h.switch.status(USER)["state"] == "triggered"

    @pytest.mark.asyncio
    async def test_reported_activity_restarts_countdown(self, make_harness, delegation) -> None:
        """Scenario B: activity mid-window cancels and re-arms from now."""
        h = make_harness()
        delegation.timeout_seconds = 0.2
        await h.store.put(delegation)
        h.scheduler.start()
        first = await h.switch.arm(USER)

        await asyncio.sleep(0.1)
        second = await h.switch.record_activity(USER)

        assert second["job_id"] != first["job_id"]
        assert second["due_at"] > first["due_at"]
        await asyncio.sleep(0.15)
        assert h.events.types() == ["timer_reset"]
        assert h.switch.status(USER)["state"] == "armed"
        await h.scheduler.stop()

    @pytest.mark.asyncio
    async def test_partial_sweep_still_triggers(self, make_harness, delegation, holdings) -> None:
        """Scenario D: unroutable token listed as failed, the rest planned."""
        h = await _armed(make_harness, delegation, holdings=holdings, quotes=FakeQuotes(no_route=[WETH_ARB]))

        await h.wait_for_event("switch_triggered")
        await h.scheduler.stop()

        plan = h.switch.last_plan(USER)
        assert len(plan.intents) == 2
        assert [f.token for f in plan.failed] == [WETH_ARB]

    @pytest.mark.asyncio
    async def test_planning_failure_still_ends_triggered(self, make_harness, delegation) -> None:
        h = await _armed(make_harness, delegation, balances=FakeBalances(error=CollaboratorError("down")))

        await h.wait_for_event("switch_triggered")
        await h.scheduler.stop()

        _, _, payload = h.events.emitted[-1]
        assert payload["plan"] is None
        assert "down" in payload["error"]
        assert payload["requires_signature"] is False
        assert h.switch.status(USER)["state"] == "triggered"

    @pytest.mark.asyncio
    async def test_oracle_failure_is_fail_deadly(self, make_harness, delegation) -> None:
        h = await _armed(make_harness, delegation, onchain=FakeOnchain(error=CollaboratorError("x")))

        await h.wait_for_event("switch_triggered")
        await h.scheduler.stop()

        _, _, payload = h.events.emitted[-1]
        assert payload["oracle_errors"]

    @pytest.mark.asyncio
    async def test_rearm_after_trigger(self, make_harness, delegation) -> None:
        h = await _armed(make_harness, delegation)
        await h.wait_for_event("switch_triggered")

        status = await h.switch.arm(USER)

        assert status["state"] == "armed"
        await h.scheduler.stop()


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_armed(self, make_harness, delegation) -> None:
        h = make_harness()
        await h.store.put(delegation)
        await h.switch.arm(USER)

        assert await h.switch.cancel(USER) is True
        assert h.registry.outstanding() == []
        assert (await h.store.get(USER)).active is False
        with pytest.raises(NotFoundError):
            h.switch.status(USER)
        assert await h.switch.cancel(USER) is False

    @pytest.mark.asyncio
    async def test_cancel_loses_to_fire(self, make_harness, delegation) -> None:
        """Once the deadline fired, cancel is a no-op and the check completes."""
        delegation.timeout_seconds = 0.5
        h = await _armed(make_harness, delegation, onchain=FakeOnchain(found=True, delay=0.1))

        await h.wait_for_event("check_started")
        assert h.switch.status(USER)["state"] == "checking"
        assert await h.switch.cancel(USER) is False
        with pytest.raises(AlreadyArmedError):
            await h.switch.arm(USER)

        await h.wait_for_event("timer_reset")
        await h.scheduler.stop()
        assert h.switch.status(USER)["state"] == "armed"

    @pytest.mark.asyncio
    async def test_record_activity_requires_armed(self, make_harness) -> None:
        with pytest.raises(NotFoundError):
            await make_harness().switch.record_activity(USER)


class TestDelegationChanges:

    @pytest.mark.asyncio
    async def test_deactivated_delegation_discards_cycle(self, make_harness, delegation) -> None:
        h = await _armed(make_harness, delegation)
        await h.store.set_active(USER, False)

        await h.wait_for_event("check_started")
        await asyncio.sleep(0.05)
        await h.scheduler.stop()

        assert "switch_triggered" not in h.events.types()
        with pytest.raises(NotFoundError):
            h.switch.status(USER)

    @pytest.mark.asyncio
    async def test_fire_uses_current_delegation(self, make_harness, delegation) -> None:
        h = await _armed(make_harness, delegation)
        new_beneficiary = "0x" + "66" * 20
        await h.store.put(Delegation(
            user_address=USER,
            beneficiary_address=new_beneficiary,
            execution_account=EXECUTOR,
            timeout_seconds=0.05,
        ))

        await h.wait_for_event("switch_triggered")
        await h.scheduler.stop()

        _, _, payload = h.events.emitted[-1]
        assert payload["beneficiary_address"] == new_beneficiary


class TestRestore:

    @pytest.mark.asyncio
    async def test_restore_reattaches_armed_users(self, make_harness, delegation, tmp_path) -> None:
        path = str(tmp_path / "jobs.json")
        JobRegistry(storage_path=path).arm(USER, 60)

        h = make_harness(registry=JobRegistry(storage_path=path))
        await h.store.put(delegation)

        assert h.switch.restore() == 1
        assert h.switch.status(USER)["state"] == "armed"
        with pytest.raises(AlreadyArmedError):
            await h.switch.arm(USER)
