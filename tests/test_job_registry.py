"""Tests for the job registry: arm exclusivity, fire/cancel races, durability."""

import json
import threading

import pytest

from core.errors import AlreadyArmedError, ValidationError
from core.job_registry import JobRegistry

from conftest import USER, BENEFICIARY


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestArm:

    def test_arm_creates_outstanding_job(self) -> None:
        clock = FakeClock()
        registry = JobRegistry(clock=clock)

        job_id = registry.arm(USER, 3600)

        job = registry.get(job_id)
        assert job is not None
        assert job.user_address == USER
        assert job.due_at == 1_000.0 + 3600
        assert job.consumed is False
        assert job_id.startswith(f"deadhand_{USER}_")
        assert registry.outstanding_for(USER) is job

    def test_arm_from_explicit_start_time(self) -> None:
        registry = JobRegistry(clock=FakeClock(now=1_000.0))

        job_id = registry.arm(USER, 60, start_at=900.0)

        assert registry.get(job_id).due_at == 960.0

    def test_second_arm_is_rejected(self) -> None:
        registry = JobRegistry()
        first = registry.arm(USER, 60)

        with pytest.raises(AlreadyArmedError) as exc:
            registry.arm(USER, 60)

        assert exc.value.job_id == first
        assert len(registry.outstanding()) == 1

    def test_other_users_are_independent(self) -> None:
        registry = JobRegistry()
        registry.arm(USER, 60)
        registry.arm(BENEFICIARY, 30)

        assert [j.user_address for j in registry.outstanding()] == [BENEFICIARY, USER]

    @pytest.mark.parametrize("timeout", [0, -5])
    def test_non_positive_timeout_rejected(self, timeout) -> None:
        with pytest.raises(ValidationError):
            JobRegistry().arm(USER, timeout)

    @pytest.mark.parametrize("timeout", [float("nan"), float("inf")])
    def test_non_finite_timeout_rejected(self, timeout) -> None:
        registry = JobRegistry()

        with pytest.raises(ValidationError):
            registry.arm(USER, timeout)
        assert registry.outstanding() == []

    def test_concurrent_arms_install_exactly_one(self) -> None:
        registry = JobRegistry()
        winners, losers = [], []
        barrier = threading.Barrier(8)

        def _arm():
            barrier.wait()
            try:
                winners.append(registry.arm(USER, 60))
            except AlreadyArmedError:
                losers.append(1)

        threads = [threading.Thread(target=_arm) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
        assert len(losers) == 7


class TestConsume:

    def test_fire_then_cancel(self) -> None:
        registry = JobRegistry()
        job_id = registry.arm(USER, 60)

        assert registry.fire(job_id) is True
        assert registry.cancel(job_id) is False
        assert registry.get(job_id) is None
        assert registry.outstanding_for(USER) is None

    def test_cancel_then_fire(self) -> None:
        registry = JobRegistry()
        job_id = registry.arm(USER, 60)

        assert registry.cancel(job_id) is True
        assert registry.fire(job_id) is False

    def test_unknown_job(self) -> None:
        registry = JobRegistry()
        assert registry.fire("deadhand_nope") is False
        assert registry.cancel("deadhand_nope") is False

    def test_rearm_after_consume(self) -> None:
        registry = JobRegistry()
        first = registry.arm(USER, 60)
        registry.fire(first)

        second = registry.arm(USER, 60)

        assert second != first
        assert registry.outstanding_for(USER).id == second

    def test_racing_fire_and_cancel_has_one_winner(self) -> None:
        for _ in range(50):
            registry = JobRegistry()
            job_id = registry.arm(USER, 60)
            results = {}
            barrier = threading.Barrier(2)

            def _run(name, fn):
                barrier.wait()
                results[name] = fn(job_id)

            threads = [
                threading.Thread(target=_run, args=("fire", registry.fire)),
                threading.Thread(target=_run, args=("cancel", registry.cancel)),
            ]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert sorted(results.values()) == [False, True]

    def test_status_counts(self) -> None:
        registry = JobRegistry()
        a = registry.arm(USER, 60)
        registry.arm(BENEFICIARY, 60)
        registry.cancel(a)

        status = registry.status()

        assert status["active_jobs"] == 1
        assert status["completed_jobs"] == 1
        assert status["total_jobs"] == 2
        assert status["durable"] is False


class TestDurability:

    def test_outstanding_jobs_survive_restart(self, tmp_path) -> None:
        path = tmp_path / "jobs.json"
        registry = JobRegistry(storage_path=str(path), clock=FakeClock(500.0))
        kept = registry.arm(USER, 100)
        gone = registry.arm(BENEFICIARY, 100)
        registry.fire(gone)

        reloaded = JobRegistry(storage_path=str(path))

        jobs = reloaded.outstanding()
        assert [j.id for j in jobs] == [kept]
        assert jobs[0].due_at == 600.0
        assert jobs[0].timeout_seconds == 100
        assert reloaded.status()["durable"] is True

    def test_reloaded_user_cannot_be_armed_twice(self, tmp_path) -> None:
        path = tmp_path / "jobs.json"
        JobRegistry(storage_path=str(path)).arm(USER, 100)

        reloaded = JobRegistry(storage_path=str(path))

        with pytest.raises(AlreadyArmedError):
            reloaded.arm(USER, 100)

    def test_malformed_entries_skipped(self, tmp_path) -> None:
        path = tmp_path / "jobs.json"
        path.write_text(json.dumps({"jobs": [
            {"id": "broken"},
            {"id": "deadhand_ok", "user": USER, "due_at": 10, "timeout": 5},
            {"id": "deadhand_dup", "user": USER, "due_at": 20, "timeout": 5},
        ]}))

        registry = JobRegistry(storage_path=str(path))

        assert [j.id for j in registry.outstanding()] == ["deadhand_ok"]

    def test_non_finite_entries_skipped(self, tmp_path) -> None:
        path = tmp_path / "jobs.json"
        path.write_text(json.dumps({"jobs": [
            {"id": "deadhand_nan", "user": USER, "due_at": float("nan"), "timeout": 5},
            {"id": "deadhand_inf", "user": BENEFICIARY, "due_at": 10, "timeout": float("inf")},
        ]}))

        assert JobRegistry(storage_path=str(path)).outstanding() == []

    def test_missing_or_corrupt_file_starts_empty(self, tmp_path) -> None:
        assert JobRegistry(storage_path=str(tmp_path / "absent.json")).outstanding() == []

        corrupt = tmp_path / "corrupt.json"
        corrupt.write_text("{not json")
        assert JobRegistry(storage_path=str(corrupt)).outstanding() == []
