from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from core.errors import DuplicateJobError, NotFoundError, ValidationError
from core.models import JobState, TriggerOutcome
from core.scheduler import JobScheduler, build_trigger


class _Job:
    def __init__(self, job_id: str, next_run_time=None):
        self.id = job_id
        self.next_run_time = next_run_time


class _FakeScheduler:
    def __init__(self, job_ids: list[str] | None = None):
        self.running = False
        self._jobs = [_Job(job_id) for job_id in (job_ids or [])]
        self.start_called = 0
        self.shutdown_called = 0
        self.remove_all_jobs_called = False
        self.add_job_calls: list[dict] = []

    def get_jobs(self):
        return self._jobs

    def get_job(self, job_id: str):
        for job in self._jobs:
            if job.id == job_id:
                return job
        return None

    def start(self):
        self.start_called += 1
        self.running = True

    def shutdown(self, wait=True):
        self.shutdown_called += 1
        self.running = False

    def remove_all_jobs(self):
        self.remove_all_jobs_called = True
        self._jobs = []

    def add_job(self, func, trigger=None, **kwargs):
        self._jobs.append(_Job(kwargs["id"], next_run_time=datetime(2024, 1, 1, tzinfo=timezone.utc)))
        self.add_job_calls.append({"func": func, "trigger": trigger, **kwargs})

    async def fire(self, job_id: str):
        """Simulate a scheduled tick for a job still on the schedule."""
        for call in self.add_job_calls:
            if call["id"] == job_id and self.get_job(job_id) is not None:
                await call["func"](*call.get("args", []))
                return True
        return False


def _service(**kwargs) -> tuple[JobScheduler, _FakeScheduler]:
    fake = _FakeScheduler(**kwargs)
    return JobScheduler(scheduler=fake), fake


def test_register_rejects_duplicate_names():
    service, _ = _service()

    async def noop():
        return None

    service.register("alert-scan", "*/15 * * * *", noop)
    with pytest.raises(DuplicateJobError):
        service.register("alert-scan", "0 * * * *", noop)


def test_register_rejects_malformed_schedule():
    service, _ = _service()

    async def noop():
        return None

    with pytest.raises(ValidationError):
        service.register("alert-scan", "every fifteen minutes", noop)
    assert service.job_names() == []


def test_build_trigger_accepts_five_field_cron():
    trigger = build_trigger("0 9 * * 1", "UTC")
    assert "day_of_week" in str(trigger)


def test_trigger_unknown_job_returns_not_found_without_raising():
    service, _ = _service()

    result = asyncio.run(service.trigger("missing"))

    assert result.outcome == TriggerOutcome.NOT_FOUND
    assert result.executed is False


def test_get_job_raises_for_unknown_name():
    service, _ = _service()
    with pytest.raises(NotFoundError):
        service.get_job("missing")


def test_overlapping_trigger_is_skipped_and_handler_runs_once():
    service, _ = _service()
    calls = []

    async def scenario():
        release = asyncio.Event()

        async def slow():
            calls.append("start")
            await release.wait()

        service.register("alert-scan", "*/15 * * * *", slow)
        first = asyncio.create_task(service.trigger("alert-scan"))
        await asyncio.sleep(0)
        assert service.get_job("alert-scan").running is True

        second = await service.trigger("alert-scan")
        release.set()
        return await first, second

    first, second = asyncio.run(scenario())

    assert calls == ["start"]
    assert first.outcome == TriggerOutcome.COMPLETED
    assert second.outcome == TriggerOutcome.OVERLAP_SKIPPED
    assert service.get_job("alert-scan").skipped_count == 1
    assert service.get_job("alert-scan").running is False


def test_manual_trigger_skipped_while_scheduled_tick_in_flight():
    service, fake = _service()
    calls = []

    async def scenario():
        release = asyncio.Event()

        async def slow():
            calls.append("run")
            await release.wait()

        service.register("alert-scan", "*/15 * * * *", slow)
        service.start()
        tick = asyncio.create_task(fake.fire("alert-scan"))
        await asyncio.sleep(0)
        assert service.get_job("alert-scan").running is True

        manual = await service.trigger("alert-scan")
        release.set()
        await tick
        return manual

    manual = asyncio.run(scenario())

    assert manual.outcome == TriggerOutcome.OVERLAP_SKIPPED
    assert calls == ["run"]
    job = service.get_job("alert-scan")
    assert job.skipped_count == 1
    assert job.run_count == 1
    assert job.running is False


def test_scheduled_tick_skipped_while_manual_run_in_flight():
    service, fake = _service()
    calls = []

    async def scenario():
        release = asyncio.Event()

        async def slow():
            calls.append("run")
            await release.wait()

        service.register("alert-scan", "*/15 * * * *", slow)
        service.start()
        manual = asyncio.create_task(service.trigger("alert-scan"))
        await asyncio.sleep(0)

        await fake.fire("alert-scan")
        release.set()
        return await manual

    manual = asyncio.run(scenario())

    assert manual.outcome == TriggerOutcome.COMPLETED
    assert calls == ["run"]
    job = service.get_job("alert-scan")
    assert job.skipped_count == 1
    assert job.run_count == 1


def test_different_jobs_do_not_block_each_other():
    service, _ = _service()
    order = []

    async def scenario():
        release = asyncio.Event()

        async def slow():
            order.append("slow-start")
            await release.wait()
            order.append("slow-end")

        async def fast():
            order.append("fast")

        service.register("statement-generation", "0 9 * * 1", slow)
        service.register("alert-scan", "*/15 * * * *", fast)

        slow_task = asyncio.create_task(service.trigger("statement-generation"))
        await asyncio.sleep(0)
        fast_result = await service.trigger("alert-scan")
        release.set()
        await slow_task
        return fast_result

    fast_result = asyncio.run(scenario())

    assert fast_result.outcome == TriggerOutcome.COMPLETED
    assert order == ["slow-start", "fast", "slow-end"]


def test_handler_failure_is_recorded_and_guard_released():
    service, _ = _service()

    async def boom():
        raise RuntimeError("metric source down")

    service.register("connector-poll", "0 * * * *", boom)

    result = asyncio.run(service.trigger("connector-poll"))

    job = service.get_job("connector-poll")
    assert result.outcome == TriggerOutcome.FAILED
    assert job.last_result.success is False
    assert "metric source down" in job.last_result.error
    assert job.running is False

    # A later run is not blocked by the earlier failure
    assert asyncio.run(service.trigger("connector-poll")).outcome == TriggerOutcome.FAILED
    assert job.run_count == 2


def test_start_schedules_registered_jobs_and_is_idempotent():
    service, fake = _service(job_ids=["stale"])

    async def noop():
        return None

    service.register("alert-scan", "*/15 * * * *", noop)
    service.register("connector-poll", "0 * * * *", noop)

    service.start()
    service.start()

    assert fake.start_called == 1
    assert fake.remove_all_jobs_called is True
    assert [call["id"] for call in fake.add_job_calls] == ["alert-scan", "connector-poll"]
    assert all(call["max_instances"] == 1 for call in fake.add_job_calls)
    assert service.running is True


def test_stop_is_idempotent():
    service, fake = _service()

    service.stop()
    assert fake.shutdown_called == 0

    service.start()
    service.stop()
    service.stop()

    assert fake.shutdown_called == 1
    assert service.running is False


def test_manual_trigger_after_stop_runs_exactly_once_and_ticks_stop():
    service, fake = _service()
    runs = []

    async def scan():
        runs.append("run")

    service.register("alert-scan", "*/15 * * * *", scan)
    service.start()

    async def scenario():
        assert await fake.fire("alert-scan") is True
        service.stop()
        result = await service.trigger("alert-scan")
        fired_after_stop = await fake.fire("alert-scan")
        return result, fired_after_stop

    result, fired_after_stop = asyncio.run(scenario())

    assert result.outcome == TriggerOutcome.COMPLETED
    assert fired_after_stop is False
    assert runs == ["run", "run"]


def test_status_reports_state_and_last_result():
    service, _ = _service()

    async def noop():
        return None

    service.register("retention-cleanup", "0 2 * * *", noop)

    [before] = service.status()
    assert before.state == JobState.STOPPED
    assert before.last_run_at is None
    assert before.next_run_at is None

    service.start()
    asyncio.run(service.trigger("retention-cleanup"))

    [after] = service.status()
    assert after.state == JobState.IDLE
    assert after.last_result.success is True
    assert after.next_run_at is not None
    assert after.to_dict()["schedule"] == "0 2 * * *"


def test_status_shows_running_while_handler_in_flight():
    service, _ = _service()
    seen = []

    async def scenario():
        release = asyncio.Event()

        async def slow():
            await release.wait()

        service.register("repricing-scan", "0 */6 * * *", slow)
        task = asyncio.create_task(service.trigger("repricing-scan"))
        await asyncio.sleep(0)
        seen.append(service.status()[0].state)
        release.set()
        await task

    asyncio.run(scenario())

    assert seen == [JobState.RUNNING]


def test_wait_idle_joins_in_flight_runs():
    service, _ = _service()

    async def scenario():
        release = asyncio.Event()

        async def slow():
            await release.wait()

        service.register("statement-generation", "0 9 * * 1", slow)
        task = asyncio.create_task(service.trigger("statement-generation"))
        await asyncio.sleep(0)

        timed_out = await service.wait_idle(timeout=0.01)
        release.set()
        idle = await service.wait_idle(timeout=1)
        await task
        return timed_out, idle

    timed_out, idle = asyncio.run(scenario())

    assert timed_out is False
    assert idle is True
