"""Tests for backpressure policy and controller."""

import pytest

from core.errors.exceptions import ConfigurationError
from loadpipe.backpressure import BackpressureController, BackpressurePolicy
from loadpipe.types import SinkTarget
from loadpipe.warehouse import InMemoryWarehouse


def _make_target(job_count=0, job_counts=(), name="primary", **kwargs):
    warehouse = InMemoryWarehouse(job_count=job_count)
    warehouse.job_counts.extend(job_counts)
    return SinkTarget(name=name, table_name="public.events", warehouse=warehouse, **kwargs)


class TestBackpressurePolicy:

    @pytest.mark.parametrize(
        "jobs, delay",
        [
            (0, 0.0),
            (4, 0.0),
            (5, 1.0),
            (7, 1.0),
            (8, 3.0),
            (10, 3.0),
            (11, 8.0),
            (12, 8.0),
            (13, 30.0),
            (40, 30.0),
        ],
    )
    def test_default_step_function(self, jobs, delay):
        assert BackpressurePolicy().delay_for(jobs) == delay

    def test_delay_is_monotonic(self):
        policy = BackpressurePolicy()
        delays = [policy.delay_for(n) for n in range(30)]
        assert delays == sorted(delays)

    def test_steps_sorted_on_init(self):
        policy = BackpressurePolicy(steps=[(11, 8.0), (5, 1.0), (8, 3.0)])
        assert policy.steps == [(5, 1.0), (8, 3.0), (11, 8.0)]

    def test_is_saturated(self):
        policy = BackpressurePolicy()
        assert not policy.is_saturated(12)
        assert policy.is_saturated(13)

    def test_concurrency_limit_below_saturation_mark(self):
        policy = BackpressurePolicy()
        assert policy.is_saturated(5, concurrency_limit=5)
        assert policy.delay_for(10, concurrency_limit=5) == 30.0
        # a limit above saturation_mark changes nothing
        assert policy.delay_for(10, concurrency_limit=15) == 3.0

    def test_default_validates(self):
        BackpressurePolicy().validate()

    def test_decreasing_delay_rejected(self):
        policy = BackpressurePolicy(steps=[(5, 3.0), (8, 1.0)])
        with pytest.raises(ConfigurationError, match="must not decrease"):
            policy.validate()

    def test_step_outside_marks_rejected(self):
        policy = BackpressurePolicy(steps=[(2, 1.0)])
        with pytest.raises(ConfigurationError, match="outside"):
            policy.validate()

    def test_saturation_delay_below_step_rejected(self):
        policy = BackpressurePolicy(saturation_delay_seconds=5.0)
        with pytest.raises(ConfigurationError, match="saturation_delay_seconds"):
            policy.validate()

    def test_saturation_below_low_water_rejected(self):
        policy = BackpressurePolicy(low_water_mark=5, steps=[], saturation_mark=3)
        with pytest.raises(ConfigurationError, match="saturation_mark"):
            policy.validate()


class TestBackpressureController:

    async def test_low_load_admitted_without_sleep(self, sleep):
        controller = BackpressureController(BackpressurePolicy(), sleep=sleep)
        target = _make_target(job_count=2)

        assert await controller.wait_for_admission(target) == 0.0
        assert sleep.calls == []
        assert controller.last_job_count["primary"] == 2

    async def test_step_delay(self, sleep):
        controller = BackpressureController(BackpressurePolicy(), sleep=sleep)

        assert await controller.wait_for_admission(_make_target(job_count=9)) == 3.0
        assert sleep.calls == [3.0]
        assert controller.last_delay["primary"] == 3.0

    async def test_saturation_rereads_once(self, sleep):
        controller = BackpressureController(BackpressurePolicy(), sleep=sleep)
        target = _make_target(job_counts=[14, 9])

        total = await controller.wait_for_admission(target)

        assert sleep.calls == [30.0, 3.0]
        assert total == 33.0
        assert target.warehouse.job_count_reads == 2
        assert controller.last_job_count["primary"] == 9

    async def test_target_concurrency_limit_saturates(self, sleep):
        controller = BackpressureController(BackpressurePolicy(), sleep=sleep)
        target = _make_target(job_count=10, concurrency_limit=5)

        total = await controller.wait_for_admission(target)

        assert sleep.calls == [30.0, 30.0]
        assert total == 60.0
        assert target.warehouse.job_count_reads == 2

    async def test_saturation_cleared_after_first_sleep(self, sleep):
        controller = BackpressureController(BackpressurePolicy(), sleep=sleep)
        target = _make_target(job_counts=[13, 1])

        assert await controller.wait_for_admission(target) == 30.0
        assert sleep.calls == [30.0]

    async def test_unknown_count_uses_default_delay(self, sleep):
        controller = BackpressureController(
            BackpressurePolicy(unknown_delay_seconds=2.0), sleep=sleep
        )
        target = _make_target()
        target.warehouse.fail_job_count = True

        assert await controller.wait_for_admission(target) == 2.0
        assert sleep.calls == [2.0]
        assert controller.last_job_count["primary"] is None

    async def test_admission_delay_does_not_sleep(self, sleep):
        controller = BackpressureController(BackpressurePolicy(), sleep=sleep)

        assert await controller.admission_delay(_make_target(job_count=11)) == 8.0
        assert sleep.calls == []

    async def test_state_tracked_per_target(self, sleep):
        controller = BackpressureController(BackpressurePolicy(), sleep=sleep)
        await controller.wait_for_admission(_make_target(job_count=6, name="primary"))
        await controller.wait_for_admission(_make_target(job_count=1, name="secondary"))

        assert controller.last_delay == {"primary": 1.0, "secondary": 0.0}
