"""Tests for PeriodicStatsLogger."""

import asyncio
import logging

from core.logging.periodic_logger import PeriodicStatsLogger

LOGGER_NAME = "core.logging.periodic_logger"


def _make_stats_callback(values):
    """Return a callback yielding successive stats dicts, repeating the last."""
    calls = []

    def get_stats(cycle_count):
        calls.append(cycle_count)
        index = min(len(calls), len(values)) - 1
        return dict(values[index])

    get_stats.calls = calls
    return get_stats


def _make_logger(values, interval_seconds=10):
    return PeriodicStatsLogger(
        interval_seconds=interval_seconds,
        get_stats=_make_stats_callback(values),
        stage="loadpipe",
        worker_id="w-0",
    )


class TestPeriodicStatsLoggerInit:

    def test_stores_configuration(self):
        psl = _make_logger([{}], interval_seconds=30)

        assert psl.interval_seconds == 30
        assert psl.stage == "loadpipe"
        assert psl.worker_id == "w-0"
        assert psl._task is None
        assert psl._cycle_count == 0
        assert psl._previous_stats == {}


class TestLogCycle:

    def test_first_cycle_counts_everything(self, caplog):
        psl = _make_logger(
            [{"messages_acked": 100, "messages_retained": 10, "messages_dropped": 0}]
        )
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            psl.log_cycle()

        assert caplog.records[-1].getMessage() == (
            "Cycle 1: +110 this cycle | total: 100 acked, 10 retained | 11.0 msg/s"
        )

    def test_second_cycle_reports_delta(self, caplog):
        psl = _make_logger(
            [
                {"messages_acked": 100, "messages_retained": 0, "messages_dropped": 0},
                {"messages_acked": 150, "messages_retained": 0, "messages_dropped": 2},
            ]
        )
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            psl.log_cycle()
            psl.log_cycle()

        assert caplog.records[-1].getMessage() == (
            "Cycle 2: +52 this cycle | total: 150 acked, 2 dropped | 5.2 msg/s"
        )

    def test_passes_callback_fields_as_extra(self, caplog):
        psl = _make_logger([{"messages_acked": 1, "state": "idle", "buffered": 4}])
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            psl.log_cycle()

        record = caplog.records[-1]
        assert record.state == "idle"
        assert record.buffered == 4
        assert record.cycle == 1
        assert record.stage == "loadpipe"

    def test_missing_counts_default_to_zero(self, caplog):
        psl = _make_logger([{}])
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            psl.log_cycle()
        assert "+0 this cycle" in caplog.records[-1].getMessage()


class TestStartStop:

    async def test_start_creates_task(self):
        psl = _make_logger([{}], interval_seconds=3600)
        psl.start()
        try:
            assert psl._task is not None
        finally:
            await psl.stop()

    async def test_stop_logs_final_cycle(self):
        psl = _make_logger([{"messages_acked": 3}], interval_seconds=3600)
        psl.start()
        await psl.stop()

        assert psl._task is None
        assert psl.get_stats.calls == [1]

    async def test_stop_without_start_is_noop(self):
        psl = _make_logger([{}])
        await psl.stop()
        assert psl.get_stats.calls == []

    async def test_double_start_warns(self, caplog):
        psl = _make_logger([{}], interval_seconds=3600)
        psl.start()
        try:
            with caplog.at_level(logging.WARNING, logger=LOGGER_NAME):
                psl.start()
            assert "already running" in caplog.text
        finally:
            await psl.stop()


async def test_runs_cycles_on_interval():
    psl = _make_logger([{"messages_acked": 1}], interval_seconds=0.01)
    psl.start()
    await asyncio.sleep(0.05)
    await psl.stop()
    assert len(psl.get_stats.calls) >= 2
