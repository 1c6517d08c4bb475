"""Tests for core.logging.context module."""

import asyncio

from core.logging.context import clear_log_context, get_log_context, set_log_context


class TestLogContext:
    def setup_method(self):
        clear_log_context()

    def teardown_method(self):
        clear_log_context()

    def test_defaults_are_empty(self):
        assert get_log_context() == {
            "cycle_id": "",
            "stage": "",
            "worker_id": "",
            "batch_id": "",
            "target": "",
        }

    def test_set_all_fields(self):
        set_log_context(
            cycle_id="c-1", stage="loadpipe", worker_id="w-1", batch_id="b-1", target="primary"
        )
        ctx = get_log_context()
        assert ctx["cycle_id"] == "c-1"
        assert ctx["stage"] == "loadpipe"
        assert ctx["worker_id"] == "w-1"
        assert ctx["batch_id"] == "b-1"
        assert ctx["target"] == "primary"

    def test_none_leaves_field_unchanged(self):
        set_log_context(stage="loadpipe")
        set_log_context(batch_id="b-1")
        assert get_log_context()["stage"] == "loadpipe"

    def test_empty_string_clears_field(self):
        set_log_context(batch_id="b-1")
        set_log_context(batch_id="")
        assert get_log_context()["batch_id"] == ""

    def test_clear(self):
        set_log_context(stage="loadpipe", target="primary")
        clear_log_context()
        assert get_log_context()["stage"] == ""
        assert get_log_context()["target"] == ""


class TestContextIsolation:

    async def test_tasks_do_not_leak_context(self):
        set_log_context(stage="loadpipe")

        async def leg(target):
            set_log_context(target=target)
            await asyncio.sleep(0)
            return get_log_context()["target"]

        results = await asyncio.gather(leg("primary"), leg("secondary"))

        assert results == ["primary", "secondary"]
        assert get_log_context()["target"] == ""
        assert get_log_context()["stage"] == "loadpipe"
