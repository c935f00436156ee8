"""Tests for run-scoped log context."""

import asyncio

import pytest

from commintel.core.logging import add_run_context, get_correlation_id, run_context


class TestRunContext:
    """Tests for run_context() and the add_run_context processor."""

    def test_binds_and_restores_run_id(self) -> None:
        assert get_correlation_id() is None
        with run_context("R1", "T1"):
            assert get_correlation_id() == "R1"
            with run_context("R2"):
                assert get_correlation_id() == "R2"
            assert get_correlation_id() == "R1"
        assert get_correlation_id() is None

    def test_restores_after_error(self) -> None:
        with pytest.raises(RuntimeError):
            with run_context("R1", "T1"):
                raise RuntimeError("boom")
        assert get_correlation_id() is None

    def test_processor_adds_run_and_thread(self) -> None:
        with run_context("R1", "T1"):
            event = add_run_context(None, "info", {"event": "items_persisted"})
        assert event == {"event": "items_persisted", "extraction_run_id": "R1", "thread_id": "T1"}

    def test_explicit_thread_id_wins(self) -> None:
        with run_context("R1", "T1"):
            event = add_run_context(None, "info", {"event": "x", "thread_id": "T9"})
        assert event["thread_id"] == "T9"
        assert event["extraction_run_id"] == "R1"

    def test_processor_outside_run_leaves_event_alone(self) -> None:
        assert add_run_context(None, "info", {"event": "x"}) == {"event": "x"}

    @pytest.mark.asyncio
    async def test_tasks_inherit_binding(self) -> None:
        async def seen() -> str | None:
            return get_correlation_id()

        with run_context("R1", "T1"):
            task = asyncio.create_task(seen())
        assert await task == "R1"
        assert get_correlation_id() is None
