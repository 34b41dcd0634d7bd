"""Tests for run_sync thread offload."""

import time

import pytest

from app.core.async_utils import run_sync


def _slow_add(a, b, delay=0.05):
    time.sleep(delay)
    return a + b


class TestRunSync:

    @pytest.mark.asyncio
    async def test_waits_for_completion_without_timeout(self):
        assert await run_sync(_slow_add, 2, 3) == 5

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        with pytest.raises(TimeoutError, match="_slow_add timed out"):
            await run_sync(_slow_add, 1, 1, 0.5, timeout=0.01)

    @pytest.mark.asyncio
    async def test_exceptions_propagate(self):
        def boom():
            raise RuntimeError("store down")

        with pytest.raises(RuntimeError, match="store down"):
            await run_sync(boom)
