"""Tests for the event emitter and cancellation helpers."""
import asyncio

import pytest

from odm_uploader.errors import OperationCancelledError
from odm_uploader.utils.events import EventEmitter
from odm_uploader.utils.scheduling import AsyncioScheduler, CancellationToken, check_cancelled


class TestEventEmitter:
    @pytest.mark.asyncio
    async def test_delivers_in_emission_order(self):
        emitter = EventEmitter()
        seen = []
        emitter.on("progress", seen.append)

        await emitter.emit("progress", 1)
        emitter.emit_nowait("progress", 2)
        emitter.emit_nowait("progress", 3)
        await emitter.emit("progress", 4)

        assert seen == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_async_listeners_are_awaited(self):
        emitter = EventEmitter()
        seen = []

        async def listener(value):
            await asyncio.sleep(0)
            seen.append(value)

        emitter.on("progress", listener)
        await emitter.emit("progress", "a")

        assert seen == ["a"]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self):
        emitter = EventEmitter()
        seen = []

        def broken(_):
            raise RuntimeError("listener bug")

        emitter.on("progress", broken)
        emitter.on("progress", seen.append)
        await emitter.emit("progress", "ok")

        assert seen == ["ok"]

    @pytest.mark.asyncio
    async def test_off_and_duplicate_subscriptions(self):
        emitter = EventEmitter()
        seen = []
        emitter.on("progress", seen.append)
        emitter.on("progress", seen.append)
        await emitter.emit("progress", 1)
        emitter.off("progress", seen.append)
        await emitter.emit("progress", 2)

        assert seen == [1]

    @pytest.mark.asyncio
    async def test_listener_can_emit_on_the_same_emitter(self):
        emitter = EventEmitter()
        seen = []

        async def forward(value):
            await emitter.emit("forwarded", value)
            seen.append(("progress", value))

        emitter.on("progress", forward)
        emitter.on("forwarded", lambda value: seen.append(("forwarded", value)))

        await asyncio.wait_for(emitter.emit("progress", 1), timeout=1)
        await emitter.emit("progress", 2)

        assert seen == [("progress", 1), ("forwarded", 1), ("progress", 2), ("forwarded", 2)]

    @pytest.mark.asyncio
    async def test_flush_delivers_queued_events(self):
        emitter = EventEmitter()
        seen = []
        emitter.on("progress", seen.append)
        emitter.emit_nowait("progress", "queued")
        await emitter.flush()

        assert seen == ["queued"]


class TestCancellation:
    def test_check_cancelled(self):
        token = CancellationToken()
        check_cancelled(None)
        check_cancelled(token)
        token.cancel("user pressed stop")
        with pytest.raises(OperationCancelledError, match="user pressed stop"):
            check_cancelled(token)

    @pytest.mark.asyncio
    async def test_sleep_returns_for_zero_delay(self):
        await AsyncioScheduler().sleep(0)

    @pytest.mark.asyncio
    async def test_sleep_raises_when_already_cancelled(self):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            await AsyncioScheduler().sleep(5, token)

    @pytest.mark.asyncio
    async def test_sleep_is_interrupted_by_cancellation(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel, "stop")
        with pytest.raises(OperationCancelledError, match="stop"):
            await asyncio.wait_for(AsyncioScheduler().sleep(30, token), timeout=5)

    @pytest.mark.asyncio
    async def test_sleep_completes_without_cancellation(self):
        token = CancellationToken()
        await AsyncioScheduler().sleep(0.01, token)
        assert not token.cancelled
