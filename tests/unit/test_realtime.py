"""Unit tests for SupervisedSubscription."""

import asyncio
import logging
from typing import Any

import pytest

from src.core.realtime import SupervisedSubscription, extract_record


class FakeChannel:
    """Records listeners and the state callback passed to subscribe()."""

    def __init__(self, name: str, fail: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.listeners: list[dict[str, Any]] = []
        self.state_callback = None

    def on_postgres_changes(self, event: str, callback, table: str, schema: str, filter: str | None = None) -> "FakeChannel":
        self.listeners.append({"event": event, "callback": callback, "table": table, "filter": filter})
        return self

    async def subscribe(self, callback) -> "FakeChannel":
        if self.fail:
            raise ConnectionError("socket refused")
        self.state_callback = callback
        return self


class FakeClient:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.channels: list[FakeChannel] = []
        self.removed: list[FakeChannel] = []
        self.closed = 0

    def channel(self, name: str) -> FakeChannel:
        channel = FakeChannel(name, fail=len(self.channels) < self.failures)
        self.channels.append(channel)
        return channel

    async def remove_channel(self, channel: FakeChannel) -> None:
        self.removed.append(channel)

    async def remove_all_channels(self) -> None:
        self.closed += 1


def make_subscription(client: FakeClient, callback=None, max_attempts: int = 3) -> SupervisedSubscription:
    async def factory() -> FakeClient:
        return client

    return SupervisedSubscription(
        channel_name="webhook-events-test",
        table="webhook_events",
        listeners=[("INSERT", None), ("UPDATE", "processed=eq.true")],
        callback=callback or (lambda row: None),
        client_factory=factory,
        max_attempts=max_attempts,
        backoff_min=0,
        backoff_max=0,
    )


class TestExtractRecord:
    """Tests for extract_record."""

    def test_nested_data_record(self) -> None:
        assert extract_record({"data": {"record": {"id": 1}}}) == {"id": 1}

    def test_flat_new(self) -> None:
        assert extract_record({"new": {"id": 2}}) == {"id": 2}

    def test_empty(self) -> None:
        assert extract_record({}) == {}


class TestSupervisedSubscription:
    """Tests for subscribe, dispatch and resubscribe."""

    @pytest.mark.asyncio
    async def test_start_registers_listeners(self) -> None:
        client = FakeClient()

        subscription = await make_subscription(client).start()

        channel = client.channels[0]
        assert subscription.active is True
        assert [(listener["event"], listener["filter"]) for listener in channel.listeners] == [
            ("INSERT", None),
            ("UPDATE", "processed=eq.true"),
        ]
        assert all(listener["table"] == "webhook_events" for listener in channel.listeners)

    @pytest.mark.asyncio
    async def test_dispatch_forwards_rows(self) -> None:
        received: list[dict] = []
        client = FakeClient()
        await make_subscription(client, callback=received.append).start()

        client.channels[0].listeners[0]["callback"]({"data": {"record": {"id": 7, "event_type": "x"}}})

        assert received == [{"id": 7, "event_type": "x"}]

    @pytest.mark.asyncio
    async def test_start_retries_failed_subscribe(self) -> None:
        client = FakeClient(failures=2)

        subscription = await make_subscription(client).start()

        assert len(client.channels) == 3
        assert subscription.active is True
        assert client.closed == 2

    @pytest.mark.asyncio
    async def test_start_gives_up_after_max_attempts(self) -> None:
        client = FakeClient(failures=5)

        with pytest.raises(ConnectionError):
            await make_subscription(client, max_attempts=2).start()

        assert len(client.channels) == 2

    @pytest.mark.asyncio
    async def test_resubscribes_on_channel_error(self) -> None:
        """Test that a dropped channel is released and replaced."""
        client = FakeClient()
        subscription = await make_subscription(client).start()
        first = client.channels[0]

        first.state_callback("CHANNEL_ERROR", RuntimeError("socket closed"))
        await subscription._resubscribe_task

        assert subscription.reconnects == 1
        assert client.removed == [first]
        assert len(client.channels) == 2
        assert subscription.active is True

    @pytest.mark.asyncio
    async def test_subscribed_state_is_ignored(self) -> None:
        client = FakeClient()
        subscription = await make_subscription(client).start()

        client.channels[0].state_callback("SUBSCRIBED")

        assert subscription._resubscribe_task is None

    @pytest.mark.asyncio
    async def test_unsubscribe_releases_channel(self) -> None:
        client = FakeClient()
        subscription = await make_subscription(client).start()
        channel = client.channels[0]

        await subscription.unsubscribe()
        channel.state_callback("CLOSED")

        assert subscription.active is False
        assert client.removed == [channel]
        assert subscription._resubscribe_task is None

    @pytest.mark.asyncio
    async def test_async_callback_errors_are_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        async def callback(row: dict) -> None:
            raise ValueError("send failed")

        client = FakeClient()
        subscription = await make_subscription(client, callback=callback).start()

        with caplog.at_level(logging.ERROR, logger="src.core.realtime"):
            client.channels[0].listeners[0]["callback"]({"new": {"id": 1}})
            await asyncio.gather(*subscription._callback_tasks, return_exceptions=True)
            await asyncio.sleep(0)

        assert "Realtime callback for webhook-events-test failed" in caplog.text
        assert subscription._callback_tasks == set()
