"""Supervised Supabase realtime subscriptions.

A raw realtime channel simply dies when its socket drops. ``SupervisedSubscription``
owns one channel on a table, forwards changed rows to a callback, and
resubscribes with exponential backoff when the channel reports an error,
a timeout or an unexpected close.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.core.config import get_settings
from src.core.supabase import create_realtime_client

logger = logging.getLogger(__name__)

# Channel states that mean the subscription is gone
DISCONNECTED_STATES = frozenset({"CHANNEL_ERROR", "TIMED_OUT", "CLOSED"})

RowCallback = Callable[[dict[str, Any]], Any]
ClientFactory = Callable[[], Awaitable[Any]]


def extract_record(payload: dict[str, Any]) -> dict[str, Any]:
    """Pull the changed row out of a postgres_changes payload."""
    data = payload.get("data") or {}
    return data.get("record") or payload.get("new") or payload.get("record") or {}


class SupervisedSubscription:
    """A postgres_changes subscription that resubscribes on disconnect."""

    def __init__(
        self,
        channel_name: str,
        table: str,
        listeners: list[tuple[str, str | None]],
        callback: RowCallback,
        client_factory: ClientFactory = create_realtime_client,
        max_attempts: int | None = None,
        backoff_min: float | None = None,
        backoff_max: float | None = None,
        schema: str = "public",
    ) -> None:
        """Initialize the subscription without connecting.

        Args:
            channel_name: Realtime channel name.
            table: Table whose changes are forwarded.
            listeners: (event, filter) pairs, e.g. ("INSERT", "event_type=eq.x").
            callback: Called with each changed row; may be sync or async.
            client_factory: Coroutine returning an async Supabase client.
            max_attempts: Subscribe attempts per (re)connect.
            backoff_min: Initial backoff in seconds.
            backoff_max: Maximum backoff in seconds.
            schema: Database schema of the table.
        """
        settings = get_settings()
        self.channel_name = channel_name
        self.table = table
        self.listeners = listeners
        self.schema = schema
        self.max_attempts = max_attempts or settings.realtime_max_attempts
        self.backoff_min = settings.realtime_backoff_min_seconds if backoff_min is None else backoff_min
        self.backoff_max = settings.realtime_backoff_max_seconds if backoff_max is None else backoff_max
        self._callback = callback
        self._client_factory = client_factory
        self._client: Any = None
        self._channel: Any = None
        self._closed = False
        self._resubscribe_task: asyncio.Task | None = None
        self._callback_tasks: set[asyncio.Task] = set()
        self.reconnects = 0

    @property
    def active(self) -> bool:
        """True while a channel is held and unsubscribe has not been called."""
        return self._channel is not None and not self._closed

    async def start(self) -> "SupervisedSubscription":
        """Subscribe, retrying with backoff.

        Raises:
            Exception: The last subscribe error once attempts are exhausted.
        """
        await self._connect()
        return self

    async def unsubscribe(self) -> None:
        """Stop supervising and release the channel."""
        self._closed = True
        if self._resubscribe_task and not self._resubscribe_task.done():
            self._resubscribe_task.cancel()
        for task in list(self._callback_tasks):
            task.cancel()
        await self._release()

    async def _connect(self) -> None:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(Exception),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.backoff_min, max=self.backoff_max),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                await self._subscribe_once()

    async def _subscribe_once(self) -> None:
        client = await self._client_factory()
        channel = client.channel(self.channel_name)
        try:
            for event, change_filter in self.listeners:
                channel.on_postgres_changes(
                    event,
                    callback=self._dispatch,
                    table=self.table,
                    schema=self.schema,
                    filter=change_filter,
                )
            await channel.subscribe(self._on_state_change)
        except Exception:
            await self._close_client(client)
            raise

        self._client = client
        self._channel = channel
        logger.info("Subscribed to %s changes on channel %s", self.table, self.channel_name)

    async def _release(self) -> None:
        channel, client = self._channel, self._client
        self._channel = None
        self._client = None
        if channel is None or client is None:
            return
        try:
            await client.remove_channel(channel)
        except Exception as e:
            logger.warning("Failed to remove realtime channel %s: %s", self.channel_name, e)

    async def _close_client(self, client: Any) -> None:
        try:
            await client.remove_all_channels()
        except Exception as e:
            logger.warning("Failed to close realtime client for %s: %s", self.channel_name, e)

    async def _resubscribe(self) -> None:
        await self._release()
        if self._closed:
            return
        self.reconnects += 1
        try:
            await self._connect()
        except Exception as e:
            logger.error(
                "Giving up on realtime channel %s after %d attempts: %s",
                self.channel_name,
                self.max_attempts,
                e,
            )

    def _on_state_change(self, state: Any, error: Exception | None = None) -> None:
        value = getattr(state, "value", state)
        if self._closed or value not in DISCONNECTED_STATES:
            return

        logger.warning("Realtime channel %s reported %s: %s", self.channel_name, value, error)
        if self._resubscribe_task and not self._resubscribe_task.done():
            return
        self._resubscribe_task = asyncio.get_running_loop().create_task(self._resubscribe())

    def _dispatch(self, payload: dict[str, Any]) -> None:
        record = extract_record(payload)
        result = self._callback(record)
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Realtime callback for %s failed: %s", self.channel_name, error, exc_info=error)
