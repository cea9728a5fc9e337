"""Live notification channels, at most one per user.

A channel is a bounded, single-consumer queue bound to the event loop that
serves the user's WebSocket. Producers may sit on any thread (sync route
handlers run in the worker threadpool), so pushes are handed to the loop with
``call_soon_threadsafe`` and never wait on the consumer.
"""

import asyncio
import logging
from threading import Lock

from clinic_scheduler.core import config

logger = logging.getLogger(__name__)

_CLOSED = object()


class NotificationChannel:
    def __init__(self, user_id: int, loop: asyncio.AbstractEventLoop, max_buffer: int):
        self.user_id = user_id
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_buffer)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def _enqueue(self, payload: dict) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning('Live notification dropped for user %s: channel buffer full', self.user_id)
            return False
        return True

    def _enqueue_close(self) -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def offer(self, payload: dict) -> bool:
        """Queue a payload for the consumer without blocking.

        Returns False when the push was dropped. From another thread the
        result only says the push was handed to the loop.
        """
        if self._closed:
            return False
        if self._on_loop_thread():
            return self._enqueue(payload)
        try:
            self._loop.call_soon_threadsafe(self._enqueue, payload)
        except RuntimeError:
            logger.warning('Live notification dropped for user %s: event loop closed', self.user_id)
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_loop_thread():
            self._enqueue_close()
            return
        try:
            self._loop.call_soon_threadsafe(self._enqueue_close)
        except RuntimeError:
            logger.debug('Channel for user %s closed after its event loop stopped', self.user_id)

    async def receive(self) -> dict | None:
        """Next payload, or None once the channel has been closed."""
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def pending(self) -> int:
        return self._queue.qsize()


class ConnectionRegistry:
    def __init__(self, max_buffer: int | None = None):
        self._max_buffer = max_buffer or config.NOTIFICATION_CHANNEL_BUFFER
        self._lock = Lock()
        self._channels: dict[int, NotificationChannel] = {}

    def register(self, user_id: int) -> NotificationChannel:
        """Open a channel for the user, closing any previous one.

        Must be called from the event loop that will consume the channel.
        """
        channel = NotificationChannel(user_id, asyncio.get_running_loop(), self._max_buffer)
        with self._lock:
            previous = self._channels.get(user_id)
            self._channels[user_id] = channel

        if previous is not None:
            previous.close()
            logger.info('Replaced live channel for user %s', user_id)
        else:
            logger.info('Registered live channel for user %s', user_id)
        return channel

    def unregister(self, user_id: int, channel: NotificationChannel | None = None) -> bool:
        """Drop the user's channel; with ``channel`` given, only if it is still current."""
        with self._lock:
            current = self._channels.get(user_id)
            if current is None or (channel is not None and current is not channel):
                removed = None
            else:
                removed = self._channels.pop(user_id)

        if channel is not None:
            channel.close()
        if removed is None:
            return False

        removed.close()
        logger.info('Unregistered live channel for user %s', user_id)
        return True

    def get(self, user_id: int) -> NotificationChannel | None:
        with self._lock:
            return self._channels.get(user_id)

    def is_connected(self, user_id: int) -> bool:
        return self.get(user_id) is not None

    def push(self, user_id: int, payload: dict) -> bool:
        channel = self.get(user_id)
        if channel is None:
            return False
        return channel.offer(payload)

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)
