"""
Change feed over Redis Pub/Sub.
The backend publishes every inserted message on the room's channel;
each subscription listens on it from a background task.
"""

import asyncio
import logging
from typing import Any, Optional

import redis.asyncio as redis

from roomsync.client.backend import BackendClient, FeedCallback, IChangeFeed, ISubscription
from roomsync.client.http import HttpMessageStore, HttpRoomDirectory, create_http_client
from roomsync.config.settings import Settings
from roomsync.core.errors import BackendUnavailable
from roomsync.core.room import feed_channel

logger = logging.getLogger(__name__)


class RedisSubscription(ISubscription):
    """One room channel and the task relaying it to the callback."""

    def __init__(self, pubsub: Any, room_id: str, on_insert: FeedCallback):
        self._pubsub = pubsub
        self._room_id = room_id
        self._on_insert = on_insert
        self._channel = feed_channel(room_id)
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def room_id(self) -> str:
        return self._room_id

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Starts the background listener"""
        self._task = asyncio.create_task(self._listen())

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message["type"] != "message":
                    continue
                # pylint: disable=broad-exception-caught
                try:
                    self._on_insert(message["data"])
                except Exception as e:
                    logger.error("Feed callback failed for %s: %s", self._channel, e)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Redis listener error for %s: %s", self._channel, e)

    async def close(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        try:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
        except redis.RedisError as e:
            logger.warning("Could not release %s cleanly: %s", self._channel, e)
        logger.info("Unsubscribed from %s", self._channel)


class RedisChangeFeed(IChangeFeed):
    """Opens one Redis Pub/Sub subscription per room feed."""

    def __init__(self, client: "redis.Redis"):
        self._client = client

    async def subscribe(self, room_id: str, on_insert: FeedCallback) -> ISubscription:
        pubsub = self._client.pubsub()
        channel = feed_channel(room_id)
        try:
            await pubsub.subscribe(channel)
        except redis.RedisError as e:
            logger.error("Failed to subscribe to %s: %s", channel, e)
            raise BackendUnavailable() from e

        logger.info("Subscribed to Redis channel: %s", channel)
        subscription = RedisSubscription(pubsub, room_id, on_insert)
        subscription.start()
        return subscription

    async def aclose(self) -> None:
        """Closes the Redis connection pool"""
        await self._client.aclose()


def create_backend(config: Settings) -> BackendClient:
    """Builds the HTTP + Redis backend client described by the settings."""
    http_client = create_http_client(config.backend_url or "", config.request_timeout)
    redis_client = redis.from_url(config.redis_url, decode_responses=True)  # type: ignore[no-untyped-call]
    feed = RedisChangeFeed(redis_client)

    return BackendClient(
        rooms=HttpRoomDirectory(http_client),
        messages=HttpMessageStore(http_client),
        feed=feed,
        closers=[http_client.aclose, feed.aclose],
    )
