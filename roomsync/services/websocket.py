"""
Change feed publisher with Redis Pub/Sub.
Publishes every inserted message on its room channel and relays
those channels to browser WebSocket connections.
"""

import asyncio
import logging
from typing import Dict, List

import redis.asyncio as redis
from fastapi import WebSocket
from pydantic import ValidationError

from roomsync.config.settings import settings
from roomsync.core.message import Message
from roomsync.core.room import feed_channel

logger = logging.getLogger(__name__)

redis_client = redis.from_url(settings.redis_url, decode_responses=True)  # type: ignore[no-untyped-call]


class ConnectionManager:
    """Room channels: publishing to Redis and local WebSocket fan-out."""

    def __init__(self) -> None:
        self.active_connections: Dict[str, List[WebSocket]] = {}
        self.pubsub_tasks: Dict[str, asyncio.Task[None]] = {}

    async def connect(self, websocket: WebSocket, room_id: str) -> None:
        """
        Accepts a new WebSocket connection.
        """
        await websocket.accept()
        if room_id not in self.active_connections:
            self.active_connections[room_id] = []

            await self._subscribe_to_redis(room_id)

        self.active_connections[room_id].append(websocket)
        logger.info("WS Connected to %s. Total: %d", room_id, len(self.active_connections[room_id]))

    def disconnect(self, websocket: WebSocket, room_id: str) -> None:
        """
        Removes a WebSocket connection
        """
        connections = self.active_connections.get(room_id)
        if connections is None:
            return

        if websocket in connections:
            connections.remove(websocket)

        # Last viewer gone: stop listening to the room.
        if not connections:
            del self.active_connections[room_id]
            self._unsubscribe_from_redis(room_id)

    async def publish(self, message: Message) -> None:
        """
        Publishes an inserted message on its room channel.
        Every subscribed client (the sender included) receives it.
        """
        await redis_client.publish(feed_channel(message.room_id), message.model_dump_json())

    async def broadcast_to_local(self, message: Message, room_id: str) -> None:
        """
        Sends a message to the WebSockets watching a room.
        """
        if room_id not in self.active_connections:
            return

        payload = message.model_dump(mode="json")
        for connection in self.active_connections[room_id][:]:
            # pylint: disable=broad-exception-caught
            try:
                await connection.send_json(payload)
            except Exception as e:
                logger.warning("Error sending to WS: %s", e)

    async def _subscribe_to_redis(self, room_id: str) -> None:
        """
        Starts a background task to listen to a room channel.
        """
        if room_id in self.pubsub_tasks:
            return

        async def listener() -> None:
            pubsub = redis_client.pubsub()
            channel = feed_channel(room_id)

            await pubsub.subscribe(channel)
            logger.info("Subscribed to Redis channel: %s", channel)

            try:
                async for event in pubsub.listen():
                    if event["type"] != "message":
                        continue
                    try:
                        message = Message.model_validate_json(event["data"])
                    except ValidationError as e:
                        logger.error("Could not parse Redis message: %s", e)
                        continue
                    await self.broadcast_to_local(message, room_id)

            except asyncio.CancelledError:
                await pubsub.unsubscribe(channel)
                logger.info("Unsubscribed from %s", channel)
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.error("Redis listener error for %s: %s", room_id, e)

        self.pubsub_tasks[room_id] = asyncio.create_task(listener())

    def _unsubscribe_from_redis(self, room_id: str) -> None:
        """
        Cancels the Redis listener task
        """
        if room_id in self.pubsub_tasks:
            self.pubsub_tasks[room_id].cancel()
            del self.pubsub_tasks[room_id]


# Singleton instance
manager = ConnectionManager()
