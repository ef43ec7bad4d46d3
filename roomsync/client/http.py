"""
HTTP implementations of the room directory and message store,
talking to the roomsync backend REST API.
"""

import logging
from typing import Any, List, Optional

import httpx
from pydantic import ValidationError

from roomsync.client.backend import IMessageStore, IRoomDirectory
from roomsync.core.errors import BackendUnavailable, DuplicateCode, RoomNotFound
from roomsync.core.message import Message, NewMessage
from roomsync.core.room import Room

logger = logging.getLogger(__name__)


def _detail(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("detail"), str):
        return body["detail"]
    return None


class _ApiResource:
    """Shared request plumbing: maps transport and status failures to RoomSyncError."""

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, url, e)
            raise BackendUnavailable() from e

        if response.status_code == 404:
            raise RoomNotFound(_detail(response))
        if response.status_code == 409:
            raise DuplicateCode(_detail(response))
        if response.is_error:
            logger.warning("%s %s returned %d", method, url, response.status_code)
            raise BackendUnavailable(_detail(response))
        return response

    @staticmethod
    def _parse(model: Any, data: Any) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.error("Unexpected response shape: %s", e)
            raise BackendUnavailable() from e


class HttpRoomDirectory(_ApiResource, IRoomDirectory):
    """Rooms over /api/rooms"""

    async def create(self, code: str) -> Room:
        response = await self._request("POST", "/api/rooms", json={"code": code})
        room: Room = self._parse(Room, response.json())
        return room

    async def find_by_code(self, code: str) -> Room:
        response = await self._request("GET", "/api/rooms", params={"code": code})
        room: Room = self._parse(Room, response.json())
        return room

    async def find_by_id(self, room_id: str) -> Room:
        response = await self._request("GET", f"/api/rooms/{room_id}")
        room: Room = self._parse(Room, response.json())
        return room


class HttpMessageStore(_ApiResource, IMessageStore):
    """Messages over /api/messages"""

    async def insert(self, room_id: str, sender_type: str, text: str) -> Message:
        payload = NewMessage(room_id=room_id, sender_type=sender_type, text=text)
        response = await self._request("POST", "/api/messages", json=payload.model_dump())
        message: Message = self._parse(Message, response.json())
        return message

    async def list_by_room(self, room_id: str) -> List[Message]:
        response = await self._request("GET", "/api/messages", params={"room_id": room_id})
        data = response.json()
        if not isinstance(data, list):
            raise BackendUnavailable()
        return [self._parse(Message, item) for item in data]


def create_http_client(base_url: str, timeout: float) -> httpx.AsyncClient:
    """Builds the shared AsyncClient used by both HTTP collaborators."""
    return httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)
