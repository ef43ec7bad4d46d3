"""
API Routes definition.
Handles the room directory, the message store and real-time WebSockets.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field

from roomsync.api.dependencies import get_storage
from roomsync.core.errors import DuplicateCode, RoomNotFound
from roomsync.core.message import Message, NewMessage
from roomsync.core.room import ROOM_CODE_PATTERN, Room, normalize_room_code
from roomsync.services.storage import StorageService
from roomsync.services.websocket import manager

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateRoomRequest(BaseModel):
    """Payload for creating a room. The client generates the code."""

    code: str = Field(pattern=ROOM_CODE_PATTERN)


# === Health ===


@router.get("/health")
async def health_check(storage: StorageService = Depends(get_storage)) -> Dict[str, Any]:
    """Returns the service status"""
    return {"status": "online", "database": storage.db_name}


# === Rooms ===


@router.post("/rooms", response_model=Room, status_code=status.HTTP_201_CREATED)
async def create_room(payload: CreateRoomRequest, storage: StorageService = Depends(get_storage)) -> Room:
    """
    Creates a room with the given code.
    A taken code answers 409; the client decides whether to retry.
    """
    try:
        room = storage.create_room(payload.code)
    except DuplicateCode as e:
        logger.warning("Room code collision: %s", payload.code)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)

    logger.info("Room %s created with code %s", room.id, room.code)
    return room


@router.get("/rooms", response_model=Room)
async def find_room(code: str = Query(...), storage: StorageService = Depends(get_storage)) -> Room:
    """Looks a room up by code (case-insensitive)."""
    room = storage.get_room_by_code(normalize_room_code(code))
    if room is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=RoomNotFound.default_message)
    return room


@router.get("/rooms/{room_id}", response_model=Room)
async def get_room(room_id: str, storage: StorageService = Depends(get_storage)) -> Room:
    """Looks a room up by id."""
    room = storage.get_room(room_id)
    if room is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=RoomNotFound.default_message)
    return room


# === Messages ===


@router.get("/messages", response_model=List[Message])
async def get_messages(
    room_id: str,
    limit: Optional[int] = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    storage: StorageService = Depends(get_storage),
) -> List[Message]:
    """
    Retrieves the messages of a room, oldest first
    """
    return storage.get_room_messages(room_id=room_id, limit=limit, offset=offset)


@router.post("/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(payload: NewMessage, storage: StorageService = Depends(get_storage)) -> Message:
    """
    Stores a message and pushes it to the room's feed.
    """
    try:
        # 1. Persist
        message = storage.add_message(payload)
    except RoomNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)

    # 2. Publish to Redis, every subscriber (sender included) gets the echo
    try:
        await manager.publish(message)
    except Exception as e:  # pylint: disable=broad-exception-caught
        # The write stands; subscribers will see it on their next history load.
        logger.error("Failed to publish message %s: %s", message.id, e)

    return message


# === WebSocket Route ===


@router.websocket("/ws/{room_id}")
async def websocket_endpoint(websocket: WebSocket, room_id: str) -> None:
    """
    Real-time relay of a room's inserts.
    """
    await manager.connect(websocket, room_id)
    try:
        while True:
            # Messages are sent through POST /messages; the socket only listens.
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket, room_id)
