"""
FastAPI dependencies for state validation.
"""

from fastapi import HTTPException, status

from roomsync.services.storage import StorageService
from roomsync.services.store import store_service


def get_storage() -> StorageService:
    """
    Dependency that checks the store was opened at startup.
    Returns the active storage service.
    """
    if not store_service.is_initialized() or not store_service.storage:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage not ready.")
    return store_service.storage
