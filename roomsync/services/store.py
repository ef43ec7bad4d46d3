"""
Store controller, owns the backend's storage service
for the lifetime of the application.
"""

import logging
from typing import Optional

from roomsync.services.storage import StorageService

logger = logging.getLogger(__name__)


class LocalStoreService:
    """
    Holds the SQLite storage opened at startup and
    released at shutdown.
    """

    def __init__(self) -> None:
        self._storage: Optional[StorageService] = None

    @property
    def storage(self) -> Optional[StorageService]:
        """Returns the active storage service (if set)"""
        return self._storage

    def is_initialized(self) -> bool:
        """Checks if the store is ready"""
        return self._storage is not None

    def initialize(self, db_name: str) -> None:
        """Opens the database, creating the tables if needed."""
        if self.is_initialized():
            if self._storage and self._storage.db_name != db_name:
                raise ValueError(f"Store is already initialized with {self._storage.db_name}")
            return

        logger.info("Opening room database: %s", db_name)
        self._storage = StorageService(db_name)

    def shutdown(self) -> None:
        """Forgets the storage; connections are per call, nothing else to release."""
        self._storage = None
        logger.info("Store shutdown complete.")


store_service = LocalStoreService()
