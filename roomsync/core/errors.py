"""
Error kinds raised by room and message operations.
Every error carries a human-readable message meant for direct display.
"""


class RoomSyncError(Exception):
    """Base class for all room synchronization failures."""

    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCode(RoomSyncError):
    """The room code was empty once whitespace was trimmed."""

    default_message = "Enter a room code."


class RoomNotFound(RoomSyncError):
    """No room matches the requested code or id."""

    default_message = "That room code doesn't exist. Double-check and try again."


class DuplicateCode(RoomSyncError):
    """A room with the generated code already exists."""

    default_message = "Could not reserve a room code. Please try again."


class BackendUnavailable(RoomSyncError):
    """Any transport or server failure."""

    default_message = "Can't reach the server right now. Please try again."


class EmptyMessage(RoomSyncError):
    """The composed message was blank."""

    default_message = "Type a message before sending."


class NoActiveRoom(RoomSyncError):
    """The operation needs a room but none was created or joined yet."""

    default_message = "Create or join a room first."


class DecodeFailure(RoomSyncError):
    """A feed payload that does not match the message shape."""

    default_message = "Received a message that could not be read."


class OperationInProgress(RoomSyncError):
    """The same operation is already waiting on the backend."""

    default_message = "Still working on your last request."
