from typing import Optional


class BingoError(Exception):
    """Base class for errors raised by the bingo backend."""


class InsufficientPoolError(BingoError):
    def __init__(self, required: int, actual: int):
        self.required = required
        self.actual = actual
        super().__init__(f"Need {required} distinct tracks to build a card, got {actual}")


class IndexOutOfRangeError(BingoError):
    def __init__(self, index: int, limit: int):
        self.index = index
        self.limit = limit
        super().__init__(f"Index {index} outside [0, {limit})")


class SessionNotStartedError(BingoError):
    def __init__(self):
        super().__init__("No card has been dealt for this session")


class SpotifyAPIError(BingoError):
    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class DeviceCommandError(SpotifyAPIError):
    """A playback command (transfer, play, pause, volume) failed."""

    def __init__(self, command: str, status: Optional[int] = None, detail: str = ""):
        self.command = command
        self.detail = detail
        super().__init__(f"{command} failed status={status} {detail}".strip(), status)


class CredentialExpiredError(SpotifyAPIError):
    def __init__(self, message: str = "Spotify credentials expired"):
        super().__init__(message, 401)
