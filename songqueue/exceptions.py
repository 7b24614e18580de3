class SongQueueError(Exception):
    pass


class ConfigError(SongQueueError):
    pass


class ResolveError(SongQueueError):
    """Raised when a URL or query cannot be turned into a playable file."""

    def __init__(self, message: str, source: str | None = None):
        super().__init__(message)
        self.source = source


class RateLimitedError(ResolveError):
    pass


class NotFoundError(ResolveError):
    pass


class BackendError(SongQueueError):
    pass


class NoBackendError(BackendError):
    def __init__(self, searched: list[str] | None = None):
        self.searched = searched or []
        names = ", ".join(self.searched) or "none configured"
        super().__init__(f"No audio player found on PATH (searched: {names})")


class IPCConnectionError(BackendError):
    pass


class IPCCommandError(BackendError):
    pass


class ControlTimeoutError(BackendError):
    def __init__(self, command, timeout: float):
        self.command = command
        self.timeout = timeout
        super().__init__(f"Player did not answer {command!r} within {timeout}s")
