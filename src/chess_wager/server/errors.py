class ArenaError(Exception):
    """Base for every error surfaced to a caller as a reason string."""
    status_code = 400

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

class InvalidRequest(ArenaError):
    """Client input or wrong-state errors. Not retryable."""
    status_code = 400

class RoomNotFound(ArenaError):
    status_code = 404

    def __init__(self, reason: str = "Room not found"):
        super().__init__(reason)

class LedgerUnavailable(ArenaError):
    """The ledger could not be reached. Safe to retry with the same transaction id."""
    status_code = 502
