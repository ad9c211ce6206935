"""Exceptions raised by the adaptive test engine."""


class CATError(Exception):
    """Base class for engine errors surfaced to callers."""


class SessionNotFoundError(CATError):
    """Unknown or expired session id. Not retriable without restarting the test."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Test session not found: {session_id}")
        self.session_id = session_id


class ItemNotIssuedError(CATError):
    """The answered item is not the one most recently issued to this session."""

    def __init__(self, session_id: str, item_id: str) -> None:
        super().__init__(f"Item {item_id} was not issued to session {session_id}")
        self.session_id = session_id
        self.item_id = item_id


class ItemAlreadyAnsweredError(CATError):
    def __init__(self, session_id: str, item_id: str) -> None:
        super().__init__(f"Item {item_id} was already answered in session {session_id}")
        self.session_id = session_id
        self.item_id = item_id


class InvalidSessionStateError(CATError):
    """A lifecycle transition that the session state machine does not allow."""

    def __init__(self, session_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Session {session_id} cannot move from '{current}' to '{requested}'"
        )
        self.session_id = session_id
        self.current = current
        self.requested = requested


class NoEligibleItemsError(CATError):
    """The candidate pool is empty after applying filters and exclusions."""

    def __init__(self, filters: object = None) -> None:
        super().__init__(f"No eligible items for filters: {filters}")
        self.filters = filters
