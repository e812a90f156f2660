"""
Domain exceptions raised by the matching and stage engines.

Every error carries a human-readable `message` (cause + remedy), a stable
machine `code` and optional `details` for the API layer.
"""


class MatchingError(Exception):
    """Base class for all engine errors"""

    code = "matching_error"

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class LimitExceededError(MatchingError):
    """Raised when a party is at its concurrent pre-match ceiling"""

    def __init__(self, party: str, limit: int, message: str | None = None):
        self.party = party
        self.limit = limit
        self.code = f"{party}_limit_reached"
        if message is None:
            if party == "youth":
                message = (
                    f"You have reached the maximum number of active chats ({limit}). "
                    "End an existing chat to connect with someone new."
                )
            else:
                message = (
                    f"You have reached your active chat limit ({limit}). "
                    "End an older chat to accept this one."
                )
        super().__init__(message, {"party": party, "limit": limit})


class InvalidStateError(MatchingError):
    """Raised when a record is not in the status an operation requires"""

    code = "invalid_state"

    def __init__(self, message: str, current: str | None = None, expected: tuple = ()):
        self.current = current
        self.expected = tuple(expected)
        super().__init__(message, {"current": current, "expected": list(self.expected)})


class NotEligibleError(MatchingError):
    """Raised when a time-based precondition is not met yet"""

    code = "not_eligible"

    def __init__(self, message: str, days_remaining: int | None = None):
        self.days_remaining = days_remaining
        super().__init__(message, {"days_remaining": days_remaining})


class NotFoundError(MatchingError):
    code = "not_found"


class NotAuthorizedError(MatchingError):
    code = "not_authorized"


class DependencyFailureError(MatchingError):
    """Raised when the store or another collaborator fails underneath an operation"""

    code = "dependency_failure"

    def __init__(self, message: str, original_error: Exception | None = None):
        self.original_error = original_error
        super().__init__(message)


class InvalidRequestError(MatchingError):
    """Raised when the caller's input is rejected before any state changes"""

    code = "invalid_request"
