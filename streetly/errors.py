"""
Engine error taxonomy.

Start-time failures (PermissionDenied, ServiceUnavailable, InvalidRequest) are
returned to the caller inside a StartResult. Per-candidate failures
(StoreFailure, OracleFailure) are caught at the candidate level by the
session. DuplicateKeyError is not a true failure: the evaluator folds it into
an AlreadyLinked outcome.
"""


class EngineError(Exception):
    """Base class for every error the engine reports."""
    pass


class PermissionDenied(EngineError):
    """Location permission was refused."""
    pass


class ServiceUnavailable(EngineError):
    """Location service (GPS) or network is unavailable."""
    pass


class StoreFailure(EngineError):
    """Transport or constraint failure from a store call."""
    pass


class DuplicateKeyError(StoreFailure):
    """The store already holds a match for this unordered pair."""

    def __init__(self, user_id_a: str, user_id_b: str):
        super().__init__(f"Match already exists for pair ({user_id_a}, {user_id_b})")
        self.user_id_a = user_id_a
        self.user_id_b = user_id_b


class OracleFailure(EngineError):
    """Transport failure or malformed response from the compatibility oracle."""
    pass


class NotificationError(EngineError):
    """A notification sink rejected a send."""
    pass


class InvalidRequest(EngineError):
    """A session was started with unusable input."""
    pass
