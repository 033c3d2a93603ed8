"""Exception taxonomy shared by the session, tracker and progression engines."""


class ProgressEngineError(Exception):
    """Base class for every error the engine surfaces to callers."""

    error_type = "progress_engine_error"


class NotFoundError(ProgressEngineError):
    """Unknown session, assessment, error log or learner-language pair."""

    error_type = "not_found"


class InvalidStateError(ProgressEngineError):
    """Operation is not legal for the record's current status."""

    error_type = "invalid_state"


class ActiveSessionExistsError(InvalidStateError):
    error_type = "active_session_exists"


class InvalidInputError(ProgressEngineError):
    """Malformed input, rejected before any state is touched."""

    error_type = "validation"


class ConcurrentUpdateError(ProgressEngineError):
    """A versioned write found a newer document than the one it read."""

    error_type = "concurrent_update"
