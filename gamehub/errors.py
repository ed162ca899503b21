from __future__ import annotations


class GamingError(Exception):
    """Base class for every failure the gaming subsystem reports.

    `code` is stable and is what crosses the public boundary; the message is for humans.
    """

    code = "gaming_error"


class ValidationError(GamingError, ValueError):
    code = "invalid_action"


class ResourceLimitError(GamingError):
    code = "session_limit_reached"


class NotFoundError(GamingError, LookupError):
    code = "not_found"


class GameNotFoundError(NotFoundError):
    code = "game_not_found"


class SessionNotFoundError(NotFoundError):
    code = "session_not_found"


class PageNotFoundError(NotFoundError):
    code = "page_not_found"


class PageConflictError(NotFoundError):
    """A page lookup/registration used a session id the pool already tracks."""

    code = "page_conflict"


class UserAlreadyPlayingError(GamingError):
    code = "user_already_playing"


class EngineUnavailableError(GamingError):
    code = "engine_unavailable"


class TransientIOError(GamingError):
    """Browser navigation/script failure. The action fails, the session survives."""

    code = "transient_io"


class PersistenceError(GamingError):
    code = "persistence_error"


class FatalEngineError(GamingError):
    """The shared browser process is gone; every session using it must end."""

    code = "engine_failure"
