"""Error taxonomy for the pipeline link."""

from __future__ import annotations


class LinkError(Exception):
    """Base class for all link errors."""

    pass


class ConfigError(LinkError):
    """Raised when the settings file or a setting value is invalid."""

    def __init__(self, message: str, key: str | None = None):
        self.key = key
        full_message = f"[{key}] {message}" if key else message
        super().__init__(f"Error parsing configuration: {full_message}")


class EngineUnreachable(LinkError):
    """No liveness response and no launch permitted (or possible)."""

    pass


class LaunchTimeout(LinkError):
    """A launch was attempted but the engine never became alive."""

    pass


class LaunchCancelled(LaunchTimeout):
    """The liveness wait after a launch was cancelled."""

    pass


class MissingCredentials(LinkError):
    """The engine requires authentication but no credentials are configured."""

    pass


class UnknownScript(LinkError):
    """A script id could not be resolved by the engine."""

    def __init__(self, script_id: str):
        self.script_id = script_id
        super().__init__(f"Unknown script: {script_id}")


class LinkNotInitialized(LinkError):
    """An operation was attempted before Link.init succeeded."""

    pass


class EngineError(LinkError):
    """A webservice call failed.

    status_code is None when the request never got an HTTP response
    (connection refused, timeout).
    """

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)
