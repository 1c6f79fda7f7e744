"""
Exceptions raised by the session core. Each carries the HTTP status the API
layer answers with, so handlers never need to translate them one by one.
"""


class DebridError(Exception):
    """Base exception for all session and streaming errors."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class InvalidIdentifier(DebridError):
    """The torrent identifier is empty or not an info-hash, magnet URI or torrent URL."""

    status_code = 400


class MetadataTimeout(DebridError):
    """Torrent metadata did not arrive before the deadline."""

    status_code = 504


class ReadinessTimeout(DebridError):
    """Torrent is not ready for streaming yet, please retry."""

    status_code = 503


class EngineError(DebridError):
    """The transfer engine reported a failure."""

    status_code = 502


class FileIndexOutOfRange(DebridError):
    """File not found."""

    status_code = 404


class NoPlayableFile(DebridError):
    """No suitable video file found."""

    status_code = 404


class InvalidRange(DebridError):
    """Requested range is not satisfiable."""

    status_code = 416

    def __init__(self, message: str = "", length: int | None = None):
        super().__init__(message)
        self.length = length


class SessionNotFound(DebridError):
    """Torrent not found."""

    status_code = 404
