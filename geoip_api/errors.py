"""
Exception types raised by the database lifecycle manager and the HTTP layer.
"""


class GeoIPError(Exception):
    """Base class for all geoip-api errors."""


class ConfigurationError(GeoIPError):
    """Raised when the environment does not describe a usable configuration."""


class FatalStartupError(GeoIPError):
    """Raised when no database could be obtained and none exists on disk."""


class FetchError(GeoIPError):
    """Raised when the remote source could not be queried successfully."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class InvalidPayload(GeoIPError):
    """Raised when a downloaded body is not a usable database."""


class ExtractionError(InvalidPayload):
    """Raised when a downloaded body does not contain a recognisable payload."""


class NoPayloadFound(ExtractionError):
    """Raised when an archive was fully scanned without a matching member."""


class CorruptContainer(ExtractionError):
    """Raised when a container layer could not be parsed."""


class InstallError(GeoIPError):
    """Raised when a candidate could not be written or renamed into place."""


class DatabaseNotLoaded(GeoIPError):
    """Raised when a lookup is attempted before any database is live."""


class AddressNotFound(GeoIPError):
    """Raised when an address is malformed or not present in the database."""
