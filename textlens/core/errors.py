"""Error taxonomy shared by the scan pipeline components."""

from enum import Enum


class ErrorKind(str, Enum):
    """Category of a user-visible scan failure."""
    INVALID_TYPE = "invalid_type"
    TOO_LARGE = "too_large"
    MISSING_CREDENTIAL = "missing_credential"
    NO_IMAGE = "no_image"
    DRIVE_LINK_INVALID = "drive_link_invalid"
    SERVICE_ERROR = "service_error"
    PERSISTENCE_ERROR = "persistence_error"
    CONFIG_INVALID = "config_invalid"
    EXTRACTION_IN_PROGRESS = "extraction_in_progress"
    CONFIRMATION_PENDING = "confirmation_pending"


class ScanError(Exception):
    """Exception raised when a scan step fails.

    Attributes:
        kind: ErrorKind describing the failure.
        message: Human-readable message suitable for display.
    """

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return self.message
