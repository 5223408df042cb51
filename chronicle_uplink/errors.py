"""
Exception types raised inside the uplink pipeline.

None of these escape a drain run; the drain loop catches them,
logs, and returns to idle.
"""
from typing import Optional


class ChronicleError(Exception):
    """Base class for uplink errors."""


class StoreError(ChronicleError):
    """Local sample store could not be read or written."""


class DuplicateRecordError(StoreError):
    """A record with the same id is already stored."""

    def __init__(self, record_id: str):
        super().__init__(f"Duplicate sensor record id: {record_id}")
        self.record_id = record_id


class TransformError(ChronicleError):
    """Batch could not be serialized for upload."""

    def __init__(self, message: str, missing: Optional[list[str]] = None):
        super().__init__(message)
        self.missing = missing or []


class UploadError(ChronicleError):
    """Remote API rejected or never received an upload."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EnrollmentError(ChronicleError):
    """Enrollment details are invalid or the device could not be registered."""

    def __init__(self, message: str, invalid_fields: Optional[list[str]] = None):
        super().__init__(message)
        self.invalid_fields = invalid_fields or []
