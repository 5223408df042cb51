"""
Data models for buffered sensor samples and enrollment.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def to_iso(moment: datetime) -> str:
    """Format an instant as an ISO-8601 UTC string (second precision)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(ISO_FORMAT)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SensorType(str, Enum):
    """Capture modality of a sensor sample."""
    AMBIENT_LIGHT = "ambientLight"
    DEVICE_USAGE = "deviceUsage"
    KEYBOARD_METRICS = "keyboardMetrics"
    MESSAGES_USAGE = "messagesUsage"
    PHONE_USAGE = "phoneUsage"
    VISITS = "visits"
    PEDOMETER = "pedometerData"


class FullQualifiedName(str, Enum):
    """Semantic field names resolved to backend property type ids at upload time."""
    NAME = "ol.name"
    DATE_LOGGED = "ol.datelogged"
    DATE_TIME_START = "ol.datetimestart"
    DATE_TIME_END = "ol.datetimeend"
    ID = "ol.id"
    TIMEZONE = "ol.timezone"
    VALUES = "ol.values"


REQUIRED_PROPERTY_TYPES = tuple(FullQualifiedName)

# Mapping from FullQualifiedName value to backend property type id
PropertyTypeMap = dict[str, str]


@dataclass
class SensorRecord:
    """
    A single buffered sensor sample.

    `data` holds the JSON-encoded payload exactly as the producer wrote it.
    Start/end may be absent for instantaneous samples.
    """
    id: Optional[str]
    sensor_type: Optional[str]
    write_timestamp: Optional[str]
    data: Optional[str]
    start_timestamp: Optional[str] = None
    end_timestamp: Optional[str] = None
    timezone: Optional[str] = None

    @classmethod
    def create(
        cls,
        sensor_type: SensorType,
        data: str,
        tz: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        written_at: Optional[datetime] = None,
    ) -> "SensorRecord":
        """Build a new record with a fresh id."""
        return cls(
            id=str(uuid.uuid4()),
            sensor_type=sensor_type.value,
            write_timestamp=to_iso(written_at or utcnow()),
            data=data,
            start_timestamp=to_iso(start) if start else None,
            end_timestamp=to_iso(end) if end else None,
            timezone=tz,
        )


def _is_uuid(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


class Enrollment(BaseModel):
    """Binding of this device to a study participant."""
    organization_id: Optional[str] = None
    study_id: str = ""
    participant_id: str = ""

    @property
    def invalid_fields(self) -> list[str]:
        invalid = []
        if self.organization_id is not None and not _is_uuid(self.organization_id):
            invalid.append("organization_id")
        if not _is_uuid(self.study_id):
            invalid.append("study_id")
        if not self.participant_id.strip():
            invalid.append("participant_id")
        return invalid

    @property
    def is_valid(self) -> bool:
        return not self.invalid_fields


@dataclass(frozen=True)
class UploadContext:
    """Device identity snapshot taken once at the start of a drain run."""
    device_id: str
    enrollment: Enrollment

    @property
    def is_valid(self) -> bool:
        return bool(self.device_id) and self.enrollment.is_valid
