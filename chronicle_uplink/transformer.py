"""
Serialization of stored sensor records into the upload wire format.
"""
import json
from dataclasses import dataclass
from typing import Sequence

import structlog

from chronicle_uplink.errors import TransformError
from chronicle_uplink.models import FullQualifiedName, PropertyTypeMap, SensorRecord
from chronicle_uplink.resolver import missing_keys

logger = structlog.get_logger(__name__)

DROP_LOG_DATA_CHARS = 64


@dataclass
class TransformedBatch:
    """Serialized upload body plus bookkeeping about what made it in."""
    payload: bytes
    uploaded: int
    dropped: int


_MALFORMED = object()


def _decode(record: SensorRecord) -> object:
    """Decoded payload, or _MALFORMED when the record is incomplete or unreadable."""
    required = (
        record.write_timestamp,
        record.start_timestamp,
        record.end_timestamp,
        record.sensor_type,
        record.id,
        record.data,
    )
    if any(value is None for value in required):
        return _MALFORMED
    try:
        return json.loads(record.data)
    except (TypeError, ValueError):
        return _MALFORMED


def transform(
    records: Sequence[SensorRecord],
    property_type_ids: PropertyTypeMap,
    default_timezone: str = "UTC",
) -> TransformedBatch:
    """
    Map records onto property type ids and encode them as one JSON array.

    Raises TransformError when any required property type id is missing.
    Records lacking a timestamp, type, id or readable payload are dropped.
    """
    absent = missing_keys(property_type_ids)
    if absent:
        raise TransformError(
            f"Missing property type ids: {', '.join(absent)}", missing=absent
        )

    ptid = {fqn: property_type_ids[fqn.value] for fqn in FullQualifiedName}

    entities = []
    dropped = 0
    for record in records:
        values = _decode(record)
        if values is _MALFORMED:
            dropped += 1
            logger.warning(
                "Dropping malformed sensor record",
                record_id=record.id,
                sensor_type=record.sensor_type,
                data_prefix=(record.data or "")[:DROP_LOG_DATA_CHARS],
            )
            continue

        entities.append({
            ptid[FullQualifiedName.NAME]: record.sensor_type,
            ptid[FullQualifiedName.DATE_LOGGED]: record.write_timestamp,
            ptid[FullQualifiedName.DATE_TIME_START]: record.start_timestamp,
            ptid[FullQualifiedName.DATE_TIME_END]: record.end_timestamp,
            ptid[FullQualifiedName.ID]: record.id,
            ptid[FullQualifiedName.TIMEZONE]: record.timezone or default_timezone,
            ptid[FullQualifiedName.VALUES]: values,
        })

    return TransformedBatch(
        payload=json.dumps(entities, separators=(",", ":")).encode("utf-8"),
        uploaded=len(entities),
        dropped=dropped,
    )
