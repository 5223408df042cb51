"""
Synthetic sensor data for local development without real capture.
"""
import json
import random
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog

from chronicle_uplink.models import SensorRecord, SensorType, utcnow
from chronicle_uplink.store import SampleStore

logger = structlog.get_logger(__name__)

MIN_BATCH = 50
MAX_BATCH = 100
SAMPLE_SPAN = timedelta(hours=1)

APP_CATEGORIES = ["social", "productivity", "games", "entertainment", "utilities", "education"]
PLACEMENTS = ["frontTop", "frontBottom", "frontLeft", "frontRight", "unknown"]


def _ambient_light() -> Dict[str, Any]:
    return {
        "placement": random.choice(PLACEMENTS),
        "chromaticity": {"x": round(random.random(), 4), "y": round(random.random(), 4)},
        "lux": round(random.uniform(0, 2000), 2),
    }


def _device_usage() -> Dict[str, Any]:
    return {
        "totalScreenWakes": random.randint(0, 120),
        "totalUnlocks": random.randint(0, 80),
        "totalUnlockDuration": round(random.uniform(0, 7200), 1),
        "appUsage": [
            {
                "category": random.choice(APP_CATEGORIES),
                "usageTime": round(random.uniform(0, 3600), 1),
                "bundleIdentifier": f"com.example.app{random.randint(1, 50)}",
            }
            for _ in range(random.randint(1, 5))
        ],
    }


def _keyboard_metrics() -> Dict[str, Any]:
    return {
        "totalWords": random.randint(0, 2000),
        "totalAlteredWords": random.randint(0, 100),
        "totalTaps": random.randint(0, 10000),
        "totalEmojis": random.randint(0, 200),
        "totalTypingDuration": round(random.uniform(0, 3600), 1),
        "sentiment": {
            "positive": random.randint(0, 50),
            "negative": random.randint(0, 50),
            "anxiety": random.randint(0, 20),
        },
    }


def _messages_usage() -> Dict[str, Any]:
    return {
        "totalIncomingMessages": random.randint(0, 200),
        "totalOutgoingMessages": random.randint(0, 200),
        "totalUniqueContacts": random.randint(0, 40),
    }


def _phone_usage() -> Dict[str, Any]:
    return {
        "totalIncomingCalls": random.randint(0, 20),
        "totalOutgoingCalls": random.randint(0, 20),
        "totalPhoneCallDuration": round(random.uniform(0, 5400), 1),
        "totalUniqueContacts": random.randint(0, 15),
    }


def _visits() -> Dict[str, Any]:
    return {
        "distanceFromHome": round(random.uniform(0, 50000), 1),
        "locationCategory": random.choice(["home", "work", "school", "gym", "unknown"]),
        "identifier": f"visit-{random.randint(1000, 9999)}",
    }


def _pedometer() -> Dict[str, Any]:
    return {
        "numberOfSteps": random.randint(0, 8000),
        "distance": round(random.uniform(0, 6000), 1),
        "floorsAscended": random.randint(0, 20),
        "floorsDescended": random.randint(0, 20),
    }


MOCK_PAYLOADS: Dict[SensorType, Callable[[], Dict[str, Any]]] = {
    SensorType.AMBIENT_LIGHT: _ambient_light,
    SensorType.DEVICE_USAGE: _device_usage,
    SensorType.KEYBOARD_METRICS: _keyboard_metrics,
    SensorType.MESSAGES_USAGE: _messages_usage,
    SensorType.PHONE_USAGE: _phone_usage,
    SensorType.VISITS: _visits,
    SensorType.PEDOMETER: _pedometer,
}


def mock_payload(sensor_type: SensorType) -> str:
    """JSON payload shaped like a real sample of the given sensor type."""
    return json.dumps(MOCK_PAYLOADS[sensor_type]())


class MockProducer:
    """Writes batches of synthetic SensorRecords straight into the store."""

    def __init__(self, store: SampleStore, timezone: str = "UTC"):
        self.store = store
        self.timezone = timezone

    def build_records(self, count: int) -> List[SensorRecord]:
        records = []
        for _ in range(count):
            now = utcnow()
            sensor_type = random.choice(list(SensorType))
            records.append(SensorRecord.create(
                sensor_type=sensor_type,
                data=mock_payload(sensor_type),
                tz=self.timezone,
                start=now - SAMPLE_SPAN,
                end=now + SAMPLE_SPAN,
                written_at=now,
            ))
        return records

    async def generate_batch(self, count: Optional[int] = None) -> List[SensorRecord]:
        """Generate `count` records (random 50-100 if omitted) and append them."""
        if count is None:
            count = random.randint(MIN_BATCH, MAX_BATCH)
        if not MIN_BATCH <= count <= MAX_BATCH:
            raise ValueError(f"count must be between {MIN_BATCH} and {MAX_BATCH}")

        records = self.build_records(count)
        await self.store.append_many(records)
        logger.info("Saved mock sensor records", count=count)
        return records
