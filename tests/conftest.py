"""
Pytest configuration and fixtures for chronicle-uplink tests.
"""
import asyncio
import json
from datetime import datetime, timezone
from typing import Optional

import pytest
import pytest_asyncio

from chronicle_uplink.config import Settings
from chronicle_uplink.device import DeviceSettings, SettingsKeys
from chronicle_uplink.models import Enrollment, FullQualifiedName, SensorRecord, SensorType
from chronicle_uplink.store import SampleStore

FIXED_NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
FIXED_NOW_ISO = "2026-01-15T12:00:00Z"

STUDY_ID = "5f2a1c3e-8b7d-4e6f-9a1b-2c3d4e5f6a7b"
ORG_ID = "0d9c8b7a-6f5e-4d3c-2b1a-0f9e8d7c6b5a"

PROPERTY_TYPE_IDS = {
    fqn.value: f"ptid-{fqn.name.lower()}" for fqn in FullQualifiedName
}


def make_record(i: int = 0, **overrides) -> SensorRecord:
    """A complete, uploadable record."""
    fields = dict(
        id=f"rec-{i:05d}",
        sensor_type=SensorType.PEDOMETER.value,
        write_timestamp="2026-01-15T11:00:00Z",
        data=json.dumps({"numberOfSteps": i}),
        start_timestamp="2026-01-15T10:00:00Z",
        end_timestamp="2026-01-15T12:00:00Z",
        timezone="America/New_York",
    )
    fields.update(overrides)
    return SensorRecord(**fields)


class FakeApi:
    """In-memory stand-in for ChronicleApiClient."""

    def __init__(self, property_type_ids: Optional[dict] = None):
        self.property_type_ids = dict(PROPERTY_TYPE_IDS if property_type_ids is None else property_type_ids)
        self.property_type_calls = 0
        self.uploads: list[list[dict]] = []
        self.upload_calls = 0
        self.upload_error: Optional[Exception] = None
        # When set, uploads block until the gate opens
        self.upload_gate: Optional[asyncio.Event] = None
        self.upload_started = asyncio.Event()
        self.enrolled: list[tuple] = []
        self.enroll_error: Optional[Exception] = None
        self.is_connected = True

    async def initialize(self):
        pass

    async def close(self):
        pass

    async def get_property_type_ids(self) -> dict:
        self.property_type_calls += 1
        return dict(self.property_type_ids)

    async def upload_data(self, payload: bytes, enrollment: Enrollment, device_id: str) -> int:
        self.upload_calls += 1
        self.upload_started.set()
        if self.upload_gate is not None:
            await self.upload_gate.wait()
        if self.upload_error is not None:
            raise self.upload_error
        entities = json.loads(payload)
        self.uploads.append(entities)
        return len(entities)

    async def enroll_device(self, enrollment: Enrollment, device_id: str) -> str:
        if self.enroll_error is not None:
            raise self.enroll_error
        self.enrolled.append((enrollment, device_id))
        return device_id


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        api_url="http://chronicle.test",
        db_path=str(tmp_path / "chronicle.db"),
        batch_size=200,
        upload_timeout_s=5.0,
        drain_interval_s=3600.0,
        retry_base_s=1.0,
        retry_max_s=8.0,
        stats_interval_s=3600.0,
        timezone="UTC",
    )


@pytest_asyncio.fixture
async def store(settings):
    s = SampleStore(settings.db_path)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def device(store):
    return DeviceSettings(store)


@pytest_asyncio.fixture
async def enrolled_device(store, device):
    """Device with a valid device id and enrollment on record."""
    await store.set_setting(SettingsKeys.DEVICE_ID, "device-123")
    await device.save_enrollment(
        Enrollment(organization_id=ORG_ID, study_id=STUDY_ID, participant_id="p-001")
    )
    return device


@pytest.fixture
def fake_api():
    return FakeApi()
