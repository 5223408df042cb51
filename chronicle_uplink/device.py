"""
Persisted device settings: device id, enrollment and the upload watermark.
"""
import uuid
from typing import Optional

import structlog
from pydantic import ValidationError

from chronicle_uplink.models import Enrollment, UploadContext
from chronicle_uplink.store import LAST_UPLOAD_DATE_KEY, SampleStore

logger = structlog.get_logger(__name__)


class SettingsKeys:
    DEVICE_ID = "deviceId"
    ENROLLMENT = "enrollment"
    LAST_UPLOAD_DATE = LAST_UPLOAD_DATE_KEY


class DeviceSettings:
    """Read/write access to the scalar settings kept beside the sample store."""

    def __init__(self, store: SampleStore):
        self.store = store

    async def get_device_id(self) -> str:
        return await self.store.get_setting(SettingsKeys.DEVICE_ID) or ""

    async def ensure_device_id(self) -> str:
        """Return the device id, deriving and persisting one on first use."""
        device_id = await self.get_device_id()
        if not device_id:
            device_id = str(uuid.uuid4())
            await self.store.set_setting(SettingsKeys.DEVICE_ID, device_id)
            logger.info("Generated device id", device_id=device_id)
        return device_id

    async def get_last_upload_date(self) -> Optional[str]:
        return await self.store.get_setting(SettingsKeys.LAST_UPLOAD_DATE)

    async def get_current_enrollment(self) -> Enrollment:
        """Stored enrollment, or an empty (invalid) one if none is usable."""
        raw = await self.store.get_setting(SettingsKeys.ENROLLMENT)
        if not raw:
            return Enrollment()
        try:
            return Enrollment.model_validate_json(raw)
        except ValidationError as e:
            logger.error("Stored enrollment is unreadable", error=str(e))
            return Enrollment()

    async def save_enrollment(self, enrollment: Enrollment) -> None:
        await self.store.set_setting(SettingsKeys.ENROLLMENT, enrollment.model_dump_json())

    async def load_context(self) -> UploadContext:
        """Snapshot device id and enrollment for one drain run."""
        return UploadContext(
            device_id=await self.get_device_id(),
            enrollment=await self.get_current_enrollment(),
        )
