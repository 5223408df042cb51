"""
Device enrollment (onboarding).

Binds this device to a study participant once; the upload path only ever
reads the stored result.
"""
from typing import Optional

import structlog

from chronicle_uplink.api_client import ChronicleApiClient
from chronicle_uplink.device import DeviceSettings
from chronicle_uplink.errors import EnrollmentError
from chronicle_uplink.models import Enrollment

logger = structlog.get_logger(__name__)


class EnrollmentService:

    def __init__(self, device: DeviceSettings, api: ChronicleApiClient):
        self.device = device
        self.api = api

    async def enroll(
        self,
        study_id: str,
        participant_id: str,
        organization_id: Optional[str] = None,
    ) -> Enrollment:
        """
        Validate, register with the server, then persist the enrollment.
        The enrollment is only stored once the server has accepted it.
        """
        enrollment = Enrollment(
            organization_id=(organization_id or "").strip() or None,
            study_id=study_id.strip(),
            participant_id=participant_id.strip(),
        )
        invalid = enrollment.invalid_fields
        if invalid:
            raise EnrollmentError(
                f"Invalid enrollment details: {', '.join(invalid)}", invalid_fields=invalid
            )

        device_id = await self.device.ensure_device_id()
        await self.api.enroll_device(enrollment, device_id)
        await self.device.save_enrollment(enrollment)

        logger.info(
            "Device enrolled",
            study_id=enrollment.study_id,
            participant_id=enrollment.participant_id,
            device_id=device_id,
        )
        return enrollment
