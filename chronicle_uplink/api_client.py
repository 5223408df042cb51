"""
HTTP client for the Chronicle collection service.
"""
import time
from typing import Optional

import httpx
import structlog
from pydantic import TypeAdapter, ValidationError

from chronicle_uplink.config import Settings
from chronicle_uplink.errors import EnrollmentError, UploadError
from chronicle_uplink.models import Enrollment, PropertyTypeMap

logger = structlog.get_logger(__name__)

API_BASE = "/chronicle/v3"
PROPERTY_TYPE_IDS_PATH = f"{API_BASE}/edm/property-type-ids"
UPLOAD_PATH = API_BASE + "/study/{study_id}/participant/{participant_id}/{device_id}/upload/ios"
ENROLL_PATH = API_BASE + "/study/{study_id}/participant/{participant_id}/{device_id}/enroll"

_property_type_ids_adapter = TypeAdapter(dict[str, str])


class ChronicleApiClient:
    """
    Thin async wrapper around the remote schema, upload and enrollment endpoints.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._last_success_time: Optional[float] = None

    async def initialize(self):
        """Initialize the HTTP client."""
        self._client = httpx.AsyncClient(
            base_url=self.settings.api_url.rstrip("/"),
            timeout=httpx.Timeout(self.settings.request_timeout_s),
            limits=httpx.Limits(max_connections=5),
            transport=self._transport,
        )

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("API client is not initialized")
        return self._client

    @staticmethod
    def _participant_params(enrollment: Enrollment) -> dict:
        if enrollment.organization_id:
            return {"organizationId": enrollment.organization_id}
        return {}

    async def get_property_type_ids(self) -> PropertyTypeMap:
        """
        Fetch the FQN -> property type id mapping.
        Any failure is logged and yields an empty mapping.
        """
        try:
            response = await self._http().get(PROPERTY_TYPE_IDS_PATH)
            response.raise_for_status()
            ids = _property_type_ids_adapter.validate_python(response.json())
        except httpx.HTTPStatusError as e:
            logger.error("Property type lookup failed", status_code=e.response.status_code)
            return {}
        except httpx.HTTPError as e:
            logger.warning("Property type lookup unreachable", error=str(e))
            return {}
        except (ValueError, ValidationError) as e:
            logger.error("Property type lookup returned invalid body", error=str(e))
            return {}

        logger.debug("Fetched property type ids", count=len(ids))
        return ids

    async def upload_data(self, payload: bytes, enrollment: Enrollment, device_id: str) -> int:
        """
        Upload one serialized batch. Returns the count the server reports written.
        Raises UploadError on any non-success outcome.
        """
        url = UPLOAD_PATH.format(
            study_id=enrollment.study_id,
            participant_id=enrollment.participant_id,
            device_id=device_id,
        )
        headers = {"Content-Type": "application/json"}

        try:
            response = await self._http().post(
                url,
                content=payload,
                headers=headers,
                params=self._participant_params(enrollment),
            )
        except httpx.ConnectError as e:
            raise UploadError(f"Network unreachable: {e}") from e
        except httpx.TimeoutException as e:
            raise UploadError(f"Upload timed out: {e}") from e
        except httpx.HTTPError as e:
            raise UploadError(f"Upload transport error: {e}") from e

        if response.status_code in (200, 201, 202):
            self._last_success_time = time.time()
            try:
                return int(response.json())
            except (ValueError, TypeError):
                return 0

        if response.status_code == 401:
            raise UploadError("Authentication failed", status_code=401)
        if response.status_code == 429:
            raise UploadError("Rate limited by server", status_code=429)
        raise UploadError(f"Upload failed: HTTP {response.status_code}", status_code=response.status_code)

    async def enroll_device(self, enrollment: Enrollment, device_id: str) -> str:
        """Register this device for the participant. Returns the server's device key."""
        url = ENROLL_PATH.format(
            study_id=enrollment.study_id,
            participant_id=enrollment.participant_id,
            device_id=device_id,
        )
        body = {"deviceId": device_id, "sourceDevice": "ios"}

        try:
            response = await self._http().post(
                url, json=body, params=self._participant_params(enrollment)
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise EnrollmentError(
                f"Enrollment rejected: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise EnrollmentError(f"Enrollment request failed: {e}") from e

        try:
            key = response.json()
        except ValueError:
            key = response.text
        return str(key) if key else device_id

    @property
    def is_connected(self) -> bool:
        """Check if we've had a recent successful upload."""
        if self._last_success_time is None:
            return False
        return (time.time() - self._last_success_time) < self.settings.drain_interval_s * 2

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
