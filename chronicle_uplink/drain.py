"""
Upload drain loop.

One drain run empties the sample store into the remote service:

    IDLE -> RESOLVING_SCHEMA -> DRAINING <-> UPLOADING -> IDLE

Each batch is fetched, transformed, uploaded and, only once the API has
acknowledged it, deleted together with the watermark update. Any failure ends
the run and leaves the current batch in the store for the next run.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import structlog

from chronicle_uplink.api_client import ChronicleApiClient
from chronicle_uplink.config import Settings
from chronicle_uplink.device import DeviceSettings
from chronicle_uplink.errors import StoreError, TransformError, UploadError
from chronicle_uplink.models import to_iso, utcnow
from chronicle_uplink.resolver import PropertyTypeResolver
from chronicle_uplink.store import SampleStore
from chronicle_uplink.transformer import transform

logger = structlog.get_logger(__name__)


class DrainState(str, Enum):
    IDLE = "idle"
    RESOLVING_SCHEMA = "resolving_schema"
    DRAINING = "draining"
    UPLOADING = "uploading"


class DrainOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    SKIPPED_BUSY = "skipped_busy"
    PRECONDITION_FAILED = "precondition_failed"
    TRANSFORM_FAILED = "transform_failed"
    UPLOAD_FAILED = "upload_failed"
    STORE_FAILED = "store_failed"
    ERROR = "error"


@dataclass
class DrainReport:
    """Summary of one drain invocation. Informational only."""
    outcome: DrainOutcome = DrainOutcome.COMPLETED
    batches: int = 0
    uploaded: int = 0
    deleted: int = 0
    dropped: int = 0
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    last_upload_date: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in (DrainOutcome.COMPLETED, DrainOutcome.CANCELLED)


class UploadDrainLoop:
    """
    Drains the sample store to the remote API, one run at a time.

    A drain requested while another is active is a no-op. cancel() is
    observed only between batches; an upload already in flight always
    completes and its outcome is applied.
    """

    def __init__(
        self,
        store: SampleStore,
        device: DeviceSettings,
        api: ChronicleApiClient,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.device = device
        self.api = api
        self.settings = settings
        self._clock = clock
        self._state = DrainState.IDLE
        self._run_lock = asyncio.Lock()
        self._cancel_requested = False
        self._dropped_records = 0

    @property
    def state(self) -> DrainState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._run_lock.locked()

    @property
    def dropped_records(self) -> int:
        """Malformed records discarded across all runs."""
        return self._dropped_records

    def cancel(self):
        """Stop the active run before its next batch."""
        if self.is_active:
            self._cancel_requested = True

    def _transition(self, state: DrainState):
        if state is not self._state:
            logger.debug("Drain state", previous=self._state.value, state=state.value)
            self._state = state

    async def drain(self) -> DrainReport:
        """Run one drain pass. Never raises for run failures."""
        if self._run_lock.locked():
            logger.info("Drain already in progress, ignoring request")
            return DrainReport(outcome=DrainOutcome.SKIPPED_BUSY, finished_at=self._clock())

        async with self._run_lock:
            self._cancel_requested = False
            report = DrainReport(started_at=self._clock())
            try:
                report.outcome = await self._run(report)
            finally:
                self._transition(DrainState.IDLE)
                report.finished_at = self._clock()

        logger.info(
            "Drain finished",
            outcome=report.outcome.value,
            batches=report.batches,
            uploaded=report.uploaded,
            dropped=report.dropped,
        )
        return report

    async def _run(self, report: DrainReport) -> DrainOutcome:
        try:
            context = await self.device.load_context()
        except StoreError as e:
            logger.error("Unable to read device settings", error=str(e))
            return DrainOutcome.STORE_FAILED

        if not context.device_id:
            logger.error("Invalid deviceId, not uploading")
            return DrainOutcome.PRECONDITION_FAILED
        if not context.enrollment.is_valid:
            logger.error(
                "Unable to retrieve enrollment details",
                invalid_fields=context.enrollment.invalid_fields,
            )
            return DrainOutcome.PRECONDITION_FAILED

        try:
            self._transition(DrainState.RESOLVING_SCHEMA)
            resolver = PropertyTypeResolver(self.api.get_property_type_ids)
            property_type_ids = await resolver.resolve()

            while True:
                self._transition(DrainState.DRAINING)
                if self._cancel_requested:
                    logger.info("Drain cancelled", batches=report.batches)
                    return DrainOutcome.CANCELLED

                batch = await self.store.fetch_batch(self.settings.batch_size)
                if not batch:
                    return DrainOutcome.COMPLETED

                transformed = transform(batch, property_type_ids, self.settings.timezone)
                if transformed.dropped:
                    report.dropped += transformed.dropped
                    self._dropped_records += transformed.dropped

                if transformed.uploaded:
                    self._transition(DrainState.UPLOADING)
                    logger.info("Uploading batch", records=transformed.uploaded, fetched=len(batch))
                    await asyncio.wait_for(
                        self.api.upload_data(
                            transformed.payload, context.enrollment, context.device_id
                        ),
                        timeout=self.settings.upload_timeout_s,
                    )
                else:
                    logger.warning("Batch had no uploadable records", fetched=len(batch))

                # Every fetched row goes, including dropped malformed ones
                uploaded_at = to_iso(self._clock())
                deleted = await self.store.acknowledge(batch, uploaded_at)

                report.batches += 1
                report.uploaded += transformed.uploaded
                report.deleted += deleted
                report.last_upload_date = uploaded_at
                logger.info("Uploaded batch", records=transformed.uploaded, deleted=deleted)

        except TransformError as e:
            logger.error("Unable to transform batch for upload", error=str(e), missing=e.missing)
            return DrainOutcome.TRANSFORM_FAILED
        except UploadError as e:
            logger.error("Error uploading to server", error=str(e), status_code=e.status_code)
            return DrainOutcome.UPLOAD_FAILED
        except asyncio.TimeoutError:
            logger.error("Upload timed out", timeout_s=self.settings.upload_timeout_s)
            return DrainOutcome.UPLOAD_FAILED
        except StoreError as e:
            logger.error("Sample store failure during drain", error=str(e))
            return DrainOutcome.STORE_FAILED
        except Exception:
            logger.exception("Unexpected drain error")
            return DrainOutcome.ERROR
