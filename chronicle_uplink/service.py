"""
Chronicle Uplink Service

Keeps locally buffered sensor samples flowing to the Chronicle collection
service:

    [Capture pipeline] --append-->  +---------------+
    [Mock producer]    --append-->  | SampleStore   |  (SQLite, offline buffer)
                                    +---------------+
                                           |
                              periodic / on-demand drain
                                           v
                                    [UploadDrainLoop]  --HTTPS-->  [Chronicle API]

Usage:
    chronicle-uplink run [--once] [--mock N]
    chronicle-uplink enroll --study STUDY --participant PARTICIPANT [--organization ORG]
    chronicle-uplink stats

Environment Variables:
    CHRONICLE_API_URL         - API base URL
    CHRONICLE_DB_PATH         - SQLite sample store path
    CHRONICLE_BATCH_SIZE      - Records per upload batch (default: 200)
    CHRONICLE_DRAIN_INTERVAL_S - Seconds between scheduled drains (default: 900)
    CHRONICLE_LOG_LEVEL       - Logging level (default: INFO)
"""
import argparse
import asyncio
import signal
import sys
from typing import Optional

import structlog

from chronicle_uplink import __version__
from chronicle_uplink.api_client import ChronicleApiClient
from chronicle_uplink.config import LOG_LEVELS, Settings, get_settings
from chronicle_uplink.device import DeviceSettings
from chronicle_uplink.drain import DrainReport, UploadDrainLoop
from chronicle_uplink.enrollment import EnrollmentService
from chronicle_uplink.errors import ChronicleError
from chronicle_uplink.logging_config import configure_logging
from chronicle_uplink.mock_producer import MAX_BATCH, MIN_BATCH, MockProducer
from chronicle_uplink.store import SampleStore

logger = structlog.get_logger(__name__)


class UplinkService:
    """
    Wires the store, API client and drain loop together and schedules drains.
    """

    def __init__(self, settings: Settings, api: Optional[ChronicleApiClient] = None):
        self.settings = settings
        self.store = SampleStore(settings.db_path)
        self.device = DeviceSettings(self.store)
        self.api = api or ChronicleApiClient(settings)
        self.drain_loop = UploadDrainLoop(self.store, self.device, self.api, settings)
        self.enrollment = EnrollmentService(self.device, self.api)
        self.producer = MockProducer(self.store, settings.timezone)
        self._running = False
        self._wake = asyncio.Event()
        self._retry_delay = settings.retry_base_s
        self._drain_task: Optional[asyncio.Task] = None
        self._stats_task: Optional[asyncio.Task] = None
        self._mock_task: Optional[asyncio.Task] = None

    async def initialize(self):
        await self.store.initialize()
        await self.api.initialize()

    async def start(self):
        """Start background drain and stats loops."""
        logger.info(
            "Chronicle uplink starting",
            version=__version__,
            api_url=self.settings.api_url,
            db_path=self.settings.db_path,
            batch_size=self.settings.batch_size,
            drain_interval_s=self.settings.drain_interval_s,
        )
        self._running = True
        await self.initialize()

        self._drain_task = asyncio.create_task(self._drain_schedule())
        self._stats_task = asyncio.create_task(self._stats_loop())
        if self.settings.mock_data:
            logger.warning("Mock data producer enabled")
            self._mock_task = asyncio.create_task(self._mock_loop())

    def request_drain(self):
        """Trigger a drain now. Ignored by the drain loop if one is running."""
        self._wake.set()

    async def drain_once(self) -> DrainReport:
        return await self.drain_loop.drain()

    def _next_delay(self, report: DrainReport) -> float:
        """Exponential backoff after failed runs, regular interval otherwise."""
        if report.succeeded:
            self._retry_delay = self.settings.retry_base_s
            return self.settings.drain_interval_s
        delay = self._retry_delay
        self._retry_delay = min(self._retry_delay * 2, self.settings.retry_max_s)
        return min(delay, self.settings.drain_interval_s)

    async def _drain_schedule(self):
        """Background task: drain now, then wait for the next tick or a request."""
        logger.info("Drain scheduler started")

        while self._running:
            # Cleared before the run so a stop or request made during it still wakes us
            self._wake.clear()
            try:
                report = await self.drain_loop.drain()
                delay = self._next_delay(report)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Drain scheduler error", error=str(e))
                delay = self.settings.retry_base_s

            if not self._running:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                break

    async def _mock_loop(self):
        """Periodically inject synthetic data while mock mode is on."""
        while self._running:
            try:
                await self.producer.generate_batch()
                await asyncio.sleep(self.settings.drain_interval_s / 2)
            except asyncio.CancelledError:
                break
            except ChronicleError as e:
                logger.error("Mock producer error", error=str(e))
                await asyncio.sleep(self.settings.retry_base_s)

    async def _stats_loop(self):
        """Periodically log queue depth and upload status."""
        while self._running:
            try:
                await asyncio.sleep(self.settings.stats_interval_s)

                stats = await self.store.get_stats()
                logger.info(
                    "Stats",
                    queued=stats["total"],
                    db_mb=stats["db_mb"],
                    by_sensor_type=stats["by_sensor_type"],
                    last_upload_date=await self.device.get_last_upload_date(),
                    dropped_records=self.drain_loop.dropped_records,
                    cloud_connected=self.api.is_connected,
                    drain_state=self.drain_loop.state.value,
                )
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Stats error", error=str(e))

    async def stop(self):
        """Stop all service components gracefully."""
        if not self._running:
            return
        logger.info("Shutting down uplink service...")
        self._running = False

        # Let an in-flight upload finish; the loop stops before its next batch
        self.drain_loop.cancel()
        self._wake.set()

        for task in (self._mock_task, self._stats_task):
            if task:
                task.cancel()
        # Shielded: cancelling stop() itself must neither cut an upload short nor be absorbed
        for task in (self._mock_task, self._stats_task, self._drain_task):
            if task:
                try:
                    await asyncio.shield(task)
                except asyncio.CancelledError:
                    if not task.cancelled():
                        raise

        await self.close()
        logger.info("Uplink service stopped")

    async def close(self):
        await self.api.close()
        await self.store.close()


# ============ Main Entry Point ============

def mock_count(value: str) -> int:
    """argparse type for --mock: an integer within the producer's batch range."""
    count = int(value)
    if not MIN_BATCH <= count <= MAX_BATCH:
        raise argparse.ArgumentTypeError(f"must be between {MIN_BATCH} and {MAX_BATCH}")
    return count


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chronicle-uplink",
        description="Buffer sensor samples locally and upload them to Chronicle",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Override CHRONICLE_LOG_LEVEL",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the uplink service")
    run.add_argument("--once", action="store_true", help="Drain once and exit")
    run.add_argument(
        "--mock",
        type=mock_count,
        metavar="N",
        help=f"Generate N mock records ({MIN_BATCH}-{MAX_BATCH}) first",
    )

    enroll = sub.add_parser("enroll", help="Enroll this device in a study")
    enroll.add_argument("--study", required=True)
    enroll.add_argument("--participant", required=True)
    enroll.add_argument("--organization")

    sub.add_parser("stats", help="Print sample store statistics")
    return parser


async def _run(service: UplinkService, once: bool, mock: Optional[int]) -> int:
    if once:
        await service.initialize()
        try:
            if mock:
                await service.producer.generate_batch(mock)
            report = await service.drain_once()
        finally:
            await service.close()
        return 0 if report.succeeded else 1

    loop = asyncio.get_running_loop()
    stopped = asyncio.Event()

    def signal_handler():
        logger.info("Received shutdown signal")
        stopped.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    await service.start()
    try:
        if mock:
            await service.producer.generate_batch(mock)
            service.request_drain()
        await stopped.wait()
    finally:
        await service.stop()
    return 0


async def _enroll(service: UplinkService, args: argparse.Namespace) -> int:
    await service.initialize()
    try:
        await service.enrollment.enroll(
            study_id=args.study,
            participant_id=args.participant,
            organization_id=args.organization,
        )
    except ChronicleError as e:
        logger.error("Enrollment failed", error=str(e))
        return 1
    finally:
        await service.close()
    return 0


async def _stats(service: UplinkService) -> int:
    await service.store.initialize()
    try:
        stats = await service.store.get_stats()
        stats["last_upload_date"] = await service.device.get_last_upload_date()
        stats["device_id"] = await service.device.get_device_id()
        logger.info("Sample store stats", **stats)
    finally:
        await service.store.close()
    return 0


async def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(args.log_level or settings.log_level, json=settings.log_json)

    service = UplinkService(settings)
    if args.command == "enroll":
        return await _enroll(service, args)
    if args.command == "stats":
        return await _stats(service)
    return await _run(service, args.once, args.mock)


def run():
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
