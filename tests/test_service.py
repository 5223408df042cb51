"""
Tests for configuration, scheduling and the CLI entry point.
"""
import asyncio

import pytest
from pydantic import ValidationError

from chronicle_uplink.config import MAX_BATCH_SIZE, Settings, get_settings
from chronicle_uplink.drain import DrainOutcome, DrainReport
from chronicle_uplink.models import Enrollment
from chronicle_uplink.service import UplinkService, build_parser

from conftest import STUDY_ID, FakeApi, make_record


class TestSettings:

    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.batch_size == 200
        assert settings.timezone == "UTC"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("CHRONICLE_BATCH_SIZE", "50")
        monkeypatch.setenv("CHRONICLE_TIMEZONE", "Africa/Nairobi")
        monkeypatch.setenv("CHRONICLE_LOG_LEVEL", "debug")

        settings = Settings(_env_file=None)

        assert settings.batch_size == 50
        assert settings.timezone == "Africa/Nairobi"
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize("field,value", [
        ("timezone", "Mars/Olympus_Mons"),
        ("batch_size", 0),
        ("batch_size", 1000),
        ("log_level", "LOUD"),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})

    def test_max_batch_size_accepted(self):
        assert Settings(_env_file=None, batch_size=MAX_BATCH_SIZE).batch_size == MAX_BATCH_SIZE

    def test_get_settings_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()


class TestBackoff:

    def test_backoff_doubles_and_resets(self, settings):
        service = UplinkService(settings, api=FakeApi())
        failed = DrainReport(outcome=DrainOutcome.UPLOAD_FAILED)
        ok = DrainReport(outcome=DrainOutcome.COMPLETED)

        delays = [service._next_delay(failed) for _ in range(5)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 8.0]

        assert service._next_delay(ok) == settings.drain_interval_s
        assert service._next_delay(failed) == 1.0

    def test_backoff_never_exceeds_interval(self, settings):
        settings.drain_interval_s = 3.0
        service = UplinkService(settings, api=FakeApi())
        failed = DrainReport(outcome=DrainOutcome.STORE_FAILED)
        assert max(service._next_delay(failed) for _ in range(5)) == 3.0


class TestUplinkService:

    @pytest.mark.asyncio
    async def test_start_drains_and_stops(self, settings):
        api = FakeApi()
        service = UplinkService(settings, api=api)
        await service.store.initialize()
        await service.store.set_setting("deviceId", "device-123")
        await service.device.save_enrollment(
            Enrollment(study_id=STUDY_ID, participant_id="p-001")
        )
        await service.store.append_many([make_record(i) for i in range(10)])
        await service.store.close()

        await service.start()
        try:
            for _ in range(200):
                if await service.store.count() == 0:
                    break
                await asyncio.sleep(0.01)
            assert await service.store.count() == 0
        finally:
            await service.stop()

        assert len(api.uploads) == 1
        assert service.drain_loop.state.value == "idle"

    @pytest.mark.asyncio
    async def test_request_drain_wakes_scheduler(self, settings):
        api = FakeApi()
        service = UplinkService(settings, api=api)
        await service.start()
        try:
            await asyncio.sleep(0.05)
            assert api.property_type_calls == 0  # not enrolled, precondition fails

            await service.device.ensure_device_id()
            await service.enrollment.enroll(STUDY_ID, "p-001")
            await service.store.append(make_record(1))
            service.request_drain()

            for _ in range(200):
                if api.uploads:
                    break
                await asyncio.sleep(0.01)
        finally:
            await service.stop()

        assert api.property_type_calls >= 1
        assert len(api.uploads) == 1

    async def _enrolled_service(self, settings, api, records=5):
        service = UplinkService(settings, api=api)
        await service.store.initialize()
        await service.store.set_setting("deviceId", "device-123")
        await service.device.save_enrollment(
            Enrollment(study_id=STUDY_ID, participant_id="p-001")
        )
        await service.store.append_many([make_record(i) for i in range(records)])
        await service.store.close()
        return service

    @pytest.mark.asyncio
    async def test_stop_during_upload_finishes_batch_and_returns(self, settings):
        api = FakeApi()
        api.upload_gate = asyncio.Event()
        service = await self._enrolled_service(settings, api)

        await service.start()
        await asyncio.wait_for(api.upload_started.wait(), timeout=2.0)
        stop_task = asyncio.create_task(service.stop())
        await asyncio.sleep(0.05)
        assert not stop_task.done()

        api.upload_gate.set()
        await asyncio.wait_for(asyncio.shield(stop_task), timeout=2.0)

        assert service._drain_task.done()
        assert len(api.uploads) == 1
        assert api.upload_calls == 1
        assert service.drain_loop.state.value == "idle"

    @pytest.mark.asyncio
    async def test_cancelling_stop_propagates_and_spares_upload(self, settings):
        api = FakeApi()
        api.upload_gate = asyncio.Event()
        service = await self._enrolled_service(settings, api)

        await service.start()
        await asyncio.wait_for(api.upload_started.wait(), timeout=2.0)
        stop_task = asyncio.create_task(service.stop())
        await asyncio.sleep(0.05)

        stop_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await stop_task
        assert not service._drain_task.done()

        api.upload_gate.set()
        await asyncio.wait_for(service._drain_task, timeout=2.0)
        await service.close()

        assert len(api.uploads) == 1


class TestCli:

    def test_run_flags(self):
        args = build_parser().parse_args(["run", "--once", "--mock", "60"])
        assert args.command == "run"
        assert args.once
        assert args.mock == 60

    def test_enroll_requires_study_and_participant(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["enroll", "--study", "x"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_log_level_case_insensitive(self):
        args = build_parser().parse_args(["--log-level", "debug", "stats"])
        assert args.log_level == "DEBUG"

    def test_unknown_log_level_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--log-level", "loud", "run"])

    @pytest.mark.parametrize("count", ["0", "10", "101", "many"])
    def test_mock_count_out_of_range_rejected(self, count):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["run", "--mock", count])
