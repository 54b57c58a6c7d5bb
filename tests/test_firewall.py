"""Tests for the firewall service facade."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from src.audit import AuditLogger, InMemoryAuditStore
from src.firewall import FirewallService, create_firewall_service
from src.models import ConflictDetectionConfig, OfficePolicy, Outcome, ValidationSettings
from src.scoring import HeuristicConfidenceScorer
from src.services.scheduling_client import InMemorySchedulingStore
from src.services.settings_store import SettingsProvider, StaticSettingsSource
from src.session_store import SessionStateStore
from src.validator import ActionValidator


@pytest.fixture
def firewall():
    audit_logger = AuditLogger(InMemoryAuditStore(), max_attempts=1, backoff_seconds=0)
    validator = ActionValidator(
        HeuristicConfidenceScorer(), InMemorySchedulingStore(), audit_logger, policy=OfficePolicy(),
    )
    return FirewallService(
        SessionStateStore(),
        validator,
        SettingsProvider(StaticSettingsSource(ValidationSettings(max_retries=1))),
        audit_logger,
    )


class TestValidate:
    @pytest.mark.asyncio
    async def test_uses_current_settings(self, firewall):
        await firewall.update_settings(ValidationSettings(validation_enabled=False))
        decision = await firewall.validate("s1", "CreateAppointment", {"provider": "7"})
        assert decision.outcome == Outcome.ALLOW

    @pytest.mark.asyncio
    async def test_holds_session_lock(self, firewall):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def slow_validate(*args, **kwargs):
            entered.set()
            await release.wait()
            return await ActionValidator.validate(firewall.validator, *args, **kwargs)

        with patch.object(firewall.validator, "validate", new=slow_validate):
            validation = asyncio.create_task(firewall.validate("s1", "CreatePatient", {}))
            await entered.wait()
            message = asyncio.create_task(firewall.process_message("s1", "my name is John Smith"))
            await asyncio.sleep(0.01)
            assert not message.done()
            release.set()
            await validation

        state = await message
        assert state.patient.name == "John Smith"

    @pytest.mark.asyncio
    async def test_cleared_session_forgets_retries(self, firewall):
        for turn in ("my name is John Smith", "my number is 555-123-4567", "I was born on 03/15/1985"):
            await firewall.process_message("s1", turn)
        firewall.validator._scorer = AsyncMock()
        firewall.validator._scorer.model_name = "mock"
        firewall.validator._scorer.score.side_effect = RuntimeError("down")

        decision = await firewall.validate(
            "s1",
            "CreatePatient",
            {"patientName": "John Smith", "phone": "5551234567", "dateOfBirth": "1985-03-15"},
        )
        assert decision.outcome == Outcome.RETRY
        assert firewall.validator.retries_used("s1", "CreatePatient") == 1

        await firewall.clear_session("s1")
        assert firewall.validator.retries_used("s1", "CreatePatient") == 0


class TestSettingsAndStats:
    @pytest.mark.asyncio
    async def test_update_settings_partial(self, firewall):
        validation, conflict = await firewall.update_settings(
            conflict_detection=ConflictDetectionConfig(allow_double_booking=True),
        )
        assert validation.max_retries == 1
        assert conflict.allow_double_booking is True

    @pytest.mark.asyncio
    async def test_stats_and_logs(self, firewall):
        await firewall.validate("s1", "CreateAppointment", {"provider": "7"})
        await firewall.audit_logger.drain()
        stats = await firewall.validation_stats()
        assert stats.total_validations == 1
        assert (await firewall.recent_logs(5))[0].function_name == "CreateAppointment"
        await firewall.shutdown()


class TestFactory:
    def test_builds_from_config(self):
        with patch("src.firewall.config.VALIDATOR_MODE", "heuristic"):
            service = create_firewall_service(with_reaper=False)
        assert isinstance(service.sessions, SessionStateStore)
        assert service.validator is not None
