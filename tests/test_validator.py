"""Tests for the action validator graph."""

from __future__ import annotations

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.audit import AuditLogger, InMemoryAuditStore
from src.models import (
    ActionTaken,
    Appointment,
    ConflictDetectionConfig,
    ConversationState,
    HallucinationType,
    OfferedSlot,
    OfficePolicy,
    Outcome,
    Role,
    Severity,
    Turn,
    ValidationSettings,
)
from src.scoring import ConfidenceScore, ConfidenceScorer
from src.services.scheduling_client import ConflictStoreUnavailable, InMemorySchedulingStore
from src.session_store import SessionStateStore
from src.validator import ActionValidator, GroundTruthChecker, clarification_for

# Wednesday of the same week as the fixed clock (Monday 2026-10-19 10:00)
WEDNESDAY = "2026-10-21"


class StubScorer(ConfidenceScorer):
    model_name = "stub"

    def __init__(self, confidence: float = 1.0, *, delay: float = 0, error: Exception | None = None,
                 unsupported: list[str] | None = None) -> None:
        self.confidence = confidence
        self.delay = delay
        self.error = error
        self.unsupported = unsupported or []
        self.calls = 0

    async def score(self, state, function_name, parameters):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return ConfidenceScore(
            confidence=self.confidence,
            reasoning="stub score",
            unsupported_fields=self.unsupported,
            tokens_used=100,
            cost=0.0003,
            model=self.model_name,
        )


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def audit():
    return AuditLogger(InMemoryAuditStore(), max_attempts=1, backoff_seconds=0)


@pytest.fixture
def schedule():
    return InMemorySchedulingStore()


@pytest.fixture
def make_validator(audit, schedule, local_clock):
    def _make(scorer=None, *, store=None, policy=None, **kwargs):
        return ActionValidator(
            scorer or StubScorer(),
            store or schedule,
            audit,
            policy=policy or OfficePolicy(),
            clock=local_clock,
            **kwargs,
        )

    return _make


def _state(*user_turns: str, **entities) -> ConversationState:
    state = ConversationState.new("s1")
    state.history = [Turn(role=Role.USER, content=t) for t in user_turns]
    for path, value in entities.items():
        state.set_entity(path.replace("__", "."), value)
    return state


def _booking_state(**extra) -> ConversationState:
    entities = {
        "patient__name": "John Smith",
        "patient__phone": "5551234567",
        "appointment__date": WEDNESDAY,
        "appointment__time": "10:00",
    }
    entities.update(extra)
    return _state(
        "Hi, my name is John Smith and I'd like a cleaning next week",
        "Wednesday at 10am, my number is 555-123-4567",
        **entities,
    )


def _patient_state() -> ConversationState:
    return _state(
        "my name is John Smith, 555-123-4567, born 03/15/1985",
        patient__name="John Smith",
        patient__phone="5551234567",
        patient__date_of_birth="1985-03-15",
    )


PATIENT_PARAMS = {"patientName": "John Smith", "phone": "5551234567", "dateOfBirth": "1985-03-15"}
SETTINGS = ValidationSettings(confidence_threshold=0.8, max_retries=2)
CONFLICTS = ConflictDetectionConfig()


# ── Policy gate ──────────────────────────────────────────────────────


class TestPolicyGate:
    @pytest.mark.asyncio
    async def test_disabled_validation_allows(self, make_validator):
        scorer = StubScorer(0.0)
        decision = await make_validator(scorer).validate(
            "CreateAppointment", {"provider": "99"}, _state(),
            ValidationSettings(validation_enabled=False), CONFLICTS,
        )
        assert decision.outcome == Outcome.ALLOW
        assert scorer.calls == 0

    @pytest.mark.asyncio
    async def test_read_only_function_allows(self, make_validator):
        decision = await make_validator(StubScorer(0.0)).validate(
            "GetAvailableSlots", {"date": WEDNESDAY}, _state(), SETTINGS, CONFLICTS,
        )
        assert decision.outcome == Outcome.ALLOW

    @pytest.mark.asyncio
    async def test_operation_flag_off_allows(self, make_validator):
        decision = await make_validator(StubScorer(0.0)).validate(
            "CancelAppointment", {"appointmentId": "123"}, _state(),
            ValidationSettings(validate_cancellations=False), CONFLICTS,
        )
        assert decision.outcome == Outcome.ALLOW

    @pytest.mark.asyncio
    async def test_unknown_function_fails_closed(self, make_validator):
        decision = await make_validator().validate(
            "DropAllAppointments", {}, _state(), SETTINGS, CONFLICTS,
        )
        assert decision.outcome == Outcome.BLOCK
        assert decision.hallucination_type == HallucinationType.UNKNOWN_FUNCTION
        assert decision.severity == Severity.HIGH


# ── Ground truth ─────────────────────────────────────────────────────


class TestGroundTruth:
    @pytest.mark.asyncio
    async def test_empty_proposal_blocks_without_confidence_pass(self, make_validator):
        scorer = StubScorer(1.0)
        decision = await make_validator(scorer).validate(
            "CreateAppointment", {}, _booking_state(), SETTINGS, CONFLICTS,
        )
        assert decision.outcome == Outcome.BLOCK
        assert decision.hallucination_type == HallucinationType.MISSING_PARAMETERS
        assert decision.severity == Severity.CRITICAL
        assert decision.fields_to_clarify == ["patientName", "date", "time", "provider"]
        assert scorer.calls == 0

    @pytest.mark.asyncio
    async def test_invented_provider_is_blocked(self, make_validator):
        scorer = StubScorer(1.0)
        decision = await make_validator(scorer).validate(
            "CreateAppointment",
            {"patientName": "John Smith", "date": WEDNESDAY, "time": "10:00", "provider": "7"},
            _booking_state(),
            SETTINGS,
            CONFLICTS,
        )
        assert decision.outcome == Outcome.BLOCK
        assert decision.hallucination_type == HallucinationType.INVENTED_PROVIDER
        assert decision.severity == Severity.HIGH
        assert decision.fields_to_clarify == ["provider"]
        assert "provider" in decision.clarification.lower()
        assert "7" not in decision.clarification
        assert scorer.calls == 0

    @pytest.mark.asyncio
    async def test_invented_provider_reported_alongside_other_gaps(self, make_validator, utc_clock):
        sessions = SessionStateStore(clock=utc_clock)
        state = await sessions.process_message("s1", "I'd like a cleaning next week")
        scorer = StubScorer(1.0)

        decision = await make_validator(scorer).validate(
            "CreateAppointment",
            {"patientName": "Jane Doe", "date": "2026-10-27", "time": "10:00", "provider": "7"},
            state,
            SETTINGS,
            CONFLICTS,
        )

        assert decision.outcome == Outcome.BLOCK
        assert decision.hallucination_type == HallucinationType.INVENTED_PROVIDER
        assert decision.hallucination_types == [
            HallucinationType.INVENTED_PATIENT,
            HallucinationType.INVENTED_PROVIDER,
        ]
        assert decision.severity == Severity.CRITICAL
        assert set(decision.fields_to_clarify) == {"patientName", "provider"}
        assert decision.clarification.startswith("Which provider")
        assert "your full name" in decision.clarification
        assert scorer.calls == 0

    @pytest.mark.asyncio
    async def test_offered_or_default_provider_is_accepted(self, make_validator):
        state = _booking_state()
        state.offered_slots = [OfferedSlot(date=WEDNESDAY, time="10:00", provider="7")]
        decision = await make_validator().validate(
            "CreateAppointment",
            {"patientName": "John Smith", "date": WEDNESDAY, "time": "10:00", "provider": "7"},
            state, SETTINGS, CONFLICTS,
        )
        assert decision.outcome == Outcome.ALLOW

        decision = await make_validator(policy=OfficePolicy(default_provider="2")).validate(
            "CreateAppointment",
            {"patientName": "John Smith", "date": WEDNESDAY, "time": "10:00", "provider": "2"},
            _booking_state(), SETTINGS, CONFLICTS,
        )
        assert decision.outcome == Outcome.ALLOW

    @pytest.mark.asyncio
    async def test_near_match_name_is_corrected(self, make_validator):
        scorer = StubScorer(1.0)
        decision = await make_validator(scorer).validate(
            "CreateAppointment",
            {
                "patientName": "Jon Smith",
                "phone": "555-123-4567",
                "date": WEDNESDAY,
                "time": "10:00",
                "provider": "3",
            },
            _booking_state(appointment__provider="3"),
            SETTINGS,
            CONFLICTS,
        )
        assert decision.outcome == Outcome.CORRECT
        assert decision.corrected_parameters["patientName"] == "John Smith"
        assert decision.severity == Severity.MEDIUM
        assert scorer.calls == 0

    @pytest.mark.asyncio
    async def test_uncorroborated_name_is_blocked(self, make_validator):
        decision = await make_validator().validate(
            "CreateAppointment",
            {"patientName": "Jon Smith", "date": WEDNESDAY, "time": "10:00", "provider": "3"},
            _booking_state(appointment__provider="3"),
            SETTINGS,
            CONFLICTS,
        )
        assert decision.outcome == Outcome.BLOCK
        assert decision.hallucination_type == HallucinationType.INVENTED_PATIENT
        assert decision.severity == Severity.CRITICAL

    @pytest.mark.asyncio
    async def test_missing_required_filled_from_state(self, make_validator):
        decision = await make_validator().validate(
            "CreateAppointment",
            {"patientName": "John Smith", "date": WEDNESDAY, "provider": "3"},
            _booking_state(appointment__provider="3"),
            SETTINGS,
            CONFLICTS,
        )
        assert decision.outcome == Outcome.CORRECT
        assert decision.corrected_parameters["time"] == "10:00"
        assert decision.hallucination_type == HallucinationType.AUTOFILLED
        assert decision.severity == Severity.LOW

    @pytest.mark.asyncio
    async def test_closed_day_corrected_to_stated_date(self, make_validator):
        decision = await make_validator().validate(
            "CreateAppointment",
            {"patientName": "John Smith", "date": "2026-10-25", "time": "10:00", "provider": "3"},
            _booking_state(appointment__provider="3"),
            SETTINGS,
            CONFLICTS,
        )
        assert decision.outcome == Outcome.CORRECT
        assert decision.corrected_parameters["date"] == WEDNESDAY

    @pytest.mark.asyncio
    async def test_out_of_range_date_without_substitute_blocks(self, make_validator):
        state = _booking_state(appointment__provider="3")
        state.appointment.date = None
        decision = await make_validator().validate(
            "CreateAppointment",
            {"patientName": "John Smith", "date": "2027-06-01", "time": "10:00", "provider": "3"},
            state, SETTINGS, CONFLICTS,
        )
        assert decision.outcome == Outcome.BLOCK
        assert decision.hallucination_type == HallucinationType.OUT_OF_RANGE_DATE

    @pytest.mark.asyncio
    async def test_time_outside_office_hours_is_corrected(self, make_validator):
        decision = await make_validator().validate(
            "CreateAppointment",
            {"patientName": "John Smith", "date": WEDNESDAY, "time": "18:00", "provider": "3"},
            _booking_state(appointment__provider="3"),
            SETTINGS,
            CONFLICTS,
        )
        assert decision.outcome == Outcome.CORRECT
        assert decision.corrected_parameters["time"] == "10:00"

    @pytest.mark.asyncio
    async def test_invented_appointment_id(self, make_validator):
        decision = await make_validator().validate(
            "UpdateAppointment",
            {"appointmentId": "999", "date": WEDNESDAY, "time": "10:00"},
            _booking_state(),
            SETTINGS,
            CONFLICTS,
        )
        assert decision.outcome == Outcome.BLOCK
        assert decision.hallucination_type == HallucinationType.INVENTED_APPOINTMENT
        assert decision.severity == Severity.CRITICAL

    def test_time_bookable_respects_length(self):
        checker = GroundTruthChecker(OfficePolicy(), datetime(2026, 10, 19).date())
        wednesday = datetime(2026, 10, 21).date()
        assert checker.time_bookable(wednesday, datetime(2026, 10, 21, 16, 30).time(), 30)
        assert not checker.time_bookable(wednesday, datetime(2026, 10, 21, 16, 45).time(), 30)
        assert not checker.time_bookable(wednesday, datetime(2026, 10, 21, 7, 30).time(), 30)


# ── Confidence & retries ─────────────────────────────────────────────


class TestConfidence:
    @pytest.mark.asyncio
    async def test_threshold_is_inclusive(self, make_validator):
        decision = await make_validator(StubScorer(0.8)).validate(
            "CreatePatient", PATIENT_PARAMS, _patient_state(), SETTINGS, CONFLICTS,
        )
        assert decision.outcome == Outcome.ALLOW
        assert decision.confidence == 0.8

    @pytest.mark.asyncio
    async def test_exactly_max_retries_then_block(self, make_validator):
        validator = make_validator(StubScorer(0.5))
        outcomes = []
        for _ in range(3):
            decision = await validator.validate(
                "CreatePatient", PATIENT_PARAMS, _patient_state(), SETTINGS, CONFLICTS,
            )
            outcomes.append(decision.outcome)
        assert outcomes == [Outcome.RETRY, Outcome.RETRY, Outcome.BLOCK]
        assert decision.hallucination_type == HallucinationType.LOW_CONFIDENCE
        assert decision.retries_used == 2

    @pytest.mark.asyncio
    async def test_retry_carries_clarification(self, make_validator):
        decision = await make_validator(StubScorer(0.4, unsupported=["phone"])).validate(
            "CreatePatient", PATIENT_PARAMS, _patient_state(), SETTINGS, CONFLICTS,
        )
        assert decision.outcome == Outcome.RETRY
        assert decision.retryable is True
        assert decision.fields_to_clarify == ["phone"]
        assert decision.clarification == clarification_for(HallucinationType.LOW_CONFIDENCE, ["phone"])
        assert "your phone number" in decision.clarification

    @pytest.mark.asyncio
    async def test_allow_resets_retry_counter(self, make_validator):
        scorer = StubScorer(0.5)
        validator = make_validator(scorer)
        await validator.validate("CreatePatient", PATIENT_PARAMS, _patient_state(), SETTINGS, CONFLICTS)
        assert validator.retries_used("s1", "CreatePatient") == 1

        scorer.confidence = 0.95
        await validator.validate("CreatePatient", PATIENT_PARAMS, _patient_state(), SETTINGS, CONFLICTS)
        assert validator.retries_used("s1", "CreatePatient") == 0

    @pytest.mark.asyncio
    async def test_forget_drops_session_counters(self, make_validator):
        validator = make_validator(StubScorer(0.5))
        await validator.validate("CreatePatient", PATIENT_PARAMS, _patient_state(), SETTINGS, CONFLICTS)
        validator.forget("s1")
        assert validator.retries_used("s1", "CreatePatient") == 0

    @pytest.mark.asyncio
    async def test_timeout_scores_zero(self, make_validator):
        validator = make_validator(StubScorer(1.0, delay=1), confidence_timeout=0.01)
        decision = await validator.validate(
            "CreatePatient", PATIENT_PARAMS, _patient_state(),
            ValidationSettings(max_retries=0), CONFLICTS,
        )
        assert decision.outcome == Outcome.BLOCK
        assert decision.hallucination_type == HallucinationType.VALIDATION_TIMEOUT
        assert decision.confidence == 0.0

    @pytest.mark.asyncio
    async def test_scorer_error_scores_zero(self, make_validator):
        validator = make_validator(StubScorer(error=RuntimeError("model overloaded")))
        decision = await validator.validate(
            "CreatePatient", PATIENT_PARAMS, _patient_state(), SETTINGS, CONFLICTS,
        )
        assert decision.outcome == Outcome.RETRY
        assert decision.hallucination_type == HallucinationType.VALIDATOR_ERROR
        assert "overloaded" not in (decision.clarification or "")


# ── Conflict check ───────────────────────────────────────────────────

BOOKING = {"patientName": "John Smith", "date": WEDNESDAY, "time": "10:00", "provider": "3"}


class TestConflictCheck:
    @pytest.mark.asyncio
    async def test_conflicting_slot_blocks(self, make_validator, schedule):
        schedule.add(Appointment(appointment_id="A1", start=datetime(2026, 10, 21, 10, 15), provider="3"))
        decision = await make_validator().validate(
            "CreateAppointment", BOOKING, _booking_state(appointment__provider="3"), SETTINGS, CONFLICTS,
        )
        assert decision.outcome == Outcome.BLOCK
        assert decision.hallucination_type == HallucinationType.CONFLICTING_SLOT
        assert [c.appointment.appointment_id for c in decision.conflicts] == ["A1"]

    @pytest.mark.asyncio
    async def test_double_booking_allowed_is_advisory(self, make_validator, schedule):
        schedule.add(Appointment(appointment_id="A1", start=datetime(2026, 10, 21, 10, 0), provider="3"))
        decision = await make_validator().validate(
            "CreateAppointment", BOOKING, _booking_state(appointment__provider="3"), SETTINGS,
            ConflictDetectionConfig(allow_double_booking=True),
        )
        assert decision.outcome == Outcome.ALLOW
        assert len(decision.conflicts) == 1

    @pytest.mark.asyncio
    async def test_store_failure_is_retryable_block(self, make_validator):
        store = MagicMock()
        store.list_appointments = AsyncMock(side_effect=ConflictStoreUnavailable("down"))
        decision = await make_validator(store=store).validate(
            "CreateAppointment", BOOKING, _booking_state(appointment__provider="3"), SETTINGS, CONFLICTS,
        )
        assert decision.outcome == Outcome.BLOCK
        assert decision.hallucination_type == HallucinationType.CONFLICT_STORE_UNAVAILABLE
        assert decision.retryable is True

    @pytest.mark.asyncio
    async def test_store_timeout_is_retryable_block(self, make_validator):
        async def slow(*args, **kwargs):
            await asyncio.sleep(1)
            return []

        store = MagicMock()
        store.list_appointments = slow
        decision = await make_validator(store=store, scheduling_timeout=0.01).validate(
            "CreateAppointment", BOOKING, _booking_state(appointment__provider="3"), SETTINGS, CONFLICTS,
        )
        assert decision.hallucination_type == HallucinationType.CONFLICT_STORE_UNAVAILABLE
        assert decision.retryable is True

    @pytest.mark.asyncio
    async def test_disabled_conflict_detection_skips_store(self, make_validator):
        store = MagicMock()
        store.list_appointments = AsyncMock(side_effect=AssertionError("should not be called"))
        decision = await make_validator(store=store).validate(
            "CreateAppointment", BOOKING, _booking_state(appointment__provider="3"), SETTINGS,
            ConflictDetectionConfig(enabled=False),
        )
        assert decision.outcome == Outcome.ALLOW


# ── Audit ────────────────────────────────────────────────────────────


class TestAuditTrail:
    @pytest.mark.asyncio
    async def test_every_decision_is_logged(self, make_validator, audit):
        validator = make_validator(StubScorer(0.9))
        await validator.validate(
            "CreatePatient", PATIENT_PARAMS, _patient_state(), SETTINGS, CONFLICTS,
            conversation_id="conv-1",
        )
        await validator.validate(
            "CreateAppointment", {"provider": "7"}, _booking_state(), SETTINGS, CONFLICTS,
        )
        await audit.drain()

        allowed, blocked = await audit.store.entries()
        assert allowed.action_taken == ActionTaken.ALLOWED
        assert allowed.prevented_error is False
        assert allowed.conversation_id == "conv-1"
        assert allowed.validator_model == "stub"
        assert allowed.tokens_used == 100

        assert blocked.action_taken == ActionTaken.BLOCKED
        assert blocked.prevented_error is True
        assert blocked.original_request == {"provider": "7"}
        assert blocked.operation_type == "create_appointment"
        assert blocked.user_impact is not None
