"""Domain types shared by the session store, the validator and the audit log.

Entity values are kept as plain strings in canonical form:
dates ``YYYY-MM-DD``, times ``HH:MM`` (24h), phones as 10 digits and
identifiers (patient, provider, operatory, appointment) as strings, so
that values coming from dialogue and values coming from tool calls
compare equal.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


# ── Enumerations ─────────────────────────────────────────────────────


class Intent(str, Enum):
    UNKNOWN = "unknown"
    BOOK = "book"
    RESCHEDULE = "reschedule"
    CANCEL = "cancel"
    INQUIRY = "inquiry"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Channel(str, Enum):
    VOICE = "voice"
    SMS = "sms"
    WHATSAPP = "whatsapp"
    WEB = "web"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class HallucinationType(str, Enum):
    NONE = "none"
    MISSING_PARAMETERS = "missing_parameters"
    INVENTED_PATIENT = "invented_patient"
    INVENTED_PROVIDER = "invented_provider"
    INVENTED_OPERATORY = "invented_operatory"
    INVENTED_APPOINTMENT = "invented_appointment"
    UNKNOWN_FUNCTION = "unknown_function"
    OUT_OF_RANGE_DATE = "out_of_range_date"
    OUT_OF_RANGE_TIME = "out_of_range_time"
    INVALID_VALUE = "invalid_value"
    MISMATCHED_VALUE = "mismatched_value"
    AUTOFILLED = "autofilled"
    CONFLICTING_SLOT = "conflicting_slot"
    CONFLICT_STORE_UNAVAILABLE = "conflict_store_unavailable"
    LOW_CONFIDENCE = "low_confidence"
    VALIDATION_TIMEOUT = "validation_timeout"
    VALIDATOR_ERROR = "validator_error"


SEVERITY_BY_TYPE: dict[HallucinationType, Severity] = {
    HallucinationType.NONE: Severity.LOW,
    HallucinationType.MISSING_PARAMETERS: Severity.CRITICAL,
    HallucinationType.INVENTED_PATIENT: Severity.CRITICAL,
    HallucinationType.INVENTED_APPOINTMENT: Severity.CRITICAL,
    HallucinationType.INVENTED_PROVIDER: Severity.HIGH,
    HallucinationType.INVENTED_OPERATORY: Severity.HIGH,
    HallucinationType.UNKNOWN_FUNCTION: Severity.HIGH,
    HallucinationType.OUT_OF_RANGE_DATE: Severity.HIGH,
    HallucinationType.OUT_OF_RANGE_TIME: Severity.HIGH,
    HallucinationType.INVALID_VALUE: Severity.HIGH,
    HallucinationType.CONFLICTING_SLOT: Severity.HIGH,
    HallucinationType.CONFLICT_STORE_UNAVAILABLE: Severity.HIGH,
    HallucinationType.MISMATCHED_VALUE: Severity.MEDIUM,
    HallucinationType.AUTOFILLED: Severity.LOW,
    HallucinationType.LOW_CONFIDENCE: Severity.MEDIUM,
    HallucinationType.VALIDATION_TIMEOUT: Severity.MEDIUM,
    HallucinationType.VALIDATOR_ERROR: Severity.MEDIUM,
}


class Outcome(str, Enum):
    ALLOW = "allow"
    BLOCK = "block"
    CORRECT = "correct"
    RETRY = "retry"


class ActionTaken(str, Enum):
    ALLOWED = "allowed"
    CORRECTED = "corrected"
    BLOCKED = "blocked"
    RETRIED = "retried"


ACTION_FOR_OUTCOME: dict[Outcome, ActionTaken] = {
    Outcome.ALLOW: ActionTaken.ALLOWED,
    Outcome.CORRECT: ActionTaken.CORRECTED,
    Outcome.BLOCK: ActionTaken.BLOCKED,
    Outcome.RETRY: ActionTaken.RETRIED,
}


# ── Conversation state ───────────────────────────────────────────────


class PatientInfo(BaseModel):
    name: str | None = None
    phone: str | None = None
    date_of_birth: str | None = None
    patient_id: str | None = None
    email: str | None = None
    is_new_patient: bool | None = None


class AppointmentInfo(BaseModel):
    date: str | None = None
    time: str | None = None
    provider: str | None = None
    operatory: str | None = None
    length_minutes: int | None = None
    appointment_type: str | None = None
    time_preference: str | None = None
    appointment_id: str | None = None


class Turn(BaseModel):
    role: Role
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


class FunctionCallRecord(BaseModel):
    function_name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: str | None = None
    success: bool = True
    timestamp: datetime = Field(default_factory=utcnow)


class OfferedSlot(BaseModel):
    """A slot the scheduling system actually returned to the agent."""

    date: str | None = None
    time: str | None = None
    provider: str | None = None
    operatory: str | None = None


def channel_for_session(session_id: str) -> Channel:
    """Infer the inbound channel from the session-id prefix."""
    if session_id.startswith("whatsapp_"):
        return Channel.WHATSAPP
    if session_id.startswith("sms_"):
        return Channel.SMS
    if session_id.startswith("web_"):
        return Channel.WEB
    return Channel.VOICE


def is_present(value: Any) -> bool:
    """True when *value* counts as filled (not None, not blank)."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


class ConversationState(BaseModel):
    """Structured snapshot of one conversation.

    Entity fields are addressed by dotted paths such as ``patient.name``
    or ``appointment.date``; ``missing_required`` is derived from them by
    the session store after every update and never set on its own.
    """

    session_id: str
    channel: Channel = Channel.VOICE
    patient: PatientInfo = Field(default_factory=PatientInfo)
    appointment: AppointmentInfo = Field(default_factory=AppointmentInfo)
    intent: Intent = Intent.UNKNOWN
    missing_required: list[str] = Field(default_factory=list)
    history: list[Turn] = Field(default_factory=list)
    function_calls: list[FunctionCallRecord] = Field(default_factory=list)
    offered_slots: list[OfferedSlot] = Field(default_factory=list)
    confirmed_fields: list[str] = Field(default_factory=list)
    # Filled by a weak rule (e.g. "I'm ..."); any firm value replaces them.
    tentative_fields: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)

    @classmethod
    def new(cls, session_id: str) -> ConversationState:
        return cls(session_id=session_id, channel=channel_for_session(session_id))

    # ── Entity access by path ────────────────────────────────────────

    def get_entity(self, path: str) -> Any:
        group, attr = path.split(".", 1)
        return getattr(getattr(self, group), attr)

    def set_entity(self, path: str, value: Any) -> None:
        group, attr = path.split(".", 1)
        setattr(getattr(self, group), attr, value)

    def has_entity(self, path: str) -> bool:
        return is_present(self.get_entity(path))

    def is_confirmed(self, path: str) -> bool:
        return path in self.confirmed_fields

    def is_idle_since(self, cutoff: datetime) -> bool:
        return self.last_updated < cutoff

    # ── Rendering ────────────────────────────────────────────────────

    def user_turns(self) -> list[Turn]:
        return [t for t in self.history if t.role == Role.USER]

    def transcript(self, max_turns: int | None = None) -> str:
        turns = self.history[-max_turns:] if max_turns else self.history
        return "\n".join(f"{t.role.value.upper()}: {t.content}" for t in turns)

    def as_context(self) -> str:
        """Render the known entities as a compact block for LLM prompts."""
        parts: list[str] = []
        p = self.patient
        patient_lines = [
            ("Patient ID", p.patient_id),
            ("Name", p.name),
            ("Phone", p.phone),
            ("Date of birth", p.date_of_birth),
            ("Email", p.email),
        ]
        known = [f"- {label}: {value}" for label, value in patient_lines if value]
        if p.is_new_patient:
            known.append("- New patient: yes")
        if known:
            parts.append("Patient information:")
            parts.extend(known)

        a = self.appointment
        apt_lines = [
            ("Appointment ID", a.appointment_id),
            ("Type", a.appointment_type),
            ("Date", a.date),
            ("Time", a.time),
            ("Time preference", a.time_preference),
            ("Provider", a.provider),
            ("Operatory", a.operatory),
            ("Length (minutes)", a.length_minutes),
        ]
        known = [f"- {label}: {value}" for label, value in apt_lines if value]
        if known:
            parts.append("Appointment information:")
            parts.extend(known)

        if self.offered_slots:
            parts.append(f"Offered slots: {len(self.offered_slots)} returned by the schedule")
        if self.confirmed_fields:
            parts.append("Confirmed by the scheduling system: " + ", ".join(self.confirmed_fields))
        return "\n".join(parts) if parts else "No booking information collected yet."

    def summary(self) -> str:
        p, a = self.patient, self.appointment
        missing = ", ".join(self.missing_required) or "nothing"
        return (
            f"Session: {self.session_id} ({self.channel.value})\n"
            f"Intent: {self.intent.value}\n"
            f"Patient: {p.name or '?'} | phone {p.phone or '?'} | "
            f"DOB {p.date_of_birth or '?'} | id {p.patient_id or 'not found'}\n"
            f"Appointment: {a.appointment_type or '?'} on {a.date or '?'} at "
            f"{a.time or a.time_preference or '?'} | provider {a.provider or '?'} | "
            f"operatory {a.operatory or '?'}\n"
            f"Missing: {missing}\n"
            f"Turns: {len(self.history)} | Function calls: {len(self.function_calls)}"
        )


# ── Settings (externally owned) ─────────────────────────────────────


class ValidationSettings(BaseModel):
    validation_enabled: bool = True
    validate_bookings: bool = True
    validate_reschedules: bool = True
    validate_cancellations: bool = False
    validate_patient_creation: bool = True
    confidence_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    max_retries: int = Field(default=2, ge=0)

    @classmethod
    def fail_safe(cls) -> ValidationSettings:
        """Settings used when the settings store cannot be read."""
        return cls(
            validation_enabled=True,
            validate_bookings=True,
            validate_reschedules=True,
            validate_cancellations=True,
            validate_patient_creation=True,
        )

    def should_validate(self, operation_type: str) -> bool:
        if not self.validation_enabled:
            return False
        flags = {
            "create_appointment": self.validate_bookings,
            "update_appointment": self.validate_reschedules,
            "cancel_appointment": self.validate_cancellations,
            "create_patient": self.validate_patient_creation,
        }
        return flags.get(operation_type, True)


class ConflictDetectionConfig(BaseModel):
    enabled: bool = True
    check_patient_conflicts: bool = True
    check_operatory_conflicts: bool = True
    check_provider_conflicts: bool = True
    allow_double_booking: bool = False
    conflict_window_minutes: int = Field(default=30, ge=0)


class OfficeHours(BaseModel):
    open: str = "08:00"
    close: str = "17:00"
    closed: bool = False


def _default_office_hours() -> dict[int, OfficeHours]:
    weekday = OfficeHours()
    return {
        0: weekday,
        1: weekday,
        2: weekday,
        3: weekday,
        4: weekday,
        5: OfficeHours(open="09:00", close="13:00"),
        6: OfficeHours(open="00:00", close="00:00", closed=True),
    }


class OfficePolicy(BaseModel):
    """Static facts about the practice used as ground truth.

    ``office_hours`` is keyed by ``date.weekday()`` (0 = Monday).
    """

    office_hours: dict[int, OfficeHours] = Field(default_factory=_default_office_hours)
    booking_horizon_days: int = 60
    default_provider: str | None = None
    default_operatory: str | None = None
    default_length_minutes: int = 30

    @classmethod
    def from_config(cls) -> OfficePolicy:
        from src import config  # noqa: PLC0415 keep models importable without env

        return cls(
            booking_horizon_days=config.BOOKING_HORIZON_DAYS,
            default_provider=config.DEFAULT_PROVIDER,
            default_operatory=config.DEFAULT_OPERATORY,
            default_length_minutes=config.DEFAULT_APPOINTMENT_MINUTES,
        )

    def hours_for(self, weekday: int) -> OfficeHours:
        return self.office_hours.get(weekday, OfficeHours(closed=True))


# ── Scheduling read view ────────────────────────────────────────────


class Appointment(BaseModel):
    """An existing booking as reported by the scheduling store."""

    appointment_id: str
    start: datetime
    length_minutes: int = 30
    patient_id: str | None = None
    patient_name: str | None = None
    provider: str | None = None
    operatory: str | None = None
    status: str = "scheduled"

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.length_minutes)


class ProposedSlot(BaseModel):
    start: datetime
    length_minutes: int = 30
    patient_id: str | None = None
    patient_name: str | None = None
    provider: str | None = None
    operatory: str | None = None
    # Set when rescheduling so the booking does not collide with itself.
    appointment_id: str | None = None

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.length_minutes)


class ConflictMatch(BaseModel):
    appointment: Appointment
    resources: list[str] = Field(default_factory=list)


class ConflictResult(BaseModel):
    conflict: bool = False
    conflicting_with: list[ConflictMatch] = Field(default_factory=list)
    reason: str = ""
    advisory: bool = False


# ── Validation outcome & audit ──────────────────────────────────────


class Decision(BaseModel):
    """What the caller must do with a proposed action."""

    outcome: Outcome
    corrected_parameters: dict[str, Any] | None = None
    hallucination_type: HallucinationType = HallucinationType.NONE
    # Every distinct kind found, most severe first; the primary one is above.
    hallucination_types: list[HallucinationType] = Field(default_factory=list)
    severity: Severity = Severity.LOW
    reason: str = ""
    clarification: str | None = None
    retryable: bool = False
    confidence: float | None = None
    conflicts: list[ConflictMatch] = Field(default_factory=list)
    fields_to_clarify: list[str] = Field(default_factory=list)
    retries_used: int = 0


class HallucinationLogEntry(BaseModel):
    session_id: str
    conversation_id: str | None = None
    operation_type: str
    function_name: str
    hallucination_type: HallucinationType
    hallucination_types: list[HallucinationType] = Field(default_factory=list)
    severity: Severity
    original_request: dict[str, Any] = Field(default_factory=dict)
    validation_error: str = ""
    validator_reasoning: str = ""
    corrected_request: dict[str, Any] | None = None
    action_taken: ActionTaken
    validator_model: str | None = None
    cost: float = 0.0
    tokens_used: int = 0
    prevented_error: bool = False
    user_impact: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
