"""Function schemas for the scheduling tools the agent can call.

Maps each tool-call parameter onto a conversation-state entity path and
declares which functions mutate the schedule (and therefore pass through
the validator) and which are read-only lookups.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any

from src.models import ConversationState, Intent

# ── Parameter → entity mapping ──────────────────────────────────────

PARAM_TO_ENTITY: dict[str, str] = {
    "patientName": "patient.name",
    "phone": "patient.phone",
    "dateOfBirth": "patient.date_of_birth",
    "email": "patient.email",
    "patientId": "patient.patient_id",
    "date": "appointment.date",
    "time": "appointment.time",
    "provider": "appointment.provider",
    "operatory": "appointment.operatory",
    "lengthMinutes": "appointment.length_minutes",
    "appointmentType": "appointment.appointment_type",
    "appointmentId": "appointment.appointment_id",
}

ENTITY_TO_PARAM: dict[str, str] = {v: k for k, v in PARAM_TO_ENTITY.items()}


@dataclass(frozen=True)
class FunctionSchema:
    name: str
    operation_type: str | None
    required: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()

    @property
    def mutating(self) -> bool:
        return self.operation_type is not None

    @property
    def parameters(self) -> tuple[str, ...]:
        return self.required + self.optional


_SCHEMAS = [
    FunctionSchema(
        "CreatePatient",
        "create_patient",
        required=("patientName", "phone", "dateOfBirth"),
        optional=("email",),
    ),
    FunctionSchema(
        "CreateAppointment",
        "create_appointment",
        required=("patientName", "date", "time", "provider"),
        optional=(
            "phone", "patientId", "dateOfBirth", "operatory",
            "lengthMinutes", "appointmentType",
        ),
    ),
    FunctionSchema(
        "UpdateAppointment",
        "update_appointment",
        required=("appointmentId", "date", "time"),
        optional=("patientName", "patientId", "provider", "operatory", "lengthMinutes"),
    ),
    FunctionSchema(
        "CancelAppointment",
        "cancel_appointment",
        required=("appointmentId",),
        optional=("patientName", "patientId"),
    ),
    FunctionSchema(
        "BreakAppointment",
        "cancel_appointment",
        required=("appointmentId",),
        optional=("patientName", "patientId"),
    ),
    FunctionSchema(
        "GetMultiplePatients",
        None,
        optional=("patientName", "phone", "dateOfBirth"),
    ),
    FunctionSchema(
        "GetAvailableSlots",
        None,
        optional=("date", "provider", "operatory"),
    ),
    FunctionSchema("GetAppointments", None, optional=("patientId",)),
]

FUNCTION_SCHEMAS: dict[str, FunctionSchema] = {s.name: s for s in _SCHEMAS}


def get_schema(function_name: str) -> FunctionSchema | None:
    return FUNCTION_SCHEMAS.get(function_name)


# ── Required fields per intent ──────────────────────────────────────

REQUIRED_BY_INTENT: dict[Intent, tuple[str, ...]] = {
    Intent.BOOK: ("patient.name", "patient.phone", "appointment.date", "appointment.time"),
    Intent.RESCHEDULE: ("patient.name", "appointment.date", "appointment.time"),
    Intent.CANCEL: ("patient.name", "appointment.date"),
    Intent.INQUIRY: (),
    Intent.UNKNOWN: (),
}


def compute_missing_required(state: ConversationState) -> list[str]:
    """Required fields for the current intent that are still empty."""
    return [
        path for path in REQUIRED_BY_INTENT.get(state.intent, ())
        if not state.has_entity(path)
    ]


# ── Canonical value forms ───────────────────────────────────────────

_NON_DIGIT = re.compile(r"\D")
_CLOCK_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::\d{2})?\s*(am|pm)?\s*$", re.IGNORECASE)


def canonical_phone(value: Any) -> str | None:
    digits = _NON_DIGIT.sub("", str(value))
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return digits if len(digits) == 10 else None


def parse_date(value: Any) -> date | None:
    """Parse ``YYYY-MM-DD`` (optionally followed by a time part)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def parse_clock(value: Any) -> time | None:
    """Parse ``HH:MM``, ``HH:MM:SS`` or ``h:mm am/pm``."""
    if isinstance(value, time):
        return value
    match = _CLOCK_RE.match(str(value))
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    meridiem = (match.group(3) or "").lower()
    if meridiem == "pm" and hour < 12:
        hour += 12
    elif meridiem == "am" and hour == 12:
        hour = 0
    if hour > 23 or minute > 59:
        return None
    return time(hour, minute)


def canonical_name(value: Any) -> str:
    """Lower-cased name with punctuation stripped, for comparisons."""
    cleaned = re.sub(r"[^\w\s'-]", " ", str(value)).casefold()
    return " ".join(cleaned.split())


def to_entity_value(param: str, value: Any) -> Any:
    """Convert a tool-call parameter value into its stored entity form."""
    if value is None:
        return None
    if param == "phone":
        return canonical_phone(value) or str(value).strip()
    if param == "lengthMinutes":
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
    if param in ("date", "dateOfBirth"):
        parsed = parse_date(value)
        return parsed.isoformat() if parsed else str(value).strip()
    if param == "time":
        parsed = parse_clock(value)
        return parsed.strftime("%H:%M") if parsed else str(value).strip()
    return str(value).strip()
