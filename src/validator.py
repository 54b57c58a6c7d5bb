"""Hallucination firewall: validates a proposed booking action before it runs.

Architecture:
  The validator is a LangGraph ``StateGraph`` with six nodes:

    1. **policy_gate**     fast-path allow when validation is off for the
                           operation (or the function is a read-only lookup);
                           unknown functions fail closed.
    2. **ground_truth**    cross-references each proposed parameter with the
                           session's entities and the office policy; fills
                           or corrects what has a known substitute, blocks
                           identity / resource mismatches that do not.
    3. **conflict_check**  fetches existing bookings (fresh, with a timeout)
                           and runs the conflict detector on the slot.
    4. **confidence**      independent faithfulness score from a scorer,
                           with a timeout; failures score 0.
    5. **decide**          correct / allow / retry / block.
    6. **finalize**        builds the audit entry and hands it to the audit
                           logger in the background.

  Routing:
    policy_gate → (decided?) → finalize
                → ground_truth → (blocked?) → finalize
                               → conflict_check → (blocked?)     → finalize
                                                → (corrections?) → decide → finalize
                                                → confidence → decide → finalize

  Every failure mode blocks: an unreachable schedule, a timed-out or
  broken confidence pass and an unknown function all end in ``block`` or
  ``retry``, never in ``allow``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from datetime import time as clock_time
from difflib import SequenceMatcher
from typing import Any

from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from src import config
from src.audit import AuditLogger
from src.conflicts import check_conflict, lookup_range
from src.functions import (
    PARAM_TO_ENTITY,
    FunctionSchema,
    canonical_name,
    canonical_phone,
    get_schema,
    parse_clock,
    parse_date,
)
from src.models import (
    ACTION_FOR_OUTCOME,
    SEVERITY_BY_TYPE,
    ConflictDetectionConfig,
    ConflictMatch,
    ConversationState,
    Decision,
    HallucinationLogEntry,
    HallucinationType,
    OfficePolicy,
    Outcome,
    ProposedSlot,
    Severity,
    ValidationSettings,
    is_present,
)
from src.scoring import ConfidenceScore, ConfidenceScorer
from src.services.metrics import metrics
from src.services.scheduling_client import SchedulingStore

logger = logging.getLogger(__name__)

NAME_SIMILARITY_THRESHOLD = 0.8
MIN_LENGTH_MINUTES = 5
MAX_LENGTH_MINUTES = 480

H = HallucinationType


# ── User-facing text ─────────────────────────────────────────────────

_FIELD_LABELS = {
    "patientName": "your full name",
    "phone": "your phone number",
    "dateOfBirth": "your date of birth",
    "email": "your email address",
    "patientId": "your patient record",
    "date": "the appointment date",
    "time": "the appointment time",
    "provider": "the provider",
    "operatory": "the room",
    "lengthMinutes": "the appointment length",
    "appointmentType": "the type of visit",
    "appointmentId": "which appointment you mean",
}

_CLARIFICATIONS = {
    H.MISSING_PARAMETERS: "Before I can do that, could you tell me {fields}?",
    H.INVENTED_PATIENT: "Just to be safe, could you confirm {fields}?",
    H.INVENTED_PROVIDER: "Which provider would you like to see? I can check who is available.",
    H.INVENTED_OPERATORY: "Let me check which rooms are free at that time. Is that time still good for you?",
    H.INVENTED_APPOINTMENT: "I couldn't find that appointment. Could you tell me the date of the appointment you mean?",
    H.UNKNOWN_FUNCTION: "I'm not able to do that right now. Could you tell me what you'd like to do?",
    H.OUT_OF_RANGE_DATE: "We can't book that date. Which other day would work for you?",
    H.OUT_OF_RANGE_TIME: "That time is outside our office hours. What other time would suit you?",
    H.INVALID_VALUE: "I didn't quite catch {fields}. Could you repeat that?",
    H.CONFLICTING_SLOT: "That time is already taken. Would another time work for you?",
    H.CONFLICT_STORE_UNAVAILABLE: "I'm having trouble checking the schedule right now. Could we try again in a moment?",
    H.LOW_CONFIDENCE: "Just to make sure I have this right, could you confirm {fields}?",
    H.VALIDATION_TIMEOUT: "Just to make sure I have this right, could you confirm {fields}?",
    H.VALIDATOR_ERROR: "Just to make sure I have this right, could you confirm {fields}?",
}

_USER_IMPACT = {
    H.MISSING_PARAMETERS: "prevented_incomplete_booking",
    H.INVENTED_PATIENT: "prevented_wrong_patient",
    H.INVENTED_PROVIDER: "prevented_wrong_provider",
    H.INVENTED_OPERATORY: "prevented_wrong_operatory",
    H.INVENTED_APPOINTMENT: "prevented_wrong_appointment",
    H.UNKNOWN_FUNCTION: "prevented_unsupported_action",
    H.OUT_OF_RANGE_DATE: "prevented_invalid_booking",
    H.OUT_OF_RANGE_TIME: "prevented_invalid_booking",
    H.INVALID_VALUE: "prevented_invalid_booking",
    H.MISMATCHED_VALUE: "prevented_wrong_booking",
    H.AUTOFILLED: "completed_from_conversation",
    H.CONFLICTING_SLOT: "prevented_double_booking",
    H.CONFLICT_STORE_UNAVAILABLE: "delayed_booking",
    H.LOW_CONFIDENCE: "asked_for_confirmation",
    H.VALIDATION_TIMEOUT: "asked_for_confirmation",
    H.VALIDATOR_ERROR: "asked_for_confirmation",
}


def _join_labels(fields: list[str]) -> str:
    labels = [_FIELD_LABELS.get(f, f) for f in fields] or ["the details"]
    if len(labels) > 1:
        return ", ".join(labels[:-1]) + " and " + labels[-1]
    return labels[0]


def clarification_for(kind: HallucinationType, fields: list[str]) -> str:
    return _CLARIFICATIONS.get(kind, "Could you confirm {fields}?").format(fields=_join_labels(fields))


# ── Ground truth ─────────────────────────────────────────────────────


@dataclass
class Finding:
    param: str
    kind: HallucinationType
    reason: str

    @property
    def severity(self) -> Severity:
        return SEVERITY_BY_TYPE[self.kind]


@dataclass
class GroundTruthResult:
    parameters: dict[str, Any]
    corrections: list[Finding] = field(default_factory=list)
    blocks: list[Finding] = field(default_factory=list)

    def correct(self, param: str, value: Any, kind: HallucinationType, reason: str) -> None:
        self.parameters[param] = value
        self.corrections.append(Finding(param, kind, reason))

    def block(self, param: str, kind: HallucinationType, reason: str) -> None:
        self.blocks.append(Finding(param, kind, reason))


def _worst(findings: list[Finding]) -> Finding:
    return max(findings, key=lambda f: f.severity.rank)


# Reported type when several ground-truth checks block at once: fabricated
# references, then fabricated identity, then bad values, then gaps.
_PRIMARY_BLOCK_ORDER = (
    H.INVENTED_PROVIDER,
    H.INVENTED_OPERATORY,
    H.INVENTED_APPOINTMENT,
    H.INVENTED_PATIENT,
    H.OUT_OF_RANGE_DATE,
    H.OUT_OF_RANGE_TIME,
    H.INVALID_VALUE,
    H.MISSING_PARAMETERS,
)


def _primary_block(findings: list[Finding]) -> HallucinationType:
    kinds = {f.kind for f in findings}
    for kind in _PRIMARY_BLOCK_ORDER:
        if kind in kinds:
            return kind
    return _worst(findings).kind


def _kinds(findings: list[Finding]) -> list[HallucinationType]:
    ordered = sorted(findings, key=lambda f: f.severity.rank, reverse=True)
    return list(dict.fromkeys(f.kind for f in ordered))


def _blocked_clarification(primary: HallucinationType, findings: list[Finding]) -> str:
    own = [f.param for f in findings if f.kind == primary]
    others = list(dict.fromkeys(f.param for f in findings if f.kind != primary))
    text = clarification_for(primary, own)
    if others:
        text += f" Could you also confirm {_join_labels(others)}?"
    return text


def _name_similarity(a: str, b: str) -> float:
    return SequenceMatcher(None, canonical_name(a), canonical_name(b)).ratio()


class GroundTruthChecker:
    """Compares proposed parameters with what the session actually knows."""

    def __init__(self, policy: OfficePolicy, today: date) -> None:
        self.policy = policy
        self.today = today

    # ── derived facts ────────────────────────────────────────────────

    def date_bookable(self, day: date) -> bool:
        horizon = self.today + timedelta(days=self.policy.booking_horizon_days)
        return self.today <= day <= horizon and not self.policy.hours_for(day.weekday()).closed

    def time_bookable(self, day: date | None, start: clock_time, length: int) -> bool:
        if day is None:
            return True
        hours = self.policy.hours_for(day.weekday())
        opens, closes = parse_clock(hours.open), parse_clock(hours.close)
        if hours.closed or opens is None or closes is None:
            return False
        begin = datetime.combine(day, start)
        return start >= opens and begin + timedelta(minutes=length) <= datetime.combine(day, closes)

    # ── entry point ─────────────────────────────────────────────────

    def check(
        self,
        schema: FunctionSchema,
        proposed: dict[str, Any],
        state: ConversationState,
    ) -> GroundTruthResult:
        result = GroundTruthResult(parameters=dict(proposed))

        missing: list[str] = []
        for param in schema.required:
            if is_present(result.parameters.get(param)):
                continue
            known = state.get_entity(PARAM_TO_ENTITY[param])
            if is_present(known):
                result.correct(param, known, H.AUTOFILLED, f"{param} filled from conversation state")
            else:
                missing.append(param)
        for param in missing:
            result.block(param, H.MISSING_PARAMETERS, f"{param} is required and unknown")

        checks: list[tuple[str, Callable[..., None]]] = [
            ("patientId", self._check_patient_id),
            ("patientName", self._check_patient_name),
            ("phone", self._check_phone),
            ("dateOfBirth", self._check_date_of_birth),
            ("date", self._check_date),
            ("lengthMinutes", self._check_length),
            ("time", self._check_time),
            ("provider", self._check_provider),
            ("operatory", self._check_operatory),
            ("appointmentId", self._check_appointment_id),
        ]
        for param, check in checks:
            if param in schema.parameters and is_present(result.parameters.get(param)):
                check(result.parameters[param], state, result, proposed)
        return result

    # ── identity ────────────────────────────────────────────────────

    def _check_patient_id(self, value, state, result, _proposed) -> None:
        known = state.patient.patient_id
        if not is_present(known):
            result.block("patientId", H.INVENTED_PATIENT, f"patient id {value!r} was never returned by a lookup")
        elif str(value).strip() != known:
            result.correct("patientId", known, H.MISMATCHED_VALUE, f"patient id {value!r} differs from {known!r}")

    def _check_patient_name(self, value, state, result, proposed) -> None:
        known = state.patient.name
        if not is_present(known):
            result.block("patientName", H.INVENTED_PATIENT, f"patient name {value!r} was never stated")
            return
        if canonical_name(value) == canonical_name(known):
            return

        dob = parse_date(proposed.get("dateOfBirth") or "")
        patient_id = proposed.get("patientId")
        pairs = [
            (canonical_phone(proposed.get("phone") or ""), state.patient.phone),
            (dob.isoformat() if dob else None, state.patient.date_of_birth),
            (str(patient_id).strip() if is_present(patient_id) else None, state.patient.patient_id),
        ]
        corroborated, contradicted = False, False
        for offered, stated in pairs:
            if offered and is_present(stated):
                if offered == stated:
                    corroborated = True
                else:
                    contradicted = True

        similarity = _name_similarity(value, known)
        if similarity >= NAME_SIMILARITY_THRESHOLD and corroborated and not contradicted:
            result.correct(
                "patientName", known, H.MISMATCHED_VALUE,
                f"patient name {value!r} is a near match ({similarity:.2f}) for stated {known!r}",
            )
        else:
            result.block(
                "patientName", H.INVENTED_PATIENT,
                f"patient name {value!r} does not match stated {known!r} (similarity {similarity:.2f})",
            )

    def _check_phone(self, value, state, result, _proposed) -> None:
        known = state.patient.phone
        if not is_present(known):
            result.block("phone", H.INVENTED_PATIENT, "phone number was never stated")
        elif canonical_phone(value) != known:
            result.correct("phone", known, H.MISMATCHED_VALUE, f"phone {value!r} differs from stated {known!r}")

    def _check_date_of_birth(self, value, state, result, _proposed) -> None:
        known = state.patient.date_of_birth
        parsed = parse_date(value)
        if parsed is None:
            if is_present(known):
                result.correct("dateOfBirth", known, H.INVALID_VALUE, f"date of birth {value!r} is malformed")
            else:
                result.block("dateOfBirth", H.INVALID_VALUE, f"date of birth {value!r} is malformed")
        elif not is_present(known):
            result.block("dateOfBirth", H.INVENTED_PATIENT, "date of birth was never stated")
        elif parsed.isoformat() != known:
            result.correct("dateOfBirth", known, H.MISMATCHED_VALUE, f"date of birth {value!r} differs from {known!r}")

    # ── slot ────────────────────────────────────────────────────────

    def _check_date(self, value, state, result, _proposed) -> None:
        parsed = parse_date(value)
        known = parse_date(state.appointment.date) if state.has_entity("appointment.date") else None
        known_ok = known is not None and self.date_bookable(known)

        if parsed is None:
            if known_ok:
                result.correct("date", known.isoformat(), H.INVALID_VALUE, f"date {value!r} is malformed")
            else:
                result.block("date", H.INVALID_VALUE, f"date {value!r} is malformed")
        elif not self.date_bookable(parsed):
            if known_ok:
                result.correct(
                    "date", known.isoformat(), H.OUT_OF_RANGE_DATE,
                    f"date {parsed} is not bookable; using stated {known}",
                )
            else:
                result.block("date", H.OUT_OF_RANGE_DATE, f"date {parsed} is outside the booking window or a closed day")
        elif known_ok and parsed != known:
            result.correct("date", known.isoformat(), H.MISMATCHED_VALUE, f"date {parsed} differs from stated {known}")

    def _length_of(self, params: dict[str, Any], state: ConversationState) -> int:
        for candidate in (params.get("lengthMinutes"), state.appointment.length_minutes):
            try:
                n = int(candidate)
            except (TypeError, ValueError):
                continue
            if MIN_LENGTH_MINUTES <= n <= MAX_LENGTH_MINUTES:
                return n
        return self.policy.default_length_minutes

    def _check_length(self, value, state, result, _proposed) -> None:
        try:
            n = int(value)
        except (TypeError, ValueError):
            n = None
        if n is not None and MIN_LENGTH_MINUTES <= n <= MAX_LENGTH_MINUTES:
            return
        known = state.appointment.length_minutes
        substitute = (
            known
            if known is not None and MIN_LENGTH_MINUTES <= known <= MAX_LENGTH_MINUTES
            else self.policy.default_length_minutes
        )
        result.correct("lengthMinutes", substitute, H.INVALID_VALUE, f"length {value!r} is out of range")

    def _check_time(self, value, state, result, _proposed) -> None:
        parsed = parse_clock(value)
        known = parse_clock(state.appointment.time) if state.has_entity("appointment.time") else None
        day = parse_date(result.parameters.get("date") or "") or parse_date(state.appointment.date or "")
        length = self._length_of(result.parameters, state)
        known_ok = known is not None and self.time_bookable(day, known, length)

        if parsed is None:
            if known_ok:
                result.correct("time", known.strftime("%H:%M"), H.INVALID_VALUE, f"time {value!r} is malformed")
            else:
                result.block("time", H.INVALID_VALUE, f"time {value!r} is malformed")
        elif not self.time_bookable(day, parsed, length):
            if known_ok:
                result.correct(
                    "time", known.strftime("%H:%M"), H.OUT_OF_RANGE_TIME,
                    f"time {parsed:%H:%M} is outside office hours; using stated {known:%H:%M}",
                )
            else:
                result.block("time", H.OUT_OF_RANGE_TIME, f"time {parsed:%H:%M} is outside office hours")
        elif known_ok and parsed != known:
            result.correct(
                "time", known.strftime("%H:%M"), H.MISMATCHED_VALUE,
                f"time {parsed:%H:%M} differs from stated {known:%H:%M}",
            )

    # ── resources ───────────────────────────────────────────────────

    def _check_resource(
        self,
        param: str,
        value: Any,
        state: ConversationState,
        result: GroundTruthResult,
        offered: set[str],
        default: str | None,
        kind: HallucinationType,
    ) -> None:
        path = PARAM_TO_ENTITY[param]
        proposed = str(value).strip()
        known = state.get_entity(path)
        if is_present(known) and str(known) == proposed:
            return
        if is_present(known) and (state.is_confirmed(path) or str(known).isdigit() == proposed.isdigit()):
            result.correct(param, known, H.MISMATCHED_VALUE, f"{param} {proposed!r} differs from known {known!r}")
            return
        if proposed in offered or (default is not None and proposed == str(default)):
            return
        result.block(param, kind, f"{param} {proposed!r} was never mentioned, offered or configured")

    def _check_provider(self, value, state, result, _proposed) -> None:
        offered = {str(s.provider) for s in state.offered_slots if s.provider}
        self._check_resource(
            "provider", value, state, result, offered, self.policy.default_provider, H.INVENTED_PROVIDER,
        )

    def _check_operatory(self, value, state, result, _proposed) -> None:
        offered = {str(s.operatory) for s in state.offered_slots if s.operatory}
        self._check_resource(
            "operatory", value, state, result, offered, self.policy.default_operatory, H.INVENTED_OPERATORY,
        )

    def _check_appointment_id(self, value, state, result, _proposed) -> None:
        known = state.appointment.appointment_id
        if not is_present(known):
            result.block("appointmentId", H.INVENTED_APPOINTMENT, f"appointment {value!r} was never looked up")
        elif str(value).strip() != known:
            result.correct(
                "appointmentId", known, H.MISMATCHED_VALUE, f"appointment {value!r} differs from known {known!r}",
            )


# ── Graph state ──────────────────────────────────────────────────────


class ValidationState(TypedDict, total=False):
    """State flowing through the validation graph.

    Any node may set ``decision``; once set, the remaining checks are
    skipped and the graph goes straight to ``finalize``.
    """

    function_name: str
    conversation_id: str | None
    proposed: dict[str, Any]
    state: ConversationState
    settings: ValidationSettings
    conflict_config: ConflictDetectionConfig
    schema: FunctionSchema | None
    parameters: dict[str, Any]
    corrections: list[Finding]
    advisory_conflicts: list[ConflictMatch]
    score: ConfidenceScore | None
    decision: Decision | None
    started_at: float


def _operation_of(state: ValidationState) -> str:
    schema = state.get("schema")
    if schema is None:
        return "unknown"
    return schema.operation_type or "read"


# ── Validator ────────────────────────────────────────────────────────


class ActionValidator:
    """Decides allow / block / correct / retry for one proposed action."""

    def __init__(
        self,
        scorer: ConfidenceScorer,
        scheduling_store: SchedulingStore,
        audit_logger: AuditLogger,
        *,
        policy: OfficePolicy | None = None,
        clock: Callable[[], datetime] = datetime.now,
        confidence_timeout: float | None = None,
        scheduling_timeout: float | None = None,
    ) -> None:
        self._scorer = scorer
        self._store = scheduling_store
        self._audit = audit_logger
        self._policy = policy or OfficePolicy.from_config()
        self._clock = clock
        self._confidence_timeout = (
            config.CONFIDENCE_TIMEOUT_SECONDS if confidence_timeout is None else confidence_timeout
        )
        self._scheduling_timeout = (
            config.SCHEDULING_TIMEOUT_SECONDS if scheduling_timeout is None else scheduling_timeout
        )
        # (session_id, function_name) → retries handed out so far
        self._retries: dict[tuple[str, str], int] = {}
        self._graph = self._build_graph()

    @property
    def policy(self) -> OfficePolicy:
        return self._policy

    def retries_used(self, session_id: str, function_name: str) -> int:
        return self._retries.get((session_id, function_name), 0)

    def forget(self, session_id: str) -> None:
        """Drop retry counters for a session that was cleared or reaped."""
        for key in [k for k in self._retries if k[0] == session_id]:
            del self._retries[key]

    async def validate(
        self,
        function_name: str,
        proposed_parameters: dict[str, Any] | None,
        state: ConversationState,
        settings: ValidationSettings,
        conflict_config: ConflictDetectionConfig,
        *,
        conversation_id: str | None = None,
    ) -> Decision:
        result = await self._graph.ainvoke(
            {
                "function_name": function_name,
                "conversation_id": conversation_id,
                "proposed": dict(proposed_parameters or {}),
                "state": state,
                "settings": settings,
                "conflict_config": conflict_config,
                "schema": get_schema(function_name),
                "corrections": [],
                "advisory_conflicts": [],
                "score": None,
                "decision": None,
                "started_at": time.perf_counter(),
            }
        )
        return result["decision"]

    # ── Nodes ────────────────────────────────────────────────────────

    async def _policy_gate(self, vs: ValidationState) -> dict:
        settings, schema = vs["settings"], vs.get("schema")
        if not settings.validation_enabled:
            return {"decision": Decision(outcome=Outcome.ALLOW, reason="validation disabled")}
        if schema is None:
            reason = f"unknown function {vs['function_name']!r}"
            return {"decision": self._block(H.UNKNOWN_FUNCTION, reason, [])}
        if not schema.mutating:
            return {"decision": Decision(outcome=Outcome.ALLOW, reason="read-only function")}
        if not settings.should_validate(schema.operation_type):
            return {
                "decision": Decision(
                    outcome=Outcome.ALLOW, reason=f"validation disabled for {schema.operation_type}",
                )
            }
        return {"decision": None}

    async def _ground_truth(self, vs: ValidationState) -> dict:
        schema, proposed, state = vs["schema"], vs["proposed"], vs["state"]

        if not any(is_present(v) for v in proposed.values()) and schema.required:
            reason = f"{schema.name} proposed with no parameters"
            return {"decision": self._block(H.MISSING_PARAMETERS, reason, list(schema.required))}

        checker = GroundTruthChecker(self._policy, self._clock().date())
        result = checker.check(schema, proposed, state)

        if result.blocks:
            primary = _primary_block(result.blocks)
            reason = "; ".join(f.reason for f in result.blocks)
            logger.info("Ground truth blocked %s for %s: %s", schema.name, state.session_id, reason)
            decision = self._block(primary, reason, [f.param for f in result.blocks])
            decision.severity = _worst(result.blocks).severity
            decision.hallucination_types = _kinds(result.blocks)
            decision.clarification = _blocked_clarification(primary, result.blocks)
            return {
                "decision": decision,
                "corrections": result.corrections,
                "parameters": result.parameters,
            }
        return {"parameters": result.parameters, "corrections": result.corrections}

    async def _conflict_check(self, vs: ValidationState) -> dict:
        schema, conflict_config = vs["schema"], vs["conflict_config"]
        if schema.operation_type not in ("create_appointment", "update_appointment") or not conflict_config.enabled:
            return {"decision": None}

        slot = self._proposed_slot(vs["parameters"], vs["state"])
        if slot is None:
            return {"decision": None}

        filters = {
            "patient_id": slot.patient_id if conflict_config.check_patient_conflicts else None,
            "provider": slot.provider if conflict_config.check_provider_conflicts else None,
            "operatory": slot.operatory if conflict_config.check_operatory_conflicts else None,
        }
        if not any(filters.values()):
            return {"decision": None}

        start, end = lookup_range(slot, conflict_config)
        try:
            existing = await asyncio.wait_for(
                self._store.list_appointments(start, end, filters),
                timeout=self._scheduling_timeout,
            )
        except TimeoutError:
            logger.warning("Scheduling store timed out after %.1fs", self._scheduling_timeout)
            return {"decision": self._conflict_store_unavailable("scheduling store timed out")}
        except Exception as exc:
            logger.warning("Scheduling store unavailable: %s", exc)
            return {"decision": self._conflict_store_unavailable(f"scheduling store error: {type(exc).__name__}")}

        result = check_conflict(slot, existing, conflict_config)
        if not result.conflict:
            return {"decision": None}
        if result.advisory:
            return {"advisory_conflicts": result.conflicting_with}
        decision = self._block(H.CONFLICTING_SLOT, result.reason, ["date", "time"])
        decision.conflicts = result.conflicting_with
        return {"decision": decision}

    async def _confidence(self, vs: ValidationState) -> dict:
        state, function_name = vs["state"], vs["function_name"]
        try:
            score = await asyncio.wait_for(
                self._scorer.score(state, function_name, vs["parameters"]),
                timeout=self._confidence_timeout,
            )
        except TimeoutError:
            logger.warning(
                "Confidence pass for %s timed out after %.1fs", function_name, self._confidence_timeout,
            )
            score = ConfidenceScore(
                confidence=0.0,
                reasoning="confidence pass timed out",
                model=self._scorer.model_name,
                cause=H.VALIDATION_TIMEOUT,
            )
        except Exception as exc:
            logger.warning("Confidence pass for %s failed: %s", function_name, exc)
            score = ConfidenceScore(
                confidence=0.0,
                reasoning=f"confidence pass failed: {type(exc).__name__}",
                model=self._scorer.model_name,
                cause=H.VALIDATOR_ERROR,
            )
        return {"score": score}

    async def _decide(self, vs: ValidationState) -> dict:
        state, function_name = vs["state"], vs["function_name"]
        key = (state.session_id, function_name)
        advisory = vs.get("advisory_conflicts") or []
        corrections = vs.get("corrections") or []

        if corrections:
            self._retries.pop(key, None)
            worst = _worst(corrections)
            return {
                "decision": Decision(
                    outcome=Outcome.CORRECT,
                    corrected_parameters=vs["parameters"],
                    hallucination_type=worst.kind,
                    hallucination_types=_kinds(corrections),
                    severity=worst.severity,
                    reason="; ".join(f.reason for f in corrections),
                    conflicts=advisory,
                )
            }

        score: ConfidenceScore = vs["score"]
        settings = vs["settings"]
        if score.confidence >= settings.confidence_threshold:
            self._retries.pop(key, None)
            return {
                "decision": Decision(
                    outcome=Outcome.ALLOW,
                    reason=score.reasoning,
                    confidence=score.confidence,
                    conflicts=advisory,
                )
            }

        kind = score.cause or H.LOW_CONFIDENCE
        fields = [f for f in score.unsupported_fields if f in vs["parameters"]] or list(vs["parameters"])
        used = self._retries.get(key, 0)
        reason = f"confidence {score.confidence:.2f} below threshold {settings.confidence_threshold:.2f}"
        if score.reasoning:
            reason += f": {score.reasoning}"

        if used < settings.max_retries:
            self._retries[key] = used + 1
            return {
                "decision": Decision(
                    outcome=Outcome.RETRY,
                    hallucination_type=kind,
                    hallucination_types=[kind],
                    severity=SEVERITY_BY_TYPE[kind],
                    reason=reason,
                    clarification=clarification_for(kind, fields),
                    retryable=True,
                    confidence=score.confidence,
                    conflicts=advisory,
                    fields_to_clarify=fields,
                    retries_used=used + 1,
                )
            }

        decision = self._block(kind, f"{reason} (retries exhausted)", fields)
        decision.confidence = score.confidence
        decision.retries_used = used
        decision.conflicts = advisory
        return {"decision": decision}

    async def _finalize(self, vs: ValidationState) -> dict:
        decision: Decision = vs["decision"]
        state = vs["state"]
        score: ConfidenceScore | None = vs.get("score")
        operation = _operation_of(vs)
        elapsed = (time.perf_counter() - vs["started_at"]) * 1000

        entry = HallucinationLogEntry(
            session_id=state.session_id,
            conversation_id=vs.get("conversation_id") or state.session_id,
            operation_type=operation,
            function_name=vs["function_name"],
            hallucination_type=decision.hallucination_type,
            hallucination_types=decision.hallucination_types,
            severity=decision.severity,
            original_request=vs["proposed"],
            validation_error="" if decision.outcome == Outcome.ALLOW else decision.reason,
            validator_reasoning=score.reasoning if score else decision.reason,
            corrected_request=decision.corrected_parameters,
            action_taken=ACTION_FOR_OUTCOME[decision.outcome],
            validator_model=score.model if score else None,
            cost=score.cost if score else 0.0,
            tokens_used=score.tokens_used if score else 0,
            prevented_error=decision.outcome != Outcome.ALLOW,
            user_impact=None if decision.outcome == Outcome.ALLOW else _USER_IMPACT.get(decision.hallucination_type),
        )
        self._audit.submit(entry)

        metrics.record_decision(
            operation,
            decision.outcome.value,
            decision.hallucination_type.value,
            confidence=decision.confidence,
            latency_ms=elapsed,
        )
        logger.info(
            "Validated %s for %s: %s (%s, %.0fms)",
            vs["function_name"], state.session_id, decision.outcome.value,
            decision.hallucination_type.value, elapsed,
        )
        return {"decision": decision}

    # ── Helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _block(kind: HallucinationType, reason: str, fields: list[str]) -> Decision:
        return Decision(
            outcome=Outcome.BLOCK,
            hallucination_type=kind,
            hallucination_types=[kind],
            severity=SEVERITY_BY_TYPE[kind],
            reason=reason,
            clarification=clarification_for(kind, fields),
            fields_to_clarify=fields,
        )

    def _conflict_store_unavailable(self, reason: str) -> Decision:
        decision = self._block(H.CONFLICT_STORE_UNAVAILABLE, reason, [])
        decision.retryable = True
        return decision

    def _proposed_slot(self, params: dict[str, Any], state: ConversationState) -> ProposedSlot | None:
        day = parse_date(params.get("date") or "")
        start = parse_clock(params.get("time") or "")
        if day is None or start is None:
            return None
        try:
            length = int(params.get("lengthMinutes") or state.appointment.length_minutes or 0)
        except (TypeError, ValueError):
            length = 0
        if not MIN_LENGTH_MINUTES <= length <= MAX_LENGTH_MINUTES:
            length = self._policy.default_length_minutes

        def _text(value: Any) -> str | None:
            return str(value).strip() if is_present(value) else None

        return ProposedSlot(
            start=datetime.combine(day, start),
            length_minutes=length,
            patient_id=_text(params.get("patientId") or state.patient.patient_id),
            patient_name=_text(params.get("patientName")),
            provider=_text(params.get("provider")),
            operatory=_text(params.get("operatory")),
            appointment_id=_text(params.get("appointmentId")),
        )

    # ── Graph assembly ───────────────────────────────────────────────

    def _build_graph(self):
        graph = StateGraph(ValidationState)

        graph.add_node("policy_gate", self._policy_gate)
        graph.add_node("ground_truth", self._ground_truth)
        graph.add_node("conflict_check", self._conflict_check)
        graph.add_node("confidence", self._confidence)
        graph.add_node("decide", self._decide)
        graph.add_node("finalize", self._finalize)

        graph.set_entry_point("policy_gate")

        graph.add_conditional_edges(
            "policy_gate",
            lambda s: "finalize" if s.get("decision") else "ground_truth",
            {"finalize": "finalize", "ground_truth": "ground_truth"},
        )
        graph.add_conditional_edges(
            "ground_truth",
            lambda s: "finalize" if s.get("decision") else "conflict_check",
            {"finalize": "finalize", "conflict_check": "conflict_check"},
        )
        graph.add_conditional_edges(
            "conflict_check",
            route_after_conflict_check,
            {"finalize": "finalize", "decide": "decide", "confidence": "confidence"},
        )
        graph.add_edge("confidence", "decide")
        graph.add_edge("decide", "finalize")
        graph.add_edge("finalize", END)

        compiled = graph.compile()
        logger.debug("Validation graph compiled (scorer: %s)", self._scorer.model_name)
        return compiled


def route_after_conflict_check(state: ValidationState) -> str:
    """Blocked → finalize; corrected → decide (no confidence pass); else score it."""
    if state.get("decision"):
        return "finalize"
    if state.get("corrections"):
        return "decide"
    return "confidence"
