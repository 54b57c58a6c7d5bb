"""Scheduling-conflict detection for a proposed appointment slot.

A proposal occupies the half-open interval ``[start, start + length)``.
Each existing booking that shares the patient, operatory or provider
(per the enabled checks) is widened by the conflict window on both
ends and tested for overlap.  Every colliding booking is reported.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from src.models import Appointment, ConflictDetectionConfig, ConflictMatch, ConflictResult, ProposedSlot

logger = logging.getLogger(__name__)

# Longest booking the schedule allows; bounds the lookup range.
MAX_APPOINTMENT_MINUTES = 480

_INACTIVE_STATUSES = {"cancelled", "canceled", "broken", "deleted"}


def _shared_resources(
    proposed: ProposedSlot,
    existing: Appointment,
    config: ConflictDetectionConfig,
) -> list[str]:
    resources: list[str] = []
    if config.check_patient_conflicts and proposed.patient_id and existing.patient_id == proposed.patient_id:
        resources.append("patient")
    if config.check_operatory_conflicts and proposed.operatory and existing.operatory == proposed.operatory:
        resources.append("operatory")
    if config.check_provider_conflicts and proposed.provider and existing.provider == proposed.provider:
        resources.append("provider")
    return resources


def overlaps(proposed: ProposedSlot, existing: Appointment, window_minutes: int) -> bool:
    window = timedelta(minutes=window_minutes)
    return proposed.start < existing.end + window and existing.start - window < proposed.end


def lookup_range(proposed: ProposedSlot, config: ConflictDetectionConfig) -> tuple[datetime, datetime]:
    """Time range of existing bookings that could collide with *proposed*."""
    window = timedelta(minutes=config.conflict_window_minutes)
    return (
        proposed.start - window - timedelta(minutes=MAX_APPOINTMENT_MINUTES),
        proposed.end + window,
    )


def _describe(match: ConflictMatch) -> str:
    when = match.appointment.start.strftime("%Y-%m-%d %H:%M")
    parts = []
    for resource in match.resources:
        if resource == "patient":
            parts.append(f"patient already has appointment {match.appointment.appointment_id} at {when}")
        elif resource == "operatory":
            parts.append(f"operatory {match.appointment.operatory} is occupied at {when}")
        else:
            parts.append(f"provider {match.appointment.provider} is busy at {when}")
    return "; ".join(parts)


def check_conflict(
    proposed: ProposedSlot,
    existing_appointments: list[Appointment],
    config: ConflictDetectionConfig,
) -> ConflictResult:
    if not config.enabled:
        return ConflictResult()

    matches: list[ConflictMatch] = []
    for appointment in existing_appointments:
        if appointment.status.lower() in _INACTIVE_STATUSES:
            continue
        if proposed.appointment_id and appointment.appointment_id == proposed.appointment_id:
            continue
        resources = _shared_resources(proposed, appointment, config)
        if resources and overlaps(proposed, appointment, config.conflict_window_minutes):
            matches.append(ConflictMatch(appointment=appointment, resources=resources))

    if not matches:
        return ConflictResult()

    reason = "; ".join(_describe(m) for m in matches)
    logger.info(
        "Conflict for slot %s: %d booking(s)%s",
        proposed.start.isoformat(),
        len(matches),
        " (advisory)" if config.allow_double_booking else "",
    )
    return ConflictResult(
        conflict=True,
        conflicting_with=matches,
        reason=reason,
        advisory=config.allow_double_booking,
    )
