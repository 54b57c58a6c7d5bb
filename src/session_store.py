"""Per-session conversation state, built from dialogue turns and tool results.

The store owns every ``ConversationState``.  All mutations for one
session run under that session's ``asyncio.Lock`` (a keyed registry, no
global lock), so concurrent calls for the same session behave as some
sequential ordering while different sessions proceed in parallel.

Callers only ever receive deep copies; the authoritative state lives in a
``SessionBackend``.  Idle sessions are removed by ``SessionReaper``, a
background task started by the server.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

from src import config
from src.extraction import Extraction, ExtractionError, ParameterExtractor
from src.functions import (
    PARAM_TO_ENTITY,
    compute_missing_required,
    get_schema,
    parse_clock,
    parse_date,
    to_entity_value,
)
from src.models import (
    ConversationState,
    FunctionCallRecord,
    Intent,
    OfferedSlot,
    Role,
    Turn,
    is_present,
    utcnow,
)

logger = logging.getLogger(__name__)


# ── Backend ──────────────────────────────────────────────────────────


class SessionBackend(ABC):
    """Storage capability behind the store: get / put / delete / list-expired."""

    @abstractmethod
    async def get(self, session_id: str) -> ConversationState | None: ...

    @abstractmethod
    async def put(self, state: ConversationState) -> None: ...

    @abstractmethod
    async def delete(self, session_id: str) -> bool: ...

    @abstractmethod
    async def list_expired(self, cutoff: datetime) -> list[str]: ...

    @abstractmethod
    async def count(self) -> int: ...


class InMemorySessionBackend(SessionBackend):
    def __init__(self) -> None:
        self._states: dict[str, ConversationState] = {}

    async def get(self, session_id: str) -> ConversationState | None:
        return self._states.get(session_id)

    async def put(self, state: ConversationState) -> None:
        self._states[state.session_id] = state

    async def delete(self, session_id: str) -> bool:
        return self._states.pop(session_id, None) is not None

    async def list_expired(self, cutoff: datetime) -> list[str]:
        return [sid for sid, s in self._states.items() if s.is_idle_since(cutoff)]

    async def count(self) -> int:
        return len(self._states)


# ── Keyed locks ──────────────────────────────────────────────────────


class KeyedLock:
    """One ``asyncio.Lock`` per key, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# ── Result parsing helpers ──────────────────────────────────────────

_PATIENT_ID_KEYS = ("PatNum", "patient_id", "patientId")
_APPOINTMENT_ID_KEYS = ("AptNum", "appointment_id", "appointmentId")
_STATUS_KEYS = ("AptStatus", "status")
_PHONE_KEYS = ("WirelessPhone", "HmPhone", "phone")
_PROVIDER_KEYS = ("ProvNum", "provider", "provider_id")
_OPERATORY_KEYS = ("Op", "OpNum", "operatory", "operatory_id")
_SLOT_START_KEYS = ("DateTimeStart", "AptDateTime", "start", "dateTime")


def _rows(result: Any) -> list[Mapping[str, Any]]:
    if isinstance(result, Mapping):
        return [result]
    if isinstance(result, list):
        return [r for r in result if isinstance(r, Mapping)]
    return []


def _pick(row: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = row.get(key)
        if is_present(value):
            return str(value).strip()
    return None


def _offered_slot(row: Mapping[str, Any]) -> OfferedSlot:
    slot = OfferedSlot(
        date=row.get("date"),
        time=row.get("time"),
        provider=_pick(row, _PROVIDER_KEYS),
        operatory=_pick(row, _OPERATORY_KEYS),
    )
    start = _pick(row, _SLOT_START_KEYS)
    if start:
        day = parse_date(start)
        clock = parse_clock(start.replace("T", " ")[11:]) if len(start) > 10 else None
        slot.date = day.isoformat() if day else slot.date
        slot.time = clock.strftime("%H:%M") if clock else slot.time
    if slot.time:
        parsed = parse_clock(slot.time)
        slot.time = parsed.strftime("%H:%M") if parsed else slot.time
    return slot


# ── Store ────────────────────────────────────────────────────────────

EvictionListener = Callable[[str], None]


class SessionStateStore:
    """Owns conversation state; every mutation is serialised per session."""

    def __init__(
        self,
        backend: SessionBackend | None = None,
        extractor: ParameterExtractor | None = None,
        ttl_minutes: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._backend = backend or InMemorySessionBackend()
        self._extractor = extractor or ParameterExtractor()
        self._ttl = timedelta(minutes=ttl_minutes if ttl_minutes is not None else config.SESSION_TTL_MINUTES)
        self._clock = clock
        self._locks = KeyedLock()
        self._eviction_listeners: list[EvictionListener] = []

    def add_eviction_listener(self, listener: EvictionListener) -> None:
        """Called with the session id whenever a session is cleared or reaped."""
        self._eviction_listeners.append(listener)

    # ── internals ────────────────────────────────────────────────────

    async def _load(self, session_id: str) -> ConversationState:
        state = await self._backend.get(session_id)
        if state is None:
            state = ConversationState.new(session_id)
            state.created_at = state.last_updated = self._clock()
            logger.info("New session %s (%s)", session_id, state.channel.value)
        return state

    async def _save(self, state: ConversationState) -> ConversationState:
        state.missing_required = compute_missing_required(state)
        state.last_updated = self._clock()
        await self._backend.put(state)
        return state.model_copy(deep=True)

    def _notify_evicted(self, session_id: str) -> None:
        for listener in self._eviction_listeners:
            listener(session_id)

    # ── public API ───────────────────────────────────────────────────

    async def get(self, session_id: str) -> ConversationState | None:
        state = await self._backend.get(session_id)
        return state.model_copy(deep=True) if state else None

    async def get_or_create(self, session_id: str) -> ConversationState:
        async with self._locks.hold(session_id):
            state = await self._backend.get(session_id)
            if state is None:
                return await self._save(await self._load(session_id))
            return state.model_copy(deep=True)

    @contextlib.asynccontextmanager
    async def session(self, session_id: str) -> AsyncIterator[ConversationState]:
        """Hold the session lock and yield a snapshot of its state."""
        async with self._locks.hold(session_id):
            state = await self._backend.get(session_id)
            if state is None:
                state = await self._load(session_id)
                await self._save(state)
            yield state.model_copy(deep=True)

    async def process_message(
        self,
        session_id: str,
        message: Any,
        role: Role | str = Role.USER,
    ) -> ConversationState:
        """Record a dialogue turn and merge what it says into the entities.

        Only user turns are extracted.  A turn that cannot be parsed is
        still recorded; the entities are left untouched.
        """
        role = Role(role)
        async with self._locks.hold(session_id):
            state = await self._load(session_id)
            content = message if isinstance(message, str) else str(message)
            turn = Turn(role=role, content=content, timestamp=self._clock())

            if role == Role.USER:
                try:
                    extraction = self._extractor.extract(message, reference=turn.timestamp.date())
                except ExtractionError as exc:
                    logger.warning("Extraction failed for session %s: %s", session_id, exc)
                else:
                    _merge_extraction(state, extraction)

            state.history.append(turn)
            return await self._save(state)

    async def record_function_call(
        self,
        session_id: str,
        function_name: str,
        parameters: dict[str, Any] | None = None,
        result: Any = None,
        error: str | None = None,
    ) -> ConversationState:
        """Append a tool-call record; successful calls become ground truth."""
        parameters = dict(parameters or {})
        async with self._locks.hold(session_id):
            state = await self._load(session_id)
            success = error is None
            state.function_calls.append(
                FunctionCallRecord(
                    function_name=function_name,
                    parameters=parameters,
                    result=result,
                    error=error,
                    success=success,
                    timestamp=self._clock(),
                )
            )
            if success:
                _apply_function_call(state, function_name, parameters, result)
            else:
                logger.info("Function %s failed for session %s: %s", function_name, session_id, error)
            return await self._save(state)

    async def get_auto_filled_parameters(self, session_id: str, function_name: str) -> dict[str, Any]:
        """Schema parameters the session already holds a value for.

        Never supplies a default: an empty dict means the agent has to ask.
        """
        schema = get_schema(function_name)
        if schema is None:
            return {}
        async with self._locks.hold(session_id):
            state = await self._backend.get(session_id)
            if state is None:
                return {}
            params: dict[str, Any] = {}
            for param in schema.parameters:
                value = state.get_entity(PARAM_TO_ENTITY[param])
                if is_present(value):
                    params[param] = value
            return params

    async def clear_state(self, session_id: str) -> bool:
        async with self._locks.hold(session_id):
            removed = await self._backend.delete(session_id)
        if removed:
            logger.info("Cleared session %s", session_id)
            self._notify_evicted(session_id)
        return removed

    async def reap_expired(self) -> list[str]:
        """Remove sessions idle for longer than the TTL."""
        cutoff = self._clock() - self._ttl
        reaped: list[str] = []
        for session_id in await self._backend.list_expired(cutoff):
            async with self._locks.hold(session_id):
                state = await self._backend.get(session_id)
                # Touched while we waited for the lock.
                if state is None or not state.is_idle_since(cutoff):
                    continue
                await self._backend.delete(session_id)
            reaped.append(session_id)
            self._notify_evicted(session_id)
        if reaped:
            logger.info("Reaped %d idle session(s)", len(reaped))
        return reaped

    async def active_sessions(self) -> int:
        return await self._backend.count()


# ── Merge rules ─────────────────────────────────────────────────────


def _merge_extraction(state: ConversationState, extraction: Extraction) -> None:
    """Slot-filling: empty fields take any value, set fields only corrections."""
    if extraction.restart:
        logger.info("Session %s restarted the conversation", state.session_id)
        state.intent = Intent.UNKNOWN
    if extraction.intent is not None:
        state.intent = extraction.intent

    for path, value in extraction.updates.items():
        current = state.get_entity(path)
        tentative = extraction.is_tentative(path)
        if not is_present(current):
            state.set_entity(path, value)
            _mark_tentative(state, path, tentative)
        elif current == value:
            if not tentative:
                _mark_tentative(state, path, False)
        elif extraction.is_correction(path) or (path in state.tentative_fields and not tentative):
            logger.info(
                "Session %s corrected %s: %r -> %r", state.session_id, path, current, value,
            )
            state.set_entity(path, value)
            _mark_tentative(state, path, tentative)
            if path in state.confirmed_fields:
                state.confirmed_fields.remove(path)


def _mark_tentative(state: ConversationState, path: str, tentative: bool) -> None:
    if tentative and path not in state.tentative_fields:
        state.tentative_fields.append(path)
    elif not tentative and path in state.tentative_fields:
        state.tentative_fields.remove(path)


def _confirm(state: ConversationState, path: str, value: Any) -> None:
    if not is_present(value):
        return
    state.set_entity(path, value)
    _mark_tentative(state, path, False)
    if path not in state.confirmed_fields:
        state.confirmed_fields.append(path)


def _apply_function_call(
    state: ConversationState,
    function_name: str,
    parameters: dict[str, Any],
    result: Any,
) -> None:
    schema = get_schema(function_name)

    # Parameters of a successful write are what the schedule now holds.
    # Lookup parameters are only the agent's query, so they stay out.
    if schema is not None and schema.mutating:
        for param, value in parameters.items():
            path = PARAM_TO_ENTITY.get(param)
            if path is not None:
                _confirm(state, path, to_entity_value(param, value))

    rows = _rows(result)
    if function_name == "GetMultiplePatients" and rows:
        first = rows[0]
        _confirm(state, "patient.patient_id", _pick(first, _PATIENT_ID_KEYS))
        full_name = " ".join(
            part for part in (first.get("FName"), first.get("LName")) if is_present(part)
        ) or first.get("name")
        _confirm(state, "patient.name", full_name)
        phone = _pick(first, _PHONE_KEYS)
        if phone:
            _confirm(state, "patient.phone", to_entity_value("phone", phone))
    elif function_name == "CreatePatient" and rows:
        _confirm(state, "patient.patient_id", _pick(rows[0], _PATIENT_ID_KEYS))
    elif function_name == "GetAppointments" and rows:
        scheduled = [r for r in rows if (_pick(r, _STATUS_KEYS) or "").lower() == "scheduled"]
        chosen = (scheduled or rows)[0]
        _confirm(state, "appointment.appointment_id", _pick(chosen, _APPOINTMENT_ID_KEYS))
    elif function_name == "CreateAppointment" and rows:
        _confirm(state, "appointment.appointment_id", _pick(rows[0], _APPOINTMENT_ID_KEYS))
    elif function_name == "GetAvailableSlots":
        state.offered_slots = [_offered_slot(r) for r in rows]


# ── Reaper ───────────────────────────────────────────────────────────


class SessionReaper:
    """Background task that periodically removes idle sessions."""

    def __init__(self, store: SessionStateStore, interval_seconds: float | None = None) -> None:
        self._store = store
        self._interval = (
            interval_seconds if interval_seconds is not None else config.REAPER_INTERVAL_SECONDS
        )
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="session-reaper")
        logger.info("Session reaper started (every %.0fs)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._store.reap_expired()
            except Exception:
                logger.exception("Session reaping failed")
