"""Read view of the practice's scheduling system.

The firewall only ever *reads* existing bookings, to check a proposed
slot for conflicts.  Bookings are fetched fresh on every validation and
never cached: acting on a stale schedule is exactly the double-booking
the conflict check exists to prevent.

``HttpSchedulingStore`` talks to the scheduling system's REST API with
exponential-backoff retries; ``InMemorySchedulingStore`` backs local runs
and tests.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime
from typing import Any

import httpx

from src import config
from src.models import Appointment
from src.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 0.25

# Filter keys understood by ``list_appointments``.
FILTER_KEYS = ("patient_id", "provider", "operatory")


class SchedulingStoreError(Exception):
    """Raised when the scheduling store answers with an unusable response."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ConflictStoreUnavailable(SchedulingStoreError):
    """The scheduling store could not be reached after all retries."""


class SchedulingStore(ABC):
    @abstractmethod
    async def list_appointments(
        self,
        start: datetime,
        end: datetime,
        filters: Mapping[str, str | None] | None = None,
    ) -> list[Appointment]:
        """Bookings starting in ``[start, end)``.

        ``filters`` narrows the result to bookings sharing *any* of the
        given resources (patient, provider, operatory); ``None`` values
        are ignored.
        """

    async def aclose(self) -> None:
        return None


def _matches_any(appointment: Appointment, filters: Mapping[str, str | None]) -> bool:
    active = {k: v for k, v in filters.items() if v is not None}
    if not active:
        return True
    return any(str(getattr(appointment, key, None)) == str(value) for key, value in active.items())


class InMemorySchedulingStore(SchedulingStore):
    def __init__(self, appointments: list[Appointment] | None = None) -> None:
        self._appointments: dict[str, Appointment] = {
            a.appointment_id: a for a in appointments or []
        }

    def add(self, appointment: Appointment) -> None:
        self._appointments[appointment.appointment_id] = appointment

    def remove(self, appointment_id: str) -> bool:
        return self._appointments.pop(appointment_id, None) is not None

    async def list_appointments(
        self,
        start: datetime,
        end: datetime,
        filters: Mapping[str, str | None] | None = None,
    ) -> list[Appointment]:
        return [
            a.model_copy()
            for a in self._appointments.values()
            if start <= a.start < end and _matches_any(a, filters or {})
        ]


# ── HTTP implementation ─────────────────────────────────────────────


def _parse_start(value: Any) -> datetime:
    # Bookings are compared as practice-local wall-clock times.
    text = str(value).strip().replace("Z", "+00:00")
    return datetime.fromisoformat(text).replace(tzinfo=None)


def _parse_appointment(row: Mapping[str, Any]) -> Appointment:
    """Accept both snake_case rows and Open Dental style (``AptNum`` etc.)."""
    length = row.get("length_minutes") or row.get("duration")
    if length is None and row.get("Pattern"):
        # Open Dental encodes length as one character per 5 minutes.
        length = len(str(row["Pattern"])) * 5

    def pick(*keys: str) -> str | None:
        for key in keys:
            if row.get(key) not in (None, ""):
                return str(row[key])
        return None

    return Appointment(
        appointment_id=pick("appointment_id", "AptNum", "id") or "",
        start=_parse_start(row.get("start") or row.get("AptDateTime")),
        length_minutes=int(length or 30),
        patient_id=pick("patient_id", "PatNum"),
        patient_name=pick("patient_name", "PatientName"),
        provider=pick("provider", "ProvNum"),
        operatory=pick("operatory", "Op"),
        status=(pick("status", "AptStatus") or "scheduled").lower(),
    )


class HttpSchedulingStore(SchedulingStore):
    """Async client for ``GET {base_url}/appointments`` with retries."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._base_url = base_url or config.SCHEDULING_API_URL
        headers = {"Accept": "application/json"}
        token = token or config.SCHEDULING_API_TOKEN
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url or "",
            headers=headers,
            timeout=timeout or config.SCHEDULING_TIMEOUT_SECONDS,
        )

    async def _request(self, method: str, path: str, *, params: dict[str, Any] | None = None) -> Any:
        """Execute a request, retrying timeouts, connection errors and 5xx."""
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, path, params=params)
                if response.status_code >= 500:
                    raise SchedulingStoreError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise SchedulingStoreError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                return response.json()

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "Scheduling API attempt %d/%d failed (%s). Retrying in %.2fs…",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except SchedulingStoreError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Scheduling API server error on attempt %d/%d. Retrying…",
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise

            if attempt < MAX_RETRIES:
                await asyncio.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise ConflictStoreUnavailable(
            f"Scheduling API request failed after {MAX_RETRIES} attempts: {last_error}"
        )

    async def list_appointments(
        self,
        start: datetime,
        end: datetime,
        filters: Mapping[str, str | None] | None = None,
    ) -> list[Appointment]:
        params: dict[str, Any] = {"start": start.isoformat(), "end": end.isoformat()}
        for key, value in (filters or {}).items():
            if key in FILTER_KEYS and value is not None:
                params[key] = value

        t0 = time.perf_counter()
        try:
            data = await self._request("GET", "/appointments", params=params)
            rows = data.get("appointments", []) if isinstance(data, dict) else data
            appointments = [_parse_appointment(r) for r in rows]
        except (ValueError, TypeError, KeyError) as exc:
            metrics.record_call_failure(
                "scheduling", "list_appointments", error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise SchedulingStoreError(f"Malformed appointments payload: {exc}") from exc
        except SchedulingStoreError as exc:
            metrics.record_call_failure(
                "scheduling", "list_appointments", error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise

        metrics.record_call_success(
            "scheduling", "list_appointments", latency_ms=(time.perf_counter() - t0) * 1000,
        )
        return appointments

    async def aclose(self) -> None:
        await self._client.aclose()


# ── Module-level singleton (thread-safe) ────────────────────────────
_store: SchedulingStore | None = None
_store_lock = threading.Lock()


def get_scheduling_store() -> SchedulingStore:
    """Return the process-wide scheduling store.

    Uses the HTTP store when ``SCHEDULING_API_URL`` is configured and an
    empty in-memory store otherwise.
    """
    global _store
    if _store is None:
        with _store_lock:
            if _store is None:
                if config.SCHEDULING_API_URL:
                    _store = HttpSchedulingStore()
                else:
                    logger.warning("SCHEDULING_API_URL not set; using an in-memory schedule")
                    _store = InMemorySchedulingStore()
    return _store
