"""Externally owned validation settings and conflict-detection rules.

Settings are read on every validation but served from a short-lived
``TTLCache`` (``SETTINGS_FRESHNESS_SECONDS``, one minute by default), so a
change made in the settings store is picked up within that window.

If the store cannot be read the provider fails safe: validation is
treated as enabled for every operation, with the default conflict rules.
Fail-safe values are never cached, so the next read tries the store again.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod

import httpx
from pydantic import ValidationError

from src import config
from src.models import ConflictDetectionConfig, ValidationSettings
from src.services.cache import TTLCache
from src.services.metrics import metrics

logger = logging.getLogger(__name__)

_CK_VALIDATION = "settings:validation"
_CK_CONFLICT = "settings:conflict_detection"


class SettingsUnavailable(Exception):
    """The settings store could not be read or written."""


class SettingsSource(ABC):
    @abstractmethod
    async def load_validation_settings(self) -> ValidationSettings: ...

    @abstractmethod
    async def load_conflict_config(self) -> ConflictDetectionConfig: ...

    @abstractmethod
    async def save_validation_settings(self, settings: ValidationSettings) -> ValidationSettings: ...

    @abstractmethod
    async def save_conflict_config(self, conflict: ConflictDetectionConfig) -> ConflictDetectionConfig: ...

    async def aclose(self) -> None:
        return None


class StaticSettingsSource(SettingsSource):
    """In-process settings, writable through the API."""

    def __init__(
        self,
        validation: ValidationSettings | None = None,
        conflict: ConflictDetectionConfig | None = None,
    ) -> None:
        self._validation = validation or ValidationSettings()
        self._conflict = conflict or ConflictDetectionConfig()

    async def load_validation_settings(self) -> ValidationSettings:
        return self._validation.model_copy()

    async def load_conflict_config(self) -> ConflictDetectionConfig:
        return self._conflict.model_copy()

    async def save_validation_settings(self, settings: ValidationSettings) -> ValidationSettings:
        self._validation = settings.model_copy()
        return self._validation.model_copy()

    async def save_conflict_config(self, conflict: ConflictDetectionConfig) -> ConflictDetectionConfig:
        self._conflict = conflict.model_copy()
        return self._conflict.model_copy()


class HttpSettingsSource(SettingsSource):
    """Settings served by a remote admin API.

    ``GET/PUT {base_url}/validation-settings`` and
    ``GET/PUT {base_url}/conflict-detection`` exchange the JSON form of the
    two settings models.
    """

    def __init__(self, base_url: str | None = None, *, client: httpx.AsyncClient | None = None):
        self._client = client or httpx.AsyncClient(
            base_url=base_url or config.SETTINGS_API_URL or "",
            headers={"Accept": "application/json"},
            timeout=config.SCHEDULING_TIMEOUT_SECONDS,
        )

    async def _call(self, method: str, path: str, payload: dict | None = None) -> dict:
        t0 = time.perf_counter()
        try:
            response = await self._client.request(method, path, json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            metrics.record_call_failure(
                "settings", f"{method} {path}", error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise SettingsUnavailable(f"{method} {path} failed: {exc}") from exc
        metrics.record_call_success(
            "settings", f"{method} {path}", latency_ms=(time.perf_counter() - t0) * 1000,
        )
        return data

    async def load_validation_settings(self) -> ValidationSettings:
        data = await self._call("GET", "/validation-settings")
        try:
            return ValidationSettings.model_validate(data)
        except ValidationError as exc:
            raise SettingsUnavailable(f"invalid validation settings: {exc}") from exc

    async def load_conflict_config(self) -> ConflictDetectionConfig:
        data = await self._call("GET", "/conflict-detection")
        try:
            return ConflictDetectionConfig.model_validate(data)
        except ValidationError as exc:
            raise SettingsUnavailable(f"invalid conflict detection config: {exc}") from exc

    async def save_validation_settings(self, settings: ValidationSettings) -> ValidationSettings:
        await self._call("PUT", "/validation-settings", settings.model_dump())
        return settings

    async def save_conflict_config(self, conflict: ConflictDetectionConfig) -> ConflictDetectionConfig:
        await self._call("PUT", "/conflict-detection", conflict.model_dump())
        return conflict

    async def aclose(self) -> None:
        await self._client.aclose()


class SettingsProvider:
    """Cached, fail-safe access to the current settings."""

    def __init__(
        self,
        source: SettingsSource | None = None,
        *,
        cache: TTLCache | None = None,
    ) -> None:
        self._source = source or StaticSettingsSource()
        self._cache = cache or TTLCache(ttl_seconds=config.SETTINGS_FRESHNESS_SECONDS)

    async def validation_settings(self) -> ValidationSettings:
        cached = self._cache.get(_CK_VALIDATION)
        if cached is not None:
            return cached.model_copy()
        try:
            settings = await self._source.load_validation_settings()
        except SettingsUnavailable as exc:
            logger.warning("Validation settings unavailable, failing safe: %s", exc)
            return ValidationSettings.fail_safe()
        self._cache.put(_CK_VALIDATION, settings)
        return settings.model_copy()

    async def conflict_config(self) -> ConflictDetectionConfig:
        cached = self._cache.get(_CK_CONFLICT)
        if cached is not None:
            return cached.model_copy()
        try:
            conflict = await self._source.load_conflict_config()
        except SettingsUnavailable as exc:
            logger.warning("Conflict detection config unavailable, using defaults: %s", exc)
            return ConflictDetectionConfig()
        self._cache.put(_CK_CONFLICT, conflict)
        return conflict.model_copy()

    async def update_validation_settings(self, settings: ValidationSettings) -> ValidationSettings:
        saved = await self._source.save_validation_settings(settings)
        self._cache.invalidate(_CK_VALIDATION)
        logger.info("Validation settings updated: %s", saved.model_dump())
        return saved

    async def update_conflict_config(self, conflict: ConflictDetectionConfig) -> ConflictDetectionConfig:
        saved = await self._source.save_conflict_config(conflict)
        self._cache.invalidate(_CK_CONFLICT)
        logger.info("Conflict detection config updated: %s", saved.model_dump())
        return saved

    def invalidate(self) -> None:
        self._cache.invalidate_prefix("settings:")

    async def aclose(self) -> None:
        await self._source.aclose()


def build_settings_source() -> SettingsSource:
    if config.SETTINGS_API_URL:
        return HttpSettingsSource()
    return StaticSettingsSource()
