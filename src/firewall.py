"""Service facade wiring the session store, validator, settings and audit log.

This is the one object the HTTP API and the CLI talk to.  ``validate``
holds the session's lock for the whole validation, so a validation never
interleaves with a dialogue turn or a tool-call record for the same
session.
"""

from __future__ import annotations

import logging
from typing import Any

from src import config
from src.audit import AuditLogger, StatsAggregator, ValidationStats, build_audit_store
from src.models import (
    ConflictDetectionConfig,
    ConversationState,
    Decision,
    HallucinationLogEntry,
    OfficePolicy,
    Role,
    ValidationSettings,
)
from src.scoring import build_scorer
from src.services.scheduling_client import SchedulingStore, get_scheduling_store
from src.services.settings_store import SettingsProvider, build_settings_source
from src.session_store import SessionReaper, SessionStateStore
from src.validator import ActionValidator

logger = logging.getLogger(__name__)


class FirewallService:
    def __init__(
        self,
        sessions: SessionStateStore,
        validator: ActionValidator,
        settings: SettingsProvider,
        audit_logger: AuditLogger,
        *,
        scheduling_store: SchedulingStore | None = None,
        reaper: SessionReaper | None = None,
    ) -> None:
        self.sessions = sessions
        self.validator = validator
        self.settings = settings
        self.audit_logger = audit_logger
        self.stats = StatsAggregator(audit_logger.store, audit_logger=audit_logger)
        self._scheduling_store = scheduling_store
        self._reaper = reaper
        sessions.add_eviction_listener(validator.forget)

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self) -> None:
        if self._reaper is not None:
            self._reaper.start()

    async def shutdown(self) -> None:
        if self._reaper is not None:
            await self._reaper.stop()
        await self.audit_logger.drain()
        await self.audit_logger.store.close()
        await self.settings.aclose()
        if self._scheduling_store is not None:
            await self._scheduling_store.aclose()
        logger.info("Firewall service stopped")

    # ── Conversation state ───────────────────────────────────────────

    async def process_message(
        self, session_id: str, content: str, role: Role | str = Role.USER,
    ) -> ConversationState:
        return await self.sessions.process_message(session_id, content, role)

    async def record_function_call(
        self,
        session_id: str,
        function_name: str,
        parameters: dict[str, Any] | None = None,
        result: Any = None,
        error: str | None = None,
    ) -> ConversationState:
        return await self.sessions.record_function_call(
            session_id, function_name, parameters, result, error,
        )

    async def get_state(self, session_id: str) -> ConversationState | None:
        return await self.sessions.get(session_id)

    async def clear_session(self, session_id: str) -> bool:
        return await self.sessions.clear_state(session_id)

    async def autofill(self, session_id: str, function_name: str) -> dict[str, Any]:
        return await self.sessions.get_auto_filled_parameters(session_id, function_name)

    # ── Validation ───────────────────────────────────────────────────

    async def validate(
        self,
        session_id: str,
        function_name: str,
        parameters: dict[str, Any] | None,
        *,
        conversation_id: str | None = None,
    ) -> Decision:
        settings = await self.settings.validation_settings()
        conflict_config = await self.settings.conflict_config()
        async with self.sessions.session(session_id) as state:
            return await self.validator.validate(
                function_name,
                parameters,
                state,
                settings,
                conflict_config,
                conversation_id=conversation_id,
            )

    # ── Settings & audit ─────────────────────────────────────────────

    async def get_settings(self) -> tuple[ValidationSettings, ConflictDetectionConfig]:
        return await self.settings.validation_settings(), await self.settings.conflict_config()

    async def update_settings(
        self,
        validation: ValidationSettings | None = None,
        conflict_detection: ConflictDetectionConfig | None = None,
    ) -> tuple[ValidationSettings, ConflictDetectionConfig]:
        if validation is not None:
            await self.settings.update_validation_settings(validation)
        if conflict_detection is not None:
            await self.settings.update_conflict_config(conflict_detection)
        return await self.get_settings()

    async def validation_stats(self, window_days: int = 30) -> ValidationStats:
        return await self.stats.aggregate(window_days)

    async def recent_logs(self, limit: int = 50) -> list[HallucinationLogEntry]:
        return await self.stats.recent(limit)


def create_firewall_service(*, with_reaper: bool = True) -> FirewallService:
    """Build the service from ``src.config``."""
    policy = OfficePolicy.from_config()
    scheduling_store = get_scheduling_store()
    audit_logger = AuditLogger(build_audit_store())
    sessions = SessionStateStore()
    validator = ActionValidator(
        build_scorer(policy=policy),
        scheduling_store,
        audit_logger,
        policy=policy,
    )
    logger.info(
        "Firewall ready (validator: %s, audit: %s, scheduling: %s)",
        config.VALIDATOR_MODE,
        type(audit_logger.store).__name__,
        type(scheduling_store).__name__,
    )
    return FirewallService(
        sessions,
        validator,
        SettingsProvider(build_settings_source()),
        audit_logger,
        scheduling_store=scheduling_store,
        reaper=SessionReaper(sessions) if with_reaper else None,
    )
