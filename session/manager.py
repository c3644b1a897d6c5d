"""
Session lifecycle manager.

ConversationManager owns the lifecycle of conversation sessions: creation
under a per-user active cap, cached loading, write-through saving, status
changes, export/import, client synchronisation and idle cleanup. Store
failures on the request path are raised as PersistenceError; the cleanup
path logs them and carries on.
"""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from config.settings import Settings, get_settings
from errors.exceptions import (
    InvalidImportError,
    PersistenceError,
    SessionConflictError,
    session_not_found,
    validation_error,
)
from flow.states import STATE_PROGRESS
from session.cache import TTLCache
from session.models import (
    DEFAULT_TITLE,
    EXPORT_VERSION,
    ConversationRecord,
    ConversationSession,
    ExportDocument,
    MessageRole,
    SessionStatus,
    WorkflowState,
    generate_session_id,
    utcnow,
)
from session.store import ConversationStore, StoreError

logger = logging.getLogger(__name__)

RECENT_MESSAGES_ON_SYNC = 10
CAP_ABANDON_REASON = "Exceeded maximum active sessions"

CONFLICT_RESOLUTION_OPTIONS = {
    "use_server": "Use server version (recommended)",
    "use_client": "Use your local changes",
    "merge": "Try to merge changes",
}

# Engagement: user messages per hour and progress fraction per hour
ENGAGEMENT_MESSAGE_WEIGHT = 0.4
ENGAGEMENT_PROGRESS_WEIGHT = 0.6

# Completion likelihood: progress fraction, engagement, transitions (saturating at 10)
COMPLETION_PROGRESS_WEIGHT = 0.5
COMPLETION_ENGAGEMENT_WEIGHT = 0.3
COMPLETION_TRANSITION_WEIGHT = 0.2
COMPLETION_TRANSITION_SATURATION = 10


@dataclass
class SessionSpec:
    """Parameters for creating a new session."""
    user_id: int
    context_type: Optional[str] = None
    session_id: Optional[str] = None
    title: Optional[str] = None
    initial_state: WorkflowState = WorkflowState.WELCOME
    initial_context: dict[str, Any] = field(default_factory=dict)


@dataclass
class CleanupReport:
    """Outcome of one idle-cleanup pass."""
    examined: int = 0
    abandoned: int = 0
    skipped_paused: int = 0
    cache_purged: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def _coerce_timestamp(value: Any) -> Optional[datetime]:
    """Accept a datetime, ISO 8601 string or epoch seconds from a client."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise validation_error(
                f"Invalid timestamp: {value!r}",
                details={"value": value},
            )
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise validation_error(f"Unsupported timestamp type: {type(value).__name__}")


def context_hash(context: dict[str, Any]) -> str:
    encoded = json.dumps(context, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def engagement_score(user_messages: int, progress: int, hours: float) -> float:
    """Activity per hour; both rates saturate the score at 1.0."""
    hours = max(hours, 1 / 3600)
    score = (
        ENGAGEMENT_MESSAGE_WEIGHT * (user_messages / hours)
        + ENGAGEMENT_PROGRESS_WEIGHT * ((progress / 100) / hours)
    )
    return round(min(1.0, score), 2)


def completion_likelihood(progress: int, engagement: float, transitions: int) -> float:
    score = (
        COMPLETION_PROGRESS_WEIGHT * (progress / 100)
        + COMPLETION_ENGAGEMENT_WEIGHT * engagement
        + COMPLETION_TRANSITION_WEIGHT * min(1.0, transitions / COMPLETION_TRANSITION_SATURATION)
    )
    return round(min(1.0, score), 2)


class ConversationManager:
    """
    Creates, loads, saves and retires conversation sessions.

    Loaded sessions are live objects shared through the TTL cache, so two
    callers loading the same id inside the cache window see the same
    instance.
    """

    def __init__(
        self,
        store: ConversationStore,
        settings: Optional[Settings] = None,
        cache: Optional[TTLCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
        telemetry: Optional[Any] = None,
    ):
        """
        Args:
            store: Persistence backend for session records
            settings: Application settings; loaded from the environment if omitted
            cache: Session cache; built from session_cache_ttl_seconds if omitted
            clock: Returns the current aware UTC datetime; defaults to utcnow
            telemetry: Optional TelemetryService for audit events and metrics
        """
        self.store = store
        self.settings = settings or get_settings()
        self.cache: TTLCache[str, ConversationSession] = cache or TTLCache(
            ttl_seconds=self.settings.session_cache_ttl_seconds
        )
        self._clock = clock or utcnow
        self.telemetry = telemetry
        self._active_sessions: dict[str, int] = {}

    # Internal helpers

    async def _guarded(self, operation: str, awaitable: Awaitable) -> Any:
        try:
            return await awaitable
        except StoreError as e:
            logger.error(
                "Session store operation failed",
                extra={"extra_data": {"operation": operation, "error": str(e)}},
            )
            raise PersistenceError(
                f"Session store failed during {operation}",
                details={"operation": operation, "error": str(e)},
            ) from e

    def _remember(self, session: ConversationSession) -> None:
        self.cache.set(session.session_id, session)
        if session.status in (SessionStatus.ACTIVE, SessionStatus.PAUSED):
            self._active_sessions[session.session_id] = session.user_id
        else:
            self._active_sessions.pop(session.session_id, None)

    def _forget(self, session_id: str) -> None:
        self.cache.delete(session_id)
        self._active_sessions.pop(session_id, None)

    def _audit(self, event_type: str, session: ConversationSession, action: str,
               details: Optional[dict[str, Any]] = None) -> None:
        if self.telemetry:
            self.telemetry.log_audit_event(
                event_type=event_type,
                user_id=session.user_id,
                resource_type="conversation_session",
                resource_id=session.session_id,
                action=action,
                details=details,
            )

    def _metric(self, name: str, value: float, tags: Optional[dict[str, str]] = None) -> None:
        if self.telemetry:
            self.telemetry.record_metric(name, value, tags)

    async def _enforce_active_cap(self, user_id: int) -> Optional[str]:
        """Abandon the user's oldest active session when the cap is reached."""
        limit = self.settings.max_active_sessions_per_user
        active = await self._guarded("count_active", self.store.count_active(user_id))
        if active < limit:
            return None

        oldest = await self._guarded("get_oldest_active", self.store.get_oldest_active(user_id))
        if oldest is None:
            return None

        session = self.cache.get(oldest.session_id) or ConversationSession.from_record(oldest)
        session.abandon(CAP_ABANDON_REASON)
        await self.save(session)
        self._audit("session_abandoned", session, "abandon", {"reason": CAP_ABANDON_REASON})
        logger.info(
            "Abandoned oldest active session to stay under the per-user cap",
            extra={"extra_data": {
                "user_id": user_id,
                "session_id": session.session_id,
                "active_sessions": active,
                "limit": limit,
            }},
        )
        return session.session_id

    # Creation and loading

    async def create(self, spec: SessionSpec) -> ConversationSession:
        """
        Create and persist a new session.

        Args:
            spec: Creation parameters

        Returns:
            The new active session

        Raises:
            SessionConflictError: If ``spec.session_id`` is already taken
            PersistenceError: If the store rejects the insert
        """
        if spec.session_id:
            existing = await self._guarded("resolve_id", self.store.resolve_id(spec.session_id))
            if existing is not None:
                raise SessionConflictError(spec.session_id)

        await self._enforce_active_cap(spec.user_id)

        now = self._clock()
        initial_state = WorkflowState(spec.initial_state)
        session = ConversationSession(
            session_id=spec.session_id or generate_session_id(),
            user_id=spec.user_id,
            context_type=spec.context_type or self.settings.default_context_type,
            title=spec.title or DEFAULT_TITLE,
            current_state=initial_state,
            progress=STATE_PROGRESS.get(initial_state) or 0,
            context=dict(spec.initial_context),
            created_at=now,
            last_updated=now,
        )

        session.storage_id = await self._guarded("insert", self.store.insert(session.to_record()))
        session.mark_saved()
        self._remember(session)

        self._audit("session_created", session, "create", {"context_type": session.context_type})
        logger.info(
            "Session created",
            extra={"extra_data": {
                "session_id": session.session_id,
                "user_id": session.user_id,
                "storage_id": session.storage_id,
            }},
        )
        return session

    async def load(self, session_id: str) -> Optional[ConversationSession]:
        """
        Load a session, consulting the cache first.

        Returns:
            The session, or None if no record exists
        """
        cached = self.cache.get(session_id)
        if cached is not None:
            self._metric("session_cache_hit", 1)
            return cached
        self._metric("session_cache_miss", 1)

        record_id = await self._guarded("resolve_id", self.store.resolve_id(session_id))
        if record_id is None:
            return None
        record = await self._guarded("get", self.store.get(record_id))
        if record is None:
            return None

        session = ConversationSession.from_record(record)
        self._remember(session)
        return session

    async def load_many(self, session_ids: list[str]) -> dict[str, ConversationSession]:
        """
        Load several sessions with at most one store round trip.

        Returns:
            Mapping of session id to session; unknown ids are omitted
        """
        requested = list(dict.fromkeys(session_ids))
        found: dict[str, ConversationSession] = {}
        misses = []
        for session_id in requested:
            cached = self.cache.get(session_id)
            if cached is not None:
                found[session_id] = cached
            else:
                misses.append(session_id)

        if misses:
            records = await self._guarded(
                "get_many", self.store.get_many_by_session_ids(misses)
            )
            for session_id, record in records.items():
                session = ConversationSession.from_record(record)
                self._remember(session)
                found[session_id] = session

        self._metric("session_cache_hit", len(requested) - len(misses))
        self._metric("session_cache_miss", len(misses))
        return {sid: found[sid] for sid in requested if sid in found}

    async def save(self, session: ConversationSession) -> bool:
        """
        Persist a session and refresh its cache entry.

        last_updated moves only when messages, title or step data changed
        since the previous save. When the write fails the cache entry is
        dropped, so the next load reads what the store actually holds.

        Returns:
            True on success, False if the backing record no longer exists

        Raises:
            PersistenceError: If the store fails
        """
        previous_updated = session.last_updated
        if session.content_changed():
            session.last_updated = self._clock()

        try:
            record = session.to_record()
            if session.storage_id is None:
                session.storage_id = await self._guarded("insert", self.store.insert(record))
            else:
                updated = await self._guarded(
                    "update", self.store.update(session.storage_id, record)
                )
                if not updated:
                    session.last_updated = previous_updated
                    self._forget(session.session_id)
                    logger.warning(
                        "Session record missing on save",
                        extra={"extra_data": {
                            "session_id": session.session_id,
                            "storage_id": session.storage_id,
                        }},
                    )
                    return False
        except PersistenceError:
            session.last_updated = previous_updated
            self._forget(session.session_id)
            raise

        session.mark_saved()
        self._remember(session)
        return True

    # Status changes

    async def _change_status(
        self,
        session_id: str,
        action: str,
        event_type: str,
        mutate: Callable[[ConversationSession], None],
        details: Optional[dict[str, Any]] = None,
    ) -> bool:
        session = await self.load(session_id)
        if session is None:
            return False
        mutate(session)
        if not await self.save(session):
            return False
        self._audit(event_type, session, action, details)
        logger.info(
            f"Session {action}",
            extra={"extra_data": {"session_id": session_id, "status": session.status.value}},
        )
        return True

    async def pause(self, session_id: str, reason: Optional[str] = None) -> bool:
        return await self._change_status(
            session_id, "pause", "session_paused",
            lambda s: s.pause(reason), {"reason": reason} if reason else None,
        )

    async def resume(self, session_id: str) -> bool:
        return await self._change_status(
            session_id, "resume", "session_resumed", lambda s: s.resume(),
        )

    async def complete(self, session_id: str, data: Optional[dict[str, Any]] = None) -> bool:
        return await self._change_status(
            session_id, "complete", "session_completed", lambda s: s.complete(data),
        )

    async def abandon(self, session_id: str, reason: Optional[str] = None) -> bool:
        return await self._change_status(
            session_id, "abandon", "session_abandoned",
            lambda s: s.abandon(reason), {"reason": reason} if reason else None,
        )

    async def delete(self, session_id: str) -> bool:
        """
        Delete a session record together with its cache entry and tracking.

        Returns:
            True if a record was deleted, False if none existed
        """
        cached = self.cache.get(session_id)
        record_id = cached.storage_id if cached is not None else None
        if record_id is None:
            record_id = await self._guarded("resolve_id", self.store.resolve_id(session_id))

        self._forget(session_id)
        if record_id is None:
            return False

        deleted = await self._guarded("delete", self.store.delete(record_id))
        if deleted and self.telemetry:
            self.telemetry.log_audit_event(
                event_type="session_deleted",
                user_id=cached.user_id if cached is not None else None,
                resource_type="conversation_session",
                resource_id=session_id,
                action="delete",
            )
        return deleted

    # Export, import and sync

    async def export_session(self, session_id: str) -> dict[str, Any]:
        """
        Export a session as a flat, versioned document.

        Raises:
            NotFoundError: If the session does not exist
        """
        session = await self.load(session_id)
        if session is None:
            raise session_not_found(session_id)
        return session.to_export().model_dump(mode="json")

    async def import_session(
        self,
        data: Any,
        preserve_session_id: bool = True,
        target_user_id: Optional[int] = None,
        overwrite: bool = False,
    ) -> ConversationSession:
        """
        Import a previously exported session.

        Args:
            data: Export document as produced by export_session
            preserve_session_id: Keep the exported id instead of generating one
            target_user_id: Assign the session to another user
            overwrite: Replace an existing session that has the same id

        Returns:
            The imported session

        Raises:
            InvalidImportError: If the document is malformed or of an unsupported version
            SessionConflictError: If the id is taken and overwrite is False
            PersistenceError: If the store fails
        """
        if not isinstance(data, dict):
            raise InvalidImportError("Import payload must be an object")

        version = data.get("export_version")
        if version != EXPORT_VERSION:
            raise InvalidImportError(
                f"Unsupported export version: {version!r}",
                errors=[f"export_version must be {EXPORT_VERSION!r}"],
            )

        try:
            document = ExportDocument.model_validate(data)
        except ValidationError as e:
            raise InvalidImportError(
                "Import payload failed validation",
                errors=[
                    f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                ],
            ) from e

        session_id = document.session_id if preserve_session_id else generate_session_id()
        user_id = target_user_id if target_user_id is not None else document.user_id

        existing_id = await self._guarded("resolve_id", self.store.resolve_id(session_id))
        if existing_id is not None:
            if not overwrite:
                raise SessionConflictError(session_id)
            await self._guarded("delete", self.store.delete(existing_id))
            self._forget(session_id)

        session = ConversationSession.from_export(document, session_id=session_id, user_id=user_id)
        if session.status == SessionStatus.ACTIVE:
            await self._enforce_active_cap(user_id)

        session.storage_id = await self._guarded("insert", self.store.insert(session.to_record()))
        session.mark_saved()
        self._remember(session)

        import_info = {
            "original_session_id": document.session_id,
            "original_user_id": document.user_id,
            "exported_at": document.exported_at.isoformat(),
            "overwrote_existing": existing_id is not None,
        }
        self._audit("session_imported", session, "import", import_info)
        logger.info(
            "Session imported",
            extra={"extra_data": {"session_id": session_id, **import_info}},
        )
        return session

    async def sync_session(self, session_id: str, client_state: dict[str, Any]) -> dict[str, Any]:
        """
        Compare a client's view of a session with the server's.

        ``needs_update`` is set when the server changed after the client's
        ``last_updated``; ``conflict_detected`` when the client reports a
        ``last_modified`` newer than the server's last update.

        Raises:
            NotFoundError: If the session does not exist
            AppException: If a client timestamp cannot be parsed
        """
        session = await self.load(session_id)
        if session is None:
            raise session_not_found(session_id)

        server_updated = session.last_updated
        client_updated = _coerce_timestamp(client_state.get("last_updated"))
        client_modified = _coerce_timestamp(client_state.get("last_modified"))

        needs_update = client_updated is None or server_updated > client_updated
        response: dict[str, Any] = {
            "needs_update": needs_update,
            "server_state": {
                "current_state": session.current_state.value,
                "status": session.status.value,
                "progress": session.progress,
                "last_updated": server_updated.isoformat(),
                "message_count": len(session.messages),
                "context_hash": context_hash(session.context),
            },
            "conflict_detected": False,
        }

        if needs_update:
            response["updated_data"] = {
                "current_state": session.current_state.value,
                "progress": session.progress,
                "context": session.context,
                "recent_messages": [
                    m.model_dump(mode="json")
                    for m in session.get_recent_messages(RECENT_MESSAGES_ON_SYNC)
                ],
                "last_updated": server_updated.isoformat(),
            }

        if client_modified is not None and client_modified > server_updated:
            response["conflict_detected"] = True
            response["conflict_resolution_options"] = dict(CONFLICT_RESOLUTION_OPTIONS)

        return response

    # Analytics

    async def get_session_analytics(self, session_id: str) -> dict[str, Any]:
        """
        Usage statistics for a session plus two derived scores.

        ``engagement_score`` weighs user messages per hour and progress per
        hour; ``completion_likelihood`` weighs progress, engagement and the
        number of transitions. Both are clamped to [0, 1] and rounded to two
        decimals.

        Raises:
            NotFoundError: If the session does not exist
        """
        session = await self.load(session_id)
        if session is None:
            raise session_not_found(session_id)

        stats = session.get_statistics()
        hours = stats["duration_seconds"] / 3600
        assistant_messages = stats["messages_by_role"][MessageRole.ASSISTANT.value]

        engagement = engagement_score(
            stats["messages_by_role"][MessageRole.USER.value], session.progress, hours
        )
        stats.update({
            "average_response_seconds": round(
                stats["duration_seconds"] / max(1, assistant_messages), 2
            ),
            "engagement_score": engagement,
            "completion_likelihood": completion_likelihood(
                session.progress, engagement, stats["transitions"]
            ),
        })
        return stats

    # Listing

    async def list_user_sessions(
        self, user_id: int, limit: int = 20, offset: int = 0
    ) -> list[dict[str, Any]]:
        """List summaries of a user's sessions, most recently updated first."""
        records = await self._guarded(
            "list_by_user", self.store.list_by_user(user_id, limit=limit, offset=offset)
        )
        return [self._summarize(record) for record in records]

    @staticmethod
    def _summarize(record: ConversationRecord) -> dict[str, Any]:
        step = json.loads(record.step_data or "{}")
        return {
            "session_id": record.session_id,
            "title": record.title,
            "status": record.state.value,
            "context_type": record.context,
            "current_state": step.get("current_state", WorkflowState.WELCOME.value),
            "progress": step.get("progress", 0),
            "created_at": record.created_at.isoformat(),
            "last_updated": record.updated_at.isoformat(),
            "total_tokens": record.total_tokens,
            "total_cost": str(record.total_cost),
        }

    def active_session_ids(self) -> list[str]:
        """Ids of open sessions this process has created or loaded."""
        return list(self._active_sessions)

    # Cleanup

    async def cleanup_expired(self) -> CleanupReport:
        """
        Abandon sessions that have been idle past the configured timeout.

        Idle paused sessions are reported but left alone. Failures are
        logged and recorded on the report rather than raised.
        """
        report = CleanupReport()
        now = self._clock()
        before = now - timedelta(seconds=self.settings.session_idle_timeout_seconds)

        try:
            idle_records = await self.store.find_idle(before)
            report.examined = len(idle_records)
            to_abandon = [r for r in idle_records if r.state == SessionStatus.ACTIVE]
            report.skipped_paused = report.examined - len(to_abandon)

            if to_abandon:
                report.abandoned = await self.store.batch_abandon(
                    [r.id for r in to_abandon], now
                )
            for record in to_abandon:
                self._forget(record.session_id)
        except Exception as e:
            report.errors.append(str(e))
            logger.error(
                "Idle session cleanup failed",
                extra={"extra_data": {"error": str(e), "idle_before": before.isoformat()}},
                exc_info=True,
            )

        report.cache_purged = self.cache.purge_expired()

        self._metric("sessions_abandoned_idle", report.abandoned)
        self._metric("session_cache_purged", report.cache_purged)
        logger.info(
            "Idle session cleanup finished",
            extra={"extra_data": {
                "examined": report.examined,
                "abandoned": report.abandoned,
                "skipped_paused": report.skipped_paused,
                "cache_purged": report.cache_purged,
                "errors": len(report.errors),
            }},
        )
        return report

    async def run_cleanup_loop(self, interval: Optional[float] = None) -> None:
        """Run cleanup_expired every ``interval`` seconds until cancelled."""
        interval = interval if interval is not None else self.settings.cleanup_interval_seconds
        logger.info("Cleanup loop started", extra={"extra_data": {"interval_seconds": interval}})
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    await self.cleanup_expired()
                except Exception as e:
                    logger.error(
                        "Cleanup iteration failed",
                        extra={"extra_data": {"error": str(e)}},
                        exc_info=True,
                    )
        except asyncio.CancelledError:
            logger.info("Cleanup loop stopped")
            raise
