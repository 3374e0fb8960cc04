"""
Formation session persistence.

Keyed storage of formation sessions with TTL expiry, encryption of sensitive
fields at rest, backup-before-overwrite, restore from backup and a cleanup
sweep for sessions past the retention window.
"""

import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from formation_engine.core.config import Settings
from formation_engine.core.exceptions import (
    BackupCorruptedError,
    BackupNotFoundError,
    SessionExpiredError,
    SessionNotFoundError,
    SessionStorageError,
    UnencryptedRecordError,
)
from formation_engine.domain.schemas import (
    TERMINAL_STATUSES,
    FormationSession,
    SessionStatus,
    next_timestamp,
    utcnow,
)
from formation_engine.utils.encryption import checksum, is_envelope, seal, unseal

from .session_backends import (
    FileSessionBackend,
    MemorySessionBackend,
    RedisSessionBackend,
    SessionBackend,
)

logger = structlog.get_logger(__name__)

RECORD_VERSION = 1
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(number: int) -> str:
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def generate_session_id() -> str:
    return f"session-{_base36(int(time.time() * 1000))}-{uuid.uuid4().hex}"


def clear_sensitive_data(session: FormationSession) -> FormationSession:
    """Drop tax identifiers and payment instrument data from the session in place."""
    for shareholder in session.shareholders:
        shareholder.tax_id = None
    if session.payment is not None:
        session.payment.instrument = None
    return session


class SessionStore:
    """
    Store for FormationSession aggregates over a pluggable backend.

    Callers serialize access per session id; the store does not arbitrate
    concurrent writers.
    """

    def __init__(
        self,
        backend: SessionBackend,
        settings: Settings,
        session_ttl: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.backend = backend
        self.settings = settings
        self.session_ttl = session_ttl or timedelta(hours=settings.session_ttl_hours)
        self.clock = clock
        self._secret = settings.encryption_key

    # ------------------------------------------------------------------ records

    def serialize(self, session: FormationSession) -> Dict[str, Any]:
        """Session -> persisted JSON document with sensitive fields sealed."""
        document = session.model_dump(mode="json")
        for raw, shareholder in zip(document["shareholders"], session.shareholders):
            raw["tax_id"] = (
                seal(shareholder.tax_id.get_secret_value(), self._secret)
                if shareholder.tax_id is not None
                else None
            )
        if session.payment is not None:
            instrument = session.payment.instrument
            document["payment"]["instrument"] = (
                seal(instrument.get_secret_value(), self._secret) if instrument is not None else None
            )
        document["record_version"] = RECORD_VERSION
        return document

    def _open_sensitive(self, session_id: str, field: str, value: Any) -> Any:
        if value is None:
            return None
        if not is_envelope(value):
            logger.error("unencrypted_sensitive_field", session_id=session_id, field=field)
            raise UnencryptedRecordError(
                f"Session {session_id} holds {field} without encryption",
                details={"session_id": session_id, "field": field},
            )
        try:
            return unseal(value, self._secret)
        except ValueError as e:
            raise SessionStorageError(
                f"Could not decrypt {field} for session {session_id}",
                details={"session_id": session_id, "field": field},
                retryable=False,
            ) from e

    def deserialize(self, document: Dict[str, Any]) -> FormationSession:
        """Persisted JSON document -> session, rejecting unencrypted sensitive fields."""
        session_id = document.get("session_id", "<unknown>")
        document = dict(document)
        document.pop("record_version", None)
        document["shareholders"] = [
            {**raw, "tax_id": self._open_sensitive(session_id, "shareholders.tax_id", raw.get("tax_id"))}
            for raw in document.get("shareholders") or []
        ]
        if document.get("payment"):
            payment = dict(document["payment"])
            payment["instrument"] = self._open_sensitive(
                session_id, "payment.instrument", payment.get("instrument")
            )
            document["payment"] = payment
        try:
            return FormationSession.model_validate(document)
        except PydanticValidationError as e:
            raise SessionStorageError(
                f"Stored session {session_id} is invalid",
                details={
                    "session_id": session_id,
                    "invalid_fields": [".".join(str(p) for p in err["loc"]) for err in e.errors()],
                },
                retryable=False,
                suggestion="Restore the session from its latest backup.",
            ) from e

    # --------------------------------------------------------------- lifecycle

    async def create(
        self,
        owner_id: Optional[str] = None,
        ttl: Optional[timedelta] = None,
    ) -> FormationSession:
        now = self.clock()
        session = FormationSession(
            session_id=generate_session_id(),
            owner_id=owner_id,
            created_at=now,
            updated_at=now,
            expires_at=now + (ttl or self.session_ttl),
        )
        await self.backend.write(session.session_id, self.serialize(session))
        logger.info(
            "session_created",
            session_id=session.session_id,
            owner_id=owner_id,
            expires_at=session.expires_at.isoformat(),
        )
        return session

    async def get(self, session_id: str) -> FormationSession:
        """
        Raises:
            SessionNotFoundError: no record for session_id
            SessionExpiredError: record exists but expires_at has passed
        """
        document = await self.backend.read(session_id)
        if document is None:
            raise SessionNotFoundError(session_id)
        session = self.deserialize(document)
        if session.is_expired(self.clock()):
            logger.info("session_expired_on_read", session_id=session_id)
            raise SessionExpiredError(session_id, session.expires_at)
        return session

    async def save(self, session: FormationSession) -> FormationSession:
        """
        Persist the full aggregate, refreshing updated_at.

        The current primary document is copied to a backup before it is replaced.
        """
        if session.is_expired(self.clock()):
            raise SessionExpiredError(session.session_id, session.expires_at)

        session.updated_at = next_timestamp(session.updated_at)
        document = self.serialize(session)

        previous = await self.backend.read(session.session_id)
        if previous is not None:
            await self._write_backup(session.session_id, previous)
        await self.backend.write(session.session_id, document)
        await self._prune_backups(session.session_id)

        logger.debug(
            "session_saved",
            session_id=session.session_id,
            status=session.status.value,
            current_step=session.current_step.value,
        )
        return session

    async def delete(self, session_id: str) -> bool:
        deleted = await self.backend.delete(session_id)
        for backup_id in await self.backend.list_backup_ids(session_id):
            await self.backend.delete_backup(backup_id)
        if deleted:
            logger.info("session_deleted", session_id=session_id)
        return deleted

    async def _load_all(self) -> List[FormationSession]:
        sessions = []
        for session_id in await self.backend.list_ids():
            document = await self.backend.read(session_id)
            if document is None:
                continue
            try:
                sessions.append(self.deserialize(document))
            except SessionStorageError as e:
                logger.warning("session_unreadable", session_id=session_id, error=e.message)
        return sessions

    def _effective_status(self, session: FormationSession, now: datetime) -> SessionStatus:
        if session.status not in TERMINAL_STATUSES and session.is_expired(now):
            return SessionStatus.EXPIRED
        return session.status

    async def list_sessions(
        self,
        status: Optional[SessionStatus] = None,
        limit: Optional[int] = None,
        owner_id: Optional[str] = None,
    ) -> List[FormationSession]:
        """
        Sessions ordered most-recently-updated first.

        Sessions past expires_at are reported with status ``expired``.
        """
        now = self.clock()
        sessions = []
        for session in await self._load_all():
            effective = self._effective_status(session, now)
            if status is not None and effective is not SessionStatus(status):
                continue
            if owner_id is not None and session.owner_id != owner_id:
                continue
            if effective is not session.status:
                session = session.model_copy(update={"status": effective})
            sessions.append(session)

        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions[:limit] if limit is not None else sessions

    async def latest_resumable(self, owner_id: Optional[str] = None) -> Optional[FormationSession]:
        """Most recently updated session that is neither terminal nor expired."""
        now = self.clock()
        for session in await self.list_sessions(owner_id=owner_id):
            if self._effective_status(session, now) not in TERMINAL_STATUSES:
                return session
        return None

    async def cleanup_expired(self) -> int:
        """
        Delete sessions that have been terminal (or expired) for longer than the
        retention window, and backups older than the backup retention. Idempotent.

        Returns:
            Number of sessions deleted
        """
        now = self.clock()
        cutoff = now - timedelta(days=self.settings.cleanup_after_days)
        deleted = 0

        for session in await self._load_all():
            if session.status in TERMINAL_STATUSES:
                ended_at = session.updated_at
            elif session.is_expired(now):
                ended_at = session.expires_at
            else:
                continue
            if ended_at < cutoff and await self.delete(session.session_id):
                deleted += 1

        backup_cutoff = now - timedelta(days=self.settings.backup_retention_days)
        pruned = 0
        for backup_id in await self.backend.list_backup_ids():
            backup = await self.backend.read_backup(backup_id)
            if backup is None or _parse_time(backup.get("created_at")) < backup_cutoff:
                await self.backend.delete_backup(backup_id)
                pruned += 1

        logger.info("session_cleanup_complete", sessions_deleted=deleted, backups_pruned=pruned)
        return deleted

    # ----------------------------------------------------------------- backups

    async def _write_backup(self, session_id: str, record: Dict[str, Any]) -> str:
        created_at = self.clock()
        backup_id = f"{session_id}--{created_at.strftime('%Y%m%dT%H%M%S%f')}-{uuid.uuid4().hex[:8]}"
        await self.backend.write_backup(
            session_id,
            backup_id,
            {
                "backup_id": backup_id,
                "session_id": session_id,
                "created_at": created_at.isoformat(),
                "checksum": checksum(record),
                "record": record,
            },
        )
        return backup_id

    async def _prune_backups(self, session_id: str) -> None:
        backup_ids = await self.list_backups(session_id)
        for backup_id in backup_ids[self.settings.max_backups_per_session:]:
            await self.backend.delete_backup(backup_id)

    async def list_backups(self, session_id: str) -> List[str]:
        """Backup ids for a session, newest first."""
        return sorted(await self.backend.list_backup_ids(session_id), reverse=True)

    async def read_backup(self, backup_id: str) -> FormationSession:
        """
        Verified session held by a backup, without restoring it.

        Raises:
            BackupNotFoundError: no such backup
            BackupCorruptedError: checksum mismatch or unreadable backup
        """
        backup = await self.backend.read_backup(backup_id)
        if backup is None:
            raise BackupNotFoundError(
                f"Backup {backup_id} not found", details={"backup_id": backup_id}
            )

        record = backup.get("record")
        if not isinstance(record, dict) or checksum(record) != backup.get("checksum"):
            logger.error("backup_checksum_mismatch", backup_id=backup_id)
            raise BackupCorruptedError(
                f"Backup {backup_id} failed integrity verification",
                details={"backup_id": backup_id},
            )
        return self.deserialize(record)

    async def restore_from_backup(self, backup_id: str) -> FormationSession:
        """
        Recover a session from a backup and make it the primary record again.

        Raises:
            BackupNotFoundError: no such backup
            BackupCorruptedError: checksum mismatch or unreadable backup
        """
        session = await self.read_backup(backup_id)
        await self.backend.write(session.session_id, self.serialize(session))
        logger.info("session_restored_from_backup", session_id=session.session_id, backup_id=backup_id)
        return session


def _parse_time(value: Optional[str]) -> datetime:
    if not value:
        return datetime.min.replace(tzinfo=utcnow().tzinfo)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def build_session_backend(settings: Settings) -> SessionBackend:
    if settings.storage_backend == "file":
        return FileSessionBackend(settings.storage_dir)
    if settings.storage_backend == "redis":
        return RedisSessionBackend(settings.redis_url, prefix=settings.redis_key_prefix)
    return MemorySessionBackend()


def build_session_store(settings: Settings, backend: Optional[SessionBackend] = None) -> SessionStore:
    """Store wired to the configured backend; file-backed sessions get the long local TTL."""
    backend = backend or build_session_backend(settings)
    ttl = None
    if isinstance(backend, FileSessionBackend):
        ttl = timedelta(days=settings.local_session_ttl_days)
    return SessionStore(backend, settings, session_ttl=ttl)
