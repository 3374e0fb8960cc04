"""
Storage backends for formation session documents.

Backends move plain JSON documents; encryption, expiry and backup policy live
in SessionStore. Every backend failure surfaces as SessionStorageError.
"""

import asyncio
import copy
import json
import os
import random
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from formation_engine.core.exceptions import SessionStorageError

logger = structlog.get_logger(__name__)

Document = Dict[str, Any]


class SessionBackend(ABC):
    """Keyed document storage for sessions and their backups."""

    name = "abstract"

    @abstractmethod
    async def read(self, session_id: str) -> Optional[Document]: ...

    @abstractmethod
    async def write(self, session_id: str, document: Document) -> None: ...

    @abstractmethod
    async def delete(self, session_id: str) -> bool: ...

    @abstractmethod
    async def list_ids(self) -> List[str]: ...

    @abstractmethod
    async def write_backup(self, session_id: str, backup_id: str, document: Document) -> None: ...

    @abstractmethod
    async def read_backup(self, backup_id: str) -> Optional[Document]: ...

    @abstractmethod
    async def list_backup_ids(self, session_id: Optional[str] = None) -> List[str]:
        """Backup ids, for one session or for all sessions."""

    @abstractmethod
    async def delete_backup(self, backup_id: str) -> bool: ...

    async def close(self) -> None:
        return None


class MemorySessionBackend(SessionBackend):
    """In-process storage for agent-driven sessions and tests."""

    name = "memory"

    def __init__(self):
        self._sessions: Dict[str, Document] = {}
        self._backups: Dict[str, Document] = {}
        self._backup_owner: Dict[str, str] = {}

    async def read(self, session_id: str) -> Optional[Document]:
        document = self._sessions.get(session_id)
        return copy.deepcopy(document) if document is not None else None

    async def write(self, session_id: str, document: Document) -> None:
        self._sessions[session_id] = copy.deepcopy(document)

    async def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    async def list_ids(self) -> List[str]:
        return list(self._sessions)

    async def write_backup(self, session_id: str, backup_id: str, document: Document) -> None:
        self._backups[backup_id] = copy.deepcopy(document)
        self._backup_owner[backup_id] = session_id

    async def read_backup(self, backup_id: str) -> Optional[Document]:
        document = self._backups.get(backup_id)
        return copy.deepcopy(document) if document is not None else None

    async def list_backup_ids(self, session_id: Optional[str] = None) -> List[str]:
        return [
            backup_id
            for backup_id, owner in self._backup_owner.items()
            if session_id is None or owner == session_id
        ]

    async def delete_backup(self, backup_id: str) -> bool:
        self._backup_owner.pop(backup_id, None)
        return self._backups.pop(backup_id, None) is not None


class FileSessionBackend(SessionBackend):
    """
    One JSON file per session under ``root``, backups under ``root/backups``.

    Writes go to a temporary file that is fsynced and then renamed over the
    target, so a crash leaves either the old or the new document.
    """

    name = "file"

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()
        self.backup_dir = self.root / "backups"

    def _session_path(self, session_id: str) -> Path:
        return self.root / f"{session_id}.json"

    def _backup_path(self, backup_id: str) -> Path:
        return self.backup_dir / f"{backup_id}.json"

    @staticmethod
    def _read_file(path: Path) -> Optional[Document]:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                content = fh.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise SessionStorageError(f"Failed to read {path.name}: {exc}") from exc
        try:
            document = json.loads(content)
        except json.JSONDecodeError as exc:
            raise SessionStorageError(
                f"Stored document {path.name} is corrupted",
                details={"path": str(path)},
                retryable=False,
                suggestion="Restore the session from its latest backup.",
            ) from exc
        if not isinstance(document, dict):
            raise SessionStorageError(f"Stored document {path.name} is not an object", retryable=False)
        return document

    @staticmethod
    def _write_file(path: Path, document: Document) -> None:
        payload = json.dumps(document, ensure_ascii=False, separators=(",", ":"))
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(f"{path.name}.tmp.{os.getpid()}.{random.randint(0, 1_000_000)}")
            try:
                with open(tmp_path, "w", encoding="utf-8") as fh:
                    fh.write(payload)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_path, path)
            finally:
                if tmp_path.exists():
                    tmp_path.unlink()
        except OSError as exc:
            raise SessionStorageError(f"Failed to write {path.name}: {exc}") from exc

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise SessionStorageError(f"Failed to delete {path.name}: {exc}") from exc

    async def read(self, session_id: str) -> Optional[Document]:
        return await asyncio.to_thread(self._read_file, self._session_path(session_id))

    async def write(self, session_id: str, document: Document) -> None:
        await asyncio.to_thread(self._write_file, self._session_path(session_id), document)

    async def delete(self, session_id: str) -> bool:
        return await asyncio.to_thread(self._unlink, self._session_path(session_id))

    async def list_ids(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(p.stem for p in self.root.glob("*.json"))

    async def write_backup(self, session_id: str, backup_id: str, document: Document) -> None:
        await asyncio.to_thread(self._write_file, self._backup_path(backup_id), document)

    async def read_backup(self, backup_id: str) -> Optional[Document]:
        return await asyncio.to_thread(self._read_file, self._backup_path(backup_id))

    async def list_backup_ids(self, session_id: Optional[str] = None) -> List[str]:
        if not self.backup_dir.exists():
            return []
        pattern = f"{session_id}--*.json" if session_id else "*.json"
        return sorted(p.stem for p in self.backup_dir.glob(pattern))

    async def delete_backup(self, backup_id: str) -> bool:
        return await asyncio.to_thread(self._unlink, self._backup_path(backup_id))


class RedisSessionBackend(SessionBackend):
    """
    Redis storage: one JSON string per session plus sorted-set indexes.

    Keys:
        {prefix}:session:{id}           session document
        {prefix}:sessions               index of session ids
        {prefix}:backup:{backup_id}     backup document
        {prefix}:backups:{session_id}   index of that session's backups
    """

    name = "redis"

    def __init__(self, redis_url: Optional[str] = None, prefix: str = "formation", client: Any = None):
        self.redis_url = redis_url
        self.prefix = prefix
        self.redis: Optional[Any] = client
        self.pool: Optional[Any] = None

    async def connect(self):
        if self.redis is not None:
            return
        try:
            self.pool = aioredis.ConnectionPool.from_url(
                self.redis_url,
                max_connections=10,
                encoding="utf-8",
                decode_responses=True,
                socket_keepalive=True,
            )
            self.redis = aioredis.Redis(connection_pool=self.pool)
            await self.redis.ping()
            logger.info("redis_connected", url=self.redis_url, pool_size=10)
        except RedisError as e:
            logger.error("redis_connection_failed", error=str(e))
            self.redis = None
            raise SessionStorageError(f"Could not connect to Redis: {e}") from e

    async def close(self):
        if self.redis is not None and self.pool is not None:
            await self.redis.aclose()
            await self.pool.disconnect()
            logger.info("redis_disconnected")
        self.redis = None
        self.pool = None

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix,) + parts)

    async def _client(self):
        if self.redis is None:
            await self.connect()
        return self.redis

    async def _call(self, operation: str, key: str, *args, **kwargs):
        client = await self._client()
        try:
            return await getattr(client, operation)(*args, **kwargs)
        except RedisError as e:
            logger.error(f"redis_{operation}_error", key=key, error=str(e))
            raise SessionStorageError(f"Redis {operation} failed for {key}: {e}") from e

    @staticmethod
    def _decode(key: str, value: Optional[str]) -> Optional[Document]:
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise SessionStorageError(
                f"Stored document {key} is corrupted",
                retryable=False,
                suggestion="Restore the session from its latest backup.",
            ) from e

    async def read(self, session_id: str) -> Optional[Document]:
        key = self._key("session", session_id)
        return self._decode(key, await self._call("get", key, key))

    async def write(self, session_id: str, document: Document) -> None:
        key = self._key("session", session_id)
        await self._call("set", key, key, json.dumps(document))
        updated = document.get("updated_at")
        score = _score(updated)
        await self._call("zadd", key, self._key("sessions"), {session_id: score})

    async def delete(self, session_id: str) -> bool:
        key = self._key("session", session_id)
        removed = await self._call("delete", key, key)
        await self._call("zrem", key, self._key("sessions"), session_id)
        return bool(removed)

    async def list_ids(self) -> List[str]:
        key = self._key("sessions")
        return list(await self._call("zrange", key, key, 0, -1))

    async def write_backup(self, session_id: str, backup_id: str, document: Document) -> None:
        key = self._key("backup", backup_id)
        await self._call("set", key, key, json.dumps(document))
        await self._call(
            "zadd",
            key,
            self._key("backups", session_id),
            {backup_id: _score(document.get("created_at"))},
        )

    async def read_backup(self, backup_id: str) -> Optional[Document]:
        key = self._key("backup", backup_id)
        return self._decode(key, await self._call("get", key, key))

    async def list_backup_ids(self, session_id: Optional[str] = None) -> List[str]:
        if session_id is not None:
            key = self._key("backups", session_id)
            return list(await self._call("zrange", key, key, 0, -1))
        pattern = self._key("backup", "*")
        keys = await self._call("keys", pattern, pattern)
        offset = len(self._key("backup", ""))
        return sorted(k[offset:] for k in keys)

    async def delete_backup(self, backup_id: str) -> bool:
        key = self._key("backup", backup_id)
        removed = await self._call("delete", key, key)
        session_id = backup_id.split("--", 1)[0]
        await self._call("zrem", key, self._key("backups", session_id), backup_id)
        return bool(removed)


def _score(timestamp: Optional[str]) -> float:
    if not timestamp:
        return 0.0
    return datetime.fromisoformat(timestamp.replace("Z", "+00:00")).timestamp()
