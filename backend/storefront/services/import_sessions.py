"""Import session store.

A session stages one parse+validate outcome (and the raw ZIP, if any) until the
merchant commits it. The store owns the lifecycle rules; backends only hold
bytes and provide an atomic status compare-and-set:

    staged ──commit──▶ committed   (terminal)
       └────ttl──────▶ expired     (terminal, ZIP released)
"""
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

from redis import asyncio as aioredis

from storefront.core.config import Settings, settings
from storefront.core.deps import CurrentUser
from storefront.schemas.imports import (
    CommitResult,
    ImportSession,
    SessionStatus,
    ValidationResult,
)
from storefront.services.import_errors import (
    SessionAlreadyCommittedError,
    SessionExpiredError,
    SessionForbiddenError,
    SessionNotFoundError,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionBackend(Protocol):
    async def save(self, session: ImportSession, retention_seconds: int) -> None: ...

    async def load(self, session_id: str) -> ImportSession | None: ...

    async def compare_and_set_status(
        self, session_id: str, expected: SessionStatus | None, new: SessionStatus
    ) -> bool: ...

    async def save_result(self, session_id: str, result: CommitResult) -> None: ...

    async def drop_zip(self, session_id: str) -> None: ...

    async def expire_in(self, session_id: str, seconds: int) -> None: ...

    async def delete(self, session_id: str) -> bool: ...


# ─── In-process backend ───

@dataclass
class _Record:
    session: ImportSession
    purge_at: float


class MemorySessionBackend:
    """Single-instance backend. Entries are purged lazily on access."""

    def __init__(self, clock=time.monotonic):
        self._records: dict[str, _Record] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _purge_locked(self) -> None:
        now = self._clock()
        for session_id in [k for k, r in self._records.items() if r.purge_at <= now]:
            del self._records[session_id]

    async def save(self, session: ImportSession, retention_seconds: int) -> None:
        with self._lock:
            self._purge_locked()
            self._records[session.id] = _Record(session.model_copy(), self._clock() + retention_seconds)

    async def load(self, session_id: str) -> ImportSession | None:
        with self._lock:
            self._purge_locked()
            record = self._records.get(session_id)
            return record.session.model_copy() if record else None

    async def compare_and_set_status(
        self, session_id: str, expected: SessionStatus | None, new: SessionStatus
    ) -> bool:
        with self._lock:
            self._purge_locked()
            record = self._records.get(session_id)
            if record is None:
                return False
            if expected is not None and record.session.status is not expected:
                return False
            record.session.status = new
            return True

    async def save_result(self, session_id: str, result: CommitResult) -> None:
        with self._lock:
            record = self._records.get(session_id)
            if record is not None:
                record.session.commit_result = result

    async def drop_zip(self, session_id: str) -> None:
        with self._lock:
            record = self._records.get(session_id)
            if record is not None:
                record.session.zip_buffer = None

    async def expire_in(self, session_id: str, seconds: int) -> None:
        with self._lock:
            record = self._records.get(session_id)
            if record is not None:
                record.purge_at = min(record.purge_at, self._clock() + seconds)

    async def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._records.pop(session_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            self._purge_locked()
            return len(self._records)


# ─── Redis backend ───

# KEYS[1] status key; ARGV[1] expected ('' = any); ARGV[2] new status.
_CAS_STATUS = """
local current = redis.call('GET', KEYS[1])
if not current then
  return -1
end
if ARGV[1] ~= '' and current ~= ARGV[1] then
  return 0
end
redis.call('SET', KEYS[1], ARGV[2], 'KEEPTTL')
return 1
"""


class RedisSessionBackend:
    """Multi-instance backend on redis.asyncio.

    Each session is split over four keys so the ZIP can carry its own TTL and
    the status can be swapped atomically by a Lua script.
    """

    _PARTS = ("meta", "status", "zip", "result")

    def __init__(self, client: aioredis.Redis, key_prefix: str = settings.IMPORT_SESSION_KEY_PREFIX):
        self._client = client
        self._prefix = key_prefix
        self._cas = client.register_script(_CAS_STATUS)

    @classmethod
    def from_url(cls, url: str, key_prefix: str = settings.IMPORT_SESSION_KEY_PREFIX) -> "RedisSessionBackend":
        return cls(aioredis.Redis.from_url(url), key_prefix)

    def _key(self, session_id: str, part: str) -> str:
        return f"{self._prefix}{session_id}:{part}"

    def _keys(self, session_id: str) -> list[str]:
        return [self._key(session_id, part) for part in self._PARTS]

    async def save(self, session: ImportSession, retention_seconds: int) -> None:
        meta = session.model_dump_json(exclude={"status", "commit_result"})
        zip_ttl = max(int((session.expires_at - _utcnow()).total_seconds()), 1)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.set(self._key(session.id, "meta"), meta, ex=retention_seconds)
            pipe.set(self._key(session.id, "status"), session.status.value, ex=retention_seconds)
            if session.zip_buffer is not None:
                pipe.set(self._key(session.id, "zip"), session.zip_buffer, ex=zip_ttl)
            await pipe.execute()

    async def load(self, session_id: str) -> ImportSession | None:
        meta, status, zip_buffer, result = await self._client.mget(self._keys(session_id))
        if meta is None or status is None:
            return None
        session = ImportSession.model_validate_json(meta)
        session.status = SessionStatus(status.decode())
        session.zip_buffer = zip_buffer
        if result is not None:
            session.commit_result = CommitResult.model_validate_json(result)
        return session

    async def compare_and_set_status(
        self, session_id: str, expected: SessionStatus | None, new: SessionStatus
    ) -> bool:
        outcome = await self._cas(
            keys=[self._key(session_id, "status")],
            args=[expected.value if expected else "", new.value],
        )
        return int(outcome) == 1

    async def save_result(self, session_id: str, result: CommitResult) -> None:
        ttl = await self._client.ttl(self._key(session_id, "meta"))
        if ttl and ttl > 0:
            await self._client.set(self._key(session_id, "result"), result.model_dump_json(), ex=ttl)

    async def drop_zip(self, session_id: str) -> None:
        await self._client.delete(self._key(session_id, "zip"))

    async def expire_in(self, session_id: str, seconds: int) -> None:
        async with self._client.pipeline(transaction=True) as pipe:
            for key in self._keys(session_id):
                pipe.expire(key, seconds)
            await pipe.execute()

    async def delete(self, session_id: str) -> bool:
        return bool(await self._client.delete(*self._keys(session_id)))

    async def close(self) -> None:
        await self._client.aclose()


# ─── Store ───

class ImportSessionStore:
    def __init__(self, backend: SessionBackend, ttl_seconds: int, grace_seconds: int = 60):
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.grace_seconds = grace_seconds

    async def create(
        self,
        merchant_id: str,
        owner_user_id: str,
        validation_result: ValidationResult,
        zip_buffer: bytes | None = None,
    ) -> ImportSession:
        now = _utcnow()
        session = ImportSession(
            id=str(uuid.uuid4()),
            merchant_id=merchant_id,
            owner_user_id=owner_user_id,
            status=SessionStatus.staged,
            created_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
            validation_result=validation_result,
            zip_buffer=zip_buffer,
        )
        # Keep expired sessions around briefly so callers get "expired", not "not found".
        await self.backend.save(session, self.ttl_seconds + self.grace_seconds)
        logger.info(
            "Import session %s created for merchant %s (%d rows, zip=%s)",
            session.id, merchant_id, validation_result.total_rows, zip_buffer is not None,
        )
        return session

    async def get(self, session_id: str) -> ImportSession | None:
        session = await self.backend.load(session_id)
        if session is None:
            return None
        if session.status is SessionStatus.staged and _utcnow() >= session.expires_at:
            if await self.backend.compare_and_set_status(session_id, SessionStatus.staged, SessionStatus.expired):
                await self.backend.drop_zip(session_id)
                logger.info("Import session %s expired", session_id)
            session = await self.backend.load(session_id)
        return session

    async def set_status(
        self, session_id: str, status: SessionStatus, *, expected: SessionStatus | None = None
    ) -> bool:
        return await self.backend.compare_and_set_status(session_id, expected, status)

    async def claim_for_commit(self, session_id: str) -> ImportSession:
        """Move a staged session to committed exactly once."""
        session = await self.get(session_id)
        if session is None:
            raise SessionNotFoundError("Import session not found")
        if session.status is SessionStatus.expired:
            raise SessionExpiredError("Import session has expired; upload the file again")

        if not await self.backend.compare_and_set_status(
            session_id, SessionStatus.staged, SessionStatus.committed
        ):
            current = await self.get(session_id)
            if current is None:
                raise SessionNotFoundError("Import session not found")
            if current.status is SessionStatus.expired:
                raise SessionExpiredError("Import session has expired; upload the file again")
            raise SessionAlreadyCommittedError("Import session has already been committed")

        session.status = SessionStatus.committed
        logger.info("Import session %s claimed for commit", session_id)
        return session

    async def attach_result(self, session_id: str, commit_result: CommitResult) -> None:
        await self.backend.save_result(session_id, commit_result)
        await self.backend.drop_zip(session_id)

    async def schedule_delete(self, session_id: str, delay_seconds: int | None = None) -> None:
        """Shorten the session's retention; nothing waits on the deletion."""
        delay = self.grace_seconds if delay_seconds is None else delay_seconds
        await self.backend.expire_in(session_id, max(delay, 1))
        logger.debug("Import session %s scheduled for deletion in %ss", session_id, delay)

    async def delete(self, session_id: str) -> bool:
        return await self.backend.delete(session_id)


# ─── Access control ───

def check_merchant_access(user: CurrentUser, merchant_id: str) -> None:
    if user.is_admin:
        return
    if not user.merchant_id:
        raise SessionForbiddenError("Merchant ID not found for user")
    if user.merchant_id != merchant_id:
        raise SessionForbiddenError("Cannot import products for another merchant")


def check_access(session: ImportSession, user: CurrentUser) -> None:
    if user.is_admin:
        return
    if session.owner_user_id != user.id or user.merchant_id != session.merchant_id:
        raise SessionForbiddenError("You do not have access to this import session")


def build_session_store(cfg: Settings = settings) -> ImportSessionStore:
    if cfg.SESSION_BACKEND == "redis":
        backend: SessionBackend = RedisSessionBackend.from_url(cfg.REDIS_URL, cfg.IMPORT_SESSION_KEY_PREFIX)
    elif cfg.SESSION_BACKEND == "memory":
        backend = MemorySessionBackend()
    else:
        raise ValueError(f"Unknown SESSION_BACKEND: {cfg.SESSION_BACKEND!r}")
    logger.info("Import sessions stored in %s", cfg.SESSION_BACKEND)
    return ImportSessionStore(backend, cfg.IMPORT_SESSION_TTL_SECONDS, cfg.IMPORT_SESSION_GRACE_SECONDS)
