from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Iterator

from garson.core.config import LOCK_RETRY_DELAY_SECONDS
from garson.core.errors import ConcurrentMutationConflict

logger = logging.getLogger(__name__)


@dataclass
class _Session:
    lock: Lock = field(default_factory=Lock)
    generation: int = 0
    # turns holding or waiting on `lock`; the entry is dropped when it reaches zero
    users: int = 0


@dataclass(frozen=True)
class SessionLease:
    tenant_id: int
    conversation_id: int
    generation: int


class SessionStore:
    """Serializes turns per (tenant, conversation) and tracks reset generations.

    Created by the application lifespan and passed to the engine; closed on
    shutdown.
    """

    def __init__(self, *, retry_delay_seconds: float = LOCK_RETRY_DELAY_SECONDS) -> None:
        self.retry_delay_seconds = retry_delay_seconds
        self._sessions: dict[tuple[int, int], _Session] = {}
        self._registry_lock = Lock()
        self._closed = False

    def _session(self, tenant_id: int, conversation_id: int, *, use: bool = False) -> _Session:
        key = (int(tenant_id), int(conversation_id))
        with self._registry_lock:
            if self._closed:
                raise RuntimeError("session store is closed")
            session = self._sessions.get(key)
            if session is None:
                session = _Session()
                self._sessions[key] = session
            if use:
                session.users += 1
            return session

    def _release(self, tenant_id: int, conversation_id: int, session: _Session) -> None:
        key = (int(tenant_id), int(conversation_id))
        with self._registry_lock:
            session.users -= 1
            if session.users <= 0 and self._sessions.get(key) is session:
                del self._sessions[key]

    def _try_acquire(self, session: _Session, tenant_id: int, conversation_id: int) -> None:
        if not session.lock.acquire(blocking=False):
            raise ConcurrentMutationConflict(
                "conversation is being processed",
                tenant_id=tenant_id,
                conversation_id=conversation_id,
            )

    @contextmanager
    def acquire(self, tenant_id: int, conversation_id: int) -> Iterator[SessionLease]:
        """Hold the conversation for one turn.

        On contention retry once after a short delay, then queue behind the
        running turn instead of dropping the message.
        """
        session = self._session(tenant_id, conversation_id, use=True)
        try:
            self._try_acquire(session, tenant_id, conversation_id)
        except ConcurrentMutationConflict:
            time.sleep(self.retry_delay_seconds)
            try:
                self._try_acquire(session, tenant_id, conversation_id)
            except ConcurrentMutationConflict:
                logger.info("turn queued behind running turn conversation_id=%s", conversation_id)
                session.lock.acquire()
        try:
            yield SessionLease(tenant_id=tenant_id, conversation_id=conversation_id, generation=session.generation)
        finally:
            session.lock.release()
            self._release(tenant_id, conversation_id, session)

    def generation(self, tenant_id: int, conversation_id: int) -> int:
        with self._registry_lock:
            session = self._sessions.get((int(tenant_id), int(conversation_id)))
            return session.generation if session is not None else 0

    def bump(self, tenant_id: int, conversation_id: int) -> int:
        """Invalidate in-flight work for the conversation (explicit reset).

        The counter lives only as long as some turn uses the conversation; the
        caller resetting an idle conversation acquires it right after.
        """
        key = (int(tenant_id), int(conversation_id))
        with self._registry_lock:
            if self._closed:
                raise RuntimeError("session store is closed")
            session = self._sessions.setdefault(key, _Session())
            session.generation += 1
            return session.generation

    def is_current(self, lease: SessionLease) -> bool:
        return self.generation(lease.tenant_id, lease.conversation_id) == lease.generation

    def tracked_conversations(self) -> int:
        with self._registry_lock:
            return len(self._sessions)

    def close(self) -> None:
        with self._registry_lock:
            self._closed = True
            self._sessions.clear()
