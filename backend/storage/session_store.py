"""
Session Store
=============
Checkout session persistence behind an injectable interface.

The in-memory implementation serializes every mutation of one session behind
a per-session asyncio.Lock, so a status compare-and-set is indivisible. Swap in
a durable store by implementing ISessionStore.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import structlog

from schemas.checkout import GatewayMeta, Session, SessionStatus, utcnow

logger = structlog.get_logger().bind(component="session_store")

StatusSet = Union[SessionStatus, Iterable[SessionStatus]]

_IMMUTABLE_FIELDS = {"id", "lines", "total", "created_at"}


class InvalidTransitionError(Exception):
    """Raised when a mutation would break the session state machine."""


class ISessionStore(ABC):
    """Session store interface"""

    @abstractmethod
    async def save(self, session: Session) -> Session:
        pass

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Session]:
        pass

    @abstractmethod
    async def update(self, session_id: str, patch: Dict[str, Any]) -> Optional[Session]:
        """Shallow merge `patch`; `gateway_meta` is merged field by field."""
        pass

    @abstractmethod
    async def compare_and_set_status(
        self,
        session_id: str,
        expected: StatusSet,
        new: SessionStatus,
        patch: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, Optional[Session]]:
        """
        Atomically move `status` from one of `expected` to `new`.

        Returns (swapped, session). When not swapped, `session` is the current
        state (or None if the session does not exist).
        """
        pass

    @abstractmethod
    async def list_by_status(self, status: SessionStatus) -> List[Session]:
        pass


def _as_status_set(expected: StatusSet) -> set:
    if isinstance(expected, SessionStatus):
        return {expected}
    return {SessionStatus(s) for s in expected}


def apply_patch(existing: Session, patch: Dict[str, Any]) -> Session:
    """Return a merged copy of `existing`, enforcing the state machine."""
    if existing.status == SessionStatus.PAID:
        raise InvalidTransitionError(f"session {existing.id} is paid and immutable")

    patch = dict(patch)
    frozen = _IMMUTABLE_FIELDS.intersection(patch)
    if frozen:
        raise InvalidTransitionError(f"fields {sorted(frozen)} cannot be changed")

    if patch.get("status") is not None:
        new_status = SessionStatus(patch["status"])
        if new_status != existing.status and not existing.status.can_transition_to(new_status):
            raise InvalidTransitionError(
                f"session {existing.id}: {existing.status.value} -> {new_status.value} not allowed"
            )
        patch["status"] = new_status

    # clientId is set once and never cleared
    if "client_id" in patch and not patch["client_id"]:
        patch.pop("client_id")
    elif "client_id" in patch:
        patch["client_id"] = str(patch["client_id"])

    meta = patch.pop("gateway_meta", None)
    if meta:
        if isinstance(meta, GatewayMeta):
            meta = meta.model_dump(exclude_none=True)
        fields = {k: v for k, v in meta.items() if v is not None}
        patch["gateway_meta"] = existing.gateway_meta.model_copy(update=fields)

    patch["updated_at"] = utcnow()
    return existing.model_copy(update=patch)


class InMemorySessionStore(ISessionStore):
    """Process-local session store with per-session locks"""

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._locks_mutex = asyncio.Lock()

    async def _lock_for(self, session_id: str) -> asyncio.Lock:
        async with self._locks_mutex:
            if session_id not in self._locks:
                self._locks[session_id] = asyncio.Lock()
            return self._locks[session_id]

    async def save(self, session: Session) -> Session:
        lock = await self._lock_for(session.id)
        async with lock:
            existing = self._sessions.get(session.id)
            if existing is not None and existing.status == SessionStatus.PAID:
                raise InvalidTransitionError(f"session {session.id} is paid and immutable")
            self._sessions[session.id] = session
            logger.debug("session_saved", session_id=session.id, status=session.status.value)
            return session

    async def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    async def update(self, session_id: str, patch: Dict[str, Any]) -> Optional[Session]:
        lock = await self._lock_for(session_id)
        async with lock:
            existing = self._sessions.get(session_id)
            if existing is None:
                return None
            updated = apply_patch(existing, patch)
            self._sessions[session_id] = updated
            return updated

    async def compare_and_set_status(
        self,
        session_id: str,
        expected: StatusSet,
        new: SessionStatus,
        patch: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, Optional[Session]]:
        allowed = _as_status_set(expected)
        lock = await self._lock_for(session_id)
        async with lock:
            existing = self._sessions.get(session_id)
            if existing is None or existing.status not in allowed:
                return False, existing

            updated = apply_patch(existing, {**(patch or {}), "status": new})
            self._sessions[session_id] = updated
            logger.info(
                "session_status_changed",
                session_id=session_id,
                previous=existing.status.value,
                status=new.value,
            )
            return True, updated

    async def list_by_status(self, status: SessionStatus) -> List[Session]:
        return [s for s in self._sessions.values() if s.status == status]

    def __len__(self) -> int:
        return len(self._sessions)
