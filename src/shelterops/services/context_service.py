import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict

from ..errors import PersistenceError
from ..models import History, Session, Turn, utcnow
from .redis import KeyValueStore

logger = logging.getLogger(__name__)

CONTEXT_KEY_PREFIX = "context:"


def _session_to_dict(session: Session) -> Dict[str, Any]:
    """Serialize a Session into the stored record layout."""
    return {
        "session_id": session.session_id,
        "user_id": session.user_id,
        "context_data": {
            **session.context_data,
            "history": session.history.to_list(),
        },
        "last_intent": session.last_intent,
        "last_agent": session.last_agent,
        "updated_at": session.updated_at.isoformat() if session.updated_at else None,
    }


def _dict_to_session(data: Dict[str, Any], max_turns: int) -> Session:
    """Build a Session from a stored record."""
    context_data = dict(data.get("context_data") or {})
    history_items = context_data.pop("history", [])
    updated_at = data.get("updated_at")
    return Session(
        session_id=data["session_id"],
        user_id=data.get("user_id"),
        last_intent=data.get("last_intent"),
        last_agent=data.get("last_agent"),
        updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        history=History.from_list(history_items, maxlen=max_turns),
        context_data=context_data,
    )


class SessionLocks:
    """asyncio locks keyed by session id, dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._users[session_id] = self._users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[session_id] -= 1
            if self._users[session_id] == 0:
                del self._users[session_id]
                del self._locks[session_id]

    def __len__(self) -> int:
        return len(self._locks)


class ContextService:
    """Bounded per-session conversation history persisted in a key/value store."""

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: int = 0,
        max_turns: int = 20,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._max_turns = max_turns
        self._locks = SessionLocks()

    def _key(self, session_id: str) -> str:
        return f"{CONTEXT_KEY_PREFIX}{session_id}"

    def session_lock(self, session_id: str):
        """Serialize turns of one session within this process."""
        return self._locks.hold(session_id)

    def new_session(self, session_id: str, user_id: str | None = None) -> Session:
        return Session(
            session_id=session_id,
            user_id=user_id,
            history=History(maxlen=self._max_turns),
        )

    async def load(self, session_id: str, user_id: str | None = None) -> Session:
        """Load the session; a missing or unreadable record yields a fresh one."""
        raw = await self._store.get(self._key(session_id))
        if raw is None:
            return self.new_session(session_id, user_id)
        try:
            session = _dict_to_session(json.loads(raw), self._max_turns)
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Invalid context data for %s: %s", session_id, e)
            return self.new_session(session_id, user_id)
        if user_id:
            session.user_id = user_id
        return session

    async def save(
        self,
        session_id: str,
        user_id: str | None,
        user_turn: Turn,
        assistant_turn: Turn,
        intent: str | None = None,
        agent: str | None = None,
    ) -> bool:
        """Append one exchange to the stored history and upsert the record.

        Returns False (after logging) when the write fails; the caller's reply
        is unaffected.
        """
        session = await self.load(session_id, user_id)
        session.history.append(user_turn)
        session.history.append(assistant_turn)
        session.last_intent = intent
        session.last_agent = agent
        session.updated_at = utcnow()
        try:
            await self._write(session)
        except PersistenceError as e:
            logger.warning("Context write for %s failed: %s", session_id, e)
            return False
        return True

    async def _write(self, session: Session) -> None:
        try:
            payload = json.dumps(_session_to_dict(session), default=str)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"serialization failed: {e}") from e
        ok = await self._store.set(self._key(session.session_id), payload, ttl_seconds=self._ttl)
        if not ok:
            raise PersistenceError("store rejected the write")

    async def delete(self, session_id: str) -> bool:
        """Remove the stored context for session_id."""
        return await self._store.delete(self._key(session_id))

    async def close(self) -> None:
        await self._store.close()
