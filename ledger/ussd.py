"""
USSD session holder.

Sessions live behind a ``SessionStore`` so several service instances can
share them; expiry is an explicit TTL checked on access rather than a
per-session timer.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from .errors import NotFoundError

MAIN_MENU = "MAIN_MENU"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UssdSession(BaseModel):
    session_id: str
    phone: str
    state: str = MAIN_MENU
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    last_activity_at: datetime

    def get_state(self) -> str:
        return self.state

    def set_state(self, state: str) -> None:
        self.state = state

    def get_data(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set_data(self, key: str, value: Any) -> None:
        self.data[key] = value

    def reset(self) -> None:
        self.state = MAIN_MENU
        self.data = {}


class SessionStore(ABC):
    @abstractmethod
    def get_or_create(self, session_id: str, phone: str) -> UssdSession:
        ...

    @abstractmethod
    def get(self, session_id: str) -> Optional[UssdSession]:
        ...

    @abstractmethod
    def save(self, session: UssdSession) -> None:
        ...

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        ...

    @abstractmethod
    def purge_expired(self) -> int:
        ...


class InMemorySessionStore(SessionStore):
    def __init__(self, ttl_seconds: int = 180, clock: Optional[Callable[[], datetime]] = None):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock or _utcnow
        self._sessions: dict[str, UssdSession] = {}
        self._lock = threading.Lock()

    def _expired(self, session: UssdSession, now: datetime) -> bool:
        return now - session.last_activity_at >= self.ttl

    def get_or_create(self, session_id: str, phone: str) -> UssdSession:
        now = self.clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or self._expired(session, now):
                session = UssdSession(
                    session_id=session_id, phone=phone, created_at=now, last_activity_at=now,
                )
            else:
                session.last_activity_at = now
            self._sessions[session_id] = session
            return session

    def get(self, session_id: str) -> Optional[UssdSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if self._expired(session, self.clock()):
                del self._sessions[session_id]
                return None
            return session

    def save(self, session: UssdSession) -> None:
        session.last_activity_at = self.clock()
        with self._lock:
            self._sessions[session.session_id] = session

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def purge_expired(self) -> int:
        now = self.clock()
        with self._lock:
            stale = [sid for sid, s in self._sessions.items() if self._expired(s, now)]
            for sid in stale:
                del self._sessions[sid]
        return len(stale)

    def __len__(self) -> int:
        return len(self._sessions)


class OfflineUssdActions:
    """Turns completed USSD menu flows into sync-queue operations.

    Used when the ledger cannot be reached during the session: the
    mutation is queued under the caller's phone and replayed by the sync
    engine later. ``enqueue`` has the signature of
    ``SyncEngine.queue_operation``.
    """

    def __init__(self, store: SessionStore, enqueue: Callable[..., Any]):
        self.store = store
        self.enqueue = enqueue

    def request_loan(self, session_id: str) -> Any:
        session = self._require(session_id)
        payload = {
            "borrower_phone": session.phone,
            "lender_phone": session.get_data("lender_phone"),
            "principal_amount": session.get_data("amount"),
            "repayment_method": session.get_data("repayment_method", "fixed"),
            "repayment_amount": session.get_data("repayment_amount"),
        }
        item = self.enqueue("loan", "CREATE", payload, session.phone)
        self._finish(session)
        return item

    def repay_loan(self, session_id: str) -> Any:
        session = self._require(session_id)
        payload = {
            "loan_id": session.get_data("loan_id"),
            "amount": session.get_data("amount"),
            "payer_phone": session.phone,
        }
        item = self.enqueue("repayment", "CREATE", payload, session.phone)
        self._finish(session)
        return item

    def _require(self, session_id: str) -> UssdSession:
        session = self.store.get(session_id)
        if session is None:
            raise NotFoundError(f"USSD session {session_id} expired or unknown")
        return session

    def _finish(self, session: UssdSession) -> None:
        session.reset()
        self.store.save(session)
