"""
Session Module

Implements stateful (cookie-based) authentication with:
- Opaque 256-bit session identifiers
- Lazy expiry at validation time
- Session id regeneration on login (fixation defence)
- Activity tracking

Security considerations:
- Session ids come from the secrets module (CSPRNG)
- Expired and unknown sessions are rejected the same way outward
- Never log session ids
"""

import secrets
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Iterable, Optional

from .errors import SessionExpired, SessionNotFound


# Session configuration
SESSION_ID_BYTES = 32                  # 256-bit ids
SESSION_EXPIRY_SECONDS = 24 * 60 * 60  # 24 hours
SESSION_COOKIE_NAME = 'SessionID'
SESSION_COOKIE_ATTRIBUTES = (
    'HttpOnly',
    'Secure',
    'SameSite=Strict',
    f'Max-Age={SESSION_EXPIRY_SECONDS}',
    'Path=/',
)


@dataclass
class Session:
    """Represents an authenticated server-side session."""
    session_id: str
    user_id: int
    created_at: float
    expires_at: float
    last_activity: float

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Check if session has expired."""
        if now is None:
            now = time.time()
        return now > self.expires_at

    def to_dict(self, now: Optional[float] = None) -> Dict:
        if now is None:
            now = time.time()
        remaining = max(0.0, self.expires_at - now)
        return {
            'sessionId': self.session_id,
            'userId': self.user_id,
            'createdAt': self.created_at,
            'expiresAt': self.expires_at,
            'lastActivity': self.last_activity,
            'expired': self.is_expired(now),
            'timeRemaining': remaining,
            'minutesRemaining': int(remaining // 60),
        }


class SessionStatus(Enum):
    """Outcome of a session lookup."""
    VALID = "valid"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


@dataclass
class SessionValidation:
    status: SessionStatus
    session: Optional[Session] = None

    @property
    def valid(self) -> bool:
        return self.status is SessionStatus.VALID

    @property
    def user_id(self) -> Optional[int]:
        return self.session.user_id if self.session else None

    def raise_for_status(self) -> Session:
        """Return the session or raise the matching SessionError."""
        if self.status is SessionStatus.NOT_FOUND:
            raise SessionNotFound("session id not found")
        if self.status is SessionStatus.EXPIRED:
            raise SessionExpired("session expired")
        return self.session


class SessionStore:
    """
    Mutex-guarded map of session id -> Session.

    Reads return copies so callers never mutate stored state
    outside the lock.
    """

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def put(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(session_id)
            return replace(session) if session else None

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def check_and_touch(self, session_id: str, now: float) -> SessionValidation:
        """
        Look up a session, purge it if expired, otherwise bump last_activity.

        The three outcomes are decided under a single lock acquisition.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return SessionValidation(SessionStatus.NOT_FOUND)
            if session.is_expired(now):
                del self._sessions[session_id]
                return SessionValidation(SessionStatus.EXPIRED)
            session.last_activity = now
            return SessionValidation(SessionStatus.VALID, replace(session))

    def update(self, session_id: str, **changes) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            for name, value in changes.items():
                setattr(session, name, value)
            return True

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class SessionManager:
    """
    Creates, validates and destroys opaque server-side sessions.

    Example:
        >>> manager = SessionManager()
        >>> sid = manager.create_session(1)
        >>> manager.validate(sid).valid
        True
    """

    def __init__(self, store: Optional[SessionStore] = None,
                 expiry_seconds: int = SESSION_EXPIRY_SECONDS,
                 clock: Callable[[], float] = time.time):
        """
        Initialize session manager.

        Args:
            store: Session storage (a fresh in-memory store if None)
            expiry_seconds: Session lifetime in seconds
            clock: Time source
        """
        self._store = store or SessionStore()
        self._expiry_seconds = expiry_seconds
        self._clock = clock

    @property
    def store(self) -> SessionStore:
        return self._store

    def create_session(self, user_id: int) -> str:
        """Create a session bound to user_id and return its id."""
        now = self._clock()
        session = Session(
            session_id=generate_session_id(),
            user_id=user_id,
            created_at=now,
            expires_at=now + self._expiry_seconds,
            last_activity=now,
        )
        self._store.put(session)
        return session.session_id

    def regenerate(self, user_id: int,
                   presented_ids: Iterable[Optional[str]] = ()) -> str:
        """
        Issue a fresh session id at login.

        Any id the client presented before authenticating is destroyed,
        so it can never become an authenticated session.
        """
        for old_id in presented_ids:
            if old_id:
                self._store.delete(old_id)
        return self.create_session(user_id)

    def validate(self, session_id: Optional[str]) -> SessionValidation:
        """
        Validate a session id.

        NotFound -> reject; expired -> remove and reject;
        valid -> update last_activity and accept.
        """
        if not session_id:
            return SessionValidation(SessionStatus.NOT_FOUND)
        return self._store.check_and_touch(session_id, self._clock())

    def require(self, session_id: Optional[str]) -> Session:
        """Validate and return the session or raise a SessionError."""
        return self.validate(session_id).raise_for_status()

    def touch(self, session_id: str) -> bool:
        """Update last_activity without an expiry check."""
        return self._store.update(session_id, last_activity=self._clock())

    def destroy(self, session_id: Optional[str]) -> bool:
        """Destroy a session (logout). Returns False if it did not exist."""
        if not session_id:
            return False
        return self._store.delete(session_id)

    def peek(self, session_id: str) -> Optional[Session]:
        """Get session by id without touching or purging it."""
        return self._store.get(session_id)


def generate_session_id() -> str:
    """Generate a 256-bit random hex session id."""
    return secrets.token_hex(SESSION_ID_BYTES)


def session_cookie(session_id: str) -> str:
    """Build the Set-Cookie value for a session."""
    return '; '.join((f'{SESSION_COOKIE_NAME}={session_id}',) + SESSION_COOKIE_ATTRIBUTES)


def expired_session_cookie() -> str:
    """Set-Cookie value that clears the session cookie on logout."""
    attributes = [a for a in SESSION_COOKIE_ATTRIBUTES if not a.startswith('Max-Age')]
    return '; '.join([f'{SESSION_COOKIE_NAME}=', *attributes, 'Max-Age=0'])
