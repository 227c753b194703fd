"""
Event Logger Module

Security audit trail for every authlab flow.

Features:
- Login, logout and session check events
- Token issue, verify and refresh events
- MFA setup and verification events
- OAuth authorize/exchange events
- Privacy-preserving user hashes (SHA-256)
- Tamper-evident log: each event carries the hash of the one before it

Secrets (passwords, session ids, tokens, codes) are never passed in here.
"""

import hashlib
import json
import os
import threading
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


# ============================================================================
# Constants
# ============================================================================

EVENT_VERSION = "1.0"
GENESIS_HASH = "0" * 64
SYSTEM_USER = "system"


# ============================================================================
# Privacy Functions
# ============================================================================

def get_user_hash(username: str) -> str:
    """
    Compute privacy-preserving hash of a user identifier.

    Events for the same user can still be correlated, but the log never
    holds a username or email in plaintext.

    Args:
        username: The plaintext username, email or id

    Returns:
        Hex-encoded SHA-256 hash
    """
    return hashlib.sha256(str(username).encode('utf-8')).hexdigest()


# ============================================================================
# Event Types
# ============================================================================

class EventType(Enum):
    """Types of security events that can be logged."""

    # Session authentication
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    SESSION_CHECK = "session_check"

    # Token authentication
    JWT_SIGN = "jwt_sign"
    JWT_VERIFY = "jwt_verify"
    TOKEN_REFRESH = "token_refresh"
    PROTECTED_ACCESS = "protected_access"

    # MFA
    MFA_SETUP = "mfa_setup"
    MFA_VERIFIED = "mfa_verified"
    MFA_FAILED = "mfa_failed"

    # OAuth
    OAUTH_AUTHORIZE = "oauth_authorize"
    OAUTH_EXCHANGE = "oauth_exchange"

    # System events
    SYSTEM_START = "system_start"
    INTERNAL_ERROR = "internal_error"


# ============================================================================
# Event Structure
# ============================================================================

@dataclass
class SecurityEvent:
    """
    Represents a security event in the chain.

    All user-identifying information is hashed for privacy.
    """
    event_type: EventType
    user_hash: str  # SHA-256 hash of the user identifier
    timestamp: int  # Unix timestamp
    details: Dict[str, Any] = field(default_factory=dict)
    index: int = 0
    prev_hash: str = GENESIS_HASH
    hash: str = ""

    def _payload(self) -> Dict[str, Any]:
        return {
            'version': EVENT_VERSION,
            'index': self.index,
            'type': self.event_type.value,
            'user': self.user_hash,
            'time': self.timestamp,
            'details': self.details,
            'prev': self.prev_hash,
        }

    def compute_hash(self) -> str:
        encoded = json.dumps(self._payload(), separators=(',', ':'), sort_keys=True)
        return hashlib.sha256(encoded.encode('utf-8')).hexdigest()

    def to_record(self) -> Dict[str, Any]:
        """Serializable form, including the event's own hash."""
        record = self._payload()
        record['hash'] = self.hash
        return record

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> 'SecurityEvent':
        return cls(
            event_type=EventType(data['type']),
            user_hash=data['user'],
            timestamp=data['time'],
            details=data.get('details', {}),
            index=data['index'],
            prev_hash=data['prev'],
            hash=data['hash'],
        )

    def __str__(self) -> str:
        dt = datetime.fromtimestamp(self.timestamp)
        return (
            f"[{dt.strftime('%Y-%m-%d %H:%M:%S')}] "
            f"{self.event_type.value} | "
            f"user:{self.user_hash[:8]}..."
        )


# ============================================================================
# Event Logger
# ============================================================================

class EventLogger:
    """
    Hash-chained event logger for the security audit trail.

    Appending is serialized by a lock so the chain order matches the
    order events were recorded in.
    """

    def __init__(self, clock: Callable[[], float] = time.time,
                 events: Optional[List[SecurityEvent]] = None):
        """
        Initialize the event logger.

        Args:
            clock: Time source
            events: Existing chain to continue (see import_log)
        """
        self._clock = clock
        self._events: List[SecurityEvent] = list(events or [])
        self._callbacks: List[Callable[[SecurityEvent], None]] = []
        self._lock = threading.Lock()

        if not self._events:
            self.log(EventType.SYSTEM_START, details={'node': 'authlab'})

    def add_callback(self, callback: Callable[[SecurityEvent], None]) -> None:
        """Add a callback to be notified of new events."""
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[SecurityEvent], None]) -> None:
        """Remove a callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def log(self, event_type: EventType, user: Optional[str] = None,
            details: Optional[Dict[str, Any]] = None) -> SecurityEvent:
        """
        Append an event to the chain.

        Args:
            event_type: Kind of event
            user: Plaintext user identifier (hashed here), None for system
            details: Non-secret context

        Returns:
            The logged event
        """
        user_hash = get_user_hash(user) if user is not None else SYSTEM_USER

        with self._lock:
            prev_hash = self._events[-1].hash if self._events else GENESIS_HASH
            event = SecurityEvent(
                event_type=event_type,
                user_hash=user_hash,
                timestamp=int(self._clock()),
                details=dict(details or {}),
                index=len(self._events),
                prev_hash=prev_hash,
            )
            event.hash = event.compute_hash()
            self._events.append(event)

        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                pass  # Don't let callbacks break logging

        return event

    # ========================================================================
    # Authentication Events
    # ========================================================================

    def log_login(self, who, success: bool, method: str = 'session',
                  mfa_required: bool = False) -> SecurityEvent:
        """
        Log a login attempt.

        Args:
            who: User id on success, the identifier as typed on failure
                (will be hashed)
            success: Whether the password check passed
            method: 'session' or 'jwt'
            mfa_required: Whether a second factor is still pending
        """
        details = {'method': method}
        if mfa_required:
            details['mfa_required'] = True
        return self.log(
            EventType.LOGIN_SUCCESS if success else EventType.LOGIN_FAILED,
            who, details,
        )

    def log_logout(self, user_id: Optional[int]) -> SecurityEvent:
        return self.log(EventType.LOGOUT, user_id)

    def log_session_check(self, user_id: Optional[int], valid: bool,
                          status: str) -> SecurityEvent:
        return self.log(EventType.SESSION_CHECK, user_id,
                        {'valid': valid, 'status': status})

    def log_token(self, event_type: EventType, user_id: Optional[int],
                  success: bool, reason: Optional[str] = None) -> SecurityEvent:
        """Log a JWT sign/verify/refresh or protected access."""
        details: Dict[str, Any] = {'success': success}
        if reason:
            details['reason'] = reason
        return self.log(event_type, user_id, details)

    def log_mfa(self, user_id: int, success: bool, method: str,
                reason: Optional[str] = None) -> SecurityEvent:
        """Log an MFA verification attempt."""
        details: Dict[str, Any] = {'method': method}
        if reason:
            details['reason'] = reason
        return self.log(
            EventType.MFA_VERIFIED if success else EventType.MFA_FAILED,
            user_id, details,
        )

    def log_mfa_setup(self, user_id: int) -> SecurityEvent:
        return self.log(EventType.MFA_SETUP, user_id)

    def log_oauth(self, event_type: EventType, client_id: Optional[str],
                  user_id: Optional[int], success: bool,
                  error: Optional[str] = None) -> SecurityEvent:
        details: Dict[str, Any] = {'client': client_id, 'success': success}
        if error:
            details['error'] = error
        return self.log(event_type, user_id, details)

    def log_error(self, operation: str, error: BaseException) -> SecurityEvent:
        """
        Log an unexpected failure.

        Keeps the exception class and the innermost frame it was raised
        from. The message is dropped.
        """
        details: Dict[str, Any] = {
            'operation': operation,
            'error': type(error).__name__,
        }
        frames = traceback.extract_tb(error.__traceback__)
        if frames:
            last = frames[-1]
            details['where'] = f"{os.path.basename(last.filename)}:{last.lineno} in {last.name}"
        return self.log(EventType.INTERNAL_ERROR, None, details)

    # ========================================================================
    # Retrieval
    # ========================================================================

    def get_all_events(self) -> List[SecurityEvent]:
        with self._lock:
            return list(self._events)

    def get_user_events(self, who) -> List[SecurityEvent]:
        """All events for a user id or login identifier (matched by hash)."""
        user_hash = get_user_hash(who)
        return [e for e in self.get_all_events() if e.user_hash == user_hash]

    def get_events_by_type(self, event_type: EventType) -> List[SecurityEvent]:
        """Get all events of a specific type."""
        return [e for e in self.get_all_events() if e.event_type == event_type]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def print_audit_log(self, last_n: Optional[int] = None) -> None:
        """Print the audit log in a readable format."""
        events = self.get_all_events()
        total = len(events)
        if last_n:
            events = events[-last_n:]

        print("\n" + "=" * 70)
        print("SECURITY AUDIT LOG")
        print("=" * 70)

        for event in events:
            print(event)
            for k, v in event.details.items():
                print(f"    {k}: {v}")

        print("=" * 70)
        print(f"Total events: {total}")
        print(f"Chain intact: {self.verify_integrity()}")
        print("=" * 70)

    def verify_integrity(self) -> bool:
        """Recompute every hash and check every back-link."""
        prev_hash = GENESIS_HASH
        for index, event in enumerate(self.get_all_events()):
            if event.index != index or event.prev_hash != prev_hash:
                return False
            if event.compute_hash() != event.hash:
                return False
            prev_hash = event.hash
        return True

    def export_log(self) -> str:
        """Export the entire audit log as JSON."""
        return json.dumps([e.to_record() for e in self.get_all_events()], indent=2)

    @classmethod
    def import_log(cls, json_str: str,
                   clock: Callable[[], float] = time.time) -> 'EventLogger':
        """Import an audit log from JSON. Call verify_integrity() afterwards."""
        events = [SecurityEvent.from_record(r) for r in json.loads(json_str)]
        return cls(clock=clock, events=events)
