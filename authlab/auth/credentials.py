"""
Credential Store Module

Who the users are and how their passwords are checked.

- Passwords and MFA backup codes are stored only as Argon2id hashes
- Users log in with either their username or their email
- An unknown login costs one Argon2 verification, same as a wrong password,
  and both fail with the same InvalidCredentials error
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from .errors import InvalidCredentials, UserNotFound


# argon2-cffi parameters; memory_cost is in KiB
ARGON2_PARAMS = {
    'time_cost': 3,
    'memory_cost': 64 * 1024,
    'parallelism': 4,
    'hash_len': 32,
    'salt_len': 16,
    'type': Type.ID,
}

ROLES = ('admin', 'user')
DECOY_PASSWORD = 'authlab-decoy-password'

# Seed accounts available on every start
DEFAULT_USERS = (
    # (username, email, password, role)
    ('admin', 'admin@example.com', 'admin123', 'admin'),
    ('user', 'user@example.com', 'user123', 'user'),
    ('demo', 'demo@example.com', 'demo123', 'user'),
)


class PasswordHasher:
    """
    Thin wrapper over argon2.PasswordHasher that never raises on a bad guess.

    Shared by the credential store and MFA backup codes. Keyword arguments
    override ARGON2_PARAMS (tests use a cheap profile).
    """

    def __init__(self, **overrides):
        self._argon = Argon2Hasher(**{**ARGON2_PARAMS, **overrides})
        self._decoy: Optional[str] = None

    def hash_password(self, password: str) -> str:
        """Encoded $argon2id$ string carrying its own salt and parameters."""
        return self._argon.hash(password)

    def verify_password(self, password: str, hash_str: str) -> bool:
        # VerifyMismatchError is a VerificationError
        try:
            return self._argon.verify(hash_str, password)
        except (VerificationError, InvalidHashError):
            return False

    def burn_verification(self, password: str) -> None:
        """
        Run one verification against a throwaway hash.

        Called for unknown accounts so they take as long to reject as a
        wrong password.
        """
        if self._decoy is None:
            self._decoy = self._argon.hash(DECOY_PASSWORD)
        self.verify_password(password, self._decoy)

    def needs_rehash(self, hash_str: str) -> bool:
        return self._argon.check_needs_rehash(hash_str)


@dataclass
class User:
    """A registered account."""
    id: int
    username: str
    email: str
    password_hash: str
    role: str = 'user'
    mfa_enabled: bool = False
    created_at: float = field(default_factory=time.time)

    def public_view(self) -> Dict:
        """User data without the password hash."""
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'role': self.role,
            'mfaEnabled': self.mfa_enabled,
            'createdAt': self.created_at,
        }


class CredentialStore:
    """
    In-memory user registry.

    Users are created at seed time and never deleted. The only field
    mutated afterwards is mfa_enabled (see MfaService).
    """

    def __init__(self, hasher: Optional[PasswordHasher] = None,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            hasher: Password hasher (Argon2id defaults if None)
            clock: Time source used for created_at
        """
        self._hasher = hasher or PasswordHasher()
        self._clock = clock
        self._users: Dict[int, User] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    @property
    def hasher(self) -> PasswordHasher:
        return self._hasher

    def add_user(self, username: str, email: str, password: str,
                 role: str = 'user') -> User:
        """
        Register a user with a freshly hashed password.

        Raises:
            ValueError: If the role is unknown or the username/email is taken
        """
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role}")

        password_hash = self._hasher.hash_password(password)

        with self._lock:
            for existing in self._users.values():
                if existing.username == username or existing.email == email:
                    raise ValueError("User already exists")
            user = User(
                id=self._next_id,
                username=username,
                email=email,
                password_hash=password_hash,
                role=role,
                created_at=self._clock(),
            )
            self._users[user.id] = user
            self._next_id += 1
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._lock:
            return self._users.get(user_id)

    def require_user(self, user_id: int) -> User:
        """Like get_user but raises UserNotFound."""
        user = self.get_user(user_id)
        if user is None:
            raise UserNotFound(f"No user with id {user_id}")
        return user

    def find_user_by_login(self, identifier: str) -> Optional[User]:
        """Find a user by username or email."""
        with self._lock:
            for user in self._users.values():
                if user.username == identifier or user.email == identifier:
                    return user
        return None

    def verify_password(self, password: str, hash_str: str) -> bool:
        return self._hasher.verify_password(password, hash_str)

    def authenticate(self, identifier: str, password: str) -> User:
        """
        Check a username/email and password pair.

        Raises:
            InvalidCredentials: For an unknown user or a wrong password
        """
        user = self.find_user_by_login(identifier)
        if user is None:
            self._hasher.burn_verification(password)
            raise InvalidCredentials("unknown login identifier")

        if not self._hasher.verify_password(password, user.password_hash):
            raise InvalidCredentials("password mismatch")

        return user

    def set_mfa_enabled(self, user_id: int) -> None:
        """Mark MFA as enabled. There is no way to clear it."""
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFound(f"No user with id {user_id}")
            user.mfa_enabled = True

    def list_users(self) -> List[User]:
        with self._lock:
            return list(self._users.values())

    def __len__(self) -> int:
        return len(self._users)


def seed_default_users(store: CredentialStore) -> CredentialStore:
    """Load the admin/user/demo accounts into a store."""
    for username, email, password, role in DEFAULT_USERS:
        store.add_user(username, email, password, role)
    return store
