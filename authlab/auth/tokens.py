"""
Token Module

Implements stateless (token-based) authentication with:
- HS256 JSON Web Tokens, signed and checked with python-jose
- Short-lived access tokens and long-lived refresh tokens
- Refresh token rotation with revocation records
- Typed verification failures

Security considerations:
- The algorithm is fixed; "none" and every other alg is rejected
- Claims are parsed only after the signature checks out
- Revocation records are never deleted (audit trail)
- Custom claims (email, username, role) are informational only
"""

import json
import os
import re
import secrets
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from jose import jwk, jws, jwt
from jose.exceptions import JWSError, JWTError

from .credentials import CredentialStore, User
from .errors import TokenExpired, TokenInvalid, TokenRevoked, UserNotFound


# Token configuration
ACCESS_TOKEN_TTL = 15 * 60             # 15 minutes
REFRESH_TOKEN_TTL = 7 * 24 * 60 * 60   # 7 days
JWT_ALGORITHM = 'HS256'
TOKEN_ISSUER = 'authlab'
TOKEN_AUDIENCE = 'authlab'
JWT_SECRET_ENV = 'AUTHLAB_JWT_SECRET'
JWT_SECRET_BYTES = 32

_SEGMENT_RE = re.compile(r'^[A-Za-z0-9_-]*$')


class TokenType(Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class VerifyReason(Enum):
    """Why a token failed verification."""
    MALFORMED = "malformed"
    BAD_ALGORITHM = "bad_algorithm"
    BAD_SIGNATURE = "bad_signature"
    WRONG_TYPE = "wrong_type"
    INVALID_CLAIMS = "invalid_claims"
    EXPIRED = "expired"
    REVOKED = "revoked"


# Reason -> exception raised by TokenService.require()
_REASON_ERRORS = {
    VerifyReason.EXPIRED: TokenExpired,
    VerifyReason.REVOKED: TokenRevoked,
}


@dataclass
class TokenVerification:
    valid: bool
    claims: Optional[Dict] = None
    reason: Optional[VerifyReason] = None

    def to_dict(self) -> Dict:
        if self.valid:
            return {'valid': True, 'claims': self.claims}
        return {'valid': False, 'reason': self.reason.value}


@dataclass
class TokenRecord:
    """Bookkeeping entry for an issued token."""
    token: str
    user_id: int
    type: TokenType
    issued_at: float
    expires_at: float
    revoked_at: Optional[float] = None

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int = ACCESS_TOKEN_TTL
    token_type: str = 'Bearer'

    def to_dict(self) -> Dict:
        return {
            'accessToken': self.access_token,
            'refreshToken': self.refresh_token,
            'expiresIn': self.expires_in,
            'tokenType': self.token_type,
        }


class RotationOutcome(Enum):
    ROTATED = "rotated"
    UNKNOWN = "unknown"
    REVOKED = "revoked"
    EXPIRED = "expired"


class TokenStore:
    """
    Mutex-guarded map of token value -> TokenRecord.

    Records are revoked by setting revoked_at; nothing is ever removed.
    """

    def __init__(self):
        self._records: Dict[str, TokenRecord] = {}
        self._lock = threading.Lock()

    def add(self, record: TokenRecord) -> None:
        with self._lock:
            self._records[record.token] = record

    def get(self, token: str) -> Optional[TokenRecord]:
        with self._lock:
            record = self._records.get(token)
            return replace(record) if record else None

    def is_revoked(self, token: str) -> bool:
        with self._lock:
            record = self._records.get(token)
            return record is not None and record.revoked

    def revoke(self, token: str, now: float) -> bool:
        """Set revoked_at if the token is recorded and still active."""
        with self._lock:
            record = self._records.get(token)
            if record is None or record.revoked:
                return False
            record.revoked_at = now
            return True

    def rotate(self, old_token: str, new_records: List[TokenRecord],
               now: float) -> RotationOutcome:
        """
        Revoke old_token and record its successors in one critical section.

        A concurrent verifier sees either the old token active and no
        successors, or the old token revoked and the successors present.
        """
        with self._lock:
            record = self._records.get(old_token)
            if record is None or record.type is not TokenType.REFRESH:
                return RotationOutcome.UNKNOWN
            if record.revoked:
                return RotationOutcome.REVOKED
            if record.expires_at <= now:
                return RotationOutcome.EXPIRED
            record.revoked_at = now
            for new_record in new_records:
                self._records[new_record.token] = new_record
            return RotationOutcome.ROTATED

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


def signing_key(secret_key: Union[str, bytes]):
    """HMAC key object for python-jose."""
    return jwk.construct(secret_key, JWT_ALGORITHM)


def encode_token(claims: Dict, secret_key, header: Optional[Dict] = None) -> str:
    """
    Serialize and sign a token.

    Args:
        claims: Payload claims
        secret_key: HMAC key (raw bytes or a key from signing_key)
        header: Extra header fields; overriding 'alg' only labels the token,
            the signature is always HS256 (used to build hostile tokens in tests)

    Returns:
        header.payload.signature
    """
    if isinstance(secret_key, (str, bytes)):
        secret_key = signing_key(secret_key)
    return jwt.encode(claims, secret_key, algorithm=JWT_ALGORITHM, headers=header)


def decode_unverified(token: str) -> Optional[Dict]:
    """
    Decode the payload without checking anything.

    For display only; never use the result for an authorization decision.
    """
    try:
        return jwt.get_unverified_claims(token)
    except (JWTError, RecursionError):
        return None


def load_secret_key(value: Union[str, bytes, None] = None) -> bytes:
    """
    Resolve the signing key.

    Order: explicit value, AUTHLAB_JWT_SECRET, then a random per-process key
    (tokens do not survive a restart in that case).
    """
    if value is None:
        value = os.environ.get(JWT_SECRET_ENV)
    if value is None or value == '':
        return secrets.token_bytes(JWT_SECRET_BYTES)
    if isinstance(value, str):
        value = value.encode('utf-8')
    return value


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class TokenService:
    """
    Issues and verifies signed access/refresh tokens.

    Example:
        >>> service = TokenService(users)
        >>> pair = service.issue_token_pair(user)
        >>> service.verify(pair.access_token).claims['sub']
        '1'
    """

    def __init__(self, users: Optional[CredentialStore] = None,
                 store: Optional[TokenStore] = None,
                 secret_key: Union[str, bytes, None] = None,
                 access_ttl: int = ACCESS_TOKEN_TTL,
                 refresh_ttl: int = REFRESH_TOKEN_TTL,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            users: Credential store used to re-read users on rotation
            store: Token record storage
            secret_key: HMAC key (see load_secret_key)
            access_ttl: Access token lifetime in seconds
            refresh_ttl: Refresh token lifetime in seconds
            clock: Time source
        """
        self._users = users
        self._store = store or TokenStore()
        self._key = signing_key(load_secret_key(secret_key))
        self._access_ttl = access_ttl
        self._refresh_ttl = refresh_ttl
        self._clock = clock

    @property
    def store(self) -> TokenStore:
        return self._store

    @property
    def access_ttl(self) -> int:
        return self._access_ttl

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def _mint(self, user_id: int, token_type: TokenType, ttl: int,
              extra: Optional[Dict] = None) -> TokenRecord:
        now = int(self._clock())
        claims = {
            'sub': str(user_id),
            'type': token_type.value,
            'iat': now,
            'exp': now + ttl,
            'iss': TOKEN_ISSUER,
            'aud': TOKEN_AUDIENCE,
            'jti': secrets.token_hex(16),
        }
        if extra:
            claims.update(extra)
        return TokenRecord(
            token=encode_token(claims, self._key),
            user_id=user_id,
            type=token_type,
            issued_at=now,
            expires_at=now + ttl,
        )

    def _mint_access(self, user_id: int, email: str, username: str,
                     role: str) -> TokenRecord:
        return self._mint(user_id, TokenType.ACCESS, self._access_ttl, {
            'email': email,
            'username': username,
            'role': role,
        })

    def issue_access_token(self, user_id: int, email: str, username: str,
                           role: str) -> str:
        """Issue and record a 15-minute access token."""
        record = self._mint_access(user_id, email, username, role)
        self._store.add(record)
        return record.token

    def issue_refresh_token(self, user_id: int) -> str:
        """Issue and record a 7-day refresh token."""
        record = self._mint(user_id, TokenType.REFRESH, self._refresh_ttl)
        self._store.add(record)
        return record.token

    def issue_token_pair(self, user: User) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(user.id, user.email, user.username, user.role),
            refresh_token=self.issue_refresh_token(user.id),
            expires_in=self._access_ttl,
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _check_signed(self, token: str, expected_type: TokenType) -> TokenVerification:
        """Everything except the revocation record."""
        if not isinstance(token, str):
            return TokenVerification(False, reason=VerifyReason.MALFORMED)
        parts = token.split('.')
        if len(parts) != 3 or not all(_SEGMENT_RE.match(p) for p in parts):
            return TokenVerification(False, reason=VerifyReason.MALFORMED)

        # The header is the only attacker-controlled JSON parsed before the signature
        try:
            header = jwt.get_unverified_header(token)
        except (JWTError, RecursionError):
            return TokenVerification(False, reason=VerifyReason.MALFORMED)
        if header.get('alg') != JWT_ALGORITHM or header.get('typ', 'JWT') != 'JWT':
            return TokenVerification(False, reason=VerifyReason.BAD_ALGORITHM)

        try:
            payload = jws.verify(token, self._key, algorithms=[JWT_ALGORITHM])
        except JWSError:
            return TokenVerification(False, reason=VerifyReason.BAD_SIGNATURE)

        try:
            claims = json.loads(payload)
        except ValueError:
            return TokenVerification(False, reason=VerifyReason.MALFORMED)
        if not isinstance(claims, dict):
            return TokenVerification(False, reason=VerifyReason.MALFORMED)

        if not isinstance(claims.get('sub'), str) or not claims['sub'].isdigit():
            return TokenVerification(False, reason=VerifyReason.MALFORMED)
        if not (_is_int(claims.get('iat')) and _is_int(claims.get('exp'))):
            return TokenVerification(False, reason=VerifyReason.MALFORMED)

        if claims.get('type') != expected_type.value:
            return TokenVerification(False, reason=VerifyReason.WRONG_TYPE)
        if claims.get('iss') != TOKEN_ISSUER or claims.get('aud') != TOKEN_AUDIENCE:
            return TokenVerification(False, reason=VerifyReason.INVALID_CLAIMS)

        # exp is checked here against the injected clock, not by python-jose
        if self._clock() >= claims['exp']:
            return TokenVerification(False, reason=VerifyReason.EXPIRED)

        return TokenVerification(True, claims=claims)

    def verify(self, token: str,
               expected_type: TokenType = TokenType.ACCESS) -> TokenVerification:
        """
        Verify a token.

        Checks, in order: structure, algorithm, signature, type and
        registered claims, expiry, then the local revocation record.
        """
        result = self._check_signed(token, expected_type)
        if result.valid and self._store.is_revoked(token):
            return TokenVerification(False, reason=VerifyReason.REVOKED)
        return result

    def require(self, token: str,
                expected_type: TokenType = TokenType.ACCESS) -> Dict:
        """
        Verify and return claims, raising on failure.

        Raises:
            TokenExpired, TokenRevoked, or TokenInvalid
        """
        result = self.verify(token, expected_type)
        if not result.valid:
            error = _REASON_ERRORS.get(result.reason, TokenInvalid)
            raise error(result.reason.value)
        return result.claims

    # ------------------------------------------------------------------
    # Rotation and revocation
    # ------------------------------------------------------------------

    def rotate_refresh(self, old_refresh_token: str) -> TokenPair:
        """
        Exchange a refresh token for a brand-new access+refresh pair.

        The old refresh token is revoked in the same step the new pair is
        recorded; afterwards it fails with 'revoked' even though its
        signature and exp are still good.

        Raises:
            TokenExpired, TokenRevoked, or TokenInvalid
        """
        result = self._check_signed(old_refresh_token, TokenType.REFRESH)
        if not result.valid:
            if isinstance(old_refresh_token, str) and self._store.is_revoked(old_refresh_token):
                raise TokenRevoked("refresh token already rotated")
            raise _REASON_ERRORS.get(result.reason, TokenInvalid)(result.reason.value)

        user_id = int(result.claims['sub'])
        user = self._lookup_user(user_id)

        access = self._mint_access(user.id, user.email, user.username, user.role)
        refresh = self._mint(user.id, TokenType.REFRESH, self._refresh_ttl)

        outcome = self._store.rotate(old_refresh_token, [access, refresh], self._clock())
        if outcome is RotationOutcome.REVOKED:
            raise TokenRevoked("refresh token already rotated")
        if outcome is RotationOutcome.EXPIRED:
            raise TokenExpired("refresh record expired")
        if outcome is RotationOutcome.UNKNOWN:
            raise TokenInvalid("refresh token was never recorded")

        return TokenPair(access.token, refresh.token, expires_in=self._access_ttl)

    def _lookup_user(self, user_id: int) -> User:
        if self._users is None:
            raise RuntimeError("token service has no credential store")
        try:
            return self._users.require_user(user_id)
        except UserNotFound:
            raise TokenInvalid("token subject no longer exists")

    def revoke(self, token: str) -> bool:
        """Revoke a recorded token. Returns False if unknown or already revoked."""
        return self._store.revoke(token, self._clock())

    def record_for(self, token: str) -> Optional[TokenRecord]:
        return self._store.get(token)
