"""
Mock OAuth 2.0 Authorization Server

Implements the authorization code grant (RFC 6749 section 4.1) with:
- Short-lived, single-use authorization codes
- Provider-scoped opaque access and refresh tokens
- A canned user profile endpoint
- RFC 6749 error codes (invalid_request, invalid_grant, ...)

This is a teaching server, not a client to a real provider. Client
secrets are accepted but not checked; client ids only have to match
between authorize and exchange.

Authorization code lifecycle:

    issued -> consumed     (exactly one successful exchange)
    issued -> expired      (AUTH_CODE_TTL elapsed)
"""

import secrets
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from .credentials import CredentialStore
from .errors import (
    OAuthClientMismatch,
    OAuthCodeExpired,
    OAuthCodeInvalid,
    OAuthCodeReused,
    OAuthInvalidGrant,
    OAuthInvalidRequest,
    OAuthInvalidToken,
    OAuthRefreshInvalid,
    OAuthUnsupportedResponseType,
)


# Provider configuration
AUTH_CODE_TTL = 10 * 60                      # 10 minutes
OAUTH_ACCESS_TOKEN_TTL = 60 * 60             # 1 hour
OAUTH_REFRESH_TOKEN_TTL = 30 * 24 * 60 * 60  # 30 days
TOKEN_TYPE = 'Bearer'
DEFAULT_SCOPE = 'openid email profile'
SUPPORTED_RESPONSE_TYPE = 'code'
AVATAR_URL = 'https://i.pravatar.cc/150?u={email}'

# The app's own client registration, used by the callback flow
MOCK_CLIENT_ID = 'mock-client-id'
MOCK_CLIENT_SECRET = 'mock-client-secret'
MOCK_REDIRECT_URI = 'http://localhost:3000/api/auth/oauth/callback'


class GrantType(Enum):
    AUTHORIZATION_CODE = "authorization_code"
    REFRESH_TOKEN = "refresh_token"

    @classmethod
    def parse(cls, value: Optional[str]) -> 'GrantType':
        try:
            return cls(value)
        except ValueError:
            raise OAuthInvalidRequest(
                'grant_type must be "authorization_code" or "refresh_token"')


class CodeState(Enum):
    ISSUED = "issued"
    CONSUMED = "consumed"
    EXPIRED = "expired"


@dataclass
class AuthorizationCode:
    code: str
    client_id: str
    redirect_uri: str
    scope: str
    user_id: int
    issued_at: float
    expires_at: float
    consumed: bool = False

    def state(self, now: float) -> CodeState:
        if self.consumed:
            return CodeState.CONSUMED
        if now >= self.expires_at:
            return CodeState.EXPIRED
        return CodeState.ISSUED


@dataclass
class AuthorizationGrant:
    auth_code: str
    expires_at: float


@dataclass
class OAuthToken:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = TOKEN_TYPE
    scope: str = DEFAULT_SCOPE

    def to_dict(self) -> Dict:
        """RFC 6749 section 5.1 field names."""
        return {
            'access_token': self.access_token,
            'refresh_token': self.refresh_token,
            'expires_in': self.expires_in,
            'token_type': self.token_type,
            'scope': self.scope,
        }


@dataclass
class _TokenBinding:
    user_id: int
    client_id: str
    scope: str
    expires_at: float


class AuthorizationCodeStore:
    """Mutex-guarded map of code -> AuthorizationCode."""

    def __init__(self):
        self._codes: Dict[str, AuthorizationCode] = {}
        self._lock = threading.Lock()

    def add(self, record: AuthorizationCode) -> None:
        with self._lock:
            self._codes[record.code] = record

    def get(self, code: str) -> Optional[AuthorizationCode]:
        with self._lock:
            return self._codes.get(code)

    def consume(self, code: str, client_id: str, redirect_uri: Optional[str],
                now: float) -> AuthorizationCode:
        """
        Check and consume a code as one compare-and-set.

        Two concurrent exchanges of the same code cannot both succeed: the
        second one sees consumed=True and gets OAuthCodeReused.

        Raises:
            OAuthCodeInvalid, OAuthCodeReused, OAuthCodeExpired,
            OAuthClientMismatch, OAuthInvalidGrant
        """
        with self._lock:
            record = self._codes.get(code)
            if record is None:
                raise OAuthCodeInvalid()
            state = record.state(now)
            if state is CodeState.CONSUMED:
                raise OAuthCodeReused()
            if state is CodeState.EXPIRED:
                del self._codes[code]
                raise OAuthCodeExpired()
            if record.client_id != client_id:
                raise OAuthClientMismatch()
            if redirect_uri is not None and record.redirect_uri != redirect_uri:
                raise OAuthInvalidGrant("redirect_uri does not match the authorization request")
            record.consumed = True
            return record

    def purge_expired(self, now: float) -> int:
        """Drop expired unconsumed codes. Consumed codes stay to detect reuse."""
        with self._lock:
            expired = [c for c, r in self._codes.items() if r.state(now) is CodeState.EXPIRED]
            for code in expired:
                del self._codes[code]
            return len(expired)


class ProviderTokenStore:
    """Provider-side token bindings (token -> owning user)."""

    def __init__(self):
        self._access: Dict[str, _TokenBinding] = {}
        self._refresh: Dict[str, _TokenBinding] = {}
        self._lock = threading.Lock()

    def add_access(self, token: str, binding: _TokenBinding) -> None:
        with self._lock:
            self._access[token] = binding

    def add_refresh(self, token: str, binding: _TokenBinding) -> None:
        with self._lock:
            self._refresh[token] = binding

    def access_binding(self, token: str, now: float) -> Optional[_TokenBinding]:
        """Binding for a live access token; expired ones are dropped."""
        with self._lock:
            binding = self._access.get(token)
            if binding is not None and now >= binding.expires_at:
                del self._access[token]
                return None
            return binding

    def refresh_binding(self, token: str, now: float) -> Optional[_TokenBinding]:
        with self._lock:
            binding = self._refresh.get(token)
            if binding is not None and now >= binding.expires_at:
                del self._refresh[token]
                return None
            return binding

    def purge_expired(self, now: float) -> int:
        with self._lock:
            removed = 0
            for table in (self._access, self._refresh):
                for token in [t for t, b in table.items() if now >= b.expires_at]:
                    del table[token]
                    removed += 1
            return removed


def _new_token(prefix: str) -> str:
    return f"{prefix}_{secrets.token_urlsafe(32)}"


def _is_absolute_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def build_redirect_url(redirect_uri: str, params: Dict[str, str]) -> str:
    """Append query parameters to a redirect URI, keeping its own query."""
    parsed = urlparse(redirect_uri)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunparse(parsed._replace(query=urlencode(query)))


class OAuthProvider:
    """
    Mock authorization server.

    Example:
        >>> provider = OAuthProvider(users)
        >>> grant = provider.authorize('client-a', 'https://a.example/cb', 'read', 1)
        >>> token = provider.exchange_code(grant.auth_code, 'client-a')
        >>> provider.get_user_info(token.access_token)['email']
        'admin@example.com'
    """

    def __init__(self, users: CredentialStore,
                 code_store: Optional[AuthorizationCodeStore] = None,
                 token_store: Optional[ProviderTokenStore] = None,
                 code_ttl: int = AUTH_CODE_TTL,
                 access_ttl: int = OAUTH_ACCESS_TOKEN_TTL,
                 refresh_ttl: int = OAUTH_REFRESH_TOKEN_TTL,
                 clock: Callable[[], float] = time.time):
        self._users = users
        self._codes = code_store or AuthorizationCodeStore()
        self._tokens = token_store or ProviderTokenStore()
        self._code_ttl = code_ttl
        self._access_ttl = access_ttl
        self._refresh_ttl = refresh_ttl
        self._clock = clock

    @property
    def codes(self) -> AuthorizationCodeStore:
        return self._codes

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def authorize(self, client_id: str, redirect_uri: str, scope: str,
                  user_id: int) -> AuthorizationGrant:
        """
        Mint a single-use code bound to (client, redirect, scope, user).

        Raises:
            OAuthInvalidRequest: Missing parameter or unknown user
        """
        if not client_id or not redirect_uri or not scope:
            raise OAuthInvalidRequest("Missing required parameters: client_id, redirect_uri, scope")
        if self._users.get_user(user_id) is None:
            raise OAuthInvalidRequest("Unknown resource owner")

        now = self._clock()
        record = AuthorizationCode(
            code=_new_token('code'),
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope,
            user_id=user_id,
            issued_at=now,
            expires_at=now + self._code_ttl,
        )
        self._codes.add(record)
        return AuthorizationGrant(auth_code=record.code, expires_at=record.expires_at)

    def exchange_code(self, code: str, client_id: str,
                      client_secret: Optional[str] = None,
                      redirect_uri: Optional[str] = None) -> OAuthToken:
        """
        Trade an authorization code for a provider token pair.

        Raises:
            OAuthInvalidRequest: Missing code or client_id
            OAuthInvalidGrant (or a subclass): Bad, expired, reused or
                foreign code
        """
        if not code or not client_id:
            raise OAuthInvalidRequest("Missing required parameters: code, client_id")

        now = self._clock()
        record = self._codes.consume(code, client_id, redirect_uri, now)
        return self._issue(record.user_id, record.client_id, record.scope, now)

    def _issue(self, user_id: int, client_id: str, scope: str, now: float,
               refresh_token: Optional[str] = None) -> OAuthToken:
        access_token = _new_token('access')
        self._tokens.add_access(access_token, _TokenBinding(
            user_id, client_id, scope, now + self._access_ttl))
        if refresh_token is None:
            refresh_token = _new_token('refresh')
            self._tokens.add_refresh(refresh_token, _TokenBinding(
                user_id, client_id, scope, now + self._refresh_ttl))
        return OAuthToken(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self._access_ttl,
            scope=scope,
        )

    def refresh_access_token(self, refresh_token: str) -> OAuthToken:
        """
        Issue a new access token for the refresh token's user.

        Public refresh: no client secret. The refresh token itself is not
        rotated and comes back unchanged.

        Raises:
            OAuthInvalidRequest: Missing refresh token
            OAuthRefreshInvalid: Unknown or expired refresh token
        """
        if not refresh_token:
            raise OAuthInvalidRequest("Missing refresh token")

        now = self._clock()
        binding = self._tokens.refresh_binding(refresh_token, now)
        if binding is None:
            raise OAuthRefreshInvalid()
        return self._issue(binding.user_id, binding.client_id, binding.scope, now,
                           refresh_token=refresh_token)

    def get_user_info(self, access_token: str) -> Dict:
        """
        Deterministic profile of the token's user.

        Raises:
            OAuthInvalidRequest: Missing token
            OAuthInvalidToken: Unknown/expired token or vanished user
        """
        if not access_token:
            raise OAuthInvalidRequest("Missing access token")

        binding = self._tokens.access_binding(access_token, self._clock())
        if binding is None:
            raise OAuthInvalidToken()

        user = self._users.get_user(binding.user_id)
        if user is None:
            raise OAuthInvalidToken("User not found")

        return {
            'id': str(user.id),
            'email': user.email,
            'name': user.username,
            'picture': AVATAR_URL.format(email=user.email),
            'roles': [user.role],
        }

    # ------------------------------------------------------------------
    # Endpoint fronts
    # ------------------------------------------------------------------

    def authorize_request(self, client_id: Optional[str], redirect_uri: Optional[str],
                          response_type: Optional[str] = SUPPORTED_RESPONSE_TYPE,
                          scope: Optional[str] = None, state: Optional[str] = None,
                          user_id: int = 1) -> Dict:
        """
        Authorization endpoint.

        Returns the redirect URL carrying code (and state when given).
        """
        if not client_id or not redirect_uri:
            raise OAuthInvalidRequest("Missing required parameters: client_id, redirect_uri")
        if not _is_absolute_url(redirect_uri):
            raise OAuthInvalidRequest("redirect_uri must be an absolute http(s) URL")
        if (response_type or SUPPORTED_RESPONSE_TYPE) != SUPPORTED_RESPONSE_TYPE:
            raise OAuthUnsupportedResponseType()

        grant = self.authorize(client_id, redirect_uri, scope or DEFAULT_SCOPE, user_id)
        return {
            'redirect_url': build_redirect_url(redirect_uri, {'code': grant.auth_code, 'state': state}),
            'code': grant.auth_code,
            'state': state,
            'expires_at': grant.expires_at,
        }

    def token_request(self, grant_type: Optional[str], client_id: Optional[str] = None,
                      code: Optional[str] = None, refresh_token: Optional[str] = None,
                      client_secret: Optional[str] = None,
                      redirect_uri: Optional[str] = None) -> OAuthToken:
        """Token endpoint, dispatching on GrantType."""
        grant = GrantType.parse(grant_type)

        if grant is GrantType.AUTHORIZATION_CODE:
            if not code or not client_id:
                raise OAuthInvalidRequest("Missing required parameters: code, client_id")
            return self.exchange_code(code, client_id, client_secret, redirect_uri)

        if grant is GrantType.REFRESH_TOKEN:
            if not refresh_token or not client_id:
                raise OAuthInvalidRequest("Missing required parameters: refresh_token, client_id")
            return self.refresh_access_token(refresh_token)

        raise OAuthInvalidRequest(f"Unhandled grant type: {grant.value}")

    def cleanup(self) -> int:
        """Drop expired codes and tokens. Returns the number removed."""
        now = self._clock()
        return self._codes.purge_expired(now) + self._tokens.purge_expired(now)
