"""
Authentication Flows

Wires the credential store, sessions, tokens, MFA and the mock OAuth
provider into request-shaped operations. Every flow returns a plain dict
with a 'status' key carrying the HTTP status a web layer would send.

Every flow records SecurityEvents. AuthErrors become their public
representation; anything unexpected is logged as INTERNAL_ERROR and
answered with a generic server error.
"""

import functools
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional

from ..auth.credentials import CredentialStore, PasswordHasher, seed_default_users
from ..auth.errors import (
    AuthError,
    BackupCodeReused,
    InvalidCredentials,
    MfaAlreadyEnabled,
    MfaCodeInvalid,
    MfaError,
    MfaNotConfigured,
    OAuthError,
    OAuthInvalidGrant,
    OAuthInvalidToken,
    SessionError,
    SessionNotFound,
    TokenError,
    UserNotFound,
)
from ..auth.mfa import MfaService, MfaState
from ..auth.oauth import MOCK_CLIENT_ID, MOCK_CLIENT_SECRET, OAuthProvider
from ..auth.sessions import SessionManager, expired_session_cookie, session_cookie
from ..auth.tokens import TokenService, VerifyReason
from .event_logger import EventLogger, EventType


MFA_CHALLENGE_TTL = 5 * 60  # seconds to enter a second factor after the password

# Most specific class wins (looked up along the exception's MRO)
_ERROR_STATUS = {
    InvalidCredentials: 401,
    UserNotFound: 404,
    SessionError: 401,
    TokenError: 401,
    MfaNotConfigured: 400,
    MfaAlreadyEnabled: 409,
    MfaCodeInvalid: 401,
    BackupCodeReused: 401,
    OAuthInvalidToken: 401,
    OAuthError: 400,
    AuthError: 400,
}

INTERNAL_ERROR_RESPONSE = {
    'success': False,
    'error': 'server_error',
    'message': 'Internal server error',
    'status': 500,
}

# Verification failures a caller may see as-is
_PUBLIC_VERIFY_REASONS = (VerifyReason.EXPIRED, VerifyReason.REVOKED)


def error_status(error: AuthError) -> int:
    for cls in type(error).__mro__:
        if cls in _ERROR_STATUS:
            return _ERROR_STATUS[cls]
    return 400


def error_response(error: AuthError, status: Optional[int] = None) -> Dict:
    body = error.to_dict()
    body['status'] = status or error_status(error)
    return body


def bad_request(message: str) -> Dict:
    return {'success': False, 'error': 'invalid_request', 'message': message, 'status': 400}


def unauthorized(message: str) -> Dict:
    return {'success': False, 'error': 'authentication_required', 'message': message, 'status': 401}


def public_verify_error(reason: VerifyReason) -> str:
    """Collapse structural and cryptographic failures into one answer."""
    if reason in _PUBLIC_VERIFY_REASONS:
        return reason.value
    return 'invalid_token'


def parse_bearer(header: Optional[str]) -> Optional[str]:
    """Token from 'Bearer <token>', or None if the header has another shape."""
    if not header:
        return None
    parts = header.split(' ')
    if len(parts) != 2 or parts[0] != 'Bearer' or not parts[1]:
        return None
    return parts[1]


def flow(operation: str):
    """Turn AuthErrors into responses and log everything else as internal."""
    def decorator(method):
        @functools.wraps(method)
        def wrapper(self, *args, **kwargs):
            try:
                return method(self, *args, **kwargs)
            except AuthError as exc:
                return error_response(exc)
            except Exception as exc:
                self.logger.log_error(operation, exc)
                return dict(INTERNAL_ERROR_RESPONSE)
        return wrapper
    return decorator


class AuthFlows:
    """
    All authentication mechanisms behind one facade.

    Example:
        >>> flows = AuthFlows()
        >>> result = flows.on_login('admin', 'admin123')
        >>> flows.verify_session(result['sessionId'])['authenticated']
        True
    """

    def __init__(self, users: Optional[CredentialStore] = None,
                 sessions: Optional[SessionManager] = None,
                 tokens: Optional[TokenService] = None,
                 mfa: Optional[MfaService] = None,
                 oauth: Optional[OAuthProvider] = None,
                 logger: Optional[EventLogger] = None,
                 hasher: Optional[PasswordHasher] = None,
                 mfa_challenge_ttl: int = MFA_CHALLENGE_TTL,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            users: Credential store (seeded with the default accounts if None)
            sessions, tokens, mfa, oauth: Services (built on users if None)
            logger: Audit log
            hasher: Password hasher for a freshly built credential store
            mfa_challenge_ttl: Seconds a password-verified login waits for MFA
            clock: Time source shared by everything built here
        """
        self._clock = clock
        if users is None:
            users = seed_default_users(CredentialStore(hasher=hasher, clock=clock))
        self.users = users
        self.sessions = sessions or SessionManager(clock=clock)
        self.tokens = tokens or TokenService(users, clock=clock)
        self.mfa = mfa or MfaService(users, clock=clock)
        self.oauth = oauth or OAuthProvider(users, clock=clock)
        self.logger = logger or EventLogger(clock=clock)
        self._mfa_challenge_ttl = mfa_challenge_ttl
        self._pending_mfa: Dict[int, float] = {}
        self._pending_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Pending MFA logins
    # ------------------------------------------------------------------

    def _open_mfa_challenge(self, user_id: int) -> None:
        with self._pending_lock:
            self._pending_mfa[user_id] = self._clock() + self._mfa_challenge_ttl

    def _close_mfa_challenge(self, user_id: int) -> bool:
        """Pop a pending login. True if it existed and had not expired."""
        with self._pending_lock:
            deadline = self._pending_mfa.pop(user_id, None)
        return deadline is not None and self._clock() < deadline

    def has_pending_mfa(self, user_id: int) -> bool:
        with self._pending_lock:
            deadline = self._pending_mfa.get(user_id)
        return deadline is not None and self._clock() < deadline

    def _authenticate(self, username, password, method: str):
        try:
            return self.users.authenticate(username, password)
        except InvalidCredentials:
            self.logger.log_login(username, False, method)
            raise

    # ------------------------------------------------------------------
    # Session authentication
    # ------------------------------------------------------------------

    @flow('login')
    def on_login(self, username: str, password: str,
                 presented_session_ids: Iterable[Optional[str]] = ()) -> Dict:
        """
        Password login that establishes a server-side session.

        Any session id the client already held is destroyed. Users with
        MFA enabled get an MFA challenge instead of a session.
        """
        if not username or not password:
            return bad_request('Username and password are required')
        if not isinstance(username, str) or not isinstance(password, str):
            return bad_request('Invalid input format')

        user = self._authenticate(username, password, 'session')

        if user.mfa_enabled and self.mfa.state(user.id) is MfaState.ENABLED:
            for old_id in presented_session_ids:
                self.sessions.destroy(old_id)
            self._open_mfa_challenge(user.id)
            self.logger.log_login(user.id, True, 'session', mfa_required=True)
            return {
                'success': True,
                'mfaRequired': True,
                'userId': user.id,
                'message': 'Please enter your 2FA code to complete login',
                'status': 200,
            }

        session_id = self.sessions.regenerate(user.id, presented_session_ids)
        self.logger.log_login(user.id, True, 'session')
        return {
            'success': True,
            'user': user.public_view(),
            'sessionId': session_id,
            'cookie': session_cookie(session_id),
            'status': 200,
        }

    @flow('mfa_verify')
    def on_verify_mfa(self, user_id: int, code: str,
                      use_backup_code: bool = False) -> Dict:
        """
        Verify a TOTP or backup code.

        Completes enrollment on first success. If a password login is
        waiting on this user, also finishes it with a new session.
        """
        if not user_id or not code:
            return bad_request('userId and code are required')

        user = self.users.require_user(user_id)
        method = 'backup_code' if use_backup_code else 'totp'
        try:
            verification = self.mfa.verify(user_id, code, use_backup_code)
        except MfaError as exc:
            self.logger.log_mfa(user_id, False, method, exc.error_code)
            raise

        self.logger.log_mfa(user_id, True, method)
        body = verification.to_dict()
        body['message'] = 'MFA verified successfully'
        body['status'] = 200

        if self._close_mfa_challenge(user_id):
            session_id = self.sessions.create_session(user_id)
            self.logger.log_login(user.id, True, 'session+mfa')
            body.update({
                'user': self.users.require_user(user_id).public_view(),
                'sessionId': session_id,
                'cookie': session_cookie(session_id),
            })
        return body

    @flow('mfa_setup')
    def setup_mfa(self, user_id: int) -> Dict:
        if not user_id:
            return bad_request('userId is required')
        setup = self.mfa.setup(user_id)
        self.logger.log_mfa_setup(user_id)
        setup['success'] = True
        setup['status'] = 200
        return setup

    @flow('logout')
    def logout(self, session_id: Optional[str]) -> Dict:
        """Destroy the session if there is one. Always succeeds."""
        session = self.sessions.peek(session_id) if session_id else None
        self.sessions.destroy(session_id)
        self.logger.log_logout(session.user_id if session else None)
        return {
            'success': True,
            'message': 'Logged out',
            'cookie': expired_session_cookie(),
            'status': 200,
        }

    @flow('session_verify')
    def verify_session(self, session_id: Optional[str]) -> Dict:
        """
        Check a session cookie.

        Expired and unknown sessions get the same answer.
        """
        validation = self.sessions.validate(session_id)
        self.logger.log_session_check(validation.user_id, validation.valid,
                                      validation.status.value)
        session = validation.raise_for_status()

        user = self.users.get_user(session.user_id)
        if user is None:
            self.sessions.destroy(session_id)
            raise SessionNotFound("session user vanished")

        return {
            'authenticated': True,
            'user': user.public_view(),
            'method': 'session',
            'status': 200,
        }

    @flow('session_info')
    def session_info(self, session_id: Optional[str]) -> Dict:
        """Debug view of a session. Does not touch or purge it."""
        if not session_id:
            return {'error': 'No session cookie found', 'sessionExists': False, 'status': 401}
        session = self.sessions.peek(session_id)
        if session is None:
            return {'error': 'Session not found', 'sessionExists': False, 'status': 401}

        body = session.to_dict(self._clock())
        body['sessionExists'] = True
        body['status'] = 200
        return body

    # ------------------------------------------------------------------
    # Token authentication
    # ------------------------------------------------------------------

    @flow('jwt_sign')
    def jwt_login(self, username: str, password: str) -> Dict:
        """Password login that returns an access/refresh token pair."""
        if not username or not password:
            return bad_request('Username and password are required')
        if not isinstance(username, str) or not isinstance(password, str):
            return bad_request('Invalid input format')

        user = self._authenticate(username, password, 'jwt')
        pair = self.tokens.issue_token_pair(user)
        self.logger.log_login(user.id, True, 'jwt')
        self.logger.log_token(EventType.JWT_SIGN, user.id, True)

        body = pair.to_dict()
        body.update({'success': True, 'user': user.public_view(), 'status': 200})
        return body

    @flow('jwt_verify')
    def verify_jwt(self, token: str) -> Dict:
        """
        Verify an access token.

        Callers only learn expired, revoked or invalid_token; the exact
        reason goes to the event log.
        """
        if not token:
            return {'valid': False, 'error': 'Token is required', 'status': 400}
        if not isinstance(token, str):
            return {'valid': False, 'error': 'Invalid token format', 'status': 400}

        result = self.tokens.verify(token)
        if not result.valid:
            self.logger.log_token(EventType.JWT_VERIFY, None, False, result.reason.value)
            return {'valid': False, 'error': public_verify_error(result.reason), 'status': 401}

        self.logger.log_token(EventType.JWT_VERIFY, int(result.claims['sub']), True)
        return {'valid': True, 'decoded': result.claims, 'status': 200}

    @flow('token_refresh')
    def on_refresh(self, refresh_token: str) -> Dict:
        """Rotate a refresh token into a fresh pair."""
        if not refresh_token:
            return bad_request('Refresh token is required')

        try:
            pair = self.tokens.rotate_refresh(refresh_token)
        except TokenError as exc:
            self.logger.log_token(EventType.TOKEN_REFRESH, None, False, exc.error_code)
            raise

        record = self.tokens.record_for(pair.access_token)
        self.logger.log_token(EventType.TOKEN_REFRESH, record.user_id, True)
        body = pair.to_dict()
        body.update({'success': True, 'status': 200})
        return body

    @flow('protected_access')
    def access_protected_resource(self, authorization: Optional[str]) -> Dict:
        """
        A resource behind Bearer authentication.

        The token must verify (signature, expiry, revocation record) and
        its subject must still exist.
        """
        if not authorization:
            return unauthorized('No Authorization header provided')
        token = parse_bearer(authorization)
        if token is None:
            return unauthorized('Invalid Authorization header format. Expected: Bearer <token>')

        try:
            claims = self.tokens.require(token)
        except TokenError as exc:
            self.logger.log_token(EventType.PROTECTED_ACCESS, None, False, exc.error_code)
            return unauthorized(exc.public_message)

        user = self.users.get_user(int(claims['sub']))
        if user is None:
            self.logger.log_token(EventType.PROTECTED_ACCESS, None, False, 'user_not_found')
            return unauthorized('User not found')

        self.logger.log_token(EventType.PROTECTED_ACCESS, user.id, True)
        return {
            'message': 'You have access to protected resource',
            'data': {
                'secretInfo': 'This is confidential data only accessible with valid JWT',
                'userId': user.id,
                'username': user.username,
                'role': user.role,
                'timestamp': datetime.fromtimestamp(self._clock(), timezone.utc).isoformat(),
            },
            'tokenInfo': {
                'issuedAt': claims['iat'],
                'expiresAt': claims['exp'],
                'type': claims['type'],
            },
            'status': 200,
        }

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    @flow('oauth_authorize')
    def oauth_authorize(self, client_id: Optional[str], redirect_uri: Optional[str],
                        response_type: Optional[str] = 'code',
                        scope: Optional[str] = None, state: Optional[str] = None,
                        user_id: int = 1) -> Dict:
        """Authorization endpoint (the resource owner is auto-approved)."""
        try:
            result = self.oauth.authorize_request(
                client_id, redirect_uri, response_type, scope, state, user_id)
        except OAuthError as exc:
            self.logger.log_oauth(EventType.OAUTH_AUTHORIZE, client_id, user_id, False, exc.error)
            raise

        self.logger.log_oauth(EventType.OAUTH_AUTHORIZE, client_id, user_id, True)
        result['status'] = 302
        return result

    @flow('oauth_token')
    def oauth_token(self, grant_type: Optional[str], client_id: Optional[str] = None,
                    code: Optional[str] = None, refresh_token: Optional[str] = None,
                    client_secret: Optional[str] = None,
                    redirect_uri: Optional[str] = None) -> Dict:
        """Token endpoint for both the code and the refresh grant."""
        try:
            token = self.oauth.token_request(grant_type, client_id, code, refresh_token,
                                             client_secret, redirect_uri)
        except OAuthError as exc:
            self.logger.log_oauth(EventType.OAUTH_EXCHANGE, client_id, None, False, exc.error)
            raise

        self.logger.log_oauth(EventType.OAUTH_EXCHANGE, client_id, None, True)
        body = token.to_dict()
        body['status'] = 200
        return body

    @flow('oauth_callback')
    def oauth_callback(self, code: Optional[str], state: Optional[str] = None,
                       error: Optional[str] = None,
                       error_description: Optional[str] = None) -> Dict:
        """
        Redirect target when the app itself is the OAuth client.

        Exchanges the code as the app's registered client, reads the
        provider profile and signs the user into the app with an access
        token.
        """
        if error:
            return {
                'success': False,
                'error': error,
                'error_description': error_description or 'Authorization failed',
                'status': 400,
            }
        if not code:
            return {
                'success': False,
                'error': 'invalid_request',
                'error_description': 'Missing authorization code',
                'status': 400,
            }

        try:
            provider_token = self.oauth.exchange_code(code, MOCK_CLIENT_ID, MOCK_CLIENT_SECRET)
            profile = self.oauth.get_user_info(provider_token.access_token)
        except OAuthInvalidGrant as exc:
            self.logger.log_oauth(EventType.OAUTH_EXCHANGE, MOCK_CLIENT_ID, None, False, exc.error)
            body = exc.to_dict()
            body.update({'success': False, 'status': 401})
            return body

        user = self.users.get_user(int(profile['id']))
        if user is None:
            return {'success': False, 'error': 'user_not_found', 'status': 404}

        app_token = self.tokens.issue_access_token(user.id, user.email, user.username, user.role)
        self.logger.log_oauth(EventType.OAUTH_EXCHANGE, MOCK_CLIENT_ID, user.id, True)

        return {
            'success': True,
            'user': {
                'id': user.id,
                'username': user.username,
                'email': user.email,
                'role': user.role,
                'oauth': {
                    'id': profile['id'],
                    'name': profile['name'],
                    'picture': profile['picture'],
                },
            },
            'token': app_token,
            'expiresIn': self.tokens.access_ttl,
            'state': state,
            'status': 200,
        }
