# Authentication Module
"""
Authentication mechanisms:
- Credential storage with Argon2id password hashing - credentials.py
- Server-side sessions - sessions.py
- HS256 JWT access/refresh tokens with rotation - tokens.py
- TOTP (RFC 6238) - totp.py
- MFA enrollment and backup codes - mfa.py
- Mock OAuth 2.0 authorization server - oauth.py

Security features:
- Argon2id for password and backup code hashing (PHC winner)
- Constant-time comparison for signatures and one-time codes
- Cryptographically secure random identifiers
- Single-use authorization codes, backup codes and refresh tokens
"""

from .errors import (
    AuthError,
    InvalidCredentials,
    UserNotFound,
    SessionError,
    SessionExpired,
    SessionNotFound,
    TokenError,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
    MfaError,
    MfaAlreadyEnabled,
    MfaCodeInvalid,
    MfaNotConfigured,
    BackupCodeReused,
    OAuthError,
    OAuthInvalidRequest,
    OAuthUnsupportedResponseType,
    OAuthInvalidGrant,
    OAuthCodeInvalid,
    OAuthCodeExpired,
    OAuthCodeReused,
    OAuthClientMismatch,
    OAuthRefreshInvalid,
    OAuthInvalidToken,
)

from .credentials import (
    PasswordHasher,
    CredentialStore,
    User,
    seed_default_users,
)

from .sessions import (
    Session,
    SessionManager,
    SessionStatus,
    SessionStore,
    generate_session_id,
    session_cookie,
)

from .tokens import (
    TokenPair,
    TokenService,
    TokenStore,
    TokenType,
    VerifyReason,
)

from .totp import (
    TOTPGenerator,
    totp,
    verify_totp,
    hotp,
    generate_secret,
    secret_to_base32,
    base32_to_secret,
)

from .mfa import (
    MfaService,
    MfaState,
    MfaStore,
)

from .oauth import (
    GrantType,
    OAuthProvider,
    OAuthToken,
)

__all__ = [
    # Errors
    'AuthError',
    'InvalidCredentials',
    'UserNotFound',
    'SessionError',
    'SessionExpired',
    'SessionNotFound',
    'TokenError',
    'TokenExpired',
    'TokenInvalid',
    'TokenRevoked',
    'MfaError',
    'MfaAlreadyEnabled',
    'MfaCodeInvalid',
    'MfaNotConfigured',
    'BackupCodeReused',
    'OAuthError',
    'OAuthInvalidRequest',
    'OAuthUnsupportedResponseType',
    'OAuthInvalidGrant',
    'OAuthCodeInvalid',
    'OAuthCodeExpired',
    'OAuthCodeReused',
    'OAuthClientMismatch',
    'OAuthRefreshInvalid',
    'OAuthInvalidToken',
    # Credentials
    'PasswordHasher',
    'CredentialStore',
    'User',
    'seed_default_users',
    # Sessions
    'Session',
    'SessionManager',
    'SessionStatus',
    'SessionStore',
    'generate_session_id',
    'session_cookie',
    # Tokens
    'TokenPair',
    'TokenService',
    'TokenStore',
    'TokenType',
    'VerifyReason',
    # TOTP
    'TOTPGenerator',
    'totp',
    'verify_totp',
    'hotp',
    'generate_secret',
    'secret_to_base32',
    'base32_to_secret',
    # MFA
    'MfaService',
    'MfaState',
    'MfaStore',
    # OAuth
    'GrantType',
    'OAuthProvider',
    'OAuthToken',
]
