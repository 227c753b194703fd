"""
Authentication Errors

Exception taxonomy shared by every auth primitive.

Each error carries:
- error_code: stable machine-readable identifier
- public_message: the only text that may be shown to a caller

Cryptographic and structural failures never put diagnostic detail in
public_message (prevents oracle attacks). The internal message passed to
the constructor is for the event log only.
"""

from typing import Dict, Optional


class AuthError(Exception):
    """Base class for all authentication failures."""
    error_code = "auth_error"
    public_message = "Authentication failed"
    recoverable = False

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message

    def to_dict(self) -> Dict:
        """Caller-safe representation."""
        return {
            'success': False,
            'error': self.error_code,
            'message': self.public_message,
        }


class InvalidCredentials(AuthError):
    """Unknown user or wrong password (never distinguished outward)."""
    error_code = "invalid_credentials"
    public_message = "Invalid username or password"
    recoverable = True


class UserNotFound(AuthError):
    error_code = "user_not_found"
    public_message = "User not found"


# Sessions: expired and not-found collapse to the same outward message.

class SessionError(AuthError):
    error_code = "session_invalid"
    public_message = "Session expired or not found. Please log in again."


class SessionNotFound(SessionError):
    pass


class SessionExpired(SessionError):
    pass


# Tokens

class TokenError(AuthError):
    error_code = "token_invalid"
    public_message = "Invalid or expired token"


class TokenInvalid(TokenError):
    """Malformed, bad signature, wrong algorithm or wrong type. Fatal."""
    error_code = "token_invalid"
    public_message = "Invalid token"


class TokenExpired(TokenError):
    """Recoverable through the refresh flow."""
    error_code = "token_expired"
    public_message = "Token expired. Please refresh."
    recoverable = True


class TokenRevoked(TokenError):
    """Superseded by refresh rotation or logout. Fatal."""
    error_code = "token_revoked"
    public_message = "Token has been revoked"


# MFA

class MfaError(AuthError):
    error_code = "mfa_error"
    public_message = "Multi-factor verification failed"


class MfaNotConfigured(MfaError):
    error_code = "mfa_not_configured"
    public_message = "MFA is not set up for this user"


class MfaAlreadyEnabled(MfaError):
    error_code = "mfa_already_enabled"
    public_message = "MFA is already enabled for this user"


class MfaCodeInvalid(MfaError):
    """Wrong or stale TOTP/backup code. The user may retry."""
    error_code = "invalid_mfa_code"
    public_message = "Invalid 2FA code"
    recoverable = True


class BackupCodeReused(MfaError):
    """This backup code is burned; the remaining codes still work."""
    error_code = "backup_code_reused"
    public_message = "Backup code has already been used"


# OAuth (RFC 6749 section 5.2 error model)

class OAuthError(AuthError):
    """Base for authorization server errors."""
    error = "invalid_request"
    error_code = "invalid_request"
    public_message = "Invalid request"

    def __init__(self, description: Optional[str] = None):
        super().__init__(description or self.public_message)
        self.error_description = description or self.public_message

    def to_dict(self) -> Dict:
        return {
            'error': self.error,
            'error_description': self.error_description,
        }


class OAuthInvalidRequest(OAuthError):
    """Missing or malformed parameters."""
    error = error_code = "invalid_request"


class OAuthUnsupportedResponseType(OAuthError):
    error = error_code = "unsupported_response_type"
    public_message = "Only the authorization code flow is supported"


class OAuthInvalidGrant(OAuthError):
    """Bad, expired or reused code or refresh token."""
    error = error_code = "invalid_grant"
    public_message = "Invalid grant"


class OAuthCodeInvalid(OAuthInvalidGrant):
    public_message = "Invalid authorization code"


class OAuthCodeExpired(OAuthInvalidGrant):
    public_message = "Authorization code expired"


class OAuthCodeReused(OAuthInvalidGrant):
    public_message = "Authorization code already used"


class OAuthClientMismatch(OAuthInvalidGrant):
    public_message = "Authorization code was issued to another client"


class OAuthRefreshInvalid(OAuthInvalidGrant):
    public_message = "Invalid refresh token"


class OAuthInvalidToken(OAuthError):
    """Unknown or expired provider access token (RFC 6750)."""
    error = error_code = "invalid_token"
    public_message = "Invalid access token"
