"""
One-time codes for the second factor.

RFC 4226 HOTP and its RFC 6238 time-based variant, plus the pieces an
authenticator app needs at enrollment: a base32 secret, an otpauth://
URI and a QR code of that URI.

A code is accepted for the current 30 second step and for exactly one
step before or after it.
"""

import base64
import hashlib
import hmac
import io
import secrets
import struct
import time
from urllib.parse import quote, urlencode

import qrcode
from qrcode.constants import ERROR_CORRECT_M


TOTP_DIGITS = 6
TOTP_TIME_STEP = 30
TOTP_SECRET_BYTES = 20  # 160 bits, the SHA-1 block recommendation
TOTP_ALGORITHM = 'SHA1'
TOTP_DRIFT_TOLERANCE = 1
TOTP_ISSUER = 'AuthLab'

_DIGESTS = {
    'SHA1': hashlib.sha1,
    'SHA256': hashlib.sha256,
    'SHA512': hashlib.sha512,
}


def generate_secret(length: int = TOTP_SECRET_BYTES) -> bytes:
    return secrets.token_bytes(length)


def secret_to_base32(secret: bytes) -> str:
    """Unpadded base32, the form authenticator apps expect."""
    return base64.b32encode(secret).decode('ascii').rstrip('=')


def base32_to_secret(encoded: str) -> bytes:
    """
    Decode a base32 secret, tolerating lower case, spaces and missing padding.

    Raises:
        ValueError: If the text is not base32
    """
    cleaned = encoded.replace(' ', '').upper()
    cleaned += '=' * (-len(cleaned) % 8)
    return base64.b32decode(cleaned)


def group_secret(encoded: str, size: int = 4) -> str:
    """Split a base32 secret into space separated groups for typing."""
    return ' '.join(encoded[i:i + size] for i in range(0, len(encoded), size))


def _step_index(timestamp, time_step: int) -> int:
    if timestamp is None:
        timestamp = time.time()
    return int(timestamp) // time_step


def hotp(secret: bytes, counter: int, digits: int = TOTP_DIGITS,
         algorithm: str = TOTP_ALGORITHM) -> str:
    """
    Compute an RFC 4226 code for a counter value.

    Args:
        secret: Shared key
        counter: Moving factor, packed as an unsigned 64-bit big-endian int
        digits: Length of the returned code
        algorithm: SHA1, SHA256 or SHA512

    Returns:
        Zero padded decimal code
    """
    digest_cls = _DIGESTS.get(algorithm.upper())
    if digest_cls is None:
        raise ValueError(f"unsupported OTP algorithm: {algorithm}")

    mac = hmac.new(secret, struct.pack('>Q', counter), digest_cls).digest()

    start = mac[-1] & 0x0F
    (value,) = struct.unpack('>I', mac[start:start + 4])
    value &= 0x7FFFFFFF

    return f"{value % 10 ** digits:0{digits}d}"


def totp(secret: bytes, timestamp: float = None,
         digits: int = TOTP_DIGITS,
         time_step: int = TOTP_TIME_STEP,
         algorithm: str = TOTP_ALGORITHM) -> str:
    """RFC 6238 code for a moment in time (now when timestamp is None)."""
    return hotp(secret, _step_index(timestamp, time_step), digits, algorithm)


def normalize_code(code) -> str:
    """Strip whitespace from a user-typed code."""
    return str(code).replace(' ', '').strip()


def verify_totp(secret: bytes, code: str,
                timestamp: float = None,
                digits: int = TOTP_DIGITS,
                time_step: int = TOTP_TIME_STEP,
                algorithm: str = TOTP_ALGORITHM,
                drift_tolerance: int = TOTP_DRIFT_TOLERANCE) -> bool:
    """
    Check a typed code against the steps around timestamp.

    Every candidate step is compared with hmac.compare_digest and the loop
    never exits early, so a hit in the previous step and a miss cost the
    same.

    Returns:
        True when the code matches any step in the window
    """
    candidate = normalize_code(code)

    # compare_digest needs ASCII; reject anything that is not d{digits}
    if len(candidate) != digits or not (candidate.isascii() and candidate.isdigit()):
        return False

    centre = _step_index(timestamp, time_step)
    matched = False
    for step in range(centre - drift_tolerance, centre + drift_tolerance + 1):
        if step < 0:
            continue
        if hmac.compare_digest(candidate, hotp(secret, step, digits, algorithm)):
            matched = True
    return matched


def get_remaining_seconds(time_step: int = TOTP_TIME_STEP,
                          timestamp: float = None) -> int:
    """Seconds left before the current code rolls over."""
    if timestamp is None:
        timestamp = time.time()
    return time_step - int(timestamp) % time_step


def provisioning_uri(secret_base32: str, account_name: str,
                     issuer: str = TOTP_ISSUER,
                     digits: int = TOTP_DIGITS,
                     time_step: int = TOTP_TIME_STEP,
                     algorithm: str = TOTP_ALGORITHM) -> str:
    """
    Key URI in the Google Authenticator format.

    otpauth://totp/Issuer:account?secret=...&issuer=...&algorithm=...
    """
    query = urlencode({
        'secret': secret_base32,
        'issuer': issuer,
        'algorithm': algorithm,
        'digits': digits,
        'period': time_step,
    }, quote_via=quote)
    return f"otpauth://totp/{quote(f'{issuer}:{account_name}', safe='')}?{query}"


def qr_data_uri(data: str) -> str:
    """Render data as a PNG QR code inside a data: URI."""
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=8, border=4)
    qr.add_data(data)
    qr.make(fit=True)

    buffer = io.BytesIO()
    qr.make_image(fill_color="black", back_color="white").save(buffer)
    encoded = base64.b64encode(buffer.getvalue()).decode('ascii')
    return f"data:image/png;base64,{encoded}"


class TOTPGenerator:
    """
    Code source bound to one secret.

    Example:
        >>> gen = TOTPGenerator.from_base32("JBSWY3DPEHPK3PXP")
        >>> gen.verify(gen.generate())
        True
    """

    def __init__(self, secret: bytes = None,
                 digits: int = TOTP_DIGITS,
                 time_step: int = TOTP_TIME_STEP,
                 algorithm: str = TOTP_ALGORITHM,
                 drift_tolerance: int = TOTP_DRIFT_TOLERANCE):
        self._secret = secret or generate_secret()
        self._digits = digits
        self._step = time_step
        self._algorithm = algorithm
        self._drift = drift_tolerance

    @classmethod
    def from_base32(cls, encoded: str, **kwargs) -> 'TOTPGenerator':
        return cls(secret=base32_to_secret(encoded), **kwargs)

    @property
    def secret_base32(self) -> str:
        return secret_to_base32(self._secret)

    def generate(self, timestamp: float = None) -> str:
        return totp(self._secret, timestamp, self._digits, self._step, self._algorithm)

    def verify(self, code: str, timestamp: float = None) -> bool:
        return verify_totp(self._secret, code, timestamp, self._digits,
                           self._step, self._algorithm, self._drift)

    def uri(self, account_name: str, issuer: str = TOTP_ISSUER) -> str:
        return provisioning_uri(self.secret_base32, account_name, issuer,
                                self._digits, self._step, self._algorithm)

    def __repr__(self) -> str:
        return f"TOTPGenerator(digits={self._digits}, step={self._step}s)"
