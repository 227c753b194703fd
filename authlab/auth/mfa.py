"""
MFA Module

TOTP enrollment and verification plus single-use backup codes.

Enrollment is an explicit state machine:

    UNENROLLED -> PENDING_VERIFICATION -> ENABLED

setup() moves a user to PENDING_VERIFICATION. The first successful
verification (TOTP or backup code) moves them to ENABLED and mirrors the
flag onto the user record. ENABLED never reverts.

Backup codes are shown once, stored as Argon2id hashes, and burned on use.
"""

import secrets
import string
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional

from .credentials import CredentialStore, PasswordHasher
from .errors import BackupCodeReused, MfaAlreadyEnabled, MfaCodeInvalid, MfaNotConfigured
from .totp import (
    TOTP_DRIFT_TOLERANCE,
    TOTP_ISSUER,
    base32_to_secret,
    generate_secret,
    group_secret,
    provisioning_uri,
    qr_data_uri,
    secret_to_base32,
    verify_totp,
)


BACKUP_CODE_COUNT = 10
BACKUP_CODE_LENGTH = 8
BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits


class MfaState(Enum):
    UNENROLLED = "unenrolled"
    PENDING_VERIFICATION = "pending_verification"
    ENABLED = "enabled"


@dataclass
class MfaSecret:
    """Per-user MFA enrollment record."""
    user_id: int
    secret: str                      # base32
    backup_codes: List[str]          # Argon2id hashes
    created_at: float
    used_codes: List[str] = field(default_factory=list)  # normalized plaintext
    state: MfaState = MfaState.PENDING_VERIFICATION
    activated_at: Optional[float] = None

    @property
    def enabled(self) -> bool:
        return self.state is MfaState.ENABLED

    @property
    def remaining_backup_codes(self) -> int:
        return len(self.backup_codes) - len(self.used_codes)


@dataclass
class TotpSecret:
    """A freshly generated TOTP secret and the ways to hand it to a user."""
    secret: str
    qr_payload: str
    manual_entry: str
    provisioning_uri: str


@dataclass
class MfaVerification:
    method: str                  # 'totp' or 'backup_code'
    activated: bool              # True only on the enrollment-completing call
    remaining_backup_codes: int

    def to_dict(self) -> Dict:
        return {
            'success': True,
            'method': self.method,
            'activated': self.activated,
            'remainingBackupCodes': self.remaining_backup_codes,
        }


class MfaStore:
    """Mutex-guarded map of user id -> MfaSecret."""

    def __init__(self):
        self._secrets: Dict[int, MfaSecret] = {}
        self._lock = threading.Lock()

    def put_pending(self, record: MfaSecret) -> None:
        """
        Store a new pending enrollment.

        Raises:
            MfaAlreadyEnabled: If the user already finished enrollment
        """
        with self._lock:
            existing = self._secrets.get(record.user_id)
            if existing is not None and existing.enabled:
                raise MfaAlreadyEnabled(f"user {record.user_id} already enrolled")
            self._secrets[record.user_id] = record

    def get(self, user_id: int) -> Optional[MfaSecret]:
        with self._lock:
            record = self._secrets.get(user_id)
            if record is None:
                return None
            return replace(record, backup_codes=list(record.backup_codes),
                           used_codes=list(record.used_codes))

    def state_of(self, user_id: int) -> MfaState:
        with self._lock:
            record = self._secrets.get(user_id)
            return record.state if record else MfaState.UNENROLLED

    def mark_code_used(self, user_id: int, normalized_code: str) -> bool:
        """Append to used_codes unless already present. False means a reuse."""
        with self._lock:
            record = self._secrets[user_id]
            if normalized_code in record.used_codes:
                return False
            if len(record.used_codes) >= len(record.backup_codes):
                return False
            record.used_codes.append(normalized_code)
            return True

    def activate(self, user_id: int, now: float) -> bool:
        """PENDING_VERIFICATION -> ENABLED. True only for the transitioning call."""
        with self._lock:
            record = self._secrets[user_id]
            if record.state is MfaState.ENABLED:
                return False
            record.state = MfaState.ENABLED
            record.activated_at = now
            return True


def normalize_backup_code(code: str) -> str:
    """Drop dashes and spaces, upper-case."""
    return str(code).replace('-', '').replace(' ', '').strip().upper()


class MfaService:
    """
    TOTP + backup code service.

    Example:
        >>> mfa = MfaService(users)
        >>> setup = mfa.setup(1)
        >>> mfa.verify(1, TOTPGenerator.from_base32(setup['secret']).generate())
    """

    def __init__(self, users: CredentialStore,
                 store: Optional[MfaStore] = None,
                 hasher: Optional[PasswordHasher] = None,
                 issuer: str = TOTP_ISSUER,
                 backup_code_count: int = BACKUP_CODE_COUNT,
                 drift_tolerance: int = TOTP_DRIFT_TOLERANCE,
                 clock: Callable[[], float] = time.time):
        self._users = users
        self._store = store or MfaStore()
        self._hasher = hasher or users.hasher
        self._issuer = issuer
        self._backup_code_count = backup_code_count
        self._drift_tolerance = drift_tolerance
        self._clock = clock

    @property
    def store(self) -> MfaStore:
        return self._store

    # ------------------------------------------------------------------
    # Stateless primitives
    # ------------------------------------------------------------------

    def generate_secret(self, account_label: str) -> TotpSecret:
        """New base32 secret with its otpauth URI, QR data URI and typed form."""
        secret = secret_to_base32(generate_secret())
        uri = provisioning_uri(secret, account_label, self._issuer)
        return TotpSecret(
            secret=secret,
            qr_payload=qr_data_uri(uri),
            manual_entry=group_secret(secret),
            provisioning_uri=uri,
        )

    def generate_backup_codes(self, n: int = BACKUP_CODE_COUNT) -> List[str]:
        """n random XXXX-XXXX codes."""
        codes = []
        half = BACKUP_CODE_LENGTH // 2
        for _ in range(n):
            raw = ''.join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
            codes.append(f"{raw[:half]}-{raw[half:]}")
        return codes

    def hash_backup_codes(self, codes: List[str]) -> List[str]:
        return [self._hasher.hash_password(normalize_backup_code(c)) for c in codes]

    def verify_totp(self, secret: str, candidate_code: str,
                    timestamp: float = None) -> bool:
        """Check a 6-digit code against a base32 secret, +/- one step."""
        try:
            raw_secret = base32_to_secret(secret)
        except ValueError:
            return False
        if timestamp is None:
            timestamp = self._clock()
        return verify_totp(raw_secret, candidate_code, timestamp,
                           drift_tolerance=self._drift_tolerance)

    def verify_backup_code(self, hashed_codes: List[str], used_codes: List[str],
                           candidate: str) -> bool:
        """
        Check a backup code.

        A code already in used_codes is rejected before any hash comparison.
        """
        normalized = normalize_backup_code(candidate)
        if not normalized or normalized in used_codes:
            return False
        return self._match_backup_code(hashed_codes, normalized)

    def _match_backup_code(self, hashed_codes: List[str], normalized: str) -> bool:
        for hashed in hashed_codes:
            if self._hasher.verify_password(normalized, hashed):
                return True
        return False

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    def state(self, user_id: int) -> MfaState:
        return self._store.state_of(user_id)

    def get_record(self, user_id: int) -> Optional[MfaSecret]:
        return self._store.get(user_id)

    def setup(self, user_id: int) -> Dict:
        """
        Start (or restart) enrollment.

        Returns the setup response. The plaintext backup codes appear here
        and nowhere else.

        Raises:
            UserNotFound: Unknown user
            MfaAlreadyEnabled: Enrollment already completed
        """
        user = self._users.require_user(user_id)
        if self._store.state_of(user_id) is MfaState.ENABLED:
            raise MfaAlreadyEnabled(f"user {user_id} already enrolled")

        totp_secret = self.generate_secret(user.email)
        backup_codes = self.generate_backup_codes(self._backup_code_count)

        self._store.put_pending(MfaSecret(
            user_id=user_id,
            secret=totp_secret.secret,
            backup_codes=self.hash_backup_codes(backup_codes),
            created_at=self._clock(),
        ))

        return {
            'secret': totp_secret.secret,
            'qrPayload': totp_secret.qr_payload,
            'manualEntry': totp_secret.manual_entry,
            'provisioningUri': totp_secret.provisioning_uri,
            'backupCodes': backup_codes,
        }

    def verify(self, user_id: int, code: str,
               use_backup_code: bool = False) -> MfaVerification:
        """
        Verify a TOTP or backup code for a user.

        The first success completes enrollment; later successes (e.g. at
        login) do not re-run activation.

        Raises:
            MfaNotConfigured: setup() was never called for this user
            BackupCodeReused: The backup code was burned earlier
            MfaCodeInvalid: Wrong code
        """
        record = self._store.get(user_id)
        if record is None:
            raise MfaNotConfigured(f"user {user_id} has no MFA record")

        if use_backup_code:
            normalized = normalize_backup_code(code)
            if normalized in record.used_codes:
                raise BackupCodeReused("backup code already used")
            if not normalized or not self._match_backup_code(record.backup_codes, normalized):
                raise MfaCodeInvalid("backup code mismatch")
            if not self._store.mark_code_used(user_id, normalized):
                raise BackupCodeReused("backup code used concurrently")
            method = 'backup_code'
        else:
            if not self.verify_totp(record.secret, code):
                raise MfaCodeInvalid("totp mismatch")
            method = 'totp'

        activated = self._store.activate(user_id, self._clock())
        if activated:
            self._users.set_mfa_enabled(user_id)

        remaining = self._store.get(user_id).remaining_backup_codes
        return MfaVerification(method=method, activated=activated,
                               remaining_backup_codes=remaining)
