"""
Shared fixtures.

Services take a clock callable, so tests drive time explicitly instead of
sleeping. Argon2 runs with minimum cost to keep the suite fast.
"""

import pytest

from authlab.auth.credentials import CredentialStore, PasswordHasher, seed_default_users
from authlab.auth.mfa import MfaService
from authlab.auth.oauth import OAuthProvider
from authlab.auth.sessions import SessionManager
from authlab.auth.tokens import TokenService
from authlab.integration.auth_flows import AuthFlows
from authlab.integration.event_logger import EventLogger


# Start on a 30-second boundary so TOTP steps line up with whole advances
START_TIME = 1_700_000_010


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = START_TIME):
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(scope="session")
def fast_hasher():
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def users(fast_hasher, clock):
    """Store seeded with admin (1), user (2) and demo (3)."""
    return seed_default_users(CredentialStore(hasher=fast_hasher, clock=clock))


@pytest.fixture
def sessions(clock):
    return SessionManager(clock=clock)


@pytest.fixture
def tokens(users, clock):
    return TokenService(users, secret_key=b"test-secret-key-0123456789abcdef", clock=clock)


@pytest.fixture
def mfa(users, clock):
    return MfaService(users, clock=clock)


@pytest.fixture
def oauth(users, clock):
    return OAuthProvider(users, clock=clock)


@pytest.fixture
def flows(users, sessions, tokens, mfa, oauth, clock):
    return AuthFlows(users=users, sessions=sessions, tokens=tokens, mfa=mfa,
                     oauth=oauth, logger=EventLogger(clock=clock), clock=clock)
