"""
Integration tests for AuthLab.

Tests end-to-end workflows across the services, the request-shaped
flows and the audit log.
"""

import json

import pytest
from jose.utils import base64url_encode

from authlab.auth.credentials import CredentialStore
from authlab.auth.errors import OAuthCodeReused
from authlab.auth.mfa import MfaState
from authlab.auth.oauth import MOCK_CLIENT_ID, MOCK_REDIRECT_URI
from authlab.auth.sessions import SESSION_EXPIRY_SECONDS
from authlab.auth.tokens import ACCESS_TOKEN_TTL, TokenType, VerifyReason
from authlab.auth.totp import TOTPGenerator
from authlab.integration.auth_flows import AuthFlows, parse_bearer
from authlab.integration.event_logger import EventLogger, EventType, get_user_hash


class TestEndToEnd:
    """The three canonical walkthroughs."""

    def test_session_login_until_expiry(self, flows, clock):
        """Login, use the session, then fail once it has expired."""
        login = flows.on_login("admin", "admin123")
        assert login['success']
        session = flows.sessions.peek(login['sessionId'])
        assert session.expires_at == session.created_at + 24 * 3600

        assert flows.verify_session(login['sessionId'])['authenticated']

        flows.sessions.store.update(login['sessionId'], expires_at=clock() - 1)
        result = flows.verify_session(login['sessionId'])
        assert result['status'] == 401
        assert 'authenticated' not in result or not result['authenticated']

    def test_token_expiry_then_rotation(self, tokens, users, clock):
        """Access expires, refresh rotates, the new access token works."""
        access = tokens.issue_access_token(1, 'admin@example.com', 'admin', 'admin')
        refresh = tokens.issue_refresh_token(1)

        clock.advance(ACCESS_TOKEN_TTL + 1)
        assert tokens.verify(access).reason is VerifyReason.EXPIRED

        pair = tokens.rotate_refresh(refresh)
        result = tokens.verify(pair.access_token)
        assert result.valid
        assert result.claims['sub'] == '1'

    def test_oauth_code_reuse(self, oauth):
        """The same code cannot be exchanged twice."""
        grant = oauth.authorize("clientA", "https://a.example/cb", "read", 1)
        assert oauth.exchange_code(grant.auth_code, "clientA").access_token
        with pytest.raises(OAuthCodeReused) as reused:
            oauth.exchange_code(grant.auth_code, "clientA")
        assert reused.value.to_dict()['error_description'] == 'Authorization code already used'


class TestSessionFlows:
    """Tests for the session login/logout flows."""

    def test_login_response(self, flows):
        result = flows.on_login("user", "user123")
        assert result['status'] == 200
        assert result['user']['username'] == "user"
        assert 'password_hash' not in result['user']
        assert result['cookie'].startswith(f"SessionID={result['sessionId']}")

    def test_login_by_email(self, flows):
        assert flows.on_login("demo@example.com", "demo123")['success']

    def test_login_failure_is_generic(self, flows):
        unknown = flows.on_login("ghost", "x")
        wrong = flows.on_login("admin", "x")
        assert unknown == wrong
        assert unknown['status'] == 401
        assert unknown['message'] == "Invalid username or password"

    @pytest.mark.parametrize("username,password", [("", "x"), ("admin", ""), (None, None)])
    def test_login_requires_both_fields(self, flows, username, password):
        assert flows.on_login(username, password)['status'] == 400

    def test_login_rejects_non_strings(self, flows):
        assert flows.on_login(["admin"], "admin123")['status'] == 400

    def test_login_regenerates_presented_session(self, flows):
        first = flows.on_login("user", "user123")['sessionId']
        second = flows.on_login("user", "user123", [first])['sessionId']
        assert first != second
        assert flows.verify_session(first)['status'] == 401
        assert flows.verify_session(second)['authenticated']

    def test_logout(self, flows):
        sid = flows.on_login("user", "user123")['sessionId']
        result = flows.logout(sid)
        assert result['success']
        assert "Max-Age=0" in result['cookie']
        assert flows.verify_session(sid)['status'] == 401

    def test_logout_without_session(self, flows):
        assert flows.logout(None)['success']
        assert flows.logout("never-existed")['success']

    def test_expired_and_missing_look_the_same(self, flows, clock):
        sid = flows.on_login("user", "user123")['sessionId']
        clock.advance(SESSION_EXPIRY_SECONDS + 1)
        expired = flows.verify_session(sid)
        missing = flows.verify_session("nope")
        assert expired == missing

    def test_session_info(self, flows, clock):
        sid = flows.on_login("user", "user123")['sessionId']
        clock.advance(600)
        info = flows.session_info(sid)
        assert info['sessionExists']
        assert info['userId'] == 2
        assert info['minutesRemaining'] == 24 * 60 - 10
        assert flows.session_info(None)['sessionExists'] is False
        assert flows.session_info("nope")['status'] == 401

    def test_session_info_does_not_touch(self, flows, clock):
        sid = flows.on_login("user", "user123")['sessionId']
        before = flows.sessions.peek(sid).last_activity
        clock.advance(30)
        flows.session_info(sid)
        assert flows.sessions.peek(sid).last_activity == before


class TestTokenFlows:
    """Tests for JWT login, verify, refresh and protected access."""

    def test_jwt_login(self, flows):
        result = flows.jwt_login("demo", "demo123")
        assert result['success']
        assert result['tokenType'] == 'Bearer'
        assert result['expiresIn'] == ACCESS_TOKEN_TTL
        assert result['user']['id'] == 3

    def test_jwt_login_failure(self, flows):
        assert flows.jwt_login("demo", "wrong")['status'] == 401

    def test_verify_jwt(self, flows):
        token = flows.jwt_login("demo", "demo123")['accessToken']
        result = flows.verify_jwt(token)
        assert result['valid']
        assert result['decoded']['username'] == 'demo'
        assert flows.verify_jwt("x.y.z")['valid'] is False
        assert flows.verify_jwt("")['status'] == 400

    def test_verify_jwt_hides_failure_detail(self, flows, clock):
        """Malformed, forged and wrong-type tokens all look the same."""
        login = flows.jwt_login("demo", "demo123")
        other = flows.jwt_login("demo", "demo123")
        header, payload, _ = login['accessToken'].split('.')
        forged = '.'.join((header, payload, other['accessToken'].split('.')[2]))
        for token in ("x.y.z", forged, login['refreshToken']):
            result = flows.verify_jwt(token)
            assert result['status'] == 401
            assert result['error'] == 'invalid_token'

        clock.advance(16 * 60)
        assert flows.verify_jwt(login['accessToken'])['error'] == 'expired'

        details = [e.details['reason'] for e in flows.logger.get_events_by_type(EventType.JWT_VERIFY)
                   if not e.details['success']]
        assert 'malformed' in details
        assert 'bad_signature' in details

    def test_verify_jwt_deeply_nested_header(self, flows):
        """A hostile header is a 401, never a server error."""
        nested = '[' * 50_000 + ']' * 50_000
        header = base64url_encode(nested.encode()).decode()
        result = flows.verify_jwt(f"{header}.e30.c2ln")
        assert result['status'] == 401
        assert result['error'] == 'invalid_token'
        assert not flows.logger.get_events_by_type(EventType.INTERNAL_ERROR)

    def test_refresh_rotation(self, flows):
        login = flows.jwt_login("demo", "demo123")
        refreshed = flows.on_refresh(login['refreshToken'])
        assert refreshed['success']
        assert refreshed['refreshToken'] != login['refreshToken']
        replay = flows.on_refresh(login['refreshToken'])
        assert replay['status'] == 401
        assert replay['error'] == 'token_revoked'

    def test_refresh_requires_token(self, flows):
        assert flows.on_refresh("")['status'] == 400

    def test_protected_resource(self, flows):
        token = flows.jwt_login("admin", "admin123")['accessToken']
        result = flows.access_protected_resource(f"Bearer {token}")
        assert result['status'] == 200
        assert result['data']['username'] == 'admin'
        assert result['data']['role'] == 'admin'

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Basic abc", "bearer abc", "Bearer a b"])
    def test_protected_resource_bad_header(self, flows, header):
        result = flows.access_protected_resource(header)
        assert result['status'] == 401
        assert result['error'] == 'authentication_required'

    def test_protected_resource_expired(self, flows, clock):
        token = flows.jwt_login("admin", "admin123")['accessToken']
        clock.advance(ACCESS_TOKEN_TTL)
        result = flows.access_protected_resource(f"Bearer {token}")
        assert result['status'] == 401
        assert result['message'] == "Token expired. Please refresh."

    def test_protected_resource_revoked(self, flows):
        token = flows.jwt_login("admin", "admin123")['accessToken']
        flows.tokens.revoke(token)
        result = flows.access_protected_resource(f"Bearer {token}")
        assert result['message'] == "Token has been revoked"

    def test_protected_resource_refresh_token_rejected(self, flows):
        refresh = flows.jwt_login("admin", "admin123")['refreshToken']
        assert flows.access_protected_resource(f"Bearer {refresh}")['status'] == 401

    def test_protected_resource_user_gone(self, clock, fast_hasher):
        """A valid token whose subject no longer exists is refused."""
        issuing = AuthFlows(hasher=fast_hasher, clock=clock)
        token = issuing.jwt_login("admin", "admin123")['accessToken']
        empty = AuthFlows(users=CredentialStore(hasher=fast_hasher), tokens=issuing.tokens,
                          clock=clock)
        assert empty.access_protected_resource(f"Bearer {token}")['message'] == 'User not found'

    def test_parse_bearer(self):
        assert parse_bearer("Bearer abc") == "abc"
        assert parse_bearer("Bearer  abc") is None
        assert parse_bearer(None) is None


class TestMfaFlows:
    """Tests for enrollment and the MFA-gated login."""

    def _enroll(self, flows, clock, user_id=2):
        setup = flows.setup_mfa(user_id)
        gen = TOTPGenerator.from_base32(setup['secret'])
        result = flows.on_verify_mfa(user_id, gen.generate(clock()))
        assert result['activated']
        return setup, gen

    def test_setup_flow(self, flows):
        setup = flows.setup_mfa(2)
        assert setup['success']
        assert len(setup['backupCodes']) == 10
        assert flows.mfa.state(2) is MfaState.PENDING_VERIFICATION

    def test_setup_unknown_user(self, flows):
        assert flows.setup_mfa(99)['status'] == 404

    def test_setup_twice_after_enable(self, flows, clock):
        self._enroll(flows, clock)
        assert flows.setup_mfa(2)['status'] == 409

    def test_verify_without_setup(self, flows):
        result = flows.on_verify_mfa(2, "123456")
        assert result['status'] == 400
        assert result['error'] == 'mfa_not_configured'

    def test_login_gated_after_enrollment(self, flows, clock):
        self._enroll(flows, clock)
        result = flows.on_login("user", "user123")
        assert result['mfaRequired']
        assert result['userId'] == 2
        assert 'sessionId' not in result
        assert flows.has_pending_mfa(2)

    def test_mfa_completes_login(self, flows, clock):
        _, gen = self._enroll(flows, clock)
        flows.on_login("user", "user123")
        clock.advance(30)
        result = flows.on_verify_mfa(2, gen.generate(clock()))
        assert result['success']
        assert not result['activated']
        assert flows.verify_session(result['sessionId'])['authenticated']
        assert not flows.has_pending_mfa(2)

    def test_backup_code_completes_login(self, flows, clock):
        setup, _ = self._enroll(flows, clock)
        flows.on_login("user", "user123")
        result = flows.on_verify_mfa(2, setup['backupCodes'][3], use_backup_code=True)
        assert result['remainingBackupCodes'] == 9
        assert 'sessionId' in result

        again = flows.on_verify_mfa(2, setup['backupCodes'][3], use_backup_code=True)
        assert again['status'] == 401
        assert again['error'] == 'backup_code_reused'

    def test_wrong_code_keeps_challenge_open(self, flows, clock):
        _, gen = self._enroll(flows, clock)
        flows.on_login("user", "user123")
        real = gen.generate(clock())
        result = flows.on_verify_mfa(2, f"{(int(real) + 1) % 10**6:06d}")
        assert result['status'] == 401
        assert result['error'] == 'invalid_mfa_code'
        assert flows.has_pending_mfa(2)

    def test_stale_challenge_gives_no_session(self, flows, clock):
        _, gen = self._enroll(flows, clock)
        flows.on_login("user", "user123")
        clock.advance(10 * 60)
        result = flows.on_verify_mfa(2, gen.generate(clock()))
        assert result['success']
        assert 'sessionId' not in result

    def test_enrollment_alone_creates_no_session(self, flows, clock):
        setup = flows.setup_mfa(2)
        result = flows.on_verify_mfa(2, TOTPGenerator.from_base32(setup['secret']).generate(clock()))
        assert result['activated']
        assert 'sessionId' not in result

    def test_pending_enrollment_does_not_gate_login(self, flows):
        flows.setup_mfa(2)
        assert 'sessionId' in flows.on_login("user", "user123")


class TestOAuthFlows:
    """Tests for the authorize/token/callback flows."""

    def test_authorize_and_callback(self, flows):
        authorized = flows.oauth_authorize(MOCK_CLIENT_ID, MOCK_REDIRECT_URI, state="s1")
        assert authorized['status'] == 302
        assert authorized['redirect_url'].startswith(MOCK_REDIRECT_URI + "?code=")

        callback = flows.oauth_callback(authorized['code'], authorized['state'])
        assert callback['success']
        assert callback['state'] == "s1"
        assert callback['user']['username'] == 'admin'
        assert callback['user']['oauth']['picture'].endswith("admin@example.com")
        assert flows.tokens.verify(callback['token']).valid

    def test_callback_reuse(self, flows):
        code = flows.oauth_authorize(MOCK_CLIENT_ID, MOCK_REDIRECT_URI)['code']
        flows.oauth_callback(code)
        reused = flows.oauth_callback(code)
        assert reused['status'] == 401
        assert reused['error'] == 'invalid_grant'

    def test_callback_error_parameter(self, flows):
        result = flows.oauth_callback(None, error="access_denied")
        assert result['status'] == 400
        assert result['error'] == "access_denied"

    def test_callback_missing_code(self, flows):
        assert flows.oauth_callback(None)['error'] == 'invalid_request'

    def test_callback_code_for_other_client(self, flows):
        code = flows.oauth_authorize("other-client", MOCK_REDIRECT_URI)['code']
        assert flows.oauth_callback(code)['status'] == 401

    def test_token_endpoint(self, flows):
        code = flows.oauth_authorize("client-a", "https://a.example/cb")['code']
        body = flows.oauth_token("authorization_code", "client-a", code=code)
        assert body['status'] == 200
        assert body['token_type'] == 'Bearer'

        refreshed = flows.oauth_token("refresh_token", "client-a",
                                      refresh_token=body['refresh_token'])
        assert refreshed['refresh_token'] == body['refresh_token']

    def test_token_endpoint_errors(self, flows):
        bad_grant = flows.oauth_token("password", "client-a")
        assert bad_grant == {
            'error': 'invalid_request',
            'error_description': 'grant_type must be "authorization_code" or "refresh_token"',
            'status': 400,
        }
        assert flows.oauth_token("authorization_code", "client-a", code="nope")['error'] == 'invalid_grant'

    def test_authorize_errors(self, flows):
        assert flows.oauth_authorize(None, MOCK_REDIRECT_URI)['status'] == 400
        assert flows.oauth_authorize(
            MOCK_CLIENT_ID, MOCK_REDIRECT_URI, response_type="token"
        )['error'] == 'unsupported_response_type'


class TestEventLogging:
    """Tests for the audit log and its use by the flows."""

    def test_logger_starts_with_system_event(self, clock):
        logger = EventLogger(clock=clock)
        assert len(logger) == 1
        assert logger.get_all_events()[0].event_type is EventType.SYSTEM_START

    def test_chain_links(self, clock):
        logger = EventLogger(clock=clock)
        logger.log_login("alice", True)
        logger.log_logout(1)
        events = logger.get_all_events()
        for prev, event in zip(events, events[1:]):
            assert event.prev_hash == prev.hash
            assert event.index == prev.index + 1
        assert logger.verify_integrity()

    def test_tampering_detected(self, clock):
        logger = EventLogger(clock=clock)
        event = logger.log_login("alice", False)
        event.details['method'] = 'jwt'
        assert not logger.verify_integrity()

    def test_export_import(self, clock):
        logger = EventLogger(clock=clock)
        logger.log_login("alice", True)
        imported = EventLogger.import_log(logger.export_log(), clock=clock)
        assert len(imported) == len(logger)
        assert imported.verify_integrity()
        imported.log_logout(1)
        assert imported.verify_integrity()

    def test_import_of_edited_log_fails_integrity(self, clock):
        logger = EventLogger(clock=clock)
        logger.log_login("alice", True)
        records = json.loads(logger.export_log())
        records[1]['type'] = 'login_failed'
        assert not EventLogger.import_log(json.dumps(records), clock=clock).verify_integrity()

    def test_callbacks(self, clock):
        logger = EventLogger(clock=clock)
        seen = []
        logger.add_callback(seen.append)
        logger.log_mfa_setup(1)
        logger.remove_callback(seen.append)
        logger.log_mfa_setup(1)
        assert [e.event_type for e in seen] == [EventType.MFA_SETUP]

    def test_failing_callback_does_not_break_logging(self, clock):
        logger = EventLogger(clock=clock)

        def broken(event):
            raise RuntimeError("boom")

        logger.add_callback(broken)
        logger.log_logout(1)
        assert len(logger) == 2

    def test_flows_record_events(self, flows):
        flows.on_login("admin", "admin123")
        flows.on_login("admin", "wrong")
        types = [e.event_type for e in flows.logger.get_all_events()]
        assert EventType.LOGIN_SUCCESS in types
        assert EventType.LOGIN_FAILED in types
        assert len(flows.logger.get_user_events(1)) == 1
        assert len(flows.logger.get_user_events("admin")) == 1

    def test_user_events_correlate_across_identifiers(self, flows):
        """Username login, email login and logout all land on the user id."""
        flows.on_login("admin", "admin123")
        sid = flows.on_login("admin@example.com", "admin123")["sessionId"]
        flows.logout(sid)
        flows.jwt_login("admin", "admin123")
        types = [e.event_type for e in flows.logger.get_user_events(1)]
        assert types.count(EventType.LOGIN_SUCCESS) == 3
        assert EventType.LOGOUT in types
        assert not flows.logger.get_user_events("admin@example.com")

    def test_no_plaintext_users_or_secrets(self, flows):
        login = flows.on_login("admin", "admin123")
        pair = flows.jwt_login("demo", "demo123")
        flows.access_protected_resource(f"Bearer {pair['accessToken']}")
        exported = flows.logger.export_log()
        for secret in ("admin123", "demo123", login['sessionId'], pair['accessToken'],
                       pair['refreshToken'], '"admin"', '"demo"'):
            assert secret not in exported
        assert get_user_hash(1) in exported

    def test_internal_errors_are_logged_and_generic(self, flows):
        def explode(*args, **kwargs):
            raise RuntimeError("database on fire")

        flows.users.authenticate = explode
        result = flows.on_login("admin", "admin123")
        assert result == {
            'success': False,
            'error': 'server_error',
            'message': 'Internal server error',
            'status': 500,
        }
        errors = flows.logger.get_events_by_type(EventType.INTERNAL_ERROR)
        details = errors[-1].details
        assert details['operation'] == 'login'
        assert details['error'] == 'RuntimeError'
        assert details['where'].startswith('test_integration.py:')
        assert details['where'].endswith(' in explode')
        assert "database on fire" not in flows.logger.export_log()

    def test_refresh_events(self, flows):
        login = flows.jwt_login("demo", "demo123")
        flows.on_refresh(login['refreshToken'])
        flows.on_refresh(login['refreshToken'])
        refreshes = flows.logger.get_events_by_type(EventType.TOKEN_REFRESH)
        assert [e.details['success'] for e in refreshes] == [True, False]
        assert refreshes[1].details['reason'] == 'token_revoked'

    def test_package_exports_resolve(self):
        """Every name the integration package exports is importable."""
        import authlab.integration as integration

        assert sorted(integration.__all__) == sorted(
            ['AuthFlows', 'EventType', 'SecurityEvent', 'EventLogger', 'get_user_hash'])
        for name in integration.__all__:
            assert getattr(integration, name) is not None


class TestTokenTypesAcrossFlows:
    """Tokens minted by one flow are not accepted by another."""

    def test_oauth_provider_token_is_not_an_app_token(self, flows):
        code = flows.oauth_authorize("client-a", "https://a.example/cb")['code']
        provider_token = flows.oauth_token("authorization_code", "client-a", code=code)
        result = flows.access_protected_resource(f"Bearer {provider_token['access_token']}")
        assert result['status'] == 401

    def test_app_refresh_token_is_not_an_access_token(self, flows):
        refresh = flows.jwt_login("demo", "demo123")['refreshToken']
        assert flows.tokens.verify(refresh, TokenType.ACCESS).reason is VerifyReason.WRONG_TYPE
