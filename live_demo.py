#!/usr/bin/env python
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                           AUTHLAB LIVE DEMO                                   ║
║                 Authentication Mechanisms Side by Side                        ║
╚══════════════════════════════════════════════════════════════════════════════╝

This script walks through every mechanism AuthLab implements:
- Session login, session check and logout
- JWT access/refresh tokens with refresh rotation
- TOTP MFA enrollment, backup codes and MFA-gated login
- The OAuth 2.0 authorization code grant against a mock provider
- The hash-chained security audit log

Pass --no-pause to run straight through.
"""

import sys

from authlab.auth.totp import TOTPGenerator
from authlab.integration.auth_flows import AuthFlows


PAUSES = '--no-pause' not in sys.argv


def print_header(title):
    """Print a formatted section header"""
    print("\n" + "═" * 70)
    print(f"  {title}")
    print("═" * 70)


def print_step(step_num, description):
    """Print a numbered step"""
    print(f"\n  [{step_num}] {description}")


def pause(message="Press ENTER to continue..."):
    """Pause for presenter to explain"""
    if PAUSES:
        print(f"\n  [PAUSE] {message}")
        input()


def main():

    print("\n" * 2)
    print("╔" + "═" * 68 + "╗")
    print("║" + " " * 68 + "║")
    print("║" + "            AUTHLAB - AUTHENTICATION MECHANISMS".center(68) + "║")
    print("║" + " " * 68 + "║")
    print("╚" + "═" * 68 + "╝")

    print("\n  This demonstration showcases:")
    print("  • Stateful sessions with HttpOnly cookies")
    print("  • Stateless JWTs with refresh token rotation")
    print("  • TOTP two-factor authentication (Google Authenticator compatible)")
    print("  • OAuth 2.0 authorization code grant")

    flows = AuthFlows()

    pause("Press ENTER to begin the demonstration...")

    print_header("PART 1: SESSION AUTHENTICATION")

    print_step("1.1", "Login as 'user'")
    login = flows.on_login("user", "user123")
    print(f"\n  [OK] Login Success: {login['success']}")
    print(f"  Set-Cookie: {login['cookie'][:40]}...")

    print_step("1.2", "Session check")
    check = flows.verify_session(login['sessionId'])
    print(f"  Authenticated: {check['authenticated']} as {check['user']['username']}")

    print_step("1.3", "Wrong password")
    failed = flows.on_login("user", "wrong-password")
    print(f"  [X] {failed['message']} (HTTP {failed['status']})")

    print_step("1.4", "Logout")
    flows.logout(login['sessionId'])
    after = flows.verify_session(login['sessionId'])
    print(f"  After logout: {after['message']}")

    pause()

    print_header("PART 2: JWT AUTHENTICATION")

    print_step("2.1", "Issue a token pair for 'demo'")
    pair = flows.jwt_login("demo", "demo123")
    print(f"\n  Access token:  {pair['accessToken'][:40]}...")
    print(f"  Refresh token: {pair['refreshToken'][:40]}...")
    print(f"  Expires in: {pair['expiresIn']} seconds")

    print_step("2.2", "Call a protected resource")
    resource = flows.access_protected_resource(f"Bearer {pair['accessToken']}")
    print(f"  {resource['message']}")

    print_step("2.3", "Rotate the refresh token")
    rotated = flows.on_refresh(pair['refreshToken'])
    print(f"  [OK] New refresh token: {rotated['refreshToken'][:40]}...")
    replay = flows.on_refresh(pair['refreshToken'])
    print(f"  [X] Replaying the old one: {replay['error']}")

    pause()

    print_header("PART 3: MULTI-FACTOR AUTHENTICATION")

    admin = flows.users.find_user_by_login("admin")

    print_step("3.1", "Enroll 'admin' in TOTP")
    setup = flows.setup_mfa(admin.id)
    print(f"\n  Manual entry key: {setup['manualEntry']}")
    print(f"  QR code: {setup['qrPayload'][:40]}...")
    print(f"  Backup codes: {', '.join(setup['backupCodes'][:3])}, ...")

    authenticator = TOTPGenerator.from_base32(setup['secret'])

    print_step("3.2", "Confirm enrollment with the first code")
    confirm = flows.on_verify_mfa(admin.id, authenticator.generate())
    print(f"  [OK] MFA activated: {confirm['activated']}")

    print_step("3.3", "Login now asks for a second factor")
    gated = flows.on_login("admin", "admin123")
    print(f"  MFA required: {gated['mfaRequired']}")

    print_step("3.4", "Complete login with a backup code")
    completed = flows.on_verify_mfa(admin.id, setup['backupCodes'][0], use_backup_code=True)
    print(f"  [OK] Session issued: {'sessionId' in completed}")
    print(f"  Backup codes remaining: {completed['remainingBackupCodes']}")

    pause()

    print_header("PART 4: OAUTH 2.0")

    print_step("4.1", "Authorize a client")
    authorized = flows.oauth_authorize(
        "mock-client-id", "http://localhost:3000/api/auth/oauth/callback",
        state="xyz")
    print(f"\n  Redirect: {authorized['redirect_url'][:60]}...")

    print_step("4.2", "Callback exchanges the code")
    callback = flows.oauth_callback(authorized['code'], authorized['state'])
    print(f"  [OK] Signed in as {callback['user']['username']}")
    print(f"  Avatar: {callback['user']['oauth']['picture']}")

    print_step("4.3", "Reusing the same code")
    reused = flows.oauth_callback(authorized['code'])
    print(f"  [X] {reused['error']}: {reused['error_description']}")

    pause()

    print_header("PART 5: AUDIT TRAIL")

    flows.logger.print_audit_log(last_n=10)

    print("\n\n" + "═" * 70)
    print("  DEMONSTRATION COMPLETE!")
    print("═" * 70)


if __name__ == "__main__":
    main()
