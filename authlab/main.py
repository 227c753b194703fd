"""
AuthLab - Main Entry Point
Authentication mechanisms compared side by side.
"""

from .auth.credentials import DEFAULT_USERS


def main():
    """Main entry point for AuthLab."""
    print("=" * 50)
    print("Welcome to AuthLab")
    print("=" * 50)
    print("\nAvailable mechanisms:")
    print("  - Sessions (opaque server-side ids, HttpOnly cookie)")
    print("  - JWT (HS256 access tokens, rotating refresh tokens)")
    print("  - MFA (RFC 6238 TOTP, single-use backup codes)")
    print("  - OAuth 2.0 (mock authorization code grant)")
    print("\nDemo accounts:")
    for username, _, password, role in DEFAULT_USERS:
        print(f"  - {username} / {password} ({role})")
    print("\nRun live_demo.py for a guided walkthrough.")
    print("\n")


if __name__ == "__main__":
    main()
