"""
AuthLab - authentication mechanisms side by side.

Sessions, JWTs with refresh rotation, TOTP MFA with backup codes, and a
mock OAuth 2.0 authorization server.
"""

__version__ = "1.0.0"
