# Integration Module
"""
Request-shaped authentication flows and the security audit log.

All events are logged with privacy-preserving user hashes.
"""

# Lazy imports to avoid RuntimeWarning when running module directly
def __getattr__(name):
    """Lazy import to avoid circular import issues."""
    if name == 'AuthFlows':
        from .auth_flows import AuthFlows
        return AuthFlows
    from . import event_logger
    return getattr(event_logger, name)

__all__ = [
    'AuthFlows',
    'EventType',
    'SecurityEvent',
    'EventLogger',
    'get_user_hash',
]
