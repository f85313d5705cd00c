"""
Auth
====

LUD-22 address-request sessions that bind a player slot to a Lightning
address. ``AuthSessionManager`` holds the rules; ``server.create_app``
exposes them over HTTP.
"""

from .errors import (
    AuthError,
    InvalidAddress,
    InvalidNonce,
    InvalidRequest,
    SessionExpired,
    SessionNotFound,
)
from .sessions import (
    AuthSession,
    AuthSessionManager,
    Challenge,
    CreatedSession,
    SessionState,
    SessionStatus,
    is_lightning_address,
)
from .store import InMemorySessionStore, RedisSessionStore, SessionStore, create_store

__all__ = [
    'AuthError',
    'InvalidAddress',
    'InvalidNonce',
    'InvalidRequest',
    'SessionExpired',
    'SessionNotFound',
    'AuthSession',
    'AuthSessionManager',
    'Challenge',
    'CreatedSession',
    'SessionState',
    'SessionStatus',
    'is_lightning_address',
    'InMemorySessionStore',
    'RedisSessionStore',
    'SessionStore',
    'create_store',
]
