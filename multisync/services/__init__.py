"""
Service Layer

This module exports the client facade, account sessions and the store.
"""
from .account_session import AccountSession
from .client import MultiAccountClient
from .store import SessionStore

__all__ = [
    'AccountSession',
    'MultiAccountClient',
    'SessionStore',
]
