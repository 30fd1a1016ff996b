from __future__ import annotations

from .file import FileAuthState, FileKeyStore
from .keys import KeyStore
from .mongo import MongoAuthState, MongoKeyStore
from .state import AuthState, AuthStateProvider, parse_creds

__all__ = [
    "AuthState",
    "AuthStateProvider",
    "FileAuthState",
    "FileKeyStore",
    "KeyStore",
    "MongoAuthState",
    "MongoKeyStore",
    "parse_creds",
]
