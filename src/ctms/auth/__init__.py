"""CTMS identity context."""

from ctms.auth.context import AuthContext
from ctms.auth.token import InvalidToken, create_access_token, decode_access_token

__all__ = ["AuthContext", "InvalidToken", "create_access_token", "decode_access_token"]
