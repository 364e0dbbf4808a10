"""CTMS engine - authorization, mutation rules and the coordinator around them."""

from ctms.engine.errors import (
    AuthorizationDenied,
    ConflictError,
    CTMSError,
    DownstreamSideEffectFailure,
    NotFound,
    ReferentialError,
    TaskNotFound,
    ValidationError,
)
from ctms.engine.policy import Allow, Deny, authorize, require

__all__ = [
    "Allow",
    "AuthorizationDenied",
    "ConflictError",
    "CTMSError",
    "Deny",
    "DownstreamSideEffectFailure",
    "NotFound",
    "ReferentialError",
    "TaskNotFound",
    "ValidationError",
    "authorize",
    "require",
]
