"""Domain exceptions for the auditor token lifecycle."""

from __future__ import annotations


class AccessTokenError(Exception):
    """Base class for auditor token failures."""


class TokenValidationError(AccessTokenError, ValueError):
    """Raised when issuance or revocation input is rejected before any write."""


class TokenNotFoundError(AccessTokenError, LookupError):
    """Raised when no token exists with the given id."""


class AlreadyRevokedError(AccessTokenError):
    """Raised when revoking a token that is already inactive."""


class AuthenticationFailure(AccessTokenError):
    """Raised when a presented secret does not validate.

    Carries no detail on purpose: not found, expired, revoked, and exhausted
    all look the same to the caller.
    """

    def __init__(self) -> None:
        super().__init__("Invalid or expired auditor access token")


class ScopeDeniedError(AccessTokenError):
    """Raised when a valid token's scope does not cover the requested resource."""


class StoreUnavailableError(AccessTokenError):
    """Raised when the token store cannot be reached. Safe to retry."""


__all__ = [
    "AccessTokenError",
    "TokenValidationError",
    "TokenNotFoundError",
    "AlreadyRevokedError",
    "AuthenticationFailure",
    "ScopeDeniedError",
    "StoreUnavailableError",
]
