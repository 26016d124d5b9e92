"""Operator token authentication for the operator console endpoints."""

from __future__ import annotations

import secrets
from typing import Optional

from smartmatch.utils.config import Settings, get_settings


class AuthenticationError(Exception):
    """Base authentication failure."""


class OperatorTokenNotConfiguredError(AuthenticationError):
    """Raised when OPERATOR_TOKEN is missing."""


class InvalidOperatorTokenError(AuthenticationError):
    """Raised when a provided token or bearer session is invalid."""


class AuthService:
    """Exchanges the operator token for bearer sessions and checks them.

    With no OPERATOR_TOKEN configured, operator endpoints are open; this is
    the local development mode.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._sessions: set[str] = set()

    @property
    def auth_enabled(self) -> bool:
        return bool(self._settings.operator_token)

    def _expected_token(self) -> str:
        if not self._settings.operator_token:
            raise OperatorTokenNotConfiguredError(
                "OPERATOR_TOKEN is not configured. Set OPERATOR_TOKEN in environment variables."
            )
        return self._settings.operator_token

    def login(self, provided_token: str) -> str:
        expected = self._expected_token()
        if not secrets.compare_digest(provided_token, expected):
            raise InvalidOperatorTokenError("Invalid operator token")
        session_token = secrets.token_urlsafe(32)
        self._sessions.add(session_token)
        return session_token

    def logout(self, bearer_token: str) -> None:
        self._sessions.discard(bearer_token)

    def validate_bearer_token(self, bearer_token: str) -> None:
        if not self.auth_enabled:
            return
        if not self._sessions:
            raise InvalidOperatorTokenError("No active session. Login first.")
        if not any(secrets.compare_digest(bearer_token, session) for session in self._sessions):
            raise InvalidOperatorTokenError("Invalid bearer token")
