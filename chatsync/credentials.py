"""Credential provider boundary.

The sync core never signs anyone in; it only asks who the current user is.
"""

from typing import Protocol


class CredentialProvider(Protocol):
    """Synchronously readable identity of the signed-in user."""

    @property
    def current_user_id(self) -> str | None: ...


class StaticCredentials:
    """A credential provider with a fixed (or manually switched) user."""

    def __init__(self, user_id: str | None = None) -> None:
        self.current_user_id = user_id
