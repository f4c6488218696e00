"""The authenticated identity produced for one request."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

RequestType = Literal["bearer", "cookie", "internal"]


@dataclass(frozen=True)
class Principal:
    """
    Immutable for the lifetime of the request; never persisted.

    ``internal`` is used when administrative tooling evaluates permissions
    for a user id without a credential.
    """

    user_id: str
    """Owning user id from the ``user_id`` claim."""

    primary_character_id: int | None
    """Character the credential was issued for."""

    request_type: RequestType
    """Where the credential came from."""

    raw_scopes: str = ""
    """Scopes exactly as carried in the credential."""

    character_name: str | None = None
    """Display name; not used for authorization."""

    @property
    def scopes(self) -> tuple[str, ...]:
        return tuple(s for s in self.raw_scopes.split() if s)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serializable dict."""
        return {
            "user_id": self.user_id,
            "primary_character_id": self.primary_character_id,
            "request_type": self.request_type,
            "scopes": list(self.scopes),
            "character_name": self.character_name,
        }

    @classmethod
    def internal(cls, user_id: str) -> Principal:
        return cls(user_id=user_id, primary_character_id=None, request_type="internal")
