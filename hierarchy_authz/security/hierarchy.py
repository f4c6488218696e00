"""
Character hierarchy resolution.

Background for newcomers:
    One user owns several characters. Each character belongs to exactly one
    corporation, and a corporation may belong to an alliance. Permissions
    granted to a corporation or alliance are inherited by the characters in
    it, so before we can evaluate anything we need the full picture:

        user -> characters -> corporations -> alliances

    ``HierarchyResolver.resolve`` builds that picture from the character
    directory (read-through cached). A user with no characters gets an empty
    but valid context; only a failed directory lookup is an error.

    Exactly one character should be flagged primary. Two flagged primaries is
    a data-integrity fault. When none is flagged the first character by name
    is used and a warning is logged, unless ``require_explicit_primary`` is
    set, in which case that is a fault too.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from hierarchy_authz.models.authz import CharacterHierarchy

from .cache import AuthzCache
from .errors import HierarchyIntegrityError, ResolutionError, SubsystemUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CharacterRecord:
    character_id: int
    character_name: str
    corporation_id: int
    alliance_id: int | None = None
    is_primary: bool = False


@dataclass(frozen=True)
class HierarchyContext:
    """Resolved hierarchy for one user; ``characters`` starts with the primary."""

    user_id: str
    primary_character_id: int | None
    characters: tuple[CharacterRecord, ...]
    corporation_ids: tuple[int, ...]
    alliance_ids: tuple[int, ...]

    @property
    def is_empty(self) -> bool:
        return not self.characters

    @property
    def character_ids(self) -> tuple[int, ...]:
        return tuple(c.character_id for c in self.characters)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "primary_character_id": self.primary_character_id,
            "characters": [asdict(c) for c in self.characters],
            "corporation_ids": list(self.corporation_ids),
            "alliance_ids": list(self.alliance_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HierarchyContext:
        return cls(
            user_id=str(data["user_id"]),
            primary_character_id=data.get("primary_character_id"),
            characters=tuple(CharacterRecord(**c) for c in data.get("characters") or []),
            corporation_ids=tuple(data.get("corporation_ids") or []),
            alliance_ids=tuple(data.get("alliance_ids") or []),
        )

    @classmethod
    def empty(cls, user_id: str) -> HierarchyContext:
        return cls(user_id=user_id, primary_character_id=None, characters=(), corporation_ids=(), alliance_ids=())


class CharacterDirectory(Protocol):
    def get_characters_for_user(self, user_id: str) -> list[CharacterRecord]: ...


class SqlCharacterDirectory:
    """Reads the ``character_hierarchies`` rows written by hierarchy sync."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get_characters_for_user(self, user_id: str) -> list[CharacterRecord]:
        stmt = (
            select(CharacterHierarchy)
            .where(CharacterHierarchy.user_id == user_id)
            .order_by(CharacterHierarchy.character_name, CharacterHierarchy.character_id)
        )
        try:
            with self._session_factory() as db:
                rows = db.scalars(stmt).all()
        except SQLAlchemyError as exc:
            raise ResolutionError(f"character lookup failed for user {user_id}: {type(exc).__name__}") from exc
        return [
            CharacterRecord(
                character_id=r.character_id,
                character_name=r.character_name,
                corporation_id=r.corporation_id,
                alliance_id=r.alliance_id,
                is_primary=r.is_primary,
            )
            for r in rows
        ]


def _dedupe(values: Iterable[int | None]) -> tuple[int, ...]:
    seen: dict[int, None] = {}
    for v in values:
        if v:
            seen.setdefault(v, None)
    return tuple(seen)


def build_context(
    user_id: str,
    records: Sequence[CharacterRecord],
    require_explicit_primary: bool = False,
) -> HierarchyContext:
    """Order characters primary-first and collect corporations/alliances in encounter order."""

    if not records:
        return HierarchyContext.empty(user_id)

    flagged = [r for r in records if r.is_primary]
    if len(flagged) > 1:
        raise HierarchyIntegrityError(
            f"user {user_id} has {len(flagged)} primary characters: {[r.character_id for r in flagged]}"
        )
    if flagged:
        primary = flagged[0]
    elif require_explicit_primary:
        raise HierarchyIntegrityError(f"user {user_id} has no primary character")
    else:
        primary = sorted(records, key=lambda r: (r.character_name, r.character_id))[0]
        logger.warning(
            "No primary character flagged; using first by name user_id=%s character_id=%s",
            user_id,
            primary.character_id,
        )

    ordered = (primary, *(r for r in records if r.character_id != primary.character_id))
    return HierarchyContext(
        user_id=user_id,
        primary_character_id=primary.character_id,
        characters=ordered,
        corporation_ids=_dedupe(r.corporation_id for r in ordered),
        alliance_ids=_dedupe(r.alliance_id for r in ordered),
    )


class HierarchyResolver:
    """Read-through cached resolution of a user's character hierarchy."""

    def __init__(
        self,
        directory: CharacterDirectory,
        cache: AuthzCache | None = None,
        require_explicit_primary: bool = False,
    ) -> None:
        self._directory = directory
        self._cache = cache
        self._require_explicit_primary = require_explicit_primary

    def resolve(self, user_id: str) -> HierarchyContext:
        cached = self._read_cache(user_id)
        if cached is not None:
            logger.debug("Hierarchy cache hit user_id=%s", user_id)
            return cached

        records = self._directory.get_characters_for_user(user_id)
        context = build_context(user_id, records, self._require_explicit_primary)
        logger.debug(
            "Hierarchy resolved user_id=%s characters=%d corporations=%d alliances=%d",
            user_id,
            len(context.characters),
            len(context.corporation_ids),
            len(context.alliance_ids),
        )

        if self._cache is not None:
            try:
                self._cache.set_hierarchy(user_id, context.to_dict())
            except SubsystemUnavailable as exc:
                logger.warning("Hierarchy cache write failed user_id=%s error=%s", user_id, exc)
        return context

    def _read_cache(self, user_id: str) -> HierarchyContext | None:
        if self._cache is None:
            return None
        try:
            cached = self._cache.get_hierarchy(user_id)
        except SubsystemUnavailable as exc:
            logger.warning("Hierarchy cache read failed; querying directory error=%s", exc)
            return None
        return HierarchyContext.from_dict(cached) if cached is not None else None
