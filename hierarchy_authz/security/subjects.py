"""Typed authorization subjects and their evaluation order."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .errors import ValidationError
from .hierarchy import HierarchyContext


class SubjectType(str, Enum):
    USER = "user"
    CHARACTER = "character"
    CORPORATION = "corporation"
    ALLIANCE = "alliance"
    ROLE = "role"


@dataclass(frozen=True)
class Subject:
    type: SubjectType
    id: str

    def __str__(self) -> str:
        return f"{self.type.value}:{self.id}"

    @classmethod
    def of(cls, subject_type: str | SubjectType, subject_id: object) -> Subject:
        try:
            kind = SubjectType(subject_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown subject type {subject_type!r}") from exc
        sid = str(subject_id).strip()
        if not sid or ":" in sid:
            raise ValidationError(f"Invalid subject id {subject_id!r}")
        return cls(kind, sid)

    @classmethod
    def parse(cls, raw: str) -> Subject:
        kind, sep, sid = raw.partition(":")
        if not sep:
            raise ValidationError(f"Subject must look like '<type>:<id>', got {raw!r}")
        return cls.of(kind, sid)

    @classmethod
    def role(cls, name: str) -> Subject:
        return cls.of(SubjectType.ROLE, name)


def build_subjects(context: HierarchyContext) -> list[Subject]:
    """
    Subjects in evaluation priority order.

    user, primary character, remaining characters, corporations, alliances.
    Pure; the context already carries characters primary-first and
    deduplicated corporation/alliance ids.
    """

    subjects = [Subject(SubjectType.USER, context.user_id)]
    subjects.extend(Subject(SubjectType.CHARACTER, str(cid)) for cid in context.character_ids)
    subjects.extend(Subject(SubjectType.CORPORATION, str(cid)) for cid in context.corporation_ids)
    subjects.extend(Subject(SubjectType.ALLIANCE, str(aid)) for aid in context.alliance_ids)
    return subjects
