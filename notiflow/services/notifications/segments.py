from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import ColumnElement, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from notiflow.core.config import RECIPIENT_CAP
from notiflow.domain.models import User, UserProfile

_ORDINAL_SUFFIXES = "(st|nd|rd|th)"


class Segment(BaseModel):
    """Declarative audience filter attached to a message.

    Values are OR'd inside each list and AND'd across lists; an empty list adds
    no constraint.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    roles: list[str] = Field(default_factory=list)
    user_ids: list[str] = Field(default_factory=list)
    exclude_user_ids: list[str] = Field(default_factory=list)
    school_ids: list[str] = Field(default_factory=list)
    district_ids: list[str] = Field(default_factory=list)
    grades: list[str] = Field(default_factory=list)
    include_disabled: bool = False

    @field_validator(
        "roles", "user_ids", "exclude_user_ids", "school_ids", "district_ids", "grades", mode="before"
    )
    @classmethod
    def _coerce_list(cls, value: Any) -> list[str]:
        # Stored segments are user-authored JSON; anything that is not a list means "no constraint".
        if not isinstance(value, (list, tuple)):
            return []
        return [str(item) for item in value if item is not None]

    @field_validator("include_disabled", mode="before")
    @classmethod
    def _coerce_bool(cls, value: Any) -> bool:
        return bool(value)

    @classmethod
    def from_json(cls, raw: Any) -> "Segment":
        if isinstance(raw, Segment):
            return raw
        if not isinstance(raw, dict):
            return cls()
        data = dict(raw)
        if not isinstance(data.get("grades"), list) and isinstance(data.get("grade_levels"), list):
            data["grades"] = data["grade_levels"]
        return cls.model_validate(data)


@dataclass(frozen=True)
class Recipient:
    id: str
    email: str | None
    role: str | None
    school_id: str | None
    district_id: str | None


def normalize_grades(grades: Iterable[Any]) -> list[str]:
    normalized = [str(grade or "").strip().lower() for grade in grades]
    return [grade for grade in normalized if grade]


def grade_patterns(grade: str) -> list[str]:
    """Return the three patterns matched against free-text grade data.

    Patterns are written for lowercased input and are valid both as Python
    regexes and as PostgreSQL regular expressions.
    """
    token = re.escape(str(grade).strip().lower())
    return [
        rf"(^|\D){token}(\D|$)",
        rf"(^|\W)grade {token}(\W|$)",
        rf"(^|\D){token}{_ORDINAL_SUFFIXES}(\D|$)",
    ]


def grade_matches(candidate: str | None, grades: Iterable[Any]) -> bool:
    # Mirror of the SQL grade predicate for in-memory checks.
    text = (candidate or "").lower()
    for grade in normalize_grades(grades):
        for pattern in grade_patterns(grade):
            if re.search(pattern, text):
                return True
    return False


def build_grades_condition(grades: Iterable[Any]) -> ColumnElement[bool] | None:
    normalized = normalize_grades(grades)
    if not normalized:
        return None
    grades_text = func.lower(func.coalesce(UserProfile.grades, ""))
    clauses = [
        grades_text.regexp_match(pattern)
        for grade in normalized
        for pattern in grade_patterns(grade)
    ]
    return or_(*clauses)


def build_segment_predicate(
    segment: Segment,
    *,
    tenant_id: str,
    school_id: str | None = None,
) -> list[ColumnElement[bool]]:
    """Translate a segment into SQL conditions over users joined to profiles."""
    conditions: list[ColumnElement[bool]] = [UserProfile.district_id == tenant_id]
    if school_id:
        conditions.append(UserProfile.school_id == school_id)
    if segment.school_ids:
        conditions.append(UserProfile.school_id.in_(segment.school_ids))
    if segment.district_ids:
        conditions.append(UserProfile.district_id.in_(segment.district_ids))
    if segment.roles:
        conditions.append(UserProfile.role.in_(segment.roles))
    grades_condition = build_grades_condition(segment.grades)
    if grades_condition is not None:
        conditions.append(grades_condition)
    if segment.user_ids:
        conditions.append(User.id.in_(segment.user_ids))
    if segment.exclude_user_ids:
        conditions.append(User.id.not_in(segment.exclude_user_ids))
    if not segment.include_disabled:
        conditions.append(or_(User.disabled.is_(None), User.disabled.is_(False)))
    return conditions


async def resolve_recipients(
    *,
    session: AsyncSession,
    tenant_id: str,
    school_id: str | None,
    segment: Segment | dict[str, Any] | None,
    limit: int = RECIPIENT_CAP,
) -> list[Recipient]:
    # Oldest accounts first; anything past the cap is dropped without error.
    resolved_segment = Segment.from_json(segment)
    conditions = build_segment_predicate(resolved_segment, tenant_id=tenant_id, school_id=school_id)
    rows = (
        await session.execute(
            select(User.id, User.email, UserProfile.role, UserProfile.school_id, UserProfile.district_id)
            .join(UserProfile, UserProfile.user_id == User.id)
            .where(*conditions)
            .order_by(User.created_at.asc(), User.id.asc())
            .limit(max(1, int(limit)))
        )
    ).all()
    recipients: list[Recipient] = []
    seen: set[str] = set()
    for user_id, email, role, profile_school_id, district_id in rows:
        if user_id in seen:
            continue
        seen.add(user_id)
        recipients.append(
            Recipient(
                id=user_id,
                email=email,
                role=role,
                school_id=profile_school_id,
                district_id=district_id,
            )
        )
    return recipients
