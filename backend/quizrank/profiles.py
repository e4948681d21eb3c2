"""User profile read model and scope resolution.

Profiles are owned by the enrollment side of the platform; the leaderboard
engine only reads the identifiers they carry. Each identifier gates one
scope, and the checks live here so callers never re-test raw profile fields.
"""

from __future__ import annotations

import re
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field, field_validator

from .errors import ScopeUnavailableError

GLOBAL_SCOPE = "global"
GROUP_SCOPE = "group"

SCOPES = ("global", "school", "group", "union", "upazila", "district", "division")

# Attempt/profile field backing each scope filter. ``global`` has no filter.
SCOPE_FIELDS: Dict[str, Optional[str]] = {
    "global": None,
    "school": "school_id",
    "group": "group_id",
    "union": "union_id",
    "upazila": "upazila_id",
    "district": "district_id",
    "division": "division_id",
}

MIN_GROUP_ID_LENGTH = 9

_GROUP_PLACEHOLDERS = frozenset(
    {
        "undefined",
        "null",
        "none",
        "nil",
        "nan",
        "self",
        "default",
        "group",
        "groupid",
        "placeholder",
        "unknown",
        "n/a",
        "na",
        "tbd",
        "test",
    }
)

# (reason, predicate) evaluated in order; the first match rejects the value.
GROUP_ID_REJECTIONS = (
    ("empty", lambda value: not value.strip()),
    ("placeholder", lambda value: value.strip().lower() in _GROUP_PLACEHOLDERS),
    ("template", lambda value: bool(re.search(r"[{}<>$]", value))),
    ("whitespace", lambda value: value != value.strip() or bool(re.search(r"\s", value))),
    ("too_short", lambda value: len(value) < MIN_GROUP_ID_LENGTH),
    ("malformed", lambda value: not re.fullmatch(r"[A-Za-z0-9][A-Za-z0-9_-]*", value)),
)


def group_id_rejection(value: object, *, school_id: Optional[str] = None) -> Optional[str]:
    """Return why ``value`` is not a usable group id, or ``None`` if it is.

    This is a boundary check against placeholder data written by older
    clients; the profile-writing code is the real source of truth.
    """
    if not isinstance(value, str):
        return "not_a_string"
    for reason, predicate in GROUP_ID_REJECTIONS:
        if predicate(value):
            return reason
    if school_id and value == school_id:
        return "school_id"
    return None


def is_valid_group_id(value: object, *, school_id: Optional[str] = None) -> bool:
    return group_id_rejection(value, school_id=school_id) is None


def _blank_to_none(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class UserProfile(BaseModel):
    user_id: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    school_id: Optional[str] = None
    union_id: Optional[str] = None
    upazila_id: Optional[str] = None
    district_id: Optional[str] = None
    division_id: Optional[str] = None
    groups: List[str] = Field(default_factory=list)

    @field_validator("school_id", "union_id", "upazila_id", "district_id", "division_id", mode="before")
    @classmethod
    def _strip_identifier(cls, value: object) -> Optional[str]:
        return _blank_to_none(value)

    @field_validator("groups", mode="before")
    @classmethod
    def _coerce_groups(cls, value: object) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(item) for item in value if item is not None]

    def valid_groups(self) -> List[str]:
        """Group ids that pass validation, in profile order, without repeats."""
        seen: Set[str] = set()
        result: List[str] = []
        for group_id in self.groups:
            if group_id in seen or not is_valid_group_id(group_id, school_id=self.school_id):
                continue
            seen.add(group_id)
            result.append(group_id)
        return result


def available_scopes(profile: Optional[UserProfile]) -> Set[str]:
    scopes = {GLOBAL_SCOPE}
    if profile is None:
        return scopes
    if profile.valid_groups():
        scopes.add(GROUP_SCOPE)
    for scope, field in SCOPE_FIELDS.items():
        if field is None or scope == GROUP_SCOPE:
            continue
        if getattr(profile, field):
            scopes.add(scope)
    return scopes


def scope_value(profile: Optional[UserProfile], scope: str, requested: Optional[str] = None) -> Optional[str]:
    """Resolve the filter value for ``scope``.

    ``global`` resolves to ``None``. For ``group`` an explicit ``requested``
    id must be one of the profile's valid groups; without one the first valid
    group is used. Raises :class:`ScopeUnavailableError` when the profile
    cannot back the scope.
    """
    if scope not in SCOPE_FIELDS:
        raise ScopeUnavailableError(scope, "Unknown scope")
    if scope == GLOBAL_SCOPE:
        return None
    if profile is None:
        raise ScopeUnavailableError(scope, "No profile")
    if scope == GROUP_SCOPE:
        groups = profile.valid_groups()
        if requested is not None:
            if requested not in groups:
                raise ScopeUnavailableError(scope, "Group not available")
            return requested
        if not groups:
            raise ScopeUnavailableError(scope)
        return groups[0]
    value = getattr(profile, SCOPE_FIELDS[scope])  # type: ignore[arg-type]
    if not value:
        raise ScopeUnavailableError(scope)
    return value


__all__ = [
    "GLOBAL_SCOPE",
    "GROUP_ID_REJECTIONS",
    "GROUP_SCOPE",
    "SCOPES",
    "SCOPE_FIELDS",
    "UserProfile",
    "available_scopes",
    "group_id_rejection",
    "is_valid_group_id",
    "scope_value",
]
