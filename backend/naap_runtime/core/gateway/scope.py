"""
Ownership scopes for gateway resources.

A resource belongs to exactly one team or one user. Both are addressed
by a single scope string: the team id, or ``personal:<userId>``.
"""

from dataclasses import dataclass
from typing import Any, Optional

PERSONAL_PREFIX = "personal:"


@dataclass(frozen=True)
class Scope:
    team_id: Optional[str] = None
    owner_user_id: Optional[str] = None

    @property
    def is_personal(self) -> bool:
        return self.team_id is None


def is_personal_scope(scope: str) -> bool:
    return scope.startswith(PERSONAL_PREFIX)


def personal_scope_id(user_id: str) -> str:
    return f"{PERSONAL_PREFIX}{user_id}"


def parse_scope(scope: str) -> Scope:
    if is_personal_scope(scope):
        return Scope(owner_user_id=scope[len(PERSONAL_PREFIX):])
    return Scope(team_id=scope)


def scope_id(team_id: Optional[str], owner_user_id: Optional[str]) -> str:
    if team_id:
        return team_id
    return personal_scope_id(owner_user_id or "")


def scope_filter(model: Any, scope: str) -> list[Any]:
    """WHERE conditions restricting ``model`` rows to one owner."""
    parsed = parse_scope(scope)
    if parsed.is_personal:
        return [model.team_id.is_(None), model.owner_user_id == parsed.owner_user_id]
    return [model.team_id == parsed.team_id]


def scope_owner_fields(scope: str) -> dict[str, Optional[str]]:
    """Column values for a new row owned by ``scope``."""
    parsed = parse_scope(scope)
    return {"team_id": parsed.team_id, "owner_user_id": parsed.owner_user_id}
