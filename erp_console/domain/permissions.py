from __future__ import annotations

from erp_console.domain.models import UserProfile

ROLE_ADMIN = "admin"
ROLE_USER = "user"


def has_role(profile: UserProfile | None, role: str) -> bool:
    if profile is None:
        return False
    return profile.role == role
