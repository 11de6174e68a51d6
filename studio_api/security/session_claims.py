from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import Request

from studio_api.utils import parse_int


ADMIN_ROLES = {"owner", "admin", "administrator"}
STAFF_ROLES = {"staff", "reception", "trainer"}
MEMBER_ROLES = {"member"}


def normalize_role(role: Any) -> str:
    try:
        return str(role or "").strip().lower()
    except Exception:
        return ""


def get_session_member_id(session: Dict[str, Any]) -> Optional[int]:
    mid = parse_int(session.get("member_id"))
    if mid and mid > 0:
        return mid
    return None


def get_claims(request: Request) -> Dict[str, Any]:
    """Identity handed over by the auth layer. Trusted as-is."""
    s = request.session
    role = normalize_role(s.get("role"))
    member_id = get_session_member_id(s)
    user_id = parse_int(s.get("user_id"))

    is_admin = role in ADMIN_ROLES
    is_staff = is_admin or role in STAFF_ROLES

    return {
        "role": role,
        "member_id": member_id,
        "user_id": user_id,
        "is_authenticated": bool(member_id) or bool(user_id),
        "is_admin": is_admin,
        "is_staff": is_staff,
    }
