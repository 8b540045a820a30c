"""
Role-Based Access Control (RBAC)

Role hierarchy (highest → lowest privilege):
    owner > admin > member > viewer

Document routes declare the minimum role they need:

    viewer  list, details, statistics
    member  upload grant, categorize, metadata update, retry, delete

Usage:
    @router.delete("/assessments/{assessment_id}/documents/{document_id}")
    async def delete_document(
        document_id: str,
        user: TokenPayload = Depends(require_role("member")),
    ): ...

The dependency raises 403 (FORBIDDEN in the error envelope) if the role is
below the requirement, and passes the full TokenPayload through otherwise.
Company ownership of the assessment or document is checked later, by the
service layer, against user.company_id.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, status

from assessment_docs.auth.token import TokenPayload, get_current_user

# ---------------------------------------------------------------------------
# Role ordering — higher value = more privilege
# ---------------------------------------------------------------------------

_ROLE_ORDER: dict[str, int] = {
    "viewer":  0,
    "member":  1,
    "admin":   2,
    "owner":   3,
}


def has_role(user_role: str, required_role: str) -> bool:
    """Return True if user_role meets or exceeds required_role."""
    return _ROLE_ORDER.get(user_role, -1) >= _ROLE_ORDER.get(required_role, 999)


# ---------------------------------------------------------------------------
# Dependency factory
# ---------------------------------------------------------------------------

def require_role(minimum_role: str):
    """FastAPI dependency: verified JWT whose role is at least `minimum_role`."""
    if minimum_role not in _ROLE_ORDER:
        raise ValueError(f"Unknown role: {minimum_role}")

    async def _dependency(
        user: Annotated[TokenPayload, Depends(get_current_user)],
    ) -> TokenPayload:
        if not has_role(user.role, minimum_role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=(
                    f"Insufficient permissions. "
                    f"Required: '{minimum_role}', your role: '{user.role}'."
                ),
            )
        return user

    return _dependency


# ---------------------------------------------------------------------------
# Route-level aliases
# ---------------------------------------------------------------------------

DocumentReader = Annotated[TokenPayload, Depends(require_role("viewer"))]
DocumentWriter = Annotated[TokenPayload, Depends(require_role("member"))]
