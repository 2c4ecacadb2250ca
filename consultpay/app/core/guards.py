"""
Security guards for role-based and participant-based access control.
"""

from typing import List
from fastapi import Depends, HTTPException, status
from consultpay.app.models.consultation import Consultation
from consultpay.app.models.enums import OwnerKind, UserRole
from consultpay.app.core.dependencies import get_current_user


def require_role(allowed_roles: List[UserRole]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.post("/admin/reconciliation/run")
        async def run(current_user: dict = Depends(require_role([UserRole.ADMIN]))):
            ...

    Raises:
        HTTPException 403 if user role is not in allowed_roles
    """
    async def role_checker(current_user: dict = Depends(get_current_user)) -> dict:
        user_role_str = current_user.get("role")

        if not user_role_str:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Role information missing from token"
            )

        try:
            user_role = UserRole(user_role_str)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid role in token"
            )

        if user_role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {', '.join([r.value for r in allowed_roles])}"
            )

        return current_user

    return role_checker


def consultation_party(consultation: Consultation, current_user: dict) -> str:
    """
    Which side of the consultation the caller is on: "client" or "provider".

    Admins may act on any consultation and are treated as the client side.

    Raises:
        HTTPException 403 if the caller is not a participant
    """
    kind = current_user.get("kind")
    account_id = current_user.get("account_id")

    if kind == consultation.client_kind.value and account_id == consultation.client_id:
        return "client"
    if kind == OwnerKind.USER.value and account_id == consultation.provider_id:
        return "provider"
    if current_user.get("role") == UserRole.ADMIN.value:
        return "client"

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Access denied. You are not a participant in this consultation."
    )
