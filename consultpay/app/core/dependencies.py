"""
Authentication dependencies for FastAPI.

Tokens are issued by the external auth service. This module verifies them
and confirms the account behind the token still exists and is active.
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from consultpay.app.core.jwt import decode_access_token
from consultpay.app.db.session import get_db
from consultpay.app.domain.billing.wallet_ledger import AccountRef
from consultpay.app.models.enums import OwnerKind
from consultpay.app.models.guest import Guest
from consultpay.app.models.user import User

# HTTP Bearer security scheme
security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> dict:
    """
    FastAPI dependency for JWT authentication.

    Checks:
    1. Validates JWT token signature and expiry
    2. Resolves the account (user or guest) named by the token
    3. Verifies the account is still active (real-time check)

    Returns:
        Decoded token payload (sub, account_id, kind, role)

    Raises:
        HTTPException: 401 if authentication fails, 403 if the account is inactive
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    account_id = payload.get("account_id")
    try:
        kind = OwnerKind(payload.get("kind", OwnerKind.USER.value))
    except ValueError:
        kind = None
    if not account_id or kind is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    model = Guest if kind == OwnerKind.GUEST else User
    account = await db.get(model, account_id)

    if not account:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Account not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not account.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is inactive",
        )

    payload["kind"] = kind.value
    return payload


def account_ref(current_user: dict) -> AccountRef:
    """Wallet reference for the authenticated caller."""
    return AccountRef(OwnerKind(current_user["kind"]), current_user["account_id"])
