from fastapi import Depends, Header, HTTPException, status

from eventhub.domain.principal import ADMIN, ROLES, Principal


def get_current_principal(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Principal:
    """
    Identity is established upstream; the gateway forwards it as trusted
    X-User-Id / X-User-Role headers.
    """
    user_id = (x_user_id or "").strip()
    role = (x_user_role or "").strip().lower()
    if not user_id or not role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    if role not in ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Unknown role '{role}'",
        )
    return Principal(id=user_id, role=role)


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if principal.role != ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return principal
