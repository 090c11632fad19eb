from fastapi import Header, HTTPException, status
from src.auth.context import AdminContext
from src.auth.jwt import decode_admin_token
from src.db import supabase


def _extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


async def get_current_admin(
    authorization: str | None = Header(None),
) -> AdminContext:
    """
    Admin JWT auth. Validates token type is 'admin' and the user still exists in admin_users.
    """
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
        )

    payload = decode_admin_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired admin token",
        )

    result = supabase.table("admin_users").select("id, email").eq(
        "id", payload["sub"]
    ).execute()

    if not result.data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin not found",
        )

    admin = result.data[0]
    return AdminContext(
        admin_id=admin["id"],
        email=admin["email"],
    )
