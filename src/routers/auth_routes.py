import bcrypt
from fastapi import APIRouter, Depends, HTTPException, status
from src.auth import AdminContext, get_current_admin
from src.auth.jwt import create_admin_token
from src.db import supabase
from src.models.auth import LoginRequest, LoginResponse, MeResponse

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _password_matches(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        return False


@router.post("/login", response_model=LoginResponse)
async def login(data: LoginRequest):
    """Login with email and password, returns an admin JWT."""
    result = supabase.table("admin_users").select(
        "id, email, password_hash"
    ).eq("email", data.email.lower()).execute()

    if not result.data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )

    admin = result.data[0]

    if not _password_matches(data.password, admin.get("password_hash")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )

    return LoginResponse(access_token=create_admin_token(admin["id"]))


@router.get("/me", response_model=MeResponse)
async def get_me(admin: AdminContext = Depends(get_current_admin)):
    return MeResponse(admin_id=admin.admin_id, email=admin.email)
