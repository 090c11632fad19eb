from src.auth.context import AdminContext
from src.auth.dependencies import get_current_admin
from src.auth.jwt import create_admin_token

__all__ = [
    "AdminContext",
    "get_current_admin",
    "create_admin_token",
]
