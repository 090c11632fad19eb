from supabase import Client, create_client

from src.config import settings


supabase: Client = create_client(settings.supabase_url, settings.supabase_service_role_key)

UNIQUE_VIOLATION = "23505"


def is_unique_violation(exc: Exception) -> bool:
    # postgrest's APIError carries the SQLSTATE on .code; its str() repeats it.
    if getattr(exc, "code", None) == UNIQUE_VIOLATION:
        return True
    return UNIQUE_VIOLATION in str(exc)
