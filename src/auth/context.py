from dataclasses import dataclass


@dataclass
class AdminContext:
    """Identity context for console staff calling the admin endpoints."""
    admin_id: str
    email: str
