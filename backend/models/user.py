# backend/models/user.py
from pydantic import BaseModel


class AuthenticatedUser(BaseModel):
    """Caller identity resolved from a verified Supabase access token."""
    id: str
    display_name: str
