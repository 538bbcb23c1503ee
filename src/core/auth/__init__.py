from src.core.auth.models import Identity, UserRole
from src.core.auth.jwt import create_access_token, decode_token
from src.core.auth.dependencies import get_current_user, require_roles

__all__ = [
    "Identity",
    "UserRole",
    "create_access_token",
    "decode_token",
    "get_current_user",
    "require_roles",
]
