# Auth Module - zero-knowledge registration/login and the unlocked session

from .auth_service import AuthService
from .session import SessionHolder

__all__ = ["AuthService", "SessionHolder"]
