from app.models.permission import AppConfig, AuditLog
from app.models.user import User

__all__ = [
    # Access policy documents
    "AppConfig",
    "AuditLog",
    # Directory
    "User",
]
