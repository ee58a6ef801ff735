"""Shared API dependencies: single import point for all routers.

Re-exports database session, authentication and plan gating dependencies so
that router modules can import everything they need from one place::

    from commerce.api.deps import get_db, get_current_active_user
"""

from commerce.auth.dependencies import (
    get_current_active_user,
    get_current_user,
    require_admin,
)
from commerce.billing.dependencies import get_entitlement, require_feature
from commerce.database import get_db

__all__ = [
    "get_db",
    "get_current_user",
    "get_current_active_user",
    "require_admin",
    "get_entitlement",
    "require_feature",
]
