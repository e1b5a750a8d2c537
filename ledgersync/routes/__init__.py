from __future__ import annotations

from .admin import SyncStatusResponse, create_admin_router

__all__ = ["create_admin_router", "SyncStatusResponse"]
