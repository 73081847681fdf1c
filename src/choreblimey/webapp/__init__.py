"""ChoreBlimey web adapter package."""
from __future__ import annotations

from .application import STATUS_BY_ERROR, caller_from_request, create_app, status_for

__all__ = ["STATUS_BY_ERROR", "caller_from_request", "create_app", "status_for"]
