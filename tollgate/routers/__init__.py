"""
API routers for the Tollgate service.

Routers:
- admin: Scheduled jobs and operator endpoints (bearer cron secret)
"""

from tollgate.routers.admin import router as admin_router

__all__ = ["admin_router"]
