"""
API routers package
"""

from fixbot.routers.webhook import router as webhook_router
from fixbot.routers.admin import router as admin_router

__all__ = ["webhook_router", "admin_router"]
