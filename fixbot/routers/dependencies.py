"""
Router Dependencies
"""

import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request

from fixbot.config import settings
from fixbot.services.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """
    Runtime built at startup.
    Usage: runtime: Runtime = Depends(get_runtime)

    Raises 503 while the database (and therefore the runtime) is not configured.
    """
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return runtime


def require_admin_token(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    """
    Guard for admin endpoints.

    The admin API is disabled (503) until ADMIN_API_TOKEN is set.
    """
    expected = settings.admin_api_token
    if not expected:
        raise HTTPException(status_code=503, detail="ADMIN_API_TOKEN not configured")
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid admin token")
