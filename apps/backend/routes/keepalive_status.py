# apps/backend/routes/keepalive_status.py
from datetime import datetime

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from apps.backend.services.settings import public_settings

router = APIRouter(prefix="/keepalive", tags=["Keepalive"])


@router.get("/status")
async def keepalive_status(request: Request):
    """
    Read-only view of the keep-alive scheduler: cadence, targets and the
    last outcome per target.
    """
    now = datetime.utcnow().isoformat() + "Z"
    keepalive = getattr(request.app.state, "keepalive", None)
    settings = public_settings(getattr(request.app.state, "settings", None))

    if keepalive is None:
        return JSONResponse(
            content={
                "timestamp": now,
                "status": "disabled",
                "settings": settings,
                "message": "Keep-alive scheduler is not configured for this process.",
            }
        )

    data = {
        "timestamp": now,
        "status": "active" if keepalive.running else "stopped",
        "settings": settings,
        "scheduler": keepalive.snapshot(),
    }

    return JSONResponse(content=data)
