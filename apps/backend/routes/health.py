from datetime import datetime

from fastapi import APIRouter


router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
def health_root():
    return {"ok": True}


@router.get("/status")
def status_root():
    return {
        "ok": True,
        "status": "online",
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }
