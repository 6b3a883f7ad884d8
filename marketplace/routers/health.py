from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query

from marketplace.database import ping_db
from marketplace.deps import get_cache, get_sms_service
from marketplace.security import require_admin
from marketplace.services.sms import SmsService

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/readyz")
async def readyz(cache=Depends(get_cache)):
    if not await ping_db():
        raise HTTPException(status_code=503, detail="Database not ready")
    if not await cache.ping():
        raise HTTPException(status_code=503, detail="Cache not ready")
    return {"status": "ok", "database": "up", "cache": "up"}


@router.get("/health/send-sms")
async def send_test_sms(
    to: str = Query(..., description="Recipient number, e.g. 96550485511"),
    message: str = Query("Test SMS from Health endpoint"),
    admin=Depends(require_admin),
    sms: SmsService = Depends(get_sms_service),
):
    """Send a test SMS through the configured gateway (admins only)."""
    result = await sms.send_sms(to, message)
    if not result.success:
        return {"success": False, "error": result.error or "Failed to send SMS", "status": result.status}
    return {"success": True, "data": result.data}


@router.get("/health/sms-status/{message_id}")
async def sms_status(
    message_id: str,
    admin=Depends(require_admin),
    sms: SmsService = Depends(get_sms_service),
):
    result = await sms.get_sms_status(message_id)
    return {
        "success": result.success,
        "delivered": result.delivered,
        "data": result.data,
        "error": result.error,
    }
