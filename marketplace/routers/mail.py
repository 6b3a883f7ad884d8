from fastapi import APIRouter, Depends, HTTPException

from marketplace.deps import get_mail_service
from marketplace.schemas import SendMailIn
from marketplace.security import require_admin
from marketplace.services.mail import MailDeliveryError, MailService

router = APIRouter(prefix="/mail", tags=["mail"])


@router.post("/send")
async def route_send_mail(
    payload: SendMailIn,
    admin=Depends(require_admin),
    mail: MailService = Depends(get_mail_service),
):
    """Send an email (admins only). Either text or html is required."""
    if not payload.text and not payload.html:
        raise HTTPException(status_code=400, detail="Either text or html must be provided")
    try:
        result = await mail.send_mail(
            to=payload.to,
            subject=payload.subject,
            text=payload.text,
            html=payload.html,
            from_address=payload.from_address,
        )
    except MailDeliveryError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e
    return {"message": "Email sent", **result}
