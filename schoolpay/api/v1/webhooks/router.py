from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from schoolpay.core.exceptions import SignatureInvalid
from schoolpay.core.gateway_client import PaystackClient, get_gateway_client
from schoolpay.core.reconciliation import handle_webhook
from schoolpay.core.schemas import ApiResponse
from schoolpay.db.session import get_db

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/payment", response_model=ApiResponse[dict])
async def payment_webhook(
    request: Request,
    x_paystack_signature: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
    gateway: PaystackClient = Depends(get_gateway_client),
) -> ApiResponse[dict]:
    """
    Gateway notification endpoint. No bearer auth: the HMAC signature over the raw
    body is the authentication. Answers 401 on a bad signature and 200 otherwise,
    including for events it ignores.
    """
    raw_body = await request.body()
    try:
        ack = await handle_webhook(db, gateway, raw_body, x_paystack_signature, date.today())
    except SignatureInvalid as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    data = {"handled": ack.handled}
    if ack.result is not None:
        data.update(
            reference=ack.result.reference,
            status=ack.result.status.value,
            already_applied=ack.result.already_applied,
        )
    return ApiResponse(success=not ack.rejected, message=ack.message, data=data)
