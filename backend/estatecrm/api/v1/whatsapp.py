"""WhatsApp Cloud API webhook endpoints."""

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from estatecrm.database import get_db
from estatecrm.services.whatsapp import (
    WhatsAppPayloadError,
    verify_subscription,
    whatsapp_service,
)

logger = structlog.get_logger()

router = APIRouter()


@router.get("/webhook", response_class=PlainTextResponse, include_in_schema=False)
async def verify_webhook(
    hub_mode: str | None = Query(None, alias="hub.mode"),
    hub_verify_token: str | None = Query(None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(None, alias="hub.challenge"),
) -> PlainTextResponse:
    """Echo the challenge when the verify token matches."""
    challenge = verify_subscription(hub_mode, hub_verify_token, hub_challenge)
    if challenge is None:
        return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)
    return PlainTextResponse(challenge, status_code=status.HTTP_200_OK)


@router.post("/webhook", include_in_schema=False)
async def receive_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Store inbound messages from known clients.

    Messages from unknown numbers are skipped. A payload that cannot be
    parsed answers 500 so the provider retries it.
    """
    try:
        payload = await request.json()
        processed = await whatsapp_service.process_webhook(payload, db)
    except (WhatsAppPayloadError, ValueError) as e:
        logger.error("WhatsApp webhook error", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": str(e)},
        )

    return {"success": True, "processed": processed}
