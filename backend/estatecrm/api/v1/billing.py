"""
Billing API endpoints.

Handles plan listing, Stripe checkout, payment verification and Stripe
webhooks with signature verification. The checkout, verification and
webhook endpoints answer with the camelCase shapes the checkout client and
Stripe expect rather than the standard error envelope.
"""

from typing import TypeVar

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from estatecrm.config import settings
from estatecrm.database import get_db
from estatecrm.services.billing import (
    BillingError,
    StripeWebhookError,
    billing_service,
)
from estatecrm.services.plans import list_plans

logger = structlog.get_logger()

router = APIRouter()


# Request/Response Schemas
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


ModelT = TypeVar("ModelT", bound=BaseModel)


class PlanResponse(BaseModel):
    """Plan details response."""

    id: str
    name: str
    description: str | None
    price_monthly: int
    price_yearly: int
    yearly_savings_percent: int
    max_users: int | None
    stripe_price_id_monthly: str
    stripe_price_id_yearly: str
    features: list[str]


class CheckoutRequest(CamelModel):
    """Request to create a checkout session. Presence is checked by the service."""

    price_id: str | None = None
    organization_id: str | None = None
    billing_cycle: str | None = None
    plan_name: str | None = None


class CheckoutResponse(CamelModel):
    session_id: str
    url: str | None


class VerifyPaymentRequest(CamelModel):
    session_id: str | None = None


class VerifyPaymentResponse(CamelModel):
    success: bool
    session_id: str
    payment_status: str | None
    customer_id: str | None
    subscription_id: str | None


class WebhookAck(CamelModel):
    received: bool
    event_type: str


async def _read_body(request: Request, model: type[ModelT]) -> ModelT:
    """Parse a JSON object body; ValueError on malformed input."""
    payload = await request.json()
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object")
    return model.model_validate(payload)


# Endpoints
@router.get("/plans", response_model=list[PlanResponse])
async def get_plans(db: AsyncSession = Depends(get_db)) -> list[PlanResponse]:
    """
    List available subscription plans.

    Ordered by monthly price, with the yearly savings precomputed.
    """
    plans = await list_plans(db)
    return [
        PlanResponse(
            **plan.model_dump(),
            yearly_savings_percent=plan.yearly_savings_percent,
        )
        for plan in plans
    ]


@router.post(
    "/create-checkout-session",
    response_model=CheckoutResponse,
    responses={400: {"description": "Validation or Stripe error"}},
)
async def create_checkout_session(request: Request):
    """
    Create a Stripe Checkout session for a subscription.

    Nothing is written locally; the webhook activates the organization.
    """
    origin = request.headers.get("origin") or settings.FRONTEND_URL

    try:
        body = await _read_body(request, CheckoutRequest)
        session = await billing_service.create_checkout_session(
            price_id=body.price_id,
            organization_id=body.organization_id,
            billing_cycle=body.billing_cycle,
            plan_name=body.plan_name,
            origin=origin,
        )
    except (BillingError, ValueError) as e:
        logger.warning("Checkout session creation failed", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": str(e),
                "details": "Failed to create Stripe checkout session",
            },
        )

    return CheckoutResponse(session_id=session.session_id, url=session.url)


@router.post("/verify-payment", response_model=VerifyPaymentResponse)
async def verify_payment(request: Request):
    """
    Report whether a Checkout session has been paid.

    Always answers 200. The webhook remains the source of truth for the
    organization's subscription state.
    """
    try:
        body = await _read_body(request, VerifyPaymentRequest)
        verification = await billing_service.verify_payment(body.session_id)
    except (BillingError, ValueError) as e:
        logger.warning("Payment verification failed", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"success": False, "error": str(e)},
        )

    return VerifyPaymentResponse(**verification.model_dump())


@router.post(
    "/webhook",
    response_model=WebhookAck,
    responses={400: {"description": "Signature or processing failure"}},
    include_in_schema=False,
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
):
    """
    Handle Stripe webhook events.

    The signature is verified against the raw body before the event is
    parsed. Unhandled event types are acknowledged. Any failure answers 400
    so Stripe redelivers the event later.
    """
    payload = await request.body()

    try:
        event = billing_service.verify_webhook_signature(
            payload=payload,
            signature=stripe_signature,
        )
        event_type = await billing_service.process_webhook_event(event, db)
    except (StripeWebhookError, SQLAlchemyError) as e:
        await db.rollback()
        logger.error("Webhook processing error", error=str(e), error_type=type(e).__name__)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": str(e), "received": False},
        )

    return WebhookAck(received=True, event_type=event_type)
