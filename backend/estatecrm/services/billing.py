"""
Billing service for Stripe subscription management.

This module handles all Stripe-related operations including:
- Checkout session creation
- Synchronous payment verification for the post-checkout redirect
- Webhook signature verification
- Webhook-driven organization subscription state

Durable subscription state is written only by the webhook handlers. The
payment verification read is advisory: it lets the client confirm a checkout
right after the redirect, possibly before the webhook has been delivered.

Webhook updates are keyed by organization id or Stripe subscription id and
simply overwrite fields, so redelivered events converge. A redelivered
``checkout.session.completed`` recomputes the expiry from the time of
delivery.
"""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from dateutil.relativedelta import relativedelta
import stripe
from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from estatecrm.config import settings
from estatecrm.models.organization import BillingCycle, Organization, SubscriptionStatus

logger = structlog.get_logger()

# Initialize Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY


# Stripe subscription status -> local status. Anything unlisted is active.
STRIPE_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "canceled": SubscriptionStatus.CANCELLED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
}


class BillingError(Exception):
    """Raised when checkout creation or payment verification fails."""

    pass


class StripeWebhookError(Exception):
    """Raised when webhook verification or processing fails."""

    pass


class CheckoutSession(BaseModel):
    """Created Stripe Checkout session."""

    session_id: str
    url: Optional[str]


class PaymentVerification(BaseModel):
    """Result of reading a Checkout session back from Stripe."""

    success: bool
    session_id: str
    payment_status: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_subscription_expiry(billing_cycle: Optional[str], now: datetime) -> datetime:
    """
    Compute when a freshly activated subscription lapses.

    One calendar year for yearly billing, one calendar month otherwise.
    Month ends clamp (Jan 31 + 1 month = Feb 28/29).
    """
    if billing_cycle == BillingCycle.YEARLY.value:
        return now + relativedelta(years=1)
    return now + relativedelta(months=1)


def map_subscription_status(stripe_status: Optional[str]) -> SubscriptionStatus:
    """Map a Stripe subscription status onto the local status."""
    return STRIPE_STATUS_MAP.get(stripe_status or "", SubscriptionStatus.ACTIVE)


def _lookup(obj: Any, *path: str) -> Any:
    """Read a nested field from a Stripe object or dict, None when absent."""
    for key in path:
        if obj is None:
            return None
        try:
            obj = obj[key]
        except (KeyError, TypeError):
            return None
    return obj


def _stripe_id(value: Any) -> Optional[str]:
    """Return the id of a possibly-expanded Stripe reference."""
    if value is None or isinstance(value, str):
        return value
    return _lookup(value, "id")


class BillingService:
    """Service for Stripe checkout and webhook-driven subscription state."""

    def __init__(self):
        if not settings.STRIPE_SECRET_KEY:
            logger.warning("Stripe secret key not configured - billing disabled")

    @property
    def is_enabled(self) -> bool:
        """Check if Stripe is configured and enabled."""
        return bool(settings.STRIPE_SECRET_KEY)

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> stripe.Event:
        """
        Verify Stripe webhook signature and return the event.

        The signature covers the raw body, so this must run before any
        parsing of the payload.

        Args:
            payload: Raw request body bytes
            signature: Stripe-Signature header value

        Returns:
            Verified Stripe event

        Raises:
            StripeWebhookError: If verification fails
        """
        if not settings.STRIPE_WEBHOOK_SECRET:
            raise StripeWebhookError("Webhook secret not configured")

        if not signature:
            logger.error("Webhook request without Stripe signature")
            raise StripeWebhookError("Missing Stripe signature")

        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                settings.STRIPE_WEBHOOK_SECRET,
            )
            return event
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed", error=str(e))
            raise StripeWebhookError(f"Webhook signature verification failed: {e}")
        except ValueError as e:
            logger.error("Invalid webhook payload", error=str(e))
            raise StripeWebhookError(f"Invalid payload: {e}")

    async def create_checkout_session(
        self,
        price_id: Optional[str],
        organization_id: Optional[str],
        billing_cycle: Optional[str],
        plan_name: Optional[str],
        origin: str,
    ) -> CheckoutSession:
        """
        Create a Stripe Checkout session for a subscription.

        Tenant identity travels in the session and subscription metadata so
        the webhook can find the organization without a local session table.

        Args:
            price_id: Stripe price to subscribe to
            organization_id: Organization subscribing
            billing_cycle: monthly or yearly
            plan_name: Display name of the plan
            origin: Client origin used for the redirect URLs

        Returns:
            Session id and hosted checkout URL

        Raises:
            BillingError: On missing parameters or Stripe failures
        """
        if not self.is_enabled:
            logger.error("Checkout requested but STRIPE_SECRET_KEY is not set")
            raise BillingError("Stripe configuration error: Missing API key")

        if not price_id or not organization_id or not billing_cycle:
            raise BillingError(
                "Missing required parameters: priceId, organizationId, or billingCycle"
            )

        metadata = {
            "organizationId": organization_id,
            "billingCycle": billing_cycle,
            "planName": plan_name or "Unknown",
        }

        try:
            session = stripe.checkout.Session.create(
                payment_method_types=["card"],
                line_items=[
                    {
                        "price": price_id,
                        "quantity": 1,
                    }
                ],
                mode="subscription",
                success_url=f"{origin}/dashboard?success=true&session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{origin}/dashboard?canceled=true",
                metadata=metadata,
                subscription_data={"metadata": metadata},
                customer_creation="always",
                billing_address_collection="required",
                allow_promotion_codes=True,
            )
        except stripe.StripeError as e:
            logger.error(
                "Stripe rejected checkout session",
                organization_id=organization_id,
                error=str(e),
            )
            raise BillingError(e.user_message or str(e)) from e

        logger.info(
            "Created checkout session",
            session_id=session["id"],
            organization_id=organization_id,
            billing_cycle=billing_cycle,
            plan_name=metadata["planName"],
        )

        return CheckoutSession(session_id=session["id"], url=_lookup(session, "url"))

    async def verify_payment(self, session_id: Optional[str]) -> PaymentVerification:
        """
        Read a Checkout session back and report whether it was paid.

        Never writes local state, so it is safe to call repeatedly.

        Raises:
            BillingError: On missing session id or Stripe failures
        """
        if not self.is_enabled:
            raise BillingError("Stripe configuration error: Missing API key")

        if not session_id:
            raise BillingError("Missing sessionId parameter")

        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as e:
            logger.warning("Checkout session lookup failed", session_id=session_id, error=str(e))
            raise BillingError(e.user_message or str(e)) from e

        payment_status = _lookup(session, "payment_status")
        mode = _lookup(session, "mode")

        logger.info(
            "Verified checkout session",
            session_id=session_id,
            payment_status=payment_status,
            mode=mode,
        )

        return PaymentVerification(
            success=payment_status == "paid" and mode == "subscription",
            session_id=session_id,
            payment_status=payment_status,
            customer_id=_stripe_id(_lookup(session, "customer")),
            subscription_id=_stripe_id(_lookup(session, "subscription")),
        )

    async def _update_organizations(
        self,
        db: AsyncSession,
        condition: Any,
        **values: Any,
    ) -> int:
        """Apply a last-write-wins field update and return the matched row count."""
        result = await db.execute(
            update(Organization)
            .where(condition)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount

    async def handle_checkout_completed(
        self,
        event: stripe.Event,
        db: AsyncSession,
    ) -> None:
        """
        Handle checkout.session.completed webhook event.

        Activates the organization named in the session metadata.
        """
        session = event["data"]["object"]
        metadata = _lookup(session, "metadata") or {}

        organization_id = _lookup(metadata, "organizationId")
        if not organization_id:
            logger.error("No organizationId in checkout session metadata", session_id=_lookup(session, "id"))
            return

        try:
            org_uuid = UUID(str(organization_id))
        except ValueError:
            raise StripeWebhookError(f"Invalid organizationId in metadata: {organization_id}")

        subscription_id = _stripe_id(_lookup(session, "subscription"))
        if not subscription_id:
            # An active organization must always carry its Stripe subscription
            logger.error(
                "Checkout session completed without a subscription",
                session_id=_lookup(session, "id"),
                organization_id=organization_id,
            )
            return

        # Anything but "yearly" bills monthly
        if _lookup(metadata, "billingCycle") == BillingCycle.YEARLY.value:
            billing_cycle = BillingCycle.YEARLY.value
        else:
            billing_cycle = BillingCycle.MONTHLY.value
        expires_at = compute_subscription_expiry(billing_cycle, utcnow())

        updated = await self._update_organizations(
            db,
            Organization.id == org_uuid,
            subscription_status=SubscriptionStatus.ACTIVE.value,
            stripe_subscription_id=subscription_id,
            subscription_expires_at=expires_at,
            billing_cycle=billing_cycle,
        )

        if not updated:
            logger.warning("Organization not found for checkout", organization_id=organization_id)
            return

        logger.info(
            "Organization subscription activated",
            organization_id=organization_id,
            stripe_subscription_id=subscription_id,
            billing_cycle=billing_cycle,
            expires_at=expires_at.isoformat(),
        )

    async def handle_subscription_updated(
        self,
        event: stripe.Event,
        db: AsyncSession,
    ) -> None:
        """
        Handle customer.subscription.updated webhook event.

        Maps the Stripe status onto the organization.
        """
        stripe_sub = event["data"]["object"]
        subscription_id = _lookup(stripe_sub, "id")
        status = map_subscription_status(_lookup(stripe_sub, "status"))

        updated = await self._update_organizations(
            db,
            Organization.stripe_subscription_id == subscription_id,
            subscription_status=status.value,
        )

        if not updated:
            logger.warning(
                "Subscription not found for update",
                stripe_subscription_id=subscription_id,
            )
            return

        logger.info(
            "Subscription updated",
            stripe_subscription_id=subscription_id,
            stripe_status=_lookup(stripe_sub, "status"),
            status=status.value,
        )

    async def handle_subscription_deleted(
        self,
        event: stripe.Event,
        db: AsyncSession,
    ) -> None:
        """
        Handle customer.subscription.deleted webhook event.

        Marks the organization as cancelled.
        """
        stripe_sub = event["data"]["object"]
        subscription_id = _lookup(stripe_sub, "id")

        updated = await self._update_organizations(
            db,
            Organization.stripe_subscription_id == subscription_id,
            subscription_status=SubscriptionStatus.CANCELLED.value,
        )

        if not updated:
            logger.warning(
                "Subscription not found for deletion",
                stripe_subscription_id=subscription_id,
            )
            return

        logger.info("Subscription cancelled", stripe_subscription_id=subscription_id)

    async def handle_invoice_payment_failed(
        self,
        event: stripe.Event,
        db: AsyncSession,
    ) -> None:
        """
        Handle invoice.payment_failed webhook event.

        Updates the organization status to past_due.
        """
        invoice = event["data"]["object"]
        subscription_id = _stripe_id(
            _lookup(invoice, "subscription")
            or _lookup(invoice, "parent", "subscription_details", "subscription")
        )

        if not subscription_id:
            logger.info("Failed invoice is not tied to a subscription", invoice_id=_lookup(invoice, "id"))
            return

        updated = await self._update_organizations(
            db,
            Organization.stripe_subscription_id == subscription_id,
            subscription_status=SubscriptionStatus.PAST_DUE.value,
        )

        if not updated:
            logger.warning(
                "Subscription not found for failed invoice",
                stripe_subscription_id=subscription_id,
            )
            return

        logger.warning(
            "Invoice payment failed - subscription past due",
            stripe_subscription_id=subscription_id,
            invoice_id=_lookup(invoice, "id"),
        )

    async def process_webhook_event(
        self,
        event: stripe.Event,
        db: AsyncSession,
    ) -> str:
        """
        Process a verified Stripe webhook event.

        Routes the event to the appropriate handler and returns its type.
        """
        try:
            event_type = event["type"]
        except (KeyError, TypeError) as e:
            raise StripeWebhookError("Webhook event has no type") from e

        handlers = {
            "checkout.session.completed": self.handle_checkout_completed,
            "customer.subscription.updated": self.handle_subscription_updated,
            "customer.subscription.deleted": self.handle_subscription_deleted,
            "invoice.payment_failed": self.handle_invoice_payment_failed,
        }

        handler = handlers.get(event_type)
        if handler:
            try:
                await handler(event, db)
            except (KeyError, TypeError, AttributeError) as e:
                raise StripeWebhookError(f"Malformed {event_type} event: {e!r}") from e
        else:
            logger.info(
                "Received unhandled Stripe webhook event",
                event_type=event_type,
                event_id=_lookup(event, "id"),
            )

        return event_type


# Singleton instance
billing_service = BillingService()
