"""Tests for Stripe webhook handling."""

from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from estatecrm.models import Organization
from estatecrm.services.billing import billing_service


WEBHOOK_URL = "/api/v1/billing/webhook"


def _naive(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on round trip."""
    return value.replace(tzinfo=None) if value is not None else None


class TestStripeWebhookSecurity:
    """Test Stripe webhook signature verification."""

    @pytest.mark.asyncio
    async def test_webhook_requires_signature(
        self,
        async_client,
        async_session,
        pending_organization: Organization,
        mock_stripe_checkout_event,
    ) -> None:
        """Without a signature header the event is rejected and nothing changes."""
        event = mock_stripe_checkout_event(pending_organization.id)

        response = await async_client.post(
            WEBHOOK_URL,
            json=event,
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Missing Stripe signature", "received": False}

        await async_session.refresh(pending_organization)
        assert pending_organization.subscription_status == "pending"

    @pytest.mark.asyncio
    async def test_webhook_rejects_invalid_signature(
        self,
        async_client,
        async_session,
        pending_organization: Organization,
        mock_stripe_checkout_event,
    ) -> None:
        """A forged signature never activates an organization."""
        event = mock_stripe_checkout_event(pending_organization.id)

        response = await async_client.post(
            WEBHOOK_URL,
            json=event,
            headers={"Stripe-Signature": "t=123,v1=invalid_signature"},
        )

        assert response.status_code == 400
        assert response.json()["received"] is False

        await async_session.refresh(pending_organization)
        assert pending_organization.subscription_status == "pending"
        assert pending_organization.stripe_subscription_id is None

    @pytest.mark.asyncio
    async def test_webhook_rejects_tampered_body(
        self,
        async_client,
        async_session,
        pending_organization: Organization,
        mock_stripe_checkout_event,
        sign_stripe_payload,
    ) -> None:
        """The signature covers the raw body."""
        content, headers = sign_stripe_payload(mock_stripe_checkout_event(pending_organization.id))

        response = await async_client.post(
            WEBHOOK_URL,
            content=content.replace(b"sub_new_456", b"sub_forged_1"),
            headers=headers,
        )

        assert response.status_code == 400

        await async_session.refresh(pending_organization)
        assert pending_organization.subscription_status == "pending"


class TestStripeCheckoutWebhook:
    """Test checkout.session.completed webhook handling."""

    @pytest.mark.asyncio
    async def test_checkout_completed_activates_monthly_subscription(
        self,
        async_client,
        async_session,
        pending_organization: Organization,
        mock_stripe_checkout_event,
        sign_stripe_payload,
    ) -> None:
        """Monthly checkout activates the organization for one calendar month."""
        content, headers = sign_stripe_payload(mock_stripe_checkout_event(pending_organization.id))
        processed_at = datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)

        with patch("estatecrm.services.billing.utcnow", return_value=processed_at):
            response = await async_client.post(WEBHOOK_URL, content=content, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True, "eventType": "checkout.session.completed"}

        await async_session.refresh(pending_organization)
        assert pending_organization.subscription_status == "active"
        assert pending_organization.stripe_subscription_id == "sub_new_456"
        assert pending_organization.billing_cycle == "monthly"
        # Clamped to the end of February
        assert _naive(pending_organization.subscription_expires_at) == datetime(2024, 2, 29, 12, 0)

    @pytest.mark.asyncio
    async def test_checkout_completed_activates_yearly_subscription(
        self,
        async_client,
        async_session,
        pending_organization: Organization,
        mock_stripe_checkout_event,
        sign_stripe_payload,
    ) -> None:
        """Yearly checkout activates the organization for one calendar year."""
        content, headers = sign_stripe_payload(
            mock_stripe_checkout_event(pending_organization.id, billing_cycle="yearly")
        )
        processed_at = datetime(2024, 3, 15, 8, 30, tzinfo=timezone.utc)

        with patch("estatecrm.services.billing.utcnow", return_value=processed_at):
            response = await async_client.post(WEBHOOK_URL, content=content, headers=headers)

        assert response.status_code == 200

        await async_session.refresh(pending_organization)
        assert pending_organization.subscription_status == "active"
        assert pending_organization.billing_cycle == "yearly"
        assert _naive(pending_organization.subscription_expires_at) == datetime(2025, 3, 15, 8, 30)

    @pytest.mark.asyncio
    async def test_checkout_without_billing_cycle_defaults_to_monthly(
        self,
        async_client,
        async_session,
        pending_organization: Organization,
        mock_stripe_checkout_event,
        sign_stripe_payload,
    ) -> None:
        content, headers = sign_stripe_payload(
            mock_stripe_checkout_event(pending_organization.id, billing_cycle=None)
        )
        processed_at = datetime(2024, 6, 1, tzinfo=timezone.utc)

        with patch("estatecrm.services.billing.utcnow", return_value=processed_at):
            response = await async_client.post(WEBHOOK_URL, content=content, headers=headers)

        assert response.status_code == 200

        await async_session.refresh(pending_organization)
        assert pending_organization.billing_cycle == "monthly"
        assert _naive(pending_organization.subscription_expires_at) == datetime(2024, 7, 1)

    @pytest.mark.asyncio
    async def test_unknown_billing_cycle_is_stored_as_monthly(
        self,
        async_client,
        async_session,
        pending_organization: Organization,
        mock_stripe_checkout_event,
        sign_stripe_payload,
    ) -> None:
        content, headers = sign_stripe_payload(
            mock_stripe_checkout_event(pending_organization.id, billing_cycle="x" * 40)
        )
        processed_at = datetime(2024, 6, 1, tzinfo=timezone.utc)

        with patch("estatecrm.services.billing.utcnow", return_value=processed_at):
            response = await async_client.post(WEBHOOK_URL, content=content, headers=headers)

        assert response.status_code == 200

        await async_session.refresh(pending_organization)
        assert pending_organization.subscription_status == "active"
        assert pending_organization.billing_cycle == "monthly"
        assert _naive(pending_organization.subscription_expires_at) == datetime(2024, 7, 1)

    @pytest.mark.asyncio
    async def test_checkout_without_organization_id_is_acknowledged(
        self,
        async_client,
        async_session,
        pending_organization: Organization,
        mock_stripe_checkout_event,
        sign_stripe_payload,
    ) -> None:
        """Missing tenant metadata is logged and acknowledged without a write."""
        content, headers = sign_stripe_payload(mock_stripe_checkout_event(None))

        response = await async_client.post(WEBHOOK_URL, content=content, headers=headers)

        assert response.status_code == 200
        assert response.json()["received"] is True

        await async_session.refresh(pending_organization)
        assert pending_organization.subscription_status == "pending"

    @pytest.mark.asyncio
    async def test_checkout_with_malformed_organization_id_is_rejected(
        self,
        async_client,
        mock_stripe_checkout_event,
        sign_stripe_payload,
    ) -> None:
        content, headers = sign_stripe_payload(mock_stripe_checkout_event("not-a-uuid"))

        response = await async_client.post(WEBHOOK_URL, content=content, headers=headers)

        assert response.status_code == 400
        data = response.json()
        assert data["received"] is False
        assert "not-a-uuid" in data["error"]

    @pytest.mark.asyncio
    async def test_checkout_for_unknown_organization_is_acknowledged(
        self,
        async_client,
        mock_stripe_checkout_event,
        sign_stripe_payload,
    ) -> None:
        """An update matching zero rows is not a failure."""
        content, headers = sign_stripe_payload(
            mock_stripe_checkout_event("00000000-0000-0000-0000-000000000001")
        )

        response = await async_client.post(WEBHOOK_URL, content=content, headers=headers)

        assert response.status_code == 200


class TestWebhookIdempotency:
    """Test webhook idempotency handling."""

    @pytest.mark.asyncio
    async def test_duplicate_event_converges_to_same_state(
        self,
        async_client,
        async_session,
        pending_organization: Organization,
        mock_stripe_checkout_event,
        sign_stripe_payload,
    ) -> None:
        """Redelivering the same event at the same instant is a no-op."""
        event = mock_stripe_checkout_event(pending_organization.id)
        processed_at = datetime(2024, 5, 10, tzinfo=timezone.utc)
        states = []

        with patch("estatecrm.services.billing.utcnow", return_value=processed_at):
            for _ in range(2):
                content, headers = sign_stripe_payload(event)
                response = await async_client.post(WEBHOOK_URL, content=content, headers=headers)
                assert response.status_code == 200

                await async_session.refresh(pending_organization)
                states.append(
                    (
                        pending_organization.subscription_status,
                        pending_organization.stripe_subscription_id,
                        _naive(pending_organization.subscription_expires_at),
                        pending_organization.billing_cycle,
                    )
                )

        assert states[0] == states[1]
        assert states[0] == ("active", "sub_new_456", datetime(2024, 6, 10), "monthly")


class TestStripeSubscriptionWebhook:
    """Test subscription lifecycle webhooks."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "stripe_status,expected",
        [
            ("past_due", "past_due"),
            ("unpaid", "past_due"),
            ("canceled", "cancelled"),
            ("active", "active"),
            ("trialing", "active"),
            ("incomplete", "active"),
        ],
    )
    async def test_subscription_updated_maps_status(
        self,
        async_client,
        async_session,
        active_organization: Organization,
        mock_stripe_subscription_event,
        sign_stripe_payload,
        stripe_status: str,
        expected: str,
    ) -> None:
        content, headers = sign_stripe_payload(
            mock_stripe_subscription_event(
                "customer.subscription.updated",
                active_organization.stripe_subscription_id,
                status=stripe_status,
            )
        )

        response = await async_client.post(WEBHOOK_URL, content=content, headers=headers)

        assert response.status_code == 200
        assert response.json()["eventType"] == "customer.subscription.updated"

        await async_session.refresh(active_organization)
        assert active_organization.subscription_status == expected

    @pytest.mark.asyncio
    async def test_past_due_subscription_recovers(
        self,
        async_client,
        async_session,
        active_organization: Organization,
        mock_stripe_subscription_event,
        sign_stripe_payload,
    ) -> None:
        """past_due -> active once Stripe reports the subscription active again."""
        for stripe_status in ("past_due", "active"):
            content, headers = sign_stripe_payload(
                mock_stripe_subscription_event(
                    "customer.subscription.updated",
                    active_organization.stripe_subscription_id,
                    status=stripe_status,
                )
            )
            response = await async_client.post(WEBHOOK_URL, content=content, headers=headers)
            assert response.status_code == 200

        await async_session.refresh(active_organization)
        assert active_organization.subscription_status == "active"

    @pytest.mark.asyncio
    async def test_subscription_deleted_cancels_access(
        self,
        async_client,
        async_session,
        active_organization: Organization,
        mock_stripe_subscription_event,
        sign_stripe_payload,
    ) -> None:
        content, headers = sign_stripe_payload(
            mock_stripe_subscription_event(
                "customer.subscription.deleted",
                active_organization.stripe_subscription_id,
                status="canceled",
            )
        )

        response = await async_client.post(WEBHOOK_URL, content=content, headers=headers)

        assert response.status_code == 200

        await async_session.refresh(active_organization)
        assert active_organization.subscription_status == "cancelled"
        assert active_organization.stripe_subscription_id == "sub_active_123"

    @pytest.mark.asyncio
    async def test_update_for_unknown_subscription_is_acknowledged(
        self,
        async_client,
        async_session,
        active_organization: Organization,
        mock_stripe_subscription_event,
        sign_stripe_payload,
    ) -> None:
        content, headers = sign_stripe_payload(
            mock_stripe_subscription_event(
                "customer.subscription.updated", "sub_unknown", status="past_due"
            )
        )

        response = await async_client.post(WEBHOOK_URL, content=content, headers=headers)

        assert response.status_code == 200

        await async_session.refresh(active_organization)
        assert active_organization.subscription_status == "active"


class TestStripeInvoiceWebhook:
    """Test invoice webhook handling."""

    @staticmethod
    def _invoice_event(invoice: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": "evt_invoice_1",
            "object": "event",
            "type": "invoice.payment_failed",
            "data": {"object": {"id": "in_123", "object": "invoice", **invoice}},
        }

    @pytest.mark.asyncio
    async def test_invoice_payment_failed_marks_past_due(
        self,
        async_client,
        async_session,
        active_organization: Organization,
        sign_stripe_payload,
    ) -> None:
        content, headers = sign_stripe_payload(
            self._invoice_event({"subscription": active_organization.stripe_subscription_id})
        )

        response = await async_client.post(WEBHOOK_URL, content=content, headers=headers)

        assert response.status_code == 200

        await async_session.refresh(active_organization)
        assert active_organization.subscription_status == "past_due"

    @pytest.mark.asyncio
    async def test_invoice_payment_failed_reads_parent_subscription(
        self,
        async_client,
        async_session,
        active_organization: Organization,
        sign_stripe_payload,
    ) -> None:
        """Newer API versions nest the subscription under parent."""
        content, headers = sign_stripe_payload(
            self._invoice_event(
                {
                    "parent": {
                        "type": "subscription_details",
                        "subscription_details": {
                            "subscription": active_organization.stripe_subscription_id,
                        },
                    }
                }
            )
        )

        response = await async_client.post(WEBHOOK_URL, content=content, headers=headers)

        assert response.status_code == 200

        await async_session.refresh(active_organization)
        assert active_organization.subscription_status == "past_due"

    @pytest.mark.asyncio
    async def test_invoice_for_unknown_subscription_is_acknowledged(
        self,
        async_client,
        async_session,
        active_organization: Organization,
        sign_stripe_payload,
    ) -> None:
        content, headers = sign_stripe_payload(self._invoice_event({"subscription": "sub_unknown"}))

        response = await async_client.post(WEBHOOK_URL, content=content, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True, "eventType": "invoice.payment_failed"}

        await async_session.refresh(active_organization)
        assert active_organization.subscription_status == "active"


class TestUnhandledAndFailingEvents:
    """Test acknowledgement of other events and failure signalling."""

    @pytest.mark.asyncio
    async def test_unhandled_event_type_is_acknowledged(
        self,
        async_client,
        sign_stripe_payload,
    ) -> None:
        content, headers = sign_stripe_payload(
            {
                "id": "evt_other",
                "object": "event",
                "type": "customer.created",
                "data": {"object": {"id": "cus_1", "object": "customer"}},
            }
        )

        response = await async_client.post(WEBHOOK_URL, content=content, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True, "eventType": "customer.created"}

    @pytest.mark.asyncio
    async def test_database_failure_asks_stripe_to_redeliver(
        self,
        async_client,
        async_session,
        active_organization: Organization,
        mock_stripe_subscription_event,
        sign_stripe_payload,
    ) -> None:
        content, headers = sign_stripe_payload(
            mock_stripe_subscription_event(
                "customer.subscription.deleted",
                active_organization.stripe_subscription_id,
            )
        )

        with patch.object(
            billing_service,
            "_update_organizations",
            AsyncMock(side_effect=SQLAlchemyError("connection lost")),
        ):
            response = await async_client.post(WEBHOOK_URL, content=content, headers=headers)

        assert response.status_code == 400
        data = response.json()
        assert data["received"] is False
        assert "connection lost" in data["error"]

        await async_session.refresh(active_organization)
        assert active_organization.subscription_status == "active"

    @pytest.mark.asyncio
    async def test_event_without_data_object_is_rejected(
        self,
        async_client,
        async_session,
        pending_organization: Organization,
        sign_stripe_payload,
    ) -> None:
        content, headers = sign_stripe_payload(
            {
                "id": "evt_hollow",
                "object": "event",
                "type": "checkout.session.completed",
                "data": {},
            }
        )

        response = await async_client.post(WEBHOOK_URL, content=content, headers=headers)

        assert response.status_code == 400
        data = response.json()
        assert data["received"] is False
        assert "checkout.session.completed" in data["error"]

        await async_session.refresh(pending_organization)
        assert pending_organization.subscription_status == "pending"
