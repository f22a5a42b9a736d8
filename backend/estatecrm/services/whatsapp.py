"""
WhatsApp Cloud API webhook processing.

Inbound messages are matched to clients by WhatsApp number, stored in the
client's conversation, and classified into insights. Outbound messaging is
not implemented.
"""

import hmac
import time
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from estatecrm.config import settings
from estatecrm.models.client import Client, ClientInsight
from estatecrm.models.whatsapp import WhatsAppConversation, WhatsAppMessage
from estatecrm.services.insights import classify

logger = structlog.get_logger()


class WhatsAppPayloadError(Exception):
    """Raised when an inbound webhook payload has an unexpected shape."""

    pass


def verify_subscription(
    mode: Optional[str],
    token: Optional[str],
    challenge: Optional[str],
) -> Optional[str]:
    """
    Answer the webhook subscription handshake.

    Returns the challenge to echo back, or None when verification fails.
    """
    if not settings.WHATSAPP_VERIFY_TOKEN:
        logger.warning("WhatsApp verify token not configured - rejecting handshake")
        return None

    if mode == "subscribe" and token and hmac.compare_digest(token, settings.WHATSAPP_VERIFY_TOKEN):
        logger.info("WhatsApp webhook verified")
        return challenge or ""

    logger.warning("WhatsApp webhook verification failed", mode=mode)
    return None


def iter_inbound_messages(payload: Any) -> Iterator[tuple[dict, list]]:
    """
    Yield (message, contacts) pairs from a webhook payload.

    Only changes whose field is ``messages`` carry inbound messages; status
    updates and other fields are skipped.
    """
    entries = payload.get("entry") if isinstance(payload, dict) else None
    if not isinstance(entries, list):
        raise WhatsAppPayloadError("Webhook payload has no entry list")

    for entry in entries:
        if not isinstance(entry, dict):
            raise WhatsAppPayloadError("Webhook entry is not an object")
        for change in entry.get("changes") or []:
            if not isinstance(change, dict) or change.get("field") != "messages":
                continue
            value = change.get("value")
            if not isinstance(value, dict):
                continue
            contacts = value.get("contacts") or []
            messages = value.get("messages")
            if not isinstance(messages, list):
                continue
            for message in messages:
                yield message, contacts


def _contact_name(contacts: Any, wa_id: str) -> Optional[str]:
    if not isinstance(contacts, list):
        return None
    for contact in contacts:
        if not isinstance(contact, dict) or contact.get("wa_id") != wa_id:
            continue
        profile = contact.get("profile")
        if isinstance(profile, dict):
            return profile.get("name")
    return None


def _message_body(message: dict) -> str:
    """Text body of a message, or an empty string for media and odd shapes."""
    text = message.get("text")
    if isinstance(text, dict):
        body = text.get("body")
    else:
        body = None
    return body if isinstance(body, str) else ""


class WhatsAppService:
    """Stores inbound WhatsApp messages and derives client insights."""

    async def process_webhook(self, payload: Any, db: AsyncSession) -> int:
        """
        Process every inbound message in a webhook payload.

        Each message is committed on its own. A message that fails is rolled
        back and logged, and processing continues with the next one.

        Returns:
            Number of messages stored

        Raises:
            WhatsAppPayloadError: If the payload has no entry list
        """
        processed = 0

        for message, contacts in iter_inbound_messages(payload):
            try:
                if await self.process_incoming_message(message, contacts, db):
                    processed += 1
            except (SQLAlchemyError, WhatsAppPayloadError) as e:
                await db.rollback()
                logger.error(
                    "Failed to process WhatsApp message",
                    message_id=message.get("id") if isinstance(message, dict) else None,
                    error=str(e),
                )
            except Exception:
                await db.rollback()
                logger.exception(
                    "Unexpected error processing WhatsApp message",
                    message_id=message.get("id") if isinstance(message, dict) else None,
                )

        return processed

    async def process_incoming_message(
        self,
        message: dict,
        contacts: list,
        db: AsyncSession,
    ) -> bool:
        """
        Store one inbound message and its insights.

        Returns:
            False when the sender is not a known client
        """
        if not isinstance(message, dict):
            raise WhatsAppPayloadError("Message is not an object")

        try:
            sender = message["from"]
            message_id = message["id"]
            sent_at = datetime.fromtimestamp(int(message["timestamp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError) as e:
            raise WhatsAppPayloadError(f"Malformed message: {e!r}") from e

        content = _message_body(message)

        result = await db.execute(
            select(Client)
            .where(Client.whatsapp_number == sender)
            .order_by(Client.created_at)
            .limit(1)
        )
        client = result.scalar_one_or_none()

        if not client:
            logger.info(
                "Client not found for WhatsApp number",
                whatsapp_number=sender,
                contact_name=_contact_name(contacts, sender),
            )
            return False

        conversation = await self._get_or_create_conversation(client, sender, db)

        db.add(
            WhatsAppMessage(
                conversation_id=conversation.id,
                message_id=message_id,
                sender_type="client",
                content=content,
                message_type=message.get("type"),
                timestamp=sent_at,
            )
        )

        insights = classify(content)
        for insight in insights:
            db.add(
                ClientInsight(
                    client_id=client.id,
                    organization_id=client.organization_id,
                    insight_type=insight.insight_type,
                    insight_data=insight.insight_data,
                    confidence_score=insight.confidence_score,
                )
            )

        await db.commit()

        logger.info(
            "WhatsApp message stored",
            client_id=str(client.id),
            message_id=message_id,
            insights=len(insights),
        )
        return True

    async def _get_or_create_conversation(
        self,
        client: Client,
        whatsapp_number: str,
        db: AsyncSession,
    ) -> WhatsAppConversation:
        result = await db.execute(
            select(WhatsAppConversation)
            .where(WhatsAppConversation.client_id == client.id)
            .order_by(WhatsAppConversation.created_at)
            .limit(1)
        )
        conversation = result.scalar_one_or_none()
        if conversation:
            return conversation

        conversation = WhatsAppConversation(
            client_id=client.id,
            organization_id=client.organization_id,
            whatsapp_number=whatsapp_number,
            conversation_id=f"conv_{client.id}_{int(time.time() * 1000)}",
        )
        db.add(conversation)
        await db.flush()

        logger.info("Started WhatsApp conversation", client_id=str(client.id))
        return conversation


whatsapp_service = WhatsAppService()
