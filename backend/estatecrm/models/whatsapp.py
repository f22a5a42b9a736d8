"""WhatsApp conversation and message models."""

from datetime import datetime
from typing import TYPE_CHECKING, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import DateTime, ForeignKey, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from estatecrm.database import Base

if TYPE_CHECKING:
    from estatecrm.models.client import Client


class WhatsAppConversation(Base):
    """One WhatsApp thread per client."""

    __tablename__ = "whatsapp_conversations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    client_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    organization_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    whatsapp_number: Mapped[str] = mapped_column(String(50), nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    client: Mapped["Client"] = relationship("Client", back_populates="conversations")
    messages: Mapped[List["WhatsAppMessage"]] = relationship(
        "WhatsAppMessage", back_populates="conversation"
    )


class WhatsAppMessage(Base):
    """Single inbound or outbound WhatsApp message."""

    __tablename__ = "whatsapp_messages"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    conversation_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("whatsapp_conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Provider message id (wamid)
    message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    sender_type: Mapped[str] = mapped_column(String(20), nullable=False)  # client, agent
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    message_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    conversation: Mapped["WhatsAppConversation"] = relationship(
        "WhatsAppConversation", back_populates="messages"
    )
