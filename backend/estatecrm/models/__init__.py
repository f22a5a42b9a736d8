"""SQLAlchemy models."""

from estatecrm.models.organization import (
    BillingCycle,
    Invitation,
    InvitationStatus,
    MemberRole,
    Organization,
    OrganizationMember,
    SubscriptionStatus,
)
from estatecrm.models.property import Project, Property, PropertyCategory
from estatecrm.models.billing import SubscriptionPlan
from estatecrm.models.client import Client, ClientInsight
from estatecrm.models.whatsapp import WhatsAppConversation, WhatsAppMessage

__all__ = [
    "BillingCycle",
    "Invitation",
    "InvitationStatus",
    "MemberRole",
    "Organization",
    "OrganizationMember",
    "SubscriptionStatus",
    "Project",
    "Property",
    "PropertyCategory",
    "SubscriptionPlan",
    "Client",
    "ClientInsight",
    "WhatsAppConversation",
    "WhatsAppMessage",
]
