"""API v1 router."""

from fastapi import APIRouter

from estatecrm.api.v1 import (
    billing,
    categories,
    invitations,
    organizations,
    projects,
    properties,
    whatsapp,
)

router = APIRouter()

router.include_router(organizations.router, prefix="/organizations", tags=["Organizations"])
router.include_router(invitations.router, prefix="/invitations", tags=["Invitations"])
router.include_router(properties.router, prefix="/properties", tags=["Properties"])
router.include_router(projects.router, prefix="/projects", tags=["Projects"])
router.include_router(categories.router, prefix="/categories", tags=["Categories"])
router.include_router(billing.router, prefix="/billing", tags=["Billing"])
router.include_router(whatsapp.router, prefix="/whatsapp", tags=["WhatsApp"])
