"""Property listing endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field, computed_field
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from estatecrm.api.dependencies import (
    OrganizationContext,
    get_organization_context,
    require_active_subscription,
)
from estatecrm.database import get_db
from estatecrm.exceptions import ErrorResponse, NotFoundError, ValidationError
from estatecrm.models.property import Project, Property, PropertyCategory
from estatecrm.services.duplicates import find_duplicate_groups
from estatecrm.services.plans import format_price

logger = structlog.get_logger()

router = APIRouter()


# Schemas
class PropertyCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    address: str = Field(..., min_length=1)
    area_sqft: int | None = Field(None, ge=0)
    price: int | None = Field(None, ge=0, description="Price in minor currency units")
    bedrooms: int | None = Field(None, ge=0, le=50)
    bathrooms: float | None = Field(None, ge=0, le=50)
    property_type: str | None = None
    status: str = "available"
    description: str | None = None
    project_id: UUID | None = None
    category_id: UUID | None = None


class PropertyUpdate(BaseModel):
    title: str | None = None
    address: str | None = None
    area_sqft: int | None = None
    price: int | None = None
    bedrooms: int | None = None
    bathrooms: float | None = None
    property_type: str | None = None
    status: str | None = None
    description: str | None = None
    project_id: UUID | None = None
    category_id: UUID | None = None


class PropertyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    address: str
    area_sqft: int | None
    price: int | None
    bedrooms: int | None
    bathrooms: float | None
    property_type: str | None
    status: str
    description: str | None
    project_id: UUID | None
    category_id: UUID | None
    created_at: datetime | None
    updated_at: datetime | None

    @computed_field
    @property
    def price_display(self) -> str:
        return format_price(self.price)


class PropertyListResponse(BaseModel):
    properties: list[PropertyResponse]
    total: int
    page: int
    limit: int


class DuplicateGroupsResponse(BaseModel):
    groups: list[list[PropertyResponse]]
    total_groups: int


class MergeRequest(BaseModel):
    keep_id: UUID
    duplicate_ids: list[UUID] = Field(..., min_length=1)


class MergeResponse(BaseModel):
    kept_id: UUID
    deleted_count: int


async def _get_property(db: AsyncSession, property_id: UUID, organization_id: UUID) -> Property:
    result = await db.execute(
        select(Property).where(
            Property.id == property_id,
            Property.organization_id == organization_id,
        )
    )
    property_obj = result.scalar_one_or_none()

    if not property_obj:
        raise NotFoundError(
            message="Property not found",
            details={"property_id": str(property_id)},
        )

    return property_obj


async def _check_links(db: AsyncSession, organization_id: UUID, fields: dict) -> None:
    """Project and category links must stay inside the organization."""
    for field, model, label in (
        ("project_id", Project, "Project"),
        ("category_id", PropertyCategory, "Category"),
    ):
        linked_id = fields.get(field)
        if linked_id is None:
            continue
        result = await db.execute(
            select(model.id).where(model.id == linked_id, model.organization_id == organization_id)
        )
        if result.first() is None:
            raise NotFoundError(
                message=f"{label} not found",
                details={field: str(linked_id)},
            )


# Endpoints
@router.get("", response_model=PropertyListResponse)
async def list_properties(
    context: OrganizationContext = Depends(get_organization_context),
    db: AsyncSession = Depends(get_db),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: str | None = None,
) -> PropertyListResponse:
    """List all properties for the current user's organization."""
    query = select(Property).where(Property.organization_id == context.organization_id)

    if search:
        search_pattern = f"%{search}%"
        query = query.where(
            Property.title.ilike(search_pattern) |
            Property.address.ilike(search_pattern)
        )

    # Get total count
    count_query = select(func.count()).select_from(query.subquery())
    total = (await db.execute(count_query)).scalar() or 0

    # Get paginated results
    query = query.order_by(Property.created_at.desc())
    query = query.offset((page - 1) * limit).limit(limit)

    result = await db.execute(query)
    properties = result.scalars().all()

    return PropertyListResponse(
        properties=[PropertyResponse.model_validate(p) for p in properties],
        total=total,
        page=page,
        limit=limit,
    )


@router.post(
    "",
    response_model=PropertyResponse,
    status_code=status.HTTP_201_CREATED,
    responses={402: {"model": ErrorResponse, "description": "Active subscription required"}},
)
async def create_property(
    property_data: PropertyCreate,
    context: OrganizationContext = Depends(require_active_subscription),
    db: AsyncSession = Depends(get_db),
) -> PropertyResponse:
    """Create a new property listing. Requires an active subscription."""
    fields = property_data.model_dump()
    await _check_links(db, context.organization_id, fields)

    property_obj = Property(
        organization_id=context.organization_id,
        created_by=context.user.id,
        **fields,
    )

    db.add(property_obj)
    await db.commit()
    await db.refresh(property_obj)

    logger.info(
        "Property created",
        property_id=str(property_obj.id),
        organization_id=str(context.organization_id),
    )

    return PropertyResponse.model_validate(property_obj)


@router.get("/duplicates", response_model=DuplicateGroupsResponse)
async def list_duplicate_groups(
    transitive: bool = Query(False, description="Group chains of matches together"),
    context: OrganizationContext = Depends(get_organization_context),
    db: AsyncSession = Depends(get_db),
) -> DuplicateGroupsResponse:
    """
    Find probable duplicate listings in the organization.

    Properties are scanned oldest first, so the first property of each
    group is the earliest listing.
    """
    result = await db.execute(
        select(Property)
        .where(Property.organization_id == context.organization_id)
        .order_by(Property.created_at, Property.id)
    )
    properties = list(result.scalars().all())

    groups = find_duplicate_groups(properties, transitive=transitive)

    return DuplicateGroupsResponse(
        groups=[[PropertyResponse.model_validate(p) for p in group] for group in groups],
        total_groups=len(groups),
    )


@router.post(
    "/duplicates/merge",
    response_model=MergeResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def merge_duplicates(
    merge_data: MergeRequest,
    context: OrganizationContext = Depends(get_organization_context),
    db: AsyncSession = Depends(get_db),
) -> MergeResponse:
    """
    Keep one property and hard-delete its duplicates.

    The delete is a single statement scoped to the organization, so either
    every duplicate is removed or none is.
    """
    duplicate_ids = set(merge_data.duplicate_ids)

    if merge_data.keep_id in duplicate_ids:
        raise ValidationError(
            message="The kept property cannot also be deleted",
            field="duplicate_ids",
        )

    requested = duplicate_ids | {merge_data.keep_id}
    result = await db.execute(
        select(Property.id).where(
            Property.id.in_(list(requested)),
            Property.organization_id == context.organization_id,
        )
    )
    missing = requested - set(result.scalars().all())

    if missing:
        raise NotFoundError(
            message="Property not found",
            details={"property_ids": sorted(str(property_id) for property_id in missing)},
        )

    result = await db.execute(
        delete(Property)
        .where(
            Property.id.in_(list(duplicate_ids)),
            Property.organization_id == context.organization_id,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    logger.info(
        "Merged duplicate properties",
        organization_id=str(context.organization_id),
        kept_id=str(merge_data.keep_id),
        deleted_count=result.rowcount,
    )

    return MergeResponse(kept_id=merge_data.keep_id, deleted_count=result.rowcount)


@router.get("/{property_id}", response_model=PropertyResponse)
async def get_property(
    property_id: UUID,
    context: OrganizationContext = Depends(get_organization_context),
    db: AsyncSession = Depends(get_db),
) -> PropertyResponse:
    """Get a property by ID."""
    property_obj = await _get_property(db, property_id, context.organization_id)
    return PropertyResponse.model_validate(property_obj)


@router.patch("/{property_id}", response_model=PropertyResponse)
async def update_property(
    property_id: UUID,
    property_data: PropertyUpdate,
    context: OrganizationContext = Depends(get_organization_context),
    db: AsyncSession = Depends(get_db),
) -> PropertyResponse:
    """Update a property listing."""
    property_obj = await _get_property(db, property_id, context.organization_id)

    update_data = property_data.model_dump(exclude_unset=True)
    await _check_links(db, context.organization_id, update_data)
    for field, value in update_data.items():
        setattr(property_obj, field, value)

    await db.commit()
    await db.refresh(property_obj)

    return PropertyResponse.model_validate(property_obj)


@router.delete("/{property_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_property(
    property_id: UUID,
    context: OrganizationContext = Depends(get_organization_context),
    db: AsyncSession = Depends(get_db),
) -> None:
    """Delete a property listing."""
    property_obj = await _get_property(db, property_id, context.organization_id)

    await db.delete(property_obj)
    await db.commit()
