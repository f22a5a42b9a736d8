"""Property category endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from estatecrm.api.dependencies import (
    OrganizationContext,
    get_organization_context,
    require_active_subscription,
)
from estatecrm.database import get_db
from estatecrm.exceptions import ErrorResponse, NotFoundError
from estatecrm.models.property import Property, PropertyCategory

logger = structlog.get_logger()

router = APIRouter()


# Schemas
class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None


class CategoryUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=100)
    description: str | None = None


class CategoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    property_count: int = 0
    created_at: datetime | None


async def _get_category(db: AsyncSession, category_id: UUID, organization_id: UUID) -> PropertyCategory:
    result = await db.execute(
        select(PropertyCategory).where(
            PropertyCategory.id == category_id,
            PropertyCategory.organization_id == organization_id,
        )
    )
    category = result.scalar_one_or_none()

    if not category:
        raise NotFoundError(
            message="Category not found",
            details={"category_id": str(category_id)},
        )

    return category


async def _with_count(db: AsyncSession, category: PropertyCategory) -> CategoryResponse:
    result = await db.execute(
        select(func.count(Property.id)).where(Property.category_id == category.id)
    )
    response = CategoryResponse.model_validate(category)
    response.property_count = result.scalar() or 0
    return response


# Endpoints
@router.get("", response_model=list[CategoryResponse])
async def list_categories(
    context: OrganizationContext = Depends(get_organization_context),
    db: AsyncSession = Depends(get_db),
) -> list[CategoryResponse]:
    """List the organization's categories by name, with listing counts."""
    counts = (
        select(Property.category_id, func.count(Property.id).label("property_count"))
        .where(Property.category_id.is_not(None))
        .group_by(Property.category_id)
        .subquery()
    )
    result = await db.execute(
        select(PropertyCategory, func.coalesce(counts.c.property_count, 0))
        .outerjoin(counts, counts.c.category_id == PropertyCategory.id)
        .where(PropertyCategory.organization_id == context.organization_id)
        .order_by(PropertyCategory.name)
    )

    categories = []
    for category, count in result.all():
        response = CategoryResponse.model_validate(category)
        response.property_count = count
        categories.append(response)
    return categories


@router.post(
    "",
    response_model=CategoryResponse,
    status_code=status.HTTP_201_CREATED,
    responses={402: {"model": ErrorResponse, "description": "Active subscription required"}},
)
async def create_category(
    category_data: CategoryCreate,
    context: OrganizationContext = Depends(require_active_subscription),
    db: AsyncSession = Depends(get_db),
) -> CategoryResponse:
    category = PropertyCategory(
        organization_id=context.organization_id,
        created_by=context.user.id,
        **category_data.model_dump(),
    )
    db.add(category)
    await db.commit()
    await db.refresh(category)

    logger.info(
        "Category created",
        category_id=str(category.id),
        organization_id=str(context.organization_id),
    )

    return CategoryResponse.model_validate(category)


@router.patch("/{category_id}", response_model=CategoryResponse)
async def update_category(
    category_id: UUID,
    category_data: CategoryUpdate,
    context: OrganizationContext = Depends(get_organization_context),
    db: AsyncSession = Depends(get_db),
) -> CategoryResponse:
    category = await _get_category(db, category_id, context.organization_id)

    for field, value in category_data.model_dump(exclude_unset=True).items():
        setattr(category, field, value)

    await db.commit()
    await db.refresh(category)

    return await _with_count(db, category)


@router.delete("/{category_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_category(
    category_id: UUID,
    context: OrganizationContext = Depends(get_organization_context),
    db: AsyncSession = Depends(get_db),
) -> None:
    """Delete a category. Its listings are kept uncategorised."""
    category = await _get_category(db, category_id, context.organization_id)

    await db.execute(
        update(Property)
        .where(Property.category_id == category.id)
        .values(category_id=None)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        delete(PropertyCategory)
        .where(PropertyCategory.id == category.id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    logger.info(
        "Category deleted",
        category_id=str(category_id),
        organization_id=str(context.organization_id),
    )
