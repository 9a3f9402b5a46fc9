"""
Property catalog lookups for the scheduling flow.
Read-only: only rows with status='available' can be scheduled.
Resolution order is id, then code, then fuzzy address/title search.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.models.property import Property
from src.schemas.scheduling import PropertyCandidate, PropertyResolution
from src.services.slots import escape_like

logger = logging.getLogger(__name__)

AVAILABLE = "available"


def format_address(prop: Property) -> str:
    """'Rua das Flores 120, Jardim Paulista - São Paulo/SP'"""
    street_line = " ".join(part for part in (prop.address_street, prop.address_number) if part)
    locality = f"{prop.address_neighborhood or ''} - {prop.address_city or ''}/{prop.address_state or ''}"
    address = f"{street_line}, {locality}" if street_line else locality
    return " ".join(address.split())


def to_candidate(prop: Property) -> PropertyCandidate:
    return PropertyCandidate(
        id=str(prop.id),
        code=prop.code,
        title=prop.title,
        address=format_address(prop),
    )


def format_candidate_line(position: int, candidate: PropertyCandidate) -> str:
    """One numbered line of the disambiguation list (position is 1-based)."""
    return f"{position}) {candidate.title} (código {candidate.code}) — {candidate.address}"


async def get_property(db: AsyncSession, property_id) -> Optional[Property]:
    """Fetch any property by id regardless of status (for reply rendering)."""
    if property_id is None:
        return None
    try:
        pid = property_id if isinstance(property_id, uuid.UUID) else uuid.UUID(str(property_id))
    except ValueError:
        return None
    return await db.get(Property, pid)


async def resolve_by_id(db: AsyncSession, raw_id: Optional[str]) -> Optional[Property]:
    """Resolve an explicit UUID, only if that property is available."""
    if not raw_id or not str(raw_id).strip():
        return None
    try:
        pid = uuid.UUID(str(raw_id).strip())
    except ValueError:
        return None
    result = await db.execute(
        select(Property).where(Property.id == pid, Property.status == AVAILABLE)
    )
    return result.scalar_one_or_none()


async def resolve_by_code(db: AsyncSession, code: Optional[str]) -> Optional[Property]:
    """Resolve an explicit property code (case-insensitive)."""
    if not code or not code.strip():
        return None
    result = await db.execute(
        select(Property).where(
            func.upper(Property.code) == code.strip().upper(),
            Property.status == AVAILABLE,
        )
    )
    return result.scalars().first()


async def search_by_address(
    db: AsyncSession,
    fragment: Optional[str],
    limit: Optional[int] = None,
) -> list[Property]:
    """
    Case-insensitive substring match over street, neighborhood, city, title and code.
    The fragment is length-capped and wildcard-escaped. Ordered by code so the
    candidate numbering is stable between turns.
    """
    settings = get_settings()
    query = (fragment or "").strip()[:settings.address_query_max_chars].strip()
    if not query:
        return []
    pattern = f"%{escape_like(query)}%"

    result = await db.execute(
        select(Property)
        .where(
            Property.status == AVAILABLE,
            or_(
                Property.address_street.ilike(pattern, escape="\\"),
                Property.address_neighborhood.ilike(pattern, escape="\\"),
                Property.address_city.ilike(pattern, escape="\\"),
                Property.title.ilike(pattern, escape="\\"),
                Property.code.ilike(pattern, escape="\\"),
            ),
        )
        .order_by(Property.code)
        .limit(limit or settings.max_candidates)
    )
    return list(result.scalars().all())


async def resolve_property(
    db: AsyncSession,
    property_id: Optional[str] = None,
    code: Optional[str] = None,
    address: Optional[str] = None,
) -> PropertyResolution:
    """
    Resolve a property reference: id first, then code, then fuzzy address.

    More than one address match is never narrowed down here; the caller gets
    the candidate list and must ask the customer.
    """
    prop = await resolve_by_id(db, property_id)
    if prop is not None:
        return PropertyResolution.resolved(str(prop.id))

    prop = await resolve_by_code(db, code)
    if prop is not None:
        return PropertyResolution.resolved(str(prop.id))

    if address and address.strip():
        rows = await search_by_address(db, address)
        if len(rows) == 1:
            return PropertyResolution.resolved(str(rows[0].id))
        if len(rows) > 1:
            logger.info("Address search ambiguous: %d candidates", len(rows))
            return PropertyResolution.ambiguous([to_candidate(r) for r in rows])

    return PropertyResolution.none()


async def list_available_properties(db: AsyncSession, limit: Optional[int] = None) -> list[Property]:
    """Grounding context for the AI agent: featured first, then newest."""
    result = await db.execute(
        select(Property)
        .where(Property.status == AVAILABLE)
        .order_by(Property.is_featured.desc(), Property.created_at.desc())
        .limit(limit or get_settings().ai_grounding_properties)
    )
    return list(result.scalars().all())
