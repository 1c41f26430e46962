"""Credit package catalogue."""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_package import CreditPackage

logger = logging.getLogger(__name__)


def serialize_package(package: CreditPackage) -> Dict[str, Any]:
    return {
        "id": package.id,
        "name": package.name,
        "credits": int(package.credits or 0),
        "price": float(package.price or 0),
        "description": package.description,
        "popular": bool(package.popular),
    }


async def get_credit_packages(db: AsyncSession) -> List[CreditPackage]:
    """Active packages, cheapest first. A missing active flag counts as active."""
    result = await db.execute(
        select(CreditPackage)
        .where(or_(CreditPackage.active.is_(None), CreditPackage.active.is_(True)))
        .order_by(CreditPackage.price.asc(), CreditPackage.id.asc())
    )
    return list(result.scalars().all())


async def get_credit_package_by_id(package_id: Optional[str], db: AsyncSession) -> Optional[CreditPackage]:
    if not package_id:
        return None
    result = await db.execute(select(CreditPackage).where(CreditPackage.id == str(package_id)))
    package = result.scalar_one_or_none()
    if package is None:
        logger.warning("Credit package %s not found", package_id)
    return package
