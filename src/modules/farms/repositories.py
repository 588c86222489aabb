"""Farm Store"""

from typing import Optional, List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from src.modules.farms.models import Farm


class FarmStore:
    """Repository for farms."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_by_id(self, farm_id: str) -> Optional[Farm]:
        result = await self.session.execute(
            select(Farm).where(Farm.id == farm_id)
        )
        return result.scalar_one_or_none()

    async def list_for_owner(self, owner_id: str) -> List[Farm]:
        result = await self.session.execute(
            select(Farm)
            .where(Farm.owner_id == owner_id)
            .order_by(Farm.created_at.desc())
        )
        return list(result.scalars().all())

    async def create(self, name: str, center_lat: float, center_lng: float, owner_id: str) -> Farm:
        farm = Farm(
            name=name,
            center_lat=center_lat,
            center_lng=center_lng,
            owner_id=owner_id
        )
        self.session.add(farm)
        await self.session.commit()
        await self.session.refresh(farm)
        return farm
