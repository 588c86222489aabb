"""
Image Store

Images are insert-only: the worker creates one record per successful
fetch + upload.
"""

from typing import Optional, Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from src.modules.imagery.models import Image, BoundingBox


class ImageStore:
    """Repository for fetched image records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, key: str, bbox: BoundingBox, meta: Dict[str, Any]) -> Image:
        image = Image(key=key, bbox=bbox.to_record(), meta=meta)
        self.session.add(image)
        await self.session.commit()
        await self.session.refresh(image)
        return image

    async def find_by_id(self, image_id: str) -> Optional[Image]:
        result = await self.session.execute(
            select(Image).where(Image.id == image_id)
        )
        return result.scalar_one_or_none()
