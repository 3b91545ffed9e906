"""
Repositories for batches and images.

``ImageRecordStore`` is the narrow interface the task processor depends on;
``ImageRepository`` implements it over an async SQLModel session and also
serves the upload and read endpoints.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import case, func, update, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from imagemark.core.exceptions import RecordNotFound, RecordStoreError, RecordUpdateError
from imagemark.core.logging import get_logger
from imagemark.modules.imagery.models import (
    Batch,
    Image,
    ImageRecord,
    ImageStatus,
    utcnow,
)

logger = get_logger(__name__)


class ImageRecordStore(ABC):
    """Persisted per-image status state machine."""

    @abstractmethod
    async def get_by_id(self, image_id: str) -> ImageRecord:
        """
        Load a live image together with its batch's watermark reference.

        Raises:
            RecordNotFound: missing, soft-deleted, or its batch is soft-deleted
            RecordStoreError: the lookup itself failed
        """

    @abstractmethod
    async def update_status(
        self,
        image_id: str,
        status: ImageStatus,
        processed_url: Optional[str] = None
    ) -> bool:
        """
        Write a status transition. ``processed_url`` is stored only with
        COMPLETED and cleared otherwise.

        Raises:
            RecordUpdateError: the write failed
        """


class ImageRepository(ImageRecordStore):
    """Repository for image records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, image_id: str) -> ImageRecord:
        statement = (
            select(Image, Batch)
            .join(Batch, Batch.id == Image.batch_id)
            .where(
                Image.id == image_id,
                col(Image.deleted_at).is_(None),
                col(Batch.deleted_at).is_(None),
            )
        )
        try:
            result = await self.session.execute(statement)
            row = result.first()
        except SQLAlchemyError as e:
            raise RecordStoreError(f"Failed to load image {image_id}: {e}", image_id=image_id) from e

        if row is None:
            raise RecordNotFound(f"Image not found: {image_id}", image_id=image_id)

        image, batch = row
        return ImageRecord.from_rows(image, batch)

    async def update_status(
        self,
        image_id: str,
        status: ImageStatus,
        processed_url: Optional[str] = None
    ) -> bool:
        if status != ImageStatus.COMPLETED:
            processed_url = None

        statement = (
            update(Image)
            .where(Image.id == image_id, col(Image.deleted_at).is_(None))
            .values(status=status.value, processed_url=processed_url, updated_at=utcnow())
        )
        try:
            result = await self.session.execute(statement)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RecordUpdateError(
                f"Failed to update image {image_id} to {status.value}: {e}",
                image_id=image_id
            ) from e

        return result.rowcount > 0

    async def create(self, batch_id: str, key: str, original_url: str) -> Image:
        """Insert a pending image row."""
        image = Image(batch_id=batch_id, key=key, original_url=original_url)
        self.session.add(image)
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RecordStoreError(f"Failed to save image {key}: {e}") from e
        await self.session.refresh(image)
        return image

    async def list_by_batch(self, batch_id: str) -> List[Image]:
        result = await self.session.execute(
            select(Image)
            .where(Image.batch_id == batch_id, col(Image.deleted_at).is_(None))
            .order_by(col(Image.created_at))
        )
        return list(result.scalars().all())

    async def soft_delete(self, image_id: str) -> bool:
        result = await self.session.execute(
            update(Image)
            .where(Image.id == image_id, col(Image.deleted_at).is_(None))
            .values(deleted_at=utcnow())
        )
        await self.session.commit()
        return result.rowcount > 0


@dataclass
class BatchSummary:
    """Batch row plus per-status image counters."""
    batch: Batch
    image_count: int
    pending_count: int
    processing_count: int
    completed_count: int
    failed_count: int


class BatchRepository:
    """Repository for batches."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        name: Optional[str] = None,
        watermark_key: Optional[str] = None,
        watermark_url: Optional[str] = None
    ) -> Batch:
        batch = Batch(name=name, watermark_key=watermark_key, watermark_url=watermark_url)
        self.session.add(batch)
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RecordStoreError(f"Failed to save batch: {e}") from e
        await self.session.refresh(batch)
        return batch

    async def get(self, batch_id: str) -> Optional[Batch]:
        result = await self.session.execute(
            select(Batch).where(Batch.id == batch_id, col(Batch.deleted_at).is_(None))
        )
        return result.scalar_one_or_none()

    async def list_with_counts(self) -> List[BatchSummary]:
        def count_status(status: ImageStatus):
            return func.count(case((Image.status == status.value, Image.id)))

        statement = (
            select(
                Batch,
                func.count(Image.id),
                count_status(ImageStatus.PENDING),
                count_status(ImageStatus.PROCESSING),
                count_status(ImageStatus.COMPLETED),
                count_status(ImageStatus.FAILED),
            )
            .join(
                Image,
                (Image.batch_id == Batch.id) & col(Image.deleted_at).is_(None),
                isouter=True,
            )
            .where(col(Batch.deleted_at).is_(None))
            .group_by(Batch.id)
            .order_by(col(Batch.created_at).desc())
        )
        result = await self.session.execute(statement)
        return [BatchSummary(*row) for row in result.all()]

    async def soft_delete(self, batch_id: str) -> bool:
        result = await self.session.execute(
            update(Batch)
            .where(Batch.id == batch_id, col(Batch.deleted_at).is_(None))
            .values(deleted_at=utcnow())
        )
        await self.session.commit()
        return result.rowcount > 0

    async def hard_delete(self, batch_id: str) -> None:
        """Remove a batch and its image rows entirely."""
        await self.session.execute(delete(Image).where(Image.batch_id == batch_id))
        await self.session.execute(delete(Batch).where(Batch.id == batch_id))
        await self.session.commit()
