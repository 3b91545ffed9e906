from datetime import timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel

from imagemark.core.exceptions import RecordNotFound, RecordStoreError
from imagemark.modules.imagery.models import ImageStatus, utcnow
from imagemark.modules.imagery.repositories import BatchRepository, ImageRepository


@pytest.fixture
async def session(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/repo.db")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session
    await engine.dispose()


def test_utcnow_is_timezone_aware():
    assert utcnow().tzinfo is timezone.utc


@pytest.mark.asyncio
async def test_orm_inserts_batch_and_images(session):
    batches = BatchRepository(session)
    images = ImageRepository(session)

    batch = await batches.create(name="holiday", watermark_key="watermark/w.png", watermark_url="https://cdn.test/watermark/w.png")
    image = await images.create(batch.id, "raw/a.png", "https://cdn.test/raw/a.png")

    record = await images.get_by_id(image.id)
    assert record.batch_id == batch.id
    assert record.storage_key == "raw/a.png"
    assert record.watermark_key == "watermark/w.png"
    assert record.status == ImageStatus.PENDING

    [summary] = await batches.list_with_counts()
    assert summary.image_count == 1
    assert summary.pending_count == 1


@pytest.mark.asyncio
async def test_timestamp_updates_through_orm(session):
    batches = BatchRepository(session)
    images = ImageRepository(session)
    batch = await batches.create()
    image = await images.create(batch.id, "raw/a.png", "https://cdn.test/raw/a.png")

    assert await images.update_status(image.id, ImageStatus.COMPLETED, "https://cdn.test/processed/a.jpeg")
    assert await images.soft_delete(image.id)
    with pytest.raises(RecordNotFound):
        await images.get_by_id(image.id)

    assert await batches.soft_delete(batch.id)
    assert await batches.get(batch.id) is None

    await batches.hard_delete(batch.id)
    assert await batches.list_with_counts() == []


@pytest.mark.asyncio
async def test_batch_create_failure_is_record_store_error(session):
    session.commit = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("disk I/O error")))
    session.rollback = AsyncMock()

    with pytest.raises(RecordStoreError):
        await BatchRepository(session).create(name="x")
    session.rollback.assert_awaited_once()
