from datetime import datetime
from typing import Dict, List, Optional, Tuple
from unittest.mock import AsyncMock

import pytest
from prometheus_client import REGISTRY

from imagemark.core.exceptions import (
    BlobIOError,
    BlobWriteError,
    RecordNotFound,
    RecordStoreError,
    RecordUpdateError,
)
from imagemark.modules.imagery.models import ImageRecord, ImageStatus, ImageTask
from imagemark.modules.imagery.repositories import ImageRecordStore
from imagemark.pipeline.processor import Directive, ImageTaskProcessor

IMAGE_ID = "3f1c1b8e-2a4d-4a55-9d6a-0c1e5b2f7a10"
BASE_KEY = "raw/base.png"
WATERMARK_KEY = "watermark/mark.png"


class FakeRecordStore(ImageRecordStore):
    """In-memory record store that keeps every status write."""

    def __init__(self, records: Optional[Dict[str, ImageRecord]] = None):
        self.records = records or {}
        self.updates: List[Tuple[str, ImageStatus, Optional[str]]] = []

    async def get_by_id(self, image_id: str) -> ImageRecord:
        if image_id not in self.records:
            raise RecordNotFound(f"Image not found: {image_id}", image_id=image_id)
        return self.records[image_id]

    async def update_status(self, image_id, status, processed_url=None) -> bool:
        if status != ImageStatus.COMPLETED:
            processed_url = None
        self.updates.append((image_id, status, processed_url))
        record = self.records.get(image_id)
        if record is None:
            return False
        self.records[image_id] = record.model_copy(
            update={"status": status, "processed_url": processed_url}
        )
        return True

    def status_of(self, image_id: str) -> ImageStatus:
        return self.records[image_id].status


def make_record(watermark_key: Optional[str] = WATERMARK_KEY) -> ImageRecord:
    now = datetime(2024, 5, 20, 10, 0, 0)
    return ImageRecord(
        id=IMAGE_ID,
        batch_id="b9d0f6a4-7c7e-4f0e-8a53-3c2d1e0f9a88",
        storage_key=BASE_KEY,
        original_url=f"https://cdn.test/{BASE_KEY}",
        watermark_key=watermark_key,
        status=ImageStatus.PENDING,
        created_at=now,
        updated_at=now,
    )


@pytest.fixture
def records() -> FakeRecordStore:
    return FakeRecordStore({IMAGE_ID: make_record()})


@pytest.fixture
async def seeded_storage(storage, image_bytes):
    await storage.put(BASE_KEY, image_bytes(size=(400, 300), fmt="PNG"), "image/png")
    await storage.put(WATERMARK_KEY, image_bytes(size=(80, 40), color=(0, 0, 0), fmt="PNG"), "image/png")
    return storage


def processed_keys(storage) -> List[str]:
    return [key for key in storage.objects if key.startswith("processed/")]


@pytest.mark.asyncio
async def test_success_stores_output_and_completes(seeded_storage, records):
    processor = ImageTaskProcessor(seeded_storage, records)

    directive = await processor.process(ImageTask(image_id=IMAGE_ID))

    assert directive is Directive.ACK
    [key] = processed_keys(seeded_storage)
    assert key.endswith(".jpeg")
    assert seeded_storage.content_types[key] == "image/jpeg"
    assert records.status_of(IMAGE_ID) == ImageStatus.COMPLETED
    assert records.records[IMAGE_ID].processed_url == f"https://cdn.test/{key}"


@pytest.mark.asyncio
async def test_success_without_watermark(seeded_storage):
    records = FakeRecordStore({IMAGE_ID: make_record(watermark_key=None)})
    processor = ImageTaskProcessor(seeded_storage, records)

    assert await processor.process(ImageTask(image_id=IMAGE_ID)) is Directive.ACK
    assert records.status_of(IMAGE_ID) == ImageStatus.COMPLETED


@pytest.mark.asyncio
async def test_missing_record_is_discarded(seeded_storage):
    records = FakeRecordStore()
    processor = ImageTaskProcessor(seeded_storage, records)

    directive = await processor.process(ImageTask(image_id=IMAGE_ID))

    assert directive is Directive.DISCARD
    assert processed_keys(seeded_storage) == []
    assert records.updates == [(IMAGE_ID, ImageStatus.FAILED, None)]


@pytest.mark.asyncio
async def test_record_lookup_error_is_discarded(seeded_storage):
    records = AsyncMock(spec=ImageRecordStore)
    records.get_by_id.side_effect = RecordStoreError("connection refused")
    records.update_status.return_value = True
    processor = ImageTaskProcessor(seeded_storage, records)

    directive = await processor.process(ImageTask(image_id=IMAGE_ID))

    assert directive is Directive.DISCARD
    records.update_status.assert_awaited_once_with(IMAGE_ID, ImageStatus.FAILED, None)
    assert processed_keys(seeded_storage) == []


@pytest.mark.asyncio
async def test_missing_base_blob_fails(storage, records, image_bytes):
    await storage.put(WATERMARK_KEY, image_bytes(fmt="PNG"), "image/png")
    processor = ImageTaskProcessor(storage, records)

    directive = await processor.process(ImageTask(image_id=IMAGE_ID))

    assert directive is Directive.DISCARD
    assert records.status_of(IMAGE_ID) == ImageStatus.FAILED
    assert processed_keys(storage) == []


@pytest.mark.asyncio
async def test_watermark_fetch_error_requeues_without_status_change(storage, records, image_bytes):
    await storage.put(BASE_KEY, image_bytes(fmt="PNG"), "image/png")
    processor = ImageTaskProcessor(storage, records)

    directive = await processor.process(ImageTask(image_id=IMAGE_ID))

    assert directive is Directive.REQUEUE
    assert records.updates == []
    assert records.status_of(IMAGE_ID) == ImageStatus.PENDING


@pytest.mark.asyncio
async def test_watermark_decode_error_requeues_without_status_change(seeded_storage, records):
    await seeded_storage.put(WATERMARK_KEY, b"not an image", "image/png")
    processor = ImageTaskProcessor(seeded_storage, records)

    directive = await processor.process(ImageTask(image_id=IMAGE_ID))

    assert directive is Directive.REQUEUE
    assert records.updates == []


@pytest.mark.asyncio
async def test_base_decode_error_marks_processing_and_requeues(seeded_storage, records):
    await seeded_storage.put(BASE_KEY, b"GIF89a garbage", "image/gif")
    processor = ImageTaskProcessor(seeded_storage, records)

    directive = await processor.process(ImageTask(image_id=IMAGE_ID))

    assert directive is Directive.REQUEUE
    assert records.status_of(IMAGE_ID) == ImageStatus.PROCESSING
    assert processed_keys(seeded_storage) == []


@pytest.mark.asyncio
async def test_store_error_marks_processing_and_requeues(seeded_storage, records):
    seeded_storage.put = AsyncMock(side_effect=BlobWriteError("disk full"))
    processor = ImageTaskProcessor(seeded_storage, records)

    directive = await processor.process(ImageTask(image_id=IMAGE_ID))

    assert directive is Directive.REQUEUE
    assert records.status_of(IMAGE_ID) == ImageStatus.PROCESSING
    assert records.records[IMAGE_ID].processed_url is None


@pytest.mark.asyncio
async def test_redelivery_after_transient_failure_completes(seeded_storage, records):
    real_put = seeded_storage.put
    seeded_storage.put = AsyncMock(side_effect=BlobWriteError("timeout"))
    processor = ImageTaskProcessor(seeded_storage, records)

    assert await processor.process(ImageTask(image_id=IMAGE_ID)) is Directive.REQUEUE

    seeded_storage.put = real_put
    assert await processor.process(ImageTask(image_id=IMAGE_ID)) is Directive.ACK
    assert records.status_of(IMAGE_ID) == ImageStatus.COMPLETED
    assert len(processed_keys(seeded_storage)) == 1


@pytest.mark.asyncio
async def test_duplicate_delivery_writes_fresh_output(seeded_storage, records):
    processor = ImageTaskProcessor(seeded_storage, records)

    await processor.process(ImageTask(image_id=IMAGE_ID))
    await processor.process(ImageTask(image_id=IMAGE_ID))

    keys = processed_keys(seeded_storage)
    assert len(keys) == 2
    assert records.records[IMAGE_ID].processed_url in {f"https://cdn.test/{k}" for k in keys}


@pytest.mark.asyncio
async def test_status_write_failure_keeps_directive(seeded_storage):
    records = AsyncMock(spec=ImageRecordStore)
    records.get_by_id.return_value = make_record()
    records.update_status.side_effect = RecordUpdateError("database is locked")
    processor = ImageTaskProcessor(seeded_storage, records)

    directive = await processor.process(ImageTask(image_id=IMAGE_ID))

    assert directive is Directive.ACK
    records.update_status.assert_awaited_once()
    args = records.update_status.await_args.args
    assert args[1] == ImageStatus.COMPLETED


@pytest.mark.asyncio
async def test_unexpected_error_is_discarded(seeded_storage, records):
    seeded_storage.get = AsyncMock(side_effect=RuntimeError("boom"))
    processor = ImageTaskProcessor(seeded_storage, records)

    directive = await processor.process(ImageTask(image_id=IMAGE_ID))

    assert directive is Directive.DISCARD
    assert records.status_of(IMAGE_ID) == ImageStatus.FAILED


@pytest.mark.asyncio
async def test_base_read_error_is_discarded(seeded_storage, records):
    seeded_storage.get = AsyncMock(side_effect=BlobIOError("connection reset", key=BASE_KEY))
    processor = ImageTaskProcessor(seeded_storage, records)

    assert await processor.process(ImageTask(image_id=IMAGE_ID)) is Directive.DISCARD
    assert records.status_of(IMAGE_ID) == ImageStatus.FAILED


@pytest.mark.asyncio
async def test_composite_stage_is_timed(seeded_storage, records):
    labels = {"stage": "composite", "status": "success"}
    before = REGISTRY.get_sample_value("pipeline_latency_seconds_count", labels) or 0.0
    processor = ImageTaskProcessor(seeded_storage, records)

    await processor.process(ImageTask(image_id=IMAGE_ID))

    assert REGISTRY.get_sample_value("pipeline_latency_seconds_count", labels) == before + 1
