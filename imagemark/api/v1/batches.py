"""
Batch Endpoints - Upload Path and Status Polling

POST   /api/v1/batches             - Upload images (+ optional watermark), enqueue one task per image
GET    /api/v1/batches             - List batches with per-status image counters
GET    /api/v1/batches/{batch_id}  - Batch detail with its images
DELETE /api/v1/batches/{batch_id}  - Soft delete a batch
"""

import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel

from imagemark.api.dependencies import get_batch_repo, get_image_repo, get_task_publisher
from imagemark.core.config import settings
from imagemark.core.exceptions import RecordStoreError, StorageError
from imagemark.core.logging import get_logger
from imagemark.core.metrics import record_batch_created, record_image_upload
from imagemark.core.storage import (
    RAW_FOLDER,
    WATERMARK_FOLDER,
    IStorage,
    generate_asset_key,
    get_storage,
)
from imagemark.modules.imagery.models import ImageTask
from imagemark.modules.imagery.repositories import BatchRepository, ImageRepository
from imagemark.pipeline.tasks import TaskPublisher

logger = get_logger(__name__)
router = APIRouter()

SUPPORTED_MEDIA_TYPES = frozenset({"image/jpeg", "image/png"})


# =============================================================================
# Response Schemas
# =============================================================================

class BatchCreateResponse(BaseModel):
    """Aggregate result of a batch upload."""
    message: str
    batch_id: str
    image_count: int


class BatchSummaryResponse(BaseModel):
    """Batch with image status counters."""
    id: str
    name: Optional[str] = None
    watermark_key: Optional[str] = None
    watermark_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    image_count: int
    image_pending_count: int
    image_processing_count: int
    image_completed_count: int
    image_failed_count: int


class ImageResponse(BaseModel):
    """Single image in a batch."""
    id: str
    batch_id: str
    key: str
    original_url: str
    processed_url: Optional[str] = None
    status: str
    created_at: datetime
    updated_at: datetime


class BatchDetailResponse(BaseModel):
    """Batch with its images."""
    id: str
    name: Optional[str] = None
    watermark_key: Optional[str] = None
    watermark_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    images: List[ImageResponse]


class MessageResponse(BaseModel):
    message: str


# =============================================================================
# Helpers
# =============================================================================

def parse_media_type(content_type: Optional[str]) -> Optional[str]:
    """``image/png; charset=x`` -> ``image/png``; None when absent or malformed."""
    if not content_type:
        return None
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type.count("/") != 1:
        return None
    return media_type


def validate_uuid(value: str, label: str) -> str:
    try:
        return str(uuid.UUID(value))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"invalid {label} ID")


async def _store_watermark(upload: UploadFile, storage: IStorage) -> tuple:
    media_type = parse_media_type(upload.content_type)
    if media_type is None:
        raise HTTPException(status_code=400, detail="invalid watermark file")
    if media_type not in SUPPORTED_MEDIA_TYPES:
        raise HTTPException(status_code=400, detail="unsupported watermark file type")

    data = await upload.read()
    key = generate_asset_key(media_type, WATERMARK_FOLDER)
    try:
        await storage.put(key, data, media_type)
    except StorageError as e:
        logger.error("watermark_upload_failed", key=key, error=str(e))
        raise HTTPException(status_code=500, detail="internal server error")

    return key, storage.public_url(key)


async def _accept_image(
    upload: UploadFile,
    batch_id: str,
    storage: IStorage,
    images: ImageRepository,
    publisher: TaskPublisher
) -> bool:
    """Store one raw image, record it and enqueue its task. False means skipped."""
    filename = upload.filename
    media_type = parse_media_type(upload.content_type)
    if media_type not in SUPPORTED_MEDIA_TYPES:
        logger.warning("upload_skipped_unsupported_type", filename=filename, content_type=upload.content_type)
        return False

    try:
        data = await upload.read()
    except OSError as e:
        logger.warning("upload_skipped_read_failed", filename=filename, error=str(e))
        return False

    if not data or len(data) > settings.MAX_UPLOAD_SIZE_BYTES:
        logger.warning("upload_skipped_size", filename=filename, size=len(data))
        return False

    key = generate_asset_key(media_type, RAW_FOLDER)
    try:
        await storage.put(key, data, media_type)
    except StorageError as e:
        logger.warning("upload_skipped_storage_failed", filename=filename, key=key, error=str(e))
        return False

    try:
        image = await images.create(batch_id, key, storage.public_url(key))
    except RecordStoreError as e:
        logger.warning("upload_skipped_record_failed", filename=filename, key=key, error=str(e))
        return False

    try:
        await publisher.publish(ImageTask(image_id=image.id))
    except Exception as e:
        logger.warning(
            "upload_skipped_publish_failed",
            image_id=image.id,
            error=str(e),
            error_type=type(e).__name__
        )
        return False

    logger.info("image_uploaded", image_id=image.id, key=key, original_url=image.original_url)
    return True


# =============================================================================
# Endpoints
# =============================================================================

@router.post("", response_model=BatchCreateResponse, status_code=201)
async def create_batch(
    files: Optional[List[UploadFile]] = File(None),
    watermark: Optional[List[UploadFile]] = File(None),
    name: Optional[str] = Form(None),
    storage: IStorage = Depends(get_storage),
    batches: BatchRepository = Depends(get_batch_repo),
    images: ImageRepository = Depends(get_image_repo),
    publisher: TaskPublisher = Depends(get_task_publisher)
):
    """
    Create a batch from uploaded images and an optional watermark.

    Files with an unsupported content type, or that fail to store, record or
    enqueue, are logged and skipped. If no file is accepted the batch is
    removed and the request fails with 400.
    """
    if not files:
        raise HTTPException(status_code=400, detail="no files uploaded")
    if watermark and len(watermark) > 1:
        raise HTTPException(status_code=400, detail="only one watermark file allowed")

    watermark_key = watermark_url = None
    if watermark:
        watermark_key, watermark_url = await _store_watermark(watermark[0], storage)

    batch = await batches.create(
        name=name,
        watermark_key=watermark_key,
        watermark_url=watermark_url
    )
    logger.info("batch_created", batch_id=batch.id, file_count=len(files), watermark=watermark_key is not None)

    accepted = 0
    for upload in files:
        if await _accept_image(upload, batch.id, storage, images, publisher):
            accepted += 1
            record_image_upload("accepted")
        else:
            record_image_upload("skipped")

    if accepted == 0:
        await batches.hard_delete(batch.id)
        record_batch_created("rejected")
        logger.warning("batch_rejected_no_valid_images", batch_id=batch.id)
        raise HTTPException(status_code=400, detail="failed to create batch: no valid images uploaded")

    record_batch_created("created")
    return BatchCreateResponse(
        message="batch created successfully",
        batch_id=batch.id,
        image_count=accepted
    )


@router.get("", response_model=List[BatchSummaryResponse])
async def list_batches(batches: BatchRepository = Depends(get_batch_repo)):
    """List live batches, newest first, with per-status image counts."""
    summaries = await batches.list_with_counts()
    return [
        BatchSummaryResponse(
            id=s.batch.id,
            name=s.batch.name,
            watermark_key=s.batch.watermark_key,
            watermark_url=s.batch.watermark_url,
            created_at=s.batch.created_at,
            updated_at=s.batch.updated_at,
            image_count=s.image_count,
            image_pending_count=s.pending_count,
            image_processing_count=s.processing_count,
            image_completed_count=s.completed_count,
            image_failed_count=s.failed_count,
        )
        for s in summaries
    ]


@router.get("/{batch_id}", response_model=BatchDetailResponse)
async def get_batch(
    batch_id: str,
    batches: BatchRepository = Depends(get_batch_repo),
    images: ImageRepository = Depends(get_image_repo)
):
    batch_id = validate_uuid(batch_id, "batch")
    batch = await batches.get(batch_id)
    if batch is None:
        raise HTTPException(status_code=404, detail="batch not found")

    rows = await images.list_by_batch(batch.id)
    return BatchDetailResponse(
        id=batch.id,
        name=batch.name,
        watermark_key=batch.watermark_key,
        watermark_url=batch.watermark_url,
        created_at=batch.created_at,
        updated_at=batch.updated_at,
        images=[
            ImageResponse(
                id=img.id,
                batch_id=img.batch_id,
                key=img.key,
                original_url=img.original_url,
                processed_url=img.processed_url,
                status=img.status,
                created_at=img.created_at,
                updated_at=img.updated_at,
            )
            for img in rows
        ]
    )


@router.delete("/{batch_id}", response_model=MessageResponse)
async def delete_batch(
    batch_id: str,
    batches: BatchRepository = Depends(get_batch_repo)
):
    batch_id = validate_uuid(batch_id, "batch")
    if not await batches.soft_delete(batch_id):
        raise HTTPException(status_code=404, detail="batch not found")
    logger.info("batch_deleted", batch_id=batch_id)
    return MessageResponse(message="batch deleted successfully")
