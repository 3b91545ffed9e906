"""
Batch and Image Models with Processing Status Tracking

A batch owns zero or one watermark and any number of images. Each image
moves through pending -> processing -> completed / failed as the worker
handles its task.
"""

import uuid
from enum import Enum
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp for the TIMESTAMPTZ columns."""
    return datetime.now(timezone.utc)


class ImageStatus(str, Enum):
    """Image processing status states."""
    PENDING = "pending"           # Uploaded, task published
    PROCESSING = "processing"     # A delivery failed transiently, waiting for redelivery
    COMPLETED = "completed"       # Watermarked output stored
    FAILED = "failed"             # Permanently failed, message discarded


class Batch(SQLModel, table=True):
    """A group of uploaded images sharing one optional watermark."""
    __tablename__ = "batches"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )
    name: Optional[str] = Field(default=None, max_length=255)

    # Watermark reference shared by every image in the batch
    watermark_key: Optional[str] = Field(default=None, max_length=255)
    watermark_url: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    deleted_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))


class Image(SQLModel, table=True):
    """A single uploaded image and its processing state."""
    __tablename__ = "images"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )
    batch_id: str = Field(foreign_key="batches.id", index=True)

    # Storage key of the raw upload
    key: str = Field(max_length=255)
    original_url: str
    processed_url: Optional[str] = None

    status: str = Field(default=ImageStatus.PENDING.value, index=True)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    deleted_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))


class ImageRecord(BaseModel):
    """
    Image row joined with its batch's watermark reference.

    This is what the worker sees: the watermark is resolved through the
    batch at load time, never cached on the image.
    """
    id: str
    batch_id: str
    storage_key: str
    original_url: str
    processed_url: Optional[str] = None
    watermark_key: Optional[str] = None
    status: ImageStatus
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_rows(cls, image: Image, batch: Batch) -> "ImageRecord":
        return cls(
            id=image.id,
            batch_id=image.batch_id,
            storage_key=image.key,
            original_url=image.original_url,
            processed_url=image.processed_url,
            watermark_key=batch.watermark_key or None,
            status=ImageStatus(image.status),
            created_at=image.created_at,
            updated_at=image.updated_at,
        )


class ImageTask(BaseModel):
    """Queue message asking the worker to process one image."""
    image_id: str
