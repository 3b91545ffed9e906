"""
FastAPI Dependencies

Provides dependency injection for:
- Image / Batch repositories (per-request with session)
- Task publisher (singleton)

Tests override these through ``app.dependency_overrides``.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from imagemark.core.database import get_session
from imagemark.modules.imagery.repositories import BatchRepository, ImageRepository
from imagemark.pipeline.tasks import CeleryTaskPublisher, TaskPublisher

_publisher = CeleryTaskPublisher()


def get_image_repo(session: AsyncSession = Depends(get_session)) -> ImageRepository:
    """Returns image repository with async session."""
    return ImageRepository(session)


def get_batch_repo(session: AsyncSession = Depends(get_session)) -> BatchRepository:
    """Returns batch repository with async session."""
    return BatchRepository(session)


def get_task_publisher() -> TaskPublisher:
    """Returns the singleton Celery task publisher."""
    return _publisher
