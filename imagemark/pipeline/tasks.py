"""
Celery Tasks for Image Processing

Bridges the queue transport and the task processor:
- ``process_image`` consumes ``{"image_id": ...}`` payloads
- the processor's directive becomes a late ack, a requeue or a discard
- ``CeleryTaskPublisher`` is the upload path's producer
"""

import asyncio
from abc import ABC, abstractmethod

from celery.exceptions import Reject
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from imagemark.core.celery_app import celery_app
from imagemark.core.config import settings
from imagemark.core.database import create_worker_engine
from imagemark.core.logging import get_logger, set_task_context, clear_task_context
from imagemark.core.storage import StorageFactory
from imagemark.modules.imagery.models import ImageTask
from imagemark.modules.imagery.repositories import ImageRepository
from imagemark.pipeline.processor import Directive, ImageTaskProcessor

logger = get_logger(__name__)


async def run_processor(task: ImageTask) -> Directive:
    """Run one task with its own engine, session and processor."""
    engine = create_worker_engine()
    try:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            processor = ImageTaskProcessor(
                storage=StorageFactory.get_storage(),
                records=ImageRepository(session)
            )
            return await processor.process(task)
    finally:
        await engine.dispose()


def apply_directive(directive: Directive, image_id: str) -> None:
    """
    Translate a directive for the broker.

    ACK returns normally and the late ack fires; REQUEUE and DISCARD reject
    the delivery with or without redelivery.
    """
    if directive is Directive.REQUEUE:
        raise Reject(f"requeue image {image_id}", requeue=True)
    if directive is Directive.DISCARD:
        raise Reject(f"discard image {image_id}", requeue=False)


@celery_app.task(
    name="imagemark.pipeline.tasks.process_image",
    acks_late=True,
    ignore_result=True
)
def process_image(payload: dict) -> str:
    """
    Celery task: watermark one image.

    Args:
        payload: JSON message ``{"image_id": "<uuid>"}``

    Returns:
        The directive value when the delivery is acknowledged
    """
    try:
        task = ImageTask.model_validate(payload)
    except ValidationError as e:
        logger.error("task_payload_invalid", payload=payload, error=str(e))
        raise Reject("invalid payload", requeue=False)

    set_task_context(task.image_id, "consume")
    try:
        directive = asyncio.run(run_processor(task))
        apply_directive(directive, task.image_id)
        return directive.value
    finally:
        clear_task_context()


# =============================================================================
# Producer
# =============================================================================

class TaskPublisher(ABC):
    """Publishes image tasks to the queue."""

    @abstractmethod
    async def publish(self, task: ImageTask) -> None:
        """Publish one task. Raises on broker failure."""


class CeleryTaskPublisher(TaskPublisher):
    """Publishes through the Celery broker connection."""

    async def publish(self, task: ImageTask) -> None:
        await asyncio.to_thread(
            process_image.apply_async,
            args=[task.model_dump()],
            queue=settings.TASK_QUEUE_NAME,
            routing_key=settings.TASK_QUEUE_NAME
        )
