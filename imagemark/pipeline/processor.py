"""
Image Task Processor

Drives one queue delivery through load -> fetch -> composite -> store ->
update and resolves it to a queue directive. The processor never raises:
every failure maps to ACK, REQUEUE or DISCARD.

    record missing / lookup error      -> FAILED,     DISCARD
    base blob fetch error              -> FAILED,     DISCARD
    watermark blob fetch error         -> unchanged,  REQUEUE
    watermark decode error             -> unchanged,  REQUEUE
    base decode / encode error         -> PROCESSING, REQUEUE
    result upload error                -> PROCESSING, REQUEUE
    success                            -> COMPLETED,  ACK

Status writes are best effort: a failed write is logged and the directive
stands.
"""

import traceback
from enum import Enum
from typing import Optional

from imagemark.core.exceptions import (
    CompositeError,
    RecordNotFound,
    RecordStoreError,
    StorageError,
    WatermarkDecodeError,
)
from imagemark.core.logging import LogContext, get_logger, set_stage
from imagemark.core.metrics import record_task_directive, track_stage_latency
from imagemark.core.storage import PROCESSED_FOLDER, IStorage, generate_asset_key
from imagemark.modules.imagery.models import ImageStatus, ImageTask
from imagemark.modules.imagery.repositories import ImageRecordStore
from imagemark.pipeline.compositor import OUTPUT_MEDIA_TYPE, composite

logger = get_logger(__name__)


class Directive(str, Enum):
    """What the queue transport should do with the delivery."""
    ACK = "ack"
    REQUEUE = "requeue"
    DISCARD = "discard"


class ImageTaskProcessor:
    """
    Processes image tasks against injected storage and record store.

    Instances hold no per-task state, so one processor may serve several
    deliveries; the worker still builds one per task so each gets its own
    database session.
    """

    def __init__(self, storage: IStorage, records: ImageRecordStore):
        self.storage = storage
        self.records = records

    async def process(self, task: ImageTask) -> Directive:
        with LogContext(image_id=task.image_id, stage="load"):
            try:
                directive = await self._run(task.image_id)
            except Exception as e:
                logger.error(
                    "task_unexpected_error",
                    error=str(e),
                    error_type=type(e).__name__,
                    traceback=traceback.format_exc()
                )
                await self._mark(task.image_id, ImageStatus.FAILED)
                directive = Directive.DISCARD

            record_task_directive(directive.value)
            logger.info("task_resolved", directive=directive.value)
            return directive

    async def _run(self, image_id: str) -> Directive:
        try:
            record = await self.records.get_by_id(image_id)
        except RecordNotFound:
            logger.warning("task_record_missing")
            await self._mark(image_id, ImageStatus.FAILED)
            return Directive.DISCARD
        except RecordStoreError as e:
            logger.error("task_record_load_failed", error=str(e))
            await self._mark(image_id, ImageStatus.FAILED)
            return Directive.DISCARD

        set_stage("fetch")
        try:
            with track_stage_latency("fetch"):
                base = await self.storage.get(record.storage_key)
        except StorageError as e:
            logger.error("task_base_fetch_failed", key=record.storage_key, error=str(e))
            await self._mark(image_id, ImageStatus.FAILED)
            return Directive.DISCARD

        watermark: Optional[bytes] = None
        if record.watermark_key:
            try:
                with track_stage_latency("fetch"):
                    watermark = await self.storage.get(record.watermark_key)
            except StorageError as e:
                logger.warning(
                    "task_watermark_fetch_failed",
                    key=record.watermark_key,
                    error=str(e)
                )
                return Directive.REQUEUE

        set_stage("composite")
        try:
            with track_stage_latency("composite"):
                output = composite(base, watermark)
        except WatermarkDecodeError as e:
            logger.warning("task_watermark_decode_failed", key=record.watermark_key, error=str(e))
            return Directive.REQUEUE
        except CompositeError as e:
            logger.warning("task_composite_failed", error=str(e), error_type=type(e).__name__)
            await self._mark(image_id, ImageStatus.PROCESSING)
            return Directive.REQUEUE

        set_stage("store")
        processed_key = generate_asset_key(OUTPUT_MEDIA_TYPE, PROCESSED_FOLDER)
        try:
            with track_stage_latency("store"):
                await self.storage.put(processed_key, output, OUTPUT_MEDIA_TYPE)
        except StorageError as e:
            logger.warning("task_store_failed", key=processed_key, error=str(e))
            await self._mark(image_id, ImageStatus.PROCESSING)
            return Directive.REQUEUE

        set_stage("finalize")
        processed_url = self.storage.public_url(processed_key)
        await self._mark(image_id, ImageStatus.COMPLETED, processed_url)
        logger.info("task_completed", processed_key=processed_key, processed_url=processed_url)
        return Directive.ACK

    async def _mark(
        self,
        image_id: str,
        status: ImageStatus,
        processed_url: Optional[str] = None
    ) -> None:
        """Best-effort status write; failures never change the directive."""
        try:
            updated = await self.records.update_status(image_id, status, processed_url)
        except RecordStoreError as e:
            logger.warning("task_status_update_failed", status=status.value, error=str(e))
            return

        if not updated:
            logger.info("task_status_update_skipped", status=status.value)
