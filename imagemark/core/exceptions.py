"""
Global Exception Handling

Defines the error taxonomy shared by the compositor, storage, record store
and HTTP layer, and registers structured JSON error responses.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from imagemark.core.logging import get_logger, image_id_var

logger = get_logger(__name__)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# Custom Exceptions
# =============================================================================

class ImageMarkError(Exception):
    """Base exception for imagemark."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        image_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.image_id = image_id or image_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


# -----------------------------------------------------------------------------
# Compositor
# -----------------------------------------------------------------------------

class CompositeError(ImageMarkError):
    """Raised when the compositor cannot produce an output image."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("stage", "composite")
        super().__init__(message, code=422, **kwargs)


class DecodeError(CompositeError):
    """Base image is not a supported format or is corrupt."""


class WatermarkDecodeError(CompositeError):
    """Watermark image is not a supported format or is corrupt."""


class EncodeError(CompositeError):
    """JPEG encoding of the output buffer failed."""


# -----------------------------------------------------------------------------
# Blob storage
# -----------------------------------------------------------------------------

class StorageError(ImageMarkError):
    """Raised when storage operations fail."""

    def __init__(self, message: str, key: Optional[str] = None, **kwargs):
        super().__init__(message, code=500, **kwargs)
        if key is not None:
            self.details["key"] = key


class BlobNotFound(StorageError):
    """No object stored under the requested key."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, **kwargs)
        self.code = 404


class BlobIOError(StorageError):
    """Reading an object failed."""


class BlobWriteError(StorageError):
    """Writing an object failed."""


# -----------------------------------------------------------------------------
# Record store
# -----------------------------------------------------------------------------

class RecordStoreError(ImageMarkError):
    """Raised when the image record store cannot serve a request."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


class RecordNotFound(RecordStoreError):
    """Image record is missing or soft-deleted."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, **kwargs)
        self.code = 404


class RecordUpdateError(RecordStoreError):
    """Persisting a status change failed."""


# =============================================================================
# Exception Handlers
# =============================================================================

def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(ImageMarkError)
    async def imagemark_exception_handler(request: Request, exc: ImageMarkError):
        logger.error(
            "imagemark_exception",
            error=exc.message,
            code=exc.code,
            stage=exc.stage,
            details=exc.details
        )

        return JSONResponse(
            status_code=exc.code,
            content={
                "error": exc.message,
                "image_id": exc.image_id,
                "code": exc.code,
                "stage": exc.stage,
                "details": exc.details,
                "timestamp": _utc_timestamp()
            }
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "image_id": image_id_var.get(),
                "code": 500,
                "timestamp": _utc_timestamp()
            }
        )
