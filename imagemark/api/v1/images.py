"""
Image Endpoints

DELETE /api/v1/images/{image_id} - Soft delete one image
"""

from fastapi import APIRouter, Depends, HTTPException

from imagemark.api.dependencies import get_image_repo
from imagemark.api.v1.batches import MessageResponse, validate_uuid
from imagemark.core.logging import get_logger
from imagemark.modules.imagery.repositories import ImageRepository

logger = get_logger(__name__)
router = APIRouter()


@router.delete("/{image_id}", response_model=MessageResponse)
async def delete_image(
    image_id: str,
    images: ImageRepository = Depends(get_image_repo)
):
    """
    Soft delete an image.

    A deleted image is hidden from its batch and, if its task is still
    queued, the worker discards it instead of processing it.
    """
    image_id = validate_uuid(image_id, "image")
    if not await images.soft_delete(image_id):
        raise HTTPException(status_code=404, detail="image not found")
    logger.info("image_deleted", image_id=image_id)
    return MessageResponse(message="image deleted successfully")
