"""
REST API for image submission, analysis, refinement and deletion.
"""
from __future__ import annotations

import asyncio
import logging
from typing import List, Set

from fastapi import APIRouter, File, HTTPException, Request, Response, UploadFile, status

from octdx.agent.image_set import ImageBusyError, ImageNotFoundError, ImageSet
from octdx.models.schemas import (
    ArtifactKind,
    ImageCollection,
    ImageStatus,
    ImageView,
    RefineRequest,
    UploadedImage,
)

logger = logging.getLogger(__name__)
router = APIRouter()

# Strong references to fire-and-forget analysis runs
_background: Set[asyncio.Task] = set()


def _image_set(request: Request) -> ImageSet:
    return request.app.state.image_set


def _collection(images: ImageSet) -> ImageCollection:
    return ImageCollection(
        images=[ImageView.from_image(img) for img in images.images],
        pending_count=images.pending_count,
        is_analyzing=images.is_analyzing,
    )


def _spawn(coro) -> None:
    task = asyncio.create_task(coro)
    _background.add(task)
    task.add_done_callback(_background.discard)


@router.post("/images", response_model=List[ImageView])
async def submit_images(request: Request, files: List[UploadFile] = File(...)):
    """Submit one or more images. Files that are not images are silently ignored."""
    uploads = [
        UploadedImage(
            filename=f.filename or "",
            content_type=f.content_type or "",
            data=await f.read(),
        )
        for f in files
    ]
    added = _image_set(request).submit(uploads)
    return [ImageView.from_image(img) for img in added]


@router.get("/images", response_model=ImageCollection)
async def list_images(request: Request):
    return _collection(_image_set(request))


@router.post("/images/analyze", response_model=ImageCollection)
async def analyze_images(request: Request, wait: bool = False):
    """
    Analyze all pending images.

    By default the batch runs in the background; connect to the WebSocket or
    poll /api/images for progress. Pass `wait=true` to block until it is done.
    """
    images = _image_set(request)
    if wait:
        await images.analyze_all()
    elif images.pending_count:
        _spawn(images.analyze_all())
        # Let the batch mark its selection as loading before we answer
        await asyncio.sleep(0)
    return _collection(images)


@router.get("/images/{image_id}", response_model=ImageView)
async def get_image(image_id: str, request: Request):
    image = _image_set(request).get(image_id)
    if image is None:
        raise HTTPException(status_code=404, detail=f"Image {image_id} not found")
    return ImageView.from_image(image)


@router.post("/images/{image_id}/refine", response_model=ImageView)
async def refine_image(image_id: str, body: RefineRequest, request: Request, wait: bool = False):
    """Re-evaluate one image's diagnosis and heatmap using clinician feedback."""
    images = _image_set(request)
    image = images.get(image_id)
    if image is None:
        raise HTTPException(status_code=404, detail=f"Image {image_id} not found")
    if image.status == ImageStatus.LOADING:
        raise HTTPException(status_code=409, detail=f"Image {image_id} is already being analyzed")
    if not body.feedback.strip():
        raise HTTPException(status_code=400, detail="Feedback must not be blank")

    try:
        if wait:
            await images.refine(image_id, body.feedback)
        else:
            _spawn(images.refine(image_id, body.feedback))
            await asyncio.sleep(0)
    except ImageNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ImageBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))

    image = images.get(image_id)
    if image is None:
        raise HTTPException(status_code=404, detail=f"Image {image_id} was deleted")
    return ImageView.from_image(image)


@router.delete("/images/{image_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_image(image_id: str, request: Request):
    if not _image_set(request).delete(image_id):
        raise HTTPException(status_code=404, detail=f"Image {image_id} not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/images/{image_id}/artifacts/{kind}")
async def get_artifact(image_id: str, kind: ArtifactKind, request: Request):
    """Serve a generated image (segmentation map, uncertainty map or heatmap)."""
    image = _image_set(request).get(image_id)
    if image is None:
        raise HTTPException(status_code=404, detail=f"Image {image_id} not found")
    artifact = image.artifact(kind)
    if artifact is None:
        raise HTTPException(status_code=404, detail=f"No {kind.value} image for {image_id}")
    return Response(content=artifact.data, media_type=artifact.mime_type)


@router.get("/images/{image_id}/preview")
async def get_image_preview(image_id: str, request: Request):
    """Serve the submitted image itself. Gone once the image is deleted."""
    images = _image_set(request)
    image = images.get(image_id)
    preview = images.previews.get(image.preview_url) if image is not None else None
    if preview is None:
        raise HTTPException(status_code=404, detail=f"No preview for image {image_id}")
    data, mime_type = preview
    return Response(content=data, media_type=mime_type)


@router.get("/previews/{token}")
async def get_preview(token: str, request: Request):
    preview = _image_set(request).previews.get(token)
    if preview is None:
        raise HTTPException(status_code=404, detail="Preview not found")
    data, mime_type = preview
    return Response(content=data, media_type=mime_type)
