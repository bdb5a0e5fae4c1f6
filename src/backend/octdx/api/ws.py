"""
WebSocket endpoint for real-time image state streaming.

The frontend connects here to watch the image set change:
  - a full snapshot on connect
  - one update per committed state change (pending, loading, success, error)
  - a deletion notice when an image is removed
"""
from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from octdx.agent.image_set import ImageSet
from octdx.models.schemas import ImageView

logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/images")
async def images_websocket(websocket: WebSocket):
    """
    Message types:
      - {"type": "snapshot", "images": [...], "pending_count": n, "is_analyzing": bool}
      - {"type": "image_update", "image": {...}}
      - {"type": "image_deleted", "id": "..."}
    """
    await websocket.accept()
    images: ImageSet = websocket.app.state.image_set
    changes: asyncio.Queue[str] = asyncio.Queue()
    listener = changes.put_nowait
    images.subscribe(listener)

    try:
        await websocket.send_json({
            "type": "snapshot",
            "images": [ImageView.from_image(img).model_dump(mode="json", by_alias=True) for img in images.images],
            "pending_count": images.pending_count,
            "is_analyzing": images.is_analyzing,
        })

        while True:
            image_id = await changes.get()
            image = images.get(image_id)
            if image is None:
                await websocket.send_json({"type": "image_deleted", "id": image_id})
            else:
                await websocket.send_json({
                    "type": "image_update",
                    "image": ImageView.from_image(image).model_dump(mode="json", by_alias=True),
                })

    except WebSocketDisconnect:
        pass
    finally:
        images.unsubscribe(listener)
