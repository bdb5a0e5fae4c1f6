"""
Image Set — the ordered collection of submitted images and their lifecycle.

Each image moves pending -> loading -> success | error, and back through
loading on every refinement. The set is the only writer of its collection:
every change replaces one entity with an updated copy in a single synchronous
step, so observers never see a half-applied update.

Batch analysis is deliberately sequential across images. Concurrency only
happens inside one image's orchestration call.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from octdx.agent.orchestrator import AnalysisError, AnalysisOrchestrator
from octdx.models.schemas import (
    AnalysisOutcome,
    AnalyzableImage,
    ImageStatus,
    UploadedImage,
)
from octdx.services.preview_store import PreviewStore

logger = logging.getLogger(__name__)

# Called with the id of every image whose state was committed (or deleted)
Listener = Callable[[str], None]


class ImageNotFoundError(KeyError):
    def __init__(self, image_id: str):
        super().__init__(image_id)
        self.image_id = image_id

    def __str__(self) -> str:
        return f"Image {self.image_id} not found"


class ImageBusyError(RuntimeError):
    """Raised when an image already has an orchestration call queued or in flight."""

    def __init__(self, image_id: str):
        super().__init__(f"Image {image_id} is already being analyzed")
        self.image_id = image_id


class ImageSet:
    """
    Holds the submitted images and sequences orchestration calls over them.

    Usage:
        images = ImageSet(AnalysisOrchestrator(gateway))
        images.submit(files)
        await images.analyze_all()
        await images.refine(image_id, "reconsider fluid")
        images.delete(image_id)
    """

    def __init__(self, orchestrator: AnalysisOrchestrator, previews: Optional[PreviewStore] = None):
        self.orchestrator = orchestrator
        self.previews = previews if previews is not None else PreviewStore()
        self._images: List[AnalyzableImage] = []
        self._batch_lock = asyncio.Lock()
        self._analyzing = False
        self._listeners: List[Listener] = []

    # ──────────────────────────────────────────────
    # Read access
    # ──────────────────────────────────────────────

    @property
    def images(self) -> List[AnalyzableImage]:
        return list(self._images)

    @property
    def pending_count(self) -> int:
        return sum(1 for img in self._images if img.status == ImageStatus.PENDING)

    @property
    def is_analyzing(self) -> bool:
        return self._analyzing

    def get(self, image_id: str) -> Optional[AnalyzableImage]:
        for img in self._images:
            if img.id == image_id:
                return img
        return None

    # ──────────────────────────────────────────────
    # Observers
    # ──────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, image_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(image_id)
            except Exception:
                logger.exception("Image set listener failed")

    # ──────────────────────────────────────────────
    # Operations
    # ──────────────────────────────────────────────

    def submit(self, files: Iterable[UploadedImage]) -> List[AnalyzableImage]:
        """Append every image file as a pending entity. Non-images are dropped."""
        added: List[AnalyzableImage] = []
        for f in files:
            if not (f.content_type or "").startswith("image/"):
                logger.debug(f"Ignoring non-image upload {f.filename!r} ({f.content_type or 'no type'})")
                continue
            added.append(AnalyzableImage(
                id=uuid.uuid4().hex,
                filename=f.filename,
                mime_type=f.content_type,
                image_bytes=f.data,
                preview_url=self.previews.create(f.data, f.content_type),
            ))

        self._images.extend(added)
        for img in added:
            self._notify(img.id)
        if added:
            logger.info(f"Submitted {len(added)} image(s); {self.pending_count} pending")
        return added

    async def analyze_all(self) -> List[AnalyzableImage]:
        """
        Analyze every pending image, one at a time, in submission order.

        Returns the final state of the processed images (deleted ones omitted).
        An empty selection is a no-op.
        """
        async with self._batch_lock:
            selection = [img.id for img in self._images if img.status == ImageStatus.PENDING]
            if not selection:
                return []

            self._analyzing = True
            try:
                for image_id in selection:
                    self._commit(image_id, status=ImageStatus.LOADING, error=None)

                logger.info(f"Analyzing batch of {len(selection)} image(s)")
                for image_id in selection:
                    await self._analyze_one(image_id)
            finally:
                self._analyzing = False

            return [img for img in (self.get(i) for i in selection) if img is not None]

    async def refine(self, image_id: str, feedback: str) -> Optional[AnalyzableImage]:
        """
        Re-run classification and heatmap for one image with clinician feedback.

        Segmentation maps are left as they were. Returns the updated image, or
        None if it was deleted while the call was in flight.

        Raises ImageBusyError if the image is queued or in flight.
        """
        image = self.get(image_id)
        if image is None:
            raise ImageNotFoundError(image_id)
        if image.status == ImageStatus.LOADING:
            raise ImageBusyError(image_id)
        if not feedback or not feedback.strip():
            raise ValueError("Refinement feedback must not be empty")

        image = self._commit(image_id, status=ImageStatus.LOADING, error=None)
        try:
            outcome = await self.orchestrator.run(image, feedback)
        except AnalysisError as e:
            return self._record_failure(image_id, e)

        return self._commit(
            image_id,
            status=ImageStatus.SUCCESS,
            result=outcome.diagnosis,
            heatmap_image=outcome.heatmap,
            error=None,
        )

    def delete(self, image_id: str) -> bool:
        """Remove an image and release its preview. In-flight calls are not cancelled."""
        image = self.get(image_id)
        if image is None:
            return False
        self._images = [img for img in self._images if img.id != image_id]
        self.previews.revoke(image.preview_url)
        logger.info(f"Deleted image {image_id}")
        self._notify(image_id)
        return True

    # ──────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────

    async def _analyze_one(self, image_id: str) -> None:
        image = self.get(image_id)
        if image is None:
            logger.info(f"Image {image_id} deleted before analysis -- skipping")
            return
        if image.status != ImageStatus.LOADING:
            logger.info(f"Image {image_id} is {image.status.value}, no longer queued -- skipping")
            return

        try:
            outcome = await self.orchestrator.run(image)
        except AnalysisError as e:
            self._record_failure(image_id, e)
            return

        self._apply_initial(image_id, outcome)

    def _apply_initial(self, image_id: str, outcome: AnalysisOutcome) -> Optional[AnalyzableImage]:
        return self._commit(
            image_id,
            status=ImageStatus.SUCCESS,
            result=outcome.diagnosis,
            heatmap_image=outcome.heatmap,
            segmented_image=outcome.segmented,
            segmentation_uncertainty_image=outcome.segmentation_uncertainty,
            error=None,
        )

    def _record_failure(self, image_id: str, error: AnalysisError) -> Optional[AnalyzableImage]:
        logger.warning(f"Analysis failed for image {image_id} ({error.category.value}): {error.message}")
        return self._commit(image_id, status=ImageStatus.ERROR, result=None, error=error.message)

    def _commit(self, image_id: str, **changes) -> Optional[AnalyzableImage]:
        """Replace one entity with an updated copy. No-op if it no longer exists."""
        for index, img in enumerate(self._images):
            if img.id == image_id:
                updated = img.model_copy(update={**changes, "updated_at": datetime.utcnow()})
                self._images[index] = updated
                self._notify(image_id)
                return updated
        logger.debug(f"Image {image_id} no longer exists -- dropping update")
        return None
