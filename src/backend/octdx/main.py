"""
OCT Diagnosis Agent — FastAPI Backend
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from octdx.agent.image_set import ImageSet
from octdx.agent.orchestrator import AnalysisOrchestrator
from octdx.api import health, images, ws
from octdx.config import settings
from octdx.services.gemini import GeminiGateway, InferenceGateway

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


def _mask(val: str) -> str:
    if not val:
        return "(empty)"
    if len(val) <= 8:
        return "***"
    return val[:4] + "..." + val[-4:]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the gateway, orchestrator and image set; refuse to start without a key."""
    logger.info("=== OCT Diagnosis Agent Starting ===")
    logger.info(f"  gemini_api_key       : {_mask(settings.gemini_api_key)}")
    logger.info(f"  classification_model : {settings.classification_model}")
    logger.info(f"  image_model          : {settings.image_model}")
    logger.info(f"  confidence_threshold : {settings.confidence_threshold}")
    logger.info(f"  cors_origins         : {settings.cors_origins}")

    gateway: Optional[InferenceGateway] = getattr(app.state, "gateway", None)
    if gateway is None:
        # Raises MissingCredentialError when GEMINI_API_KEY is unset
        gateway = GeminiGateway()
        app.state.gateway = gateway

    app.state.image_set = ImageSet(AnalysisOrchestrator(gateway))
    logger.info("=== OCT Diagnosis Agent Ready ===")
    yield


def create_app(gateway: Optional[InferenceGateway] = None) -> FastAPI:
    app = FastAPI(
        title="OCT Diagnosis Agent",
        description="Retinal OCT analysis with segmentation, attention heatmaps and feedback-driven refinement",
        version="0.1.0",
        lifespan=lifespan,
    )
    if gateway is not None:
        app.state.gateway = gateway

    # CORS for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    app.include_router(health.router, tags=["health"])
    app.include_router(images.router, prefix="/api", tags=["images"])
    app.include_router(ws.router, prefix="/ws", tags=["websocket"])
    return app


app = create_app()
