"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from instrumentscan.api.routes import instrument_scan_error_handler, router
from instrumentscan.config import Settings, get_settings
from instrumentscan.ml.errors import InstrumentScanError
from instrumentscan.ml.image_classifier import InstrumentClassifier
from instrumentscan.ml.inference import InferencePool
from instrumentscan.ml.labels import load_labels
from instrumentscan.ml.model_manager import OnnxModelLoader
from instrumentscan.ml.preprocessing import NORMALIZATIONS
from instrumentscan.storage.scan_store import ScanStore

logger = logging.getLogger(__name__)


def build_classifier(settings: Settings) -> InstrumentClassifier:
    """Assemble labels, model loader, and classifier from settings."""
    labels = load_labels(settings.labels_path)
    loader = OnnxModelLoader(settings, labels)
    return InstrumentClassifier(
        loader,
        labels,
        input_size=settings.input_size,
        normalization=NORMALIZATIONS[settings.normalization],
        max_image_pixels=settings.max_image_pixels,
        lazy_load=settings.lazy_load,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting InstrumentScan (device=%s, max_concurrent=%s, normalization=%s, lazy_load=%s)",
        settings.device,
        settings.max_concurrent,
        settings.normalization,
        settings.lazy_load,
    )

    classifier = build_classifier(settings)
    if not settings.lazy_load:
        # A failed load leaves the service up; scans answer 503 until a restart.
        try:
            classifier.loader.load()
        except InstrumentScanError:
            logger.exception("Model could not be loaded at startup")
    app.state.classifier = classifier

    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool

    scan_store = ScanStore(settings.database_path)
    app.state.scan_store = scan_store

    logger.info("InstrumentScan ready (%d labels)", len(classifier.labels))
    yield

    logger.info("Shutting down InstrumentScan")
    inference_pool.shutdown()
    classifier.loader.close()
    scan_store.close()
    logger.info("InstrumentScan shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="InstrumentScan",
        description="Recognize musical instruments in photos and keep a scan history",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(InstrumentScanError, instrument_scan_error_handler)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run("instrumentscan.main:app", host=settings.host, port=settings.port)
