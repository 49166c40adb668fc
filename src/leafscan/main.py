"""Session entry point: configure logging, load the model, wire the pipeline."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from leafscan.ml.inference import ResultPresenter

from leafscan.config import Settings, get_settings
from leafscan.ml.image_classifier import ClassificationEngine
from leafscan.ml.inference import ClassificationSession
from leafscan.ml.pipeline import ClassificationPipeline

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_pipeline(
    settings: Settings | None = None,
    engine: ClassificationEngine | None = None,
) -> ClassificationPipeline:
    """Load the configured model and build a pipeline around it.

    Raises:
        ModelLoadFailure: If the model cannot be loaded. Classification is
            unavailable; the caller decides how to degrade.
    """
    settings = settings or get_settings()
    engine = engine or ClassificationEngine(settings)
    model = engine.load(settings.model_path)
    return ClassificationPipeline(engine, model, settings)


@asynccontextmanager
async def classification_session(
    presenter: ResultPresenter,
    settings: Settings | None = None,
) -> AsyncIterator[ClassificationSession]:
    """Run a classification session: initialize on entry, clean up on exit.

    Raises:
        ModelLoadFailure: On entry, if the model cannot be loaded.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    logger.info(
        "Starting LeafScan (device=%s, model=%s, input_size=%s, pixel_format=%s)",
        settings.device,
        settings.model_path,
        settings.input_size,
        settings.pixel_format,
    )

    engine = ClassificationEngine(settings)
    pipeline = create_pipeline(settings, engine)
    session = ClassificationSession(pipeline, presenter)

    logger.info("LeafScan ready")
    try:
        yield session
    finally:
        logger.info("Shutting down LeafScan")
        try:
            await session.drain()
        finally:
            engine.shutdown()
            logger.info("LeafScan shutdown complete")
