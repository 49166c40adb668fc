"""Background classification with last-request-wins delivery.

Architecture:
    event loop (interactive thread) -> one worker thread per request -> pipeline
    -> back on the event loop -> presenter

Every submitted image gets a monotonically increasing request id. A result
is only handed to the presenter if its id is still the latest one; results
of superseded requests are dropped. Requests are never cancelled.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from typing import TYPE_CHECKING, Protocol

from leafscan.schemas import ErrorOutcome

if TYPE_CHECKING:
    from leafscan.ml.image import RawImage
    from leafscan.schemas import Outcome

logger = logging.getLogger(__name__)


class ResultPresenter(Protocol):
    """Consumer of outcomes; always called on the event loop thread."""

    def present(self, request_id: int, outcome: Outcome) -> None:
        """Display the outcome of a request."""
        ...


class OutcomeSource(Protocol):
    """Anything that turns an image into an outcome without raising."""

    def evaluate(self, image: RawImage) -> Outcome:
        """Classify an image and return the presentable outcome."""
        ...


class ClassificationSession:
    """Dispatches pipeline runs off the event loop and delivers the latest result."""

    def __init__(self, pipeline: OutcomeSource, presenter: ResultPresenter) -> None:
        self._pipeline = pipeline
        self._presenter = presenter
        self._request_ids = itertools.count(1)
        self._latest_request_id: int = 0
        self._tasks: set[asyncio.Task[None]] = set()
        self._active_count: int = 0
        self._counter_lock = threading.Lock()

    def submit(self, image: RawImage) -> int:
        """Start classifying an image in the background.

        Must be called from the event loop thread.

        Returns:
            The request id assigned to this image.
        """
        loop = asyncio.get_running_loop()
        request_id = next(self._request_ids)
        self._latest_request_id = request_id

        task = loop.create_task(self._run(request_id, image), name=f"classify-{request_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("Submitted request %d", request_id)
        return request_id

    async def drain(self) -> None:
        """Wait for every in-flight request to finish."""
        while self._tasks:
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error("Classification task failed: %s: %s", type(result).__name__, result)

    @property
    def latest_request_id(self) -> int:
        """Id of the most recently submitted request (0 before the first)."""
        return self._latest_request_id

    @property
    def active_count(self) -> int:
        """Number of requests currently running in a worker thread."""
        with self._counter_lock:
            return self._active_count

    async def _run(self, request_id: int, image: RawImage) -> None:
        try:
            outcome: Outcome = await asyncio.to_thread(self._evaluate, image)
        except Exception as exc:
            logger.exception("Unexpected error in request %d", request_id)
            outcome = ErrorOutcome(error=f"Failed to classify image: {exc}")

        # Back on the event loop: safe to touch presenter-owned state.
        if request_id != self._latest_request_id:
            logger.info("Discarding stale result of request %d (latest is %d)", request_id, self._latest_request_id)
            return
        self._presenter.present(request_id, outcome)

    def _evaluate(self, image: RawImage) -> Outcome:
        with self._counter_lock:
            self._active_count += 1
        try:
            return self._pipeline.evaluate(image)
        finally:
            with self._counter_lock:
                self._active_count -= 1
