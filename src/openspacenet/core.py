"""Orchestrator - runs a model over a geospatial image window by window.

The orchestrator plans the window grid, dispatches fetch and inference
per window (serially or on a bounded worker pool), turns the surviving
predictions into geo-referenced features, optionally suppresses
overlapping duplicates, and hands the result to a feature sink.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum
from typing import Any

from openspacenet._adapter import gpu_worker_budget
from openspacenet._typing import FeatureSink, InferenceClient, Prediction
from openspacenet.config import RunConfig
from openspacenet.exceptions import ConfigurationError, OpenSpaceNetError, WindowIOError
from openspacenet.features import Detection, FeatureCollection, aggregate, producer_attributes
from openspacenet.io import ImageSource
from openspacenet.log import TRACE, LoggingContext
from openspacenet.tiling import PyramidLevel, Window, WindowPlan, suppress

module_logger = logging.getLogger(__name__)


class RunState(Enum):
    """Lifecycle of a single run."""

    CONFIGURED = "configured"
    PLANNING = "planning"
    DISPATCHING = "dispatching"
    AGGREGATING = "aggregating"
    SUPPRESSING = "suppressing"
    WRITING = "writing"
    DONE = "done"
    FAILED = "failed"


def compute_pool_size(config: RunConfig, source: ImageSource, client: Any) -> int:
    """Number of worker threads for a run.

    Network-bound sources are limited by their concurrent-download budget.
    For local images the pool follows the accelerator budget when the
    client runs on a GPU, and the number of processing units otherwise.

    Args:
        config: Run configuration.
        source: The image source; ``max_concurrency`` set means network-bound.
        client: Inference client; its ``device`` attribute is consulted.

    Returns:
        Pool size, at least 1. Always 1 for serial dispatch.
    """
    if not config.concurrent:
        return 1

    limit = getattr(source, "max_concurrency", None)
    if limit is not None:
        return max(1, int(limit))

    device = getattr(client, "device", "cpu")
    if device in ("cuda", "mps"):
        return gpu_worker_budget(config.max_utilization, device)

    return max(1, os.cpu_count() or 1)


class Orchestrator:
    """Drives one run from window planning to writing the features.

    The caller owns the image source, the inference client, the sink and
    the logging context. The source is opened if needed but never closed
    here.

    Args:
        config: Validated run configuration.
        source: Image source to scan.
        client: Object with ``predict(block) -> list[Prediction]``.
        sink: Object with ``add(geometry, attributes)`` and ``finalize()``.
        log: LoggingContext or logger receiving run messages. The
            ``openspacenet.core`` logger if None.
        show_progress: Display a tqdm progress bar over windows.

    Example::

        with LoggingContext() as log, LocalImageSource("scene.tif") as source:
            sink = GeoDataFrameSink("out.gpkg", "gpkg", crs=source.spatial_reference())
            Orchestrator(RunConfig(nms=True), source, RFDETRClient(), sink, log=log).run()
    """

    def __init__(
        self,
        config: RunConfig,
        source: ImageSource,
        client: InferenceClient,
        sink: FeatureSink,
        log: LoggingContext | logging.Logger | None = None,
        show_progress: bool = True,
    ) -> None:
        self.config = config
        self.source = source
        self.client = client
        self.sink = sink
        self.show_progress = show_progress

        if isinstance(log, LoggingContext):
            self.logger = log.logger
        elif log is not None:
            self.logger = log
        else:
            self.logger = module_logger

        self._state = RunState.CONFIGURED
        self.history: list[RunState] = [RunState.CONFIGURED]
        self.plan: WindowPlan | None = None
        self.pool_size = 1
        self.windows_processed = 0
        self.collection: FeatureCollection | None = None

        self._candidates: list[Detection] = []
        self._candidates_lock = threading.Lock()
        self._stop = threading.Event()

    @property
    def state(self) -> RunState:
        return self._state

    def _enter(self, state: RunState) -> None:
        self._state = state
        self.history.append(state)
        self.logger.debug("Run state: %s", state.value)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self) -> FeatureCollection:
        """Execute the run and return the written feature collection.

        Raises:
            ConfigurationError: Invalid sizing or a region outside the image.
            SourceAccessError: The image cannot be opened.
            WindowIOError: Fetching or classifying a window failed.
            WriteError: The sink failed to write.
        """
        if self._state is not RunState.CONFIGURED:
            raise OpenSpaceNetError(f"Orchestrator already ran (state: {self._state.value}).")

        try:
            self._enter(RunState.PLANNING)
            self.plan = self._build_plan()
            self.pool_size = compute_pool_size(self.config, self.source, self.client)
            self._log_summary()

            self._enter(RunState.DISPATCHING)
            if self.pool_size > 1:
                self._dispatch_concurrent()
            else:
                self._dispatch_serial()

            self._enter(RunState.AGGREGATING)
            collection = self._aggregate()

            self._enter(RunState.SUPPRESSING)
            if self.config.nms:
                before = len(collection)
                survivors = suppress(collection.features, self.config.overlap)
                collection = FeatureCollection(collection.geometry_type, collection.crs)
                for feature in survivors:
                    collection.append(feature)
                self.logger.info("Non-maximum suppression kept %d of %d features", len(collection), before)

            self.collection = collection

            self._enter(RunState.WRITING)
            for feature in collection:
                self.sink.add(feature.geometry, feature.attributes)
            self.sink.finalize()
        except BaseException:
            self._stop.set()
            self._enter(RunState.FAILED)
            raise

        self._enter(RunState.DONE)
        self.logger.info("Wrote %d features", len(collection))
        return collection

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _build_plan(self) -> WindowPlan:
        self.source.open()
        extent = self.source.extent()

        window_size = self.config.resolved_window_size(self.client)
        step_size = self.config.resolved_step_size(window_size)
        region = self.source.region_of_interest(self.config.bbox)

        if region is not None and (region[2] <= 0 or region[3] <= 0):
            raise ConfigurationError(
                "The region of interest does not intersect the image.",
                field="bbox",
                bbox=self.config.bbox,
            )

        return WindowPlan(
            extent.size,
            window_size,
            step_size=step_size,
            pyramid=self.config.pyramid,
            region=region,
        )

    def _log_summary(self) -> None:
        plan = self.plan
        self.logger.info("Image size: %dx%d", *plan.image_size)
        self.logger.info("Region: %s", plan.region)

        model_info = getattr(self.client, "model_info", None)
        if callable(model_info):
            for key, value in model_info().items():
                self.logger.debug("Model %s: %s", key, value)

        self.logger.info("Window size: %dx%d", *plan.window_size)
        for level in plan.levels:
            self.logger.info(
                "Scale %.0f: window %dx%d, step %dx%d",
                level.scale,
                level.window_size[0],
                level.window_size[1],
                level.step_size[0],
                level.step_size[1],
            )

        mode = "concurrent" if self.pool_size > 1 else "serial"
        self.logger.info("Dispatching %d windows (%s, %d workers)", len(plan), mode, self.pool_size)

    # ------------------------------------------------------------------
    # Dispatching
    # ------------------------------------------------------------------

    def _windows(self) -> Iterator[tuple[int, Window, PyramidLevel]]:
        for index, (window, level) in enumerate(self.plan):
            yield index, window, level

    def _progress(self) -> Any:
        from tqdm import tqdm

        return tqdm(
            total=len(self.plan),
            desc="Processing windows",
            unit="window",
            disable=not self.show_progress,
        )

    def _dispatch_serial(self) -> None:
        with self._progress() as progress:
            for index, window, _level in self._windows():
                self._collect(self._process_window(index, window))
                progress.update(1)

    def _dispatch_concurrent(self) -> None:
        max_in_flight = self.pool_size * 2
        executor = ThreadPoolExecutor(max_workers=self.pool_size, thread_name_prefix="osn-worker")
        pending: set[Future] = set()

        try:
            with self._progress() as progress:
                windows = self._windows()
                exhausted = False

                while not exhausted or pending:
                    while not exhausted and len(pending) < max_in_flight and not self._stop.is_set():
                        item = next(windows, None)
                        if item is None:
                            exhausted = True
                            break
                        index, window, _level = item
                        pending.add(executor.submit(self._worker, index, window))

                    if not pending:
                        break

                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                    for future in done:
                        # Raises the worker's error, which ends the run
                        future.result()
                        progress.update(1)
        except BaseException:
            self._stop.set()
            for future in pending:
                future.cancel()
            raise
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    def _worker(self, index: int, window: Window) -> None:
        if self._stop.is_set():
            return
        self._collect(self._process_window(index, window))

    def _collect(self, detections: list[Detection]) -> None:
        with self._candidates_lock:
            self._candidates.extend(detections)
            self.windows_processed += 1

    def _process_window(self, index: int, window: Window) -> list[Detection]:
        """Fetch, classify and threshold one window."""
        try:
            block = self.source.fetch(window)
        except OpenSpaceNetError:
            raise
        except Exception as exc:
            raise WindowIOError(f"Failed to fetch window {window.bbox}: {exc}", window=window) from exc

        try:
            predictions = self.client.predict(block)
        except OpenSpaceNetError:
            raise
        except Exception as exc:
            raise WindowIOError(f"Inference failed for window {window.bbox}: {exc}", window=window) from exc

        detections = []
        for rank, prediction in enumerate(predictions):
            label, confidence = Prediction(*prediction)
            confidence = float(confidence)
            if not 0.0 <= confidence <= 1.0:
                raise WindowIOError(
                    f"Inference returned confidence {confidence} outside [0, 1] for label '{label}'",
                    window=window,
                )
            if confidence < self.config.confidence:
                continue
            detections.append(Detection(window, str(label), confidence, order=(index, rank)))

        if self.config.mode == "landcover" and detections:
            best = max(detections, key=lambda d: (d.confidence, -d.order[1]))
            detections = [best]

        self.logger.log(TRACE, "Window %s: %d predictions, %d kept", window.bbox, len(predictions), len(detections))
        return detections

    # ------------------------------------------------------------------
    # Aggregating
    # ------------------------------------------------------------------

    def _aggregate(self) -> FeatureCollection:
        candidates = sorted(self._candidates, key=lambda d: d.order)
        producer = producer_attributes() if self.config.producer_info else None
        geometry_type = "polygon" if self.config.mode == "landcover" else self.config.geometry_type

        collection = FeatureCollection(geometry_type, self.source.spatial_reference())
        for detection in candidates:
            collection.append(aggregate(detection, self.source.transform, geometry_type, producer))

        self.logger.info(
            "%d candidate features from %d windows", len(collection), self.windows_processed
        )
        return collection
