"""openspacenet - Sliding-window model inference over geospatial imagery."""

from __future__ import annotations

__version__ = "0.1.0"

from openspacenet._adapter import RFDETRClient, detect_device
from openspacenet._typing import FeatureSink, InferenceClient, Prediction
from openspacenet.config import RunConfig, environment_options, load_config_files
from openspacenet.core import Orchestrator, RunState, compute_pool_size
from openspacenet.exceptions import (
    ConfigurationError,
    CoverageGapWarning,
    MissingCRSError,
    ModelError,
    OpenSpaceNetError,
    SourceAccessError,
    WindowIOError,
    WriteError,
)
from openspacenet.export import GeoDataFrameSink
from openspacenet.features import Detection, FeatureCollection, GeoFeature, aggregate
from openspacenet.io import ImageSource, LocalImageSource, RasterExtent, WebTiledImageSource
from openspacenet.log import LoggingContext
from openspacenet.tiling import PyramidLevel, Window, WindowPlan, plan_windows, suppress

__all__ = [
    "__version__",
    "Orchestrator",
    "RunState",
    "RunConfig",
    "compute_pool_size",
    "load_config_files",
    "environment_options",
    "LoggingContext",
    "ImageSource",
    "LocalImageSource",
    "WebTiledImageSource",
    "RasterExtent",
    "InferenceClient",
    "FeatureSink",
    "Prediction",
    "RFDETRClient",
    "detect_device",
    "GeoDataFrameSink",
    "Detection",
    "GeoFeature",
    "FeatureCollection",
    "aggregate",
    "Window",
    "PyramidLevel",
    "WindowPlan",
    "plan_windows",
    "suppress",
    "OpenSpaceNetError",
    "ConfigurationError",
    "SourceAccessError",
    "MissingCRSError",
    "WindowIOError",
    "ModelError",
    "WriteError",
    "CoverageGapWarning",
]
