"""Detections, geo-referenced features, and the per-window aggregation step.

A Detection is the ephemeral (window, label, confidence) triple produced
for one window. Aggregation maps the window through the image source's
pixel-to-CRS transform into a GeoFeature with a point or polygon geometry.
"""

from __future__ import annotations

import getpass
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from shapely.geometry.base import BaseGeometry

from openspacenet._typing import GeometryType
from openspacenet.crs import PixelTransform, pixel_to_geo, pixel_to_geo_point
from openspacenet.exceptions import ConfigurationError
from openspacenet.tiling import Window

GEOMETRY_TYPES: tuple[str, ...] = ("point", "polygon")

APP_NAME = "OpenSpaceNet"


@dataclass(frozen=True)
class Detection:
    """One (label, confidence) prediction for a window.

    ``order`` is (window index in the plan, prediction index) and gives
    candidates a total order that does not depend on dispatch mode.
    """

    window: Window
    label: str
    confidence: float
    order: tuple[int, int] = (0, 0)


@dataclass(frozen=True)
class GeoFeature:
    """A geometry in the image's spatial reference plus its attributes."""

    geometry: BaseGeometry
    attributes: dict[str, Any]
    window: Window

    @property
    def label(self) -> str:
        return self.attributes["label"]

    @property
    def confidence(self) -> float:
        return self.attributes["confidence"]


@dataclass
class FeatureCollection:
    """Ordered, append-only set of features for one run."""

    geometry_type: GeometryType = "polygon"
    crs: Any = None
    _features: list[GeoFeature] = field(default_factory=list, repr=False)

    def append(self, feature: GeoFeature) -> None:
        self._features.append(feature)

    def __iter__(self) -> Iterator[GeoFeature]:
        return iter(self._features)

    def __len__(self) -> int:
        return len(self._features)

    def __getitem__(self, index: int) -> GeoFeature:
        return self._features[index]

    @property
    def features(self) -> list[GeoFeature]:
        """A copy of the features in insertion order."""
        return list(self._features)


def validate_geometry_type(geometry_type: str) -> GeometryType:
    """Normalize and check an output geometry type."""
    value = geometry_type.lower()
    if value not in GEOMETRY_TYPES:
        raise ConfigurationError(
            f"Invalid geometry type: '{geometry_type}'. Valid types: {', '.join(GEOMETRY_TYPES)}",
            field="geometry_type",
        )
    return value  # type: ignore[return-value]


def producer_attributes() -> dict[str, str]:
    """Fixed producer metadata attached to every feature of a run."""
    from openspacenet import __version__

    try:
        user_name = getpass.getuser()
    except (KeyError, OSError):
        # No login name in minimal containers
        user_name = "unknown"

    return {"user_name": user_name, "app": APP_NAME, "app_ver": __version__}


def aggregate(
    detection: Detection,
    transform: PixelTransform,
    geometry_type: GeometryType,
    producer: dict[str, str] | None = None,
) -> GeoFeature:
    """Convert a detection into a geo-referenced feature.

    Args:
        detection: The window-level prediction.
        transform: Pixel-to-CRS callable of the image source.
        geometry_type: "point" for the window center, "polygon" for its
            footprint with every corner mapped individually.
        producer: Optional producer metadata merged into the attributes.

    Returns:
        GeoFeature with ``label`` and ``confidence`` attributes.
    """
    if geometry_type == "point":
        geometry = pixel_to_geo_point(detection.window.center, transform)
    elif geometry_type == "polygon":
        geometry = pixel_to_geo(detection.window.bbox, transform)
    else:
        raise ConfigurationError(f"Invalid geometry type: '{geometry_type}'", field="geometry_type")

    attributes: dict[str, Any] = {"label": detection.label, "confidence": float(detection.confidence)}
    if producer:
        attributes.update(producer)

    return GeoFeature(geometry=geometry, attributes=attributes, window=detection.window)
