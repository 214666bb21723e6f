"""Type aliases and collaborator protocols shared across openspacenet.

This module defines the shared type aliases and the call contracts of
the external collaborators (inference client and feature sink). It uses
``from __future__ import annotations`` so that annotations are not
evaluated at runtime.
"""

from __future__ import annotations

from typing import Any, Literal, NamedTuple, Protocol, runtime_checkable

import numpy as np
from numpy.typing import NDArray

# Bounding box in pixel coordinates: (x_min, y_min, x_max, y_max)
PixelBBox = tuple[float, float, float, float]

# Bounding box in geographic coordinates: (west, south, east, north)
GeoBBox = tuple[float, float, float, float]

# A (col, row) pixel position and an (x, y) position in the image CRS
PixelPoint = tuple[float, float]
GeoPoint = tuple[float, float]

# Width and height (or step x and step y) in pixels
Size = tuple[int, int]

# Pixel block handed to inference: (bands, height, width)
PixelBlock = NDArray[np.generic]

# Output geometry type, fixed for a whole run
GeometryType = Literal["point", "polygon"]


class Prediction(NamedTuple):
    """A single (label, confidence) pair returned by an inference client."""

    label: str
    confidence: float


@runtime_checkable
class InferenceClient(Protocol):
    """Anything that classifies a pixel block.

    Clients may also expose a ``window_size`` attribute with the model's
    native (width, height); it is used when no window size is configured.
    """

    def predict(self, block: PixelBlock) -> list[Prediction]: ...


@runtime_checkable
class FeatureSink(Protocol):
    """Output collaborator that owns the on-disk or on-wire format."""

    def add(self, geometry: Any, attributes: dict[str, Any]) -> None: ...

    def finalize(self) -> None: ...
