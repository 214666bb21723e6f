"""Sliding-window planning and label-aware non-maximum suppression.

This module computes the grid of windows presented to the model for a
region of an image, optionally at several pyramid scales, and removes
redundant overlapping detections once every window has been processed.
"""

from __future__ import annotations

import math
import warnings
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from numpy.typing import NDArray

from openspacenet._typing import PixelBBox, PixelPoint, Size
from openspacenet.exceptions import ConfigurationError, CoverageGapWarning

if TYPE_CHECKING:
    from openspacenet.features import GeoFeature

# Pixel region: (col_off, row_off, width, height)
PixelRegion = tuple[int, int, int, int]

# ---------------------------------------------------------------------------
# Windows and pyramid levels
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Window:
    """A rectangular pixel region presented to the model for one inference call.

    ``x``, ``y``, ``width`` and ``height`` are in native image pixels. At a
    pyramid scale of 2.0 a 256x256 model window covers 512x512 native pixels
    and is resampled down before inference.
    """

    x: int
    y: int
    width: int
    height: int
    scale: float = 1.0

    @property
    def bbox(self) -> PixelBBox:
        """(x_min, y_min, x_max, y_max) in native pixels."""
        return (float(self.x), float(self.y), float(self.x + self.width), float(self.y + self.height))

    @property
    def center(self) -> PixelPoint:
        return (self.x + self.width / 2.0, self.y + self.height / 2.0)

    @property
    def corners(self) -> list[PixelPoint]:
        """Top-left, top-right, bottom-right, bottom-left corners."""
        x_min, y_min, x_max, y_max = self.bbox
        return [(x_min, y_min), (x_max, y_min), (x_max, y_max), (x_min, y_max)]

    def intersects(self, width: int, height: int) -> bool:
        """Whether any part of the window lies inside a ``width`` x ``height`` image."""
        return self.x < width and self.y < height and self.x + self.width > 0 and self.y + self.height > 0


@dataclass(frozen=True)
class PyramidLevel:
    """A pyramid scale with its derived window and step sizes in native pixels."""

    scale: float
    window_size: Size
    step_size: Size


def normalize_size(value: int | Sequence[int], name: str) -> Size:
    """Expand a one- or two-dimensional size to ``(x, y)``.

    Raises:
        ConfigurationError: If the value has the wrong arity or is not positive.
    """
    if isinstance(value, (int, np.integer)):
        dims = [int(value)]
    else:
        dims = [int(v) for v in value]

    if len(dims) == 1:
        dims = dims * 2
    if len(dims) != 2:
        raise ConfigurationError(f"{name} must have one or two dimensions, got {len(dims)}", field=name)
    if dims[0] <= 0 or dims[1] <= 0:
        raise ConfigurationError(f"{name} must be positive in both dimensions, got {tuple(dims)}", field=name)

    return (dims[0], dims[1])


def default_step_size(window_size: Size) -> Size:
    """Default sliding step: base-two logarithm of the window's largest dimension."""
    step = max(1, int(math.log2(max(window_size))))
    return (step, step)


def pyramid_levels(
    window_size: Size,
    step_size: Size,
    region_size: Size,
    pyramid: bool = False,
) -> list[PyramidLevel]:
    """Compute the pyramid levels for a region, finest level first.

    The finest level always exists. With ``pyramid`` enabled, the scale
    doubles for as long as the scaled window still fits inside the region.
    """
    levels = [PyramidLevel(1.0, window_size, step_size)]
    if not pyramid:
        return levels

    scale = 2
    while window_size[0] * scale <= region_size[0] and window_size[1] * scale <= region_size[1]:
        levels.append(
            PyramidLevel(
                float(scale),
                (window_size[0] * scale, window_size[1] * scale),
                (step_size[0] * scale, step_size[1] * scale),
            )
        )
        scale *= 2

    return levels


def _axis_offsets(start: int, length: int, window: int, step: int) -> list[int]:
    """Window offsets along one axis of a region."""
    end = start + length
    if window >= length:
        return [start]

    offsets = list(range(start, end - window + 1, step))
    # Snap a final window to the far edge so the whole axis is covered.
    if step <= window and offsets[-1] + window < end:
        offsets.append(end - window)
    return offsets


def intersect_region(region: PixelRegion | None, image_size: Size) -> PixelRegion:
    """Clip a pixel region to the image extent.

    Args:
        region: (col_off, row_off, width, height), or None for the full image.
        image_size: (width, height) of the image.

    Raises:
        ConfigurationError: If the intersection is empty.
    """
    img_w, img_h = image_size
    if region is None:
        region = (0, 0, img_w, img_h)

    col_off, row_off, width, height = region
    x0 = max(0, col_off)
    y0 = max(0, row_off)
    x1 = min(img_w, col_off + width)
    y1 = min(img_h, row_off + height)

    if x1 <= x0 or y1 <= y0:
        raise ConfigurationError(
            f"Region of interest {tuple(region)} does not intersect the image extent ({img_w}x{img_h}).",
            region=tuple(region),
            image_size=image_size,
        )

    return (x0, y0, x1 - x0, y1 - y0)


class WindowPlan:
    """A finite, restartable sequence of ``(Window, PyramidLevel)`` pairs.

    All validation happens at construction, so an invalid plan fails
    before any window is emitted. Every iteration recomputes the grid
    from the inputs; the plan holds no iteration state.

    Example::

        plan = WindowPlan((1024, 1024), window_size=256, step_size=128)
        len(plan)  # 49
        for window, level in plan:
            ...
    """

    def __init__(
        self,
        image_size: Size,
        window_size: int | Sequence[int],
        step_size: int | Sequence[int] | None = None,
        pyramid: bool = False,
        region: PixelRegion | None = None,
    ) -> None:
        self.window_size = normalize_size(window_size, "window_size")
        if step_size is None:
            self.step_size = default_step_size(self.window_size)
        else:
            self.step_size = normalize_size(step_size, "step_size")

        if self.step_size[0] > self.window_size[0] or self.step_size[1] > self.window_size[1]:
            warnings.warn(
                f"Step size {self.step_size} exceeds window size {self.window_size}. "
                f"The window grid will leave uncovered gaps.",
                CoverageGapWarning,
                stacklevel=2,
            )

        self.image_size = (int(image_size[0]), int(image_size[1]))
        self.region = intersect_region(region, self.image_size)
        self.pyramid = pyramid
        self.levels = pyramid_levels(self.window_size, self.step_size, (self.region[2], self.region[3]), pyramid)

    def _level_offsets(self, level: PyramidLevel) -> tuple[list[int], list[int]]:
        col_off, row_off, width, height = self.region
        xs = _axis_offsets(col_off, width, level.window_size[0], level.step_size[0])
        ys = _axis_offsets(row_off, height, level.window_size[1], level.step_size[1])
        return xs, ys

    def __iter__(self) -> Iterator[tuple[Window, PyramidLevel]]:
        img_w, img_h = self.image_size
        for level in self.levels:
            xs, ys = self._level_offsets(level)
            w, h = level.window_size
            for y in ys:
                for x in xs:
                    window = Window(x, y, w, h, level.scale)
                    if window.intersects(img_w, img_h):
                        yield window, level

    def __len__(self) -> int:
        total = 0
        for level in self.levels:
            xs, ys = self._level_offsets(level)
            total += len(xs) * len(ys)
        return total

    def __repr__(self) -> str:
        return (
            f"WindowPlan(region={self.region}, window_size={self.window_size}, "
            f"step_size={self.step_size}, levels={len(self.levels)})"
        )


def plan_windows(
    image_size: Size,
    window_size: int | Sequence[int],
    step_size: int | Sequence[int] | None = None,
    pyramid: bool = False,
    region: PixelRegion | None = None,
) -> WindowPlan:
    """Build the window plan covering ``region`` of an image.

    Args:
        image_size: (width, height) of the image in pixels.
        window_size: Base window size, one or two dimensions.
        step_size: Step size, one or two dimensions. Defaults to
            log2 of the window's largest dimension.
        pyramid: Also scan at progressively coarser scales.
        region: Pixel region (col_off, row_off, width, height). Full image if None.

    Returns:
        A restartable WindowPlan, finest pyramid level first.

    Raises:
        ConfigurationError: If sizes are invalid or the region misses the image.
    """
    return WindowPlan(image_size, window_size, step_size=step_size, pyramid=pyramid, region=region)


# ---------------------------------------------------------------------------
# Label-aware NMS
# ---------------------------------------------------------------------------


def compute_iou(box: NDArray, others: NDArray) -> NDArray:
    """IoU of one [x1, y1, x2, y2] box against each row of ``others``.

    Boxes without area have IoU 0 with everything.

    Returns:
        Float array of shape (N,) for ``others`` of shape (N, 4).
    """
    others = np.atleast_2d(np.asarray(others, dtype=np.float64))
    box = np.asarray(box, dtype=np.float64)

    width = np.minimum(box[2], others[:, 2]) - np.maximum(box[0], others[:, 0])
    height = np.minimum(box[3], others[:, 3]) - np.maximum(box[1], others[:, 1])
    inter = np.clip(width, 0, None) * np.clip(height, 0, None)

    area = (box[2] - box[0]) * (box[3] - box[1])
    other_areas = (others[:, 2] - others[:, 0]) * (others[:, 3] - others[:, 1])
    union = area + other_areas - inter

    return np.divide(inter, union, out=np.zeros_like(inter), where=union > 0)


def label_aware_nms(
    boxes: NDArray,
    scores: NDArray,
    label_ids: NDArray,
    iou_threshold: float = 0.5,
) -> NDArray:
    """Perform non-maximum suppression independently per label.

    Candidates are visited in descending score order. Ties keep their
    input order, so the result is deterministic for a given input order.

    Args:
        boxes: Array of shape (N, 4) in [x1, y1, x2, y2] format.
        scores: Array of shape (N,) with confidence scores.
        label_ids: Array of shape (N,) with integer label codes.
        iou_threshold: IoU above which the lower-scored box is suppressed.

    Returns:
        Boolean mask of shape (N,) where True means the detection survives.
    """
    n = len(boxes)
    if n == 0:
        return np.array([], dtype=bool)

    keep = np.ones(n, dtype=bool)
    order = np.argsort(-scores, kind="stable")

    for i in range(n):
        idx_i = order[i]
        if not keep[idx_i]:
            continue

        remaining = order[i + 1 :]
        if len(remaining) == 0:
            break

        same_label = label_ids[remaining] == label_ids[idx_i]
        candidates = remaining[same_label & keep[remaining]]

        if len(candidates) == 0:
            continue

        iou = compute_iou(boxes[idx_i], boxes[candidates])

        keep[candidates[iou > iou_threshold]] = False

    return keep


def validate_overlap(overlap_threshold: float) -> float:
    """Check that an NMS overlap threshold lies in (0, 1]."""
    if not 0.0 < overlap_threshold <= 1.0:
        raise ConfigurationError(
            f"overlap threshold must be in (0, 1], got {overlap_threshold}",
            field="overlap",
        )
    return float(overlap_threshold)


def suppress(features: Sequence[GeoFeature], overlap_threshold: float) -> list[GeoFeature]:
    """Remove redundant overlapping features, independently per label.

    Overlap is the IoU of the features' window rectangles in native pixels.
    Surviving features are returned unchanged, grouped by label (labels in
    sorted order) and by descending confidence within each label.

    Args:
        features: Candidate features in a deterministic order.
        overlap_threshold: Fraction in (0, 1]; a candidate whose IoU with an
            accepted feature exceeds it is discarded.

    Returns:
        The surviving features. Never longer than the input.

    Raises:
        ConfigurationError: If the threshold is outside (0, 1].
    """
    threshold = validate_overlap(overlap_threshold)

    if len(features) == 0:
        return []

    boxes = np.array([f.window.bbox for f in features], dtype=np.float64)
    scores = np.array([f.confidence for f in features], dtype=np.float64)
    _, label_ids = np.unique(np.array([str(f.label) for f in features]), return_inverse=True)

    keep = label_aware_nms(boxes, scores, label_ids, threshold)

    survivors = [i for i in range(len(features)) if keep[i]]
    survivors.sort(key=lambda i: (features[i].label, -features[i].confidence, i))
    return [features[i] for i in survivors]
