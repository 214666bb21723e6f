"""CRS handling and pixel-to-geographic coordinate transforms.

This module provides coordinate reference system utilities for mapping
window rectangles to geometries in an image's spatial reference, and for
mapping a WGS84 region of interest back onto the image's pixel grid.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from functools import lru_cache

from pyproj import CRS, Transformer
from rasterio.transform import Affine
from shapely.geometry import Point, Polygon

from openspacenet._typing import GeoBBox, GeoPoint, PixelBBox, PixelPoint
from openspacenet.exceptions import ConfigurationError, MissingCRSError, SourceAccessError

# Maps a (col, row) pixel position to an (x, y) position in the image CRS
PixelTransform = Callable[[PixelPoint], GeoPoint]

WGS84 = "EPSG:4326"


@lru_cache(maxsize=32)
def get_transformer(src_crs: str, dst_crs: str) -> Transformer:
    """Get a cached pyproj Transformer for CRS conversion.

    Args:
        src_crs: Source CRS as EPSG string or WKT.
        dst_crs: Destination CRS as EPSG string or WKT.

    Returns:
        Cached Transformer instance with always_xy=True.

    Raises:
        SourceAccessError: If either CRS string is invalid.
    """
    try:
        src = CRS.from_user_input(src_crs)
    except Exception as exc:
        raise SourceAccessError(f"Invalid source CRS: '{src_crs}'. Error: {exc}") from exc

    try:
        dst = CRS.from_user_input(dst_crs)
    except Exception as exc:
        raise SourceAccessError(f"Invalid destination CRS: '{dst_crs}'. Error: {exc}") from exc

    return Transformer.from_crs(src, dst, always_xy=True)


def affine_pixel_transform(transform: Affine) -> PixelTransform:
    """Wrap a rasterio affine transform as a pixel-to-CRS callable."""

    def _apply(pixel: PixelPoint) -> GeoPoint:
        x, y = transform * pixel
        return (float(x), float(y))

    return _apply


def pixel_to_geo(
    bbox: PixelBBox,
    transform: PixelTransform,
) -> Polygon:
    """Convert a pixel-space bounding box to a CRS-space polygon.

    Each of the four corners is mapped individually, so the result is
    correct for rotated affine and non-affine transforms alike.

    Args:
        bbox: (x_min, y_min, x_max, y_max) in pixel coordinates.
        transform: Pixel-to-CRS callable of the image source.

    Returns:
        Shapely Polygon with 4 corners in CRS coordinate space.
    """
    x_min, y_min, x_max, y_max = bbox

    tl = transform((x_min, y_min))
    tr = transform((x_max, y_min))
    br = transform((x_max, y_max))
    bl = transform((x_min, y_max))

    return Polygon([tl, tr, br, bl, tl])


def pixel_to_geo_point(pixel: PixelPoint, transform: PixelTransform) -> Point:
    """Convert a pixel position to a CRS-space point."""
    return Point(transform(pixel))


def geo_to_pixel(
    point: tuple[float, float],
    transform: Affine,
) -> tuple[float, float]:
    """Convert a CRS-space coordinate to pixel-space (col, row).

    This is the inverse of the affine transform. Uses the inverse affine
    (~transform) for correctness with rotated transforms.

    Args:
        point: (x, y) in CRS coordinate space.
        transform: Rasterio affine transform of the raster.

    Returns:
        (col, row) in pixel coordinates as floats.
    """
    inv = ~transform
    col, row = inv * point
    return (col, row)


def validate_crs(crs: CRS | str | None) -> CRS:
    """Validate a CRS value.

    Args:
        crs: CRS to validate. Can be pyproj.CRS, EPSG string, or None.

    Returns:
        Validated pyproj.CRS instance.

    Raises:
        MissingCRSError: If crs is None.
        SourceAccessError: If the CRS string is invalid.
    """
    if crs is None:
        raise MissingCRSError(
            "Image has no spatial reference. Detections cannot be geo-referenced without one."
        )

    if isinstance(crs, CRS):
        return crs

    if isinstance(crs, str):
        try:
            return CRS.from_user_input(crs)
        except Exception as exc:
            raise SourceAccessError(
                f"Invalid CRS string: '{crs}'. "
                f"Provide a valid EPSG code (e.g., 'EPSG:4326') or WKT string. "
                f"Error: {exc}"
            ) from exc

    raise SourceAccessError(f"CRS must be a pyproj.CRS, EPSG string, or None, got {type(crs).__name__}")


def validate_bbox(bbox: GeoBBox) -> GeoBBox:
    """Check that a WGS84 (west, south, east, north) box is well formed.

    Raises:
        ConfigurationError: If the box is degenerate or out of range.
    """
    if len(bbox) != 4:
        raise ConfigurationError(f"bbox must be (west, south, east, north), got {bbox}", field="bbox")

    west, south, east, north = (float(v) for v in bbox)
    if not (west < east and south < north):
        raise ConfigurationError(
            f"bbox is empty: west={west}, south={south}, east={east}, north={north}",
            field="bbox",
        )
    if west < -180.0 or east > 180.0 or south < -90.0 or north > 90.0:
        raise ConfigurationError(f"bbox is outside WGS84 bounds: {bbox}", field="bbox")

    return (west, south, east, north)


def region_to_pixel_window(
    bbox: GeoBBox,
    crs: CRS,
    inverse: Callable[[GeoPoint], PixelPoint],
) -> tuple[int, int, int, int]:
    """Map a WGS84 region of interest onto an image's pixel grid.

    The box is first reprojected into the image CRS (densified, so curved
    edges are respected), then its corners are mapped to pixels. The result
    is not clipped to the image; the window planner does that.

    Args:
        bbox: (west, south, east, north) in WGS84.
        crs: The image's spatial reference.
        inverse: CRS-to-pixel callable of the image source.

    Returns:
        (col_off, row_off, width, height) enclosing the region.
    """
    west, south, east, north = validate_bbox(bbox)

    transformer = get_transformer(WGS84, crs.to_wkt())
    min_x, min_y, max_x, max_y = transformer.transform_bounds(west, south, east, north, densify_pts=21)

    pixels = [inverse(corner) for corner in ((min_x, max_y), (max_x, max_y), (max_x, min_y), (min_x, min_y))]
    cols = [p[0] for p in pixels]
    rows = [p[1] for p in pixels]

    col_off = int(math.floor(min(cols)))
    row_off = int(math.floor(min(rows)))
    col_end = int(math.ceil(max(cols)))
    row_end = int(math.ceil(max(rows)))

    return (col_off, row_off, col_end - col_off, row_end - row_off)
