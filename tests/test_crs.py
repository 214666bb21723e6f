"""Tests for CRS handling and pixel/geographic transforms."""

from __future__ import annotations

import pytest
from pyproj import CRS
from rasterio.transform import Affine
from shapely.geometry import Point, Polygon

from openspacenet.crs import (
    affine_pixel_transform,
    geo_to_pixel,
    get_transformer,
    pixel_to_geo,
    pixel_to_geo_point,
    region_to_pixel_window,
    validate_bbox,
    validate_crs,
)
from openspacenet.exceptions import ConfigurationError, MissingCRSError, SourceAccessError
from openspacenet.tiling import Window

UTM_AFFINE = Affine(1.0, 0.0, 500000.0, 0.0, -1.0, 4000512.0)


class TestGetTransformer:
    """Test cached transformer creation."""

    def test_cached(self):
        assert get_transformer("EPSG:4326", "EPSG:3857") is get_transformer("EPSG:4326", "EPSG:3857")

    def test_always_xy(self):
        transformer = get_transformer("EPSG:4326", "EPSG:3857")
        x, y = transformer.transform(0.0, 0.0)
        assert x == pytest.approx(0.0, abs=1e-6)
        assert y == pytest.approx(0.0, abs=1e-6)

    def test_invalid_crs(self):
        with pytest.raises(SourceAccessError):
            get_transformer("NOT_A_CRS", "EPSG:4326")


class TestPixelToGeo:
    """Test window footprint and center mapping."""

    def test_polygon_corners(self):
        transform = affine_pixel_transform(UTM_AFFINE)
        polygon = pixel_to_geo((0.0, 0.0, 256.0, 128.0), transform)

        assert isinstance(polygon, Polygon)
        assert polygon.bounds == pytest.approx((500000.0, 4000384.0, 500256.0, 4000512.0))
        assert polygon.area == pytest.approx(256.0 * 128.0)

    def test_each_corner_mapped_individually(self):
        """A non-affine transform bends the footprint into a general quadrilateral."""

        def shear(pixel):
            col, row = pixel
            return (col + 0.001 * row * row, -row)

        polygon = pixel_to_geo((0.0, 0.0, 10.0, 10.0), shear)
        coords = [c for point in list(polygon.exterior.coords)[:4] for c in point]
        assert coords == pytest.approx([0.0, 0.0, 10.0, 0.0, 10.1, -10.0, 0.1, -10.0])

    def test_center_point(self):
        transform = affine_pixel_transform(UTM_AFFINE)
        point = pixel_to_geo_point(Window(0, 0, 256, 256).center, transform)

        assert isinstance(point, Point)
        assert (point.x, point.y) == pytest.approx((500128.0, 4000384.0))

    @pytest.mark.parametrize(
        "window",
        [Window(0, 0, 256, 256), Window(128, 640, 256, 128), Window(768, 768, 512, 512, 2.0)],
    )
    def test_center_round_trip(self, window):
        transform = affine_pixel_transform(UTM_AFFINE)
        geo = transform(window.center)
        col, row = geo_to_pixel(geo, UTM_AFFINE)
        assert (col, row) == pytest.approx(window.center, abs=1e-6)

    def test_round_trip_rotated_affine(self):
        rotated = Affine.rotation(30.0) * Affine.scale(0.5, -0.5)
        rotated = Affine.translation(1000.0, 2000.0) * rotated
        geo = affine_pixel_transform(rotated)((37.0, 91.0))
        assert geo_to_pixel(geo, rotated) == pytest.approx((37.0, 91.0), abs=1e-6)


class TestValidateCRS:
    """Test spatial reference validation."""

    def test_none_is_missing(self):
        with pytest.raises(MissingCRSError):
            validate_crs(None)

    def test_crs_object_passes_through(self):
        crs = CRS.from_epsg(32617)
        assert validate_crs(crs) is crs

    def test_epsg_string(self):
        assert validate_crs("EPSG:4326").to_epsg() == 4326

    def test_invalid_string(self):
        with pytest.raises(SourceAccessError):
            validate_crs("NOT_A_CRS")

    def test_wrong_type(self):
        with pytest.raises(SourceAccessError):
            validate_crs(4326)


class TestValidateBBox:
    """Test WGS84 bounding box validation."""

    def test_valid(self):
        assert validate_bbox((-1, -2, 3, 4)) == (-1.0, -2.0, 3.0, 4.0)

    @pytest.mark.parametrize(
        "bbox",
        [(10, 0, 5, 1), (0, 10, 1, 5), (0, 0, 0, 1), (-181, 0, 0, 1), (0, 0, 1, 91)],
    )
    def test_invalid(self, bbox):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_bbox(bbox)
        assert exc_info.value.context["field"] == "bbox"

    def test_wrong_arity(self):
        with pytest.raises(ConfigurationError):
            validate_bbox((0, 0, 1))


class TestRegionToPixelWindow:
    """Test mapping a WGS84 region onto an image grid."""

    def test_region_inside_utm_image(self):
        crs = CRS.from_epsg(32617)
        to_wgs84 = get_transformer("EPSG:32617", "EPSG:4326")
        west, north = to_wgs84.transform(500100.0, 4000412.0)
        east, south = to_wgs84.transform(500300.0, 4000212.0)

        col_off, row_off, width, height = region_to_pixel_window(
            (west, south, east, north), crs, lambda p: geo_to_pixel(p, UTM_AFFINE)
        )

        # Densified reprojection may widen the box by a pixel at most
        assert col_off == pytest.approx(100, abs=2)
        assert row_off == pytest.approx(100, abs=2)
        assert width == pytest.approx(200, abs=3)
        assert height == pytest.approx(200, abs=3)

    def test_region_is_not_clipped(self):
        crs = CRS.from_epsg(32617)
        to_wgs84 = get_transformer("EPSG:32617", "EPSG:4326")
        west, north = to_wgs84.transform(490000.0, 4010000.0)
        east, south = to_wgs84.transform(491000.0, 4009000.0)

        col_off, row_off, _, _ = region_to_pixel_window(
            (west, south, east, north), crs, lambda p: geo_to_pixel(p, UTM_AFFINE)
        )
        assert col_off < 0
        assert row_off < 0
