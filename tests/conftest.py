"""Shared test fixtures for the openspacenet test suite."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from io import BytesIO
from pathlib import Path
from typing import Any

import numpy as np
import pytest
import rasterio
from pyproj import CRS
from rasterio.transform import Affine, from_bounds

from openspacenet._typing import Prediction
from openspacenet.crs import geo_to_pixel
from openspacenet.exceptions import WriteError
from openspacenet.io import ImageSource, RasterExtent, model_size
from openspacenet.tiling import Window

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# ~1 m/pixel in UTM zone 17N
UTM_WEST, UTM_NORTH = 500000.0, 4000512.0
UTM_CRS = "EPSG:32617"

# ---------------------------------------------------------------------------
# Test Helper Classes
# ---------------------------------------------------------------------------


class AffineSource(ImageSource):
    """In-memory image source with an affine transform.

    ``fetch`` returns a block whose first band holds the window's x offset
    and whose second band holds its y offset, so a scripted client can tell
    which window it is classifying.
    """

    def __init__(
        self,
        width: int = 1024,
        height: int = 1024,
        affine: Affine | None = None,
        crs: str = UTM_CRS,
        fail_at: tuple[int, int] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.width = width
        self.height = height
        self.affine = affine or Affine(1.0, 0.0, UTM_WEST, 0.0, -1.0, UTM_NORTH)
        self.crs = CRS.from_user_input(crs)
        self.fail_at = fail_at
        self.delay = delay
        self.opened = False
        self.closed = False
        self.fetched: list[Window] = []
        self._lock = threading.Lock()

    def open(self) -> None:
        self.opened = True

    def close(self) -> None:
        self.closed = True

    def extent(self) -> RasterExtent:
        left, top = self.affine * (0, 0)
        right, bottom = self.affine * (self.width, self.height)
        return RasterExtent(self.width, self.height, (left, bottom, right, top))

    def spatial_reference(self) -> CRS:
        return self.crs

    def transform(self, pixel):
        x, y = self.affine * pixel
        return (float(x), float(y))

    def inverse_transform(self, point):
        return geo_to_pixel(point, self.affine)

    def fetch(self, window: Window) -> np.ndarray:
        with self._lock:
            self.fetched.append(window)
        if self.delay:
            time.sleep(self.delay)
        if self.fail_at is not None and (window.x, window.y) == self.fail_at:
            raise OSError(f"read failed at {self.fail_at}")
        w, h = model_size(window)
        return np.stack([np.full((h, w), window.x, dtype=np.float64), np.full((h, w), window.y, dtype=np.float64)])


class ScriptedClient:
    """Inference client whose predictions are a function of the window offset."""

    def __init__(
        self,
        rule: Callable[[int, int], list[tuple[str, float]]] | None = None,
        window_size: tuple[int, int] | None = (256, 256),
        device: str = "cpu",
    ) -> None:
        self.rule = rule or (lambda x, y: [])
        self.window_size = window_size
        self.device = device
        self.calls = 0
        self._lock = threading.Lock()

    def predict(self, block: np.ndarray) -> list[Prediction]:
        with self._lock:
            self.calls += 1
        x, y = int(block[0, 0, 0]), int(block[1, 0, 0])
        return [Prediction(label, confidence) for label, confidence in self.rule(x, y)]


class RecordingSink:
    """Feature sink that keeps everything in memory."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.added: list[tuple[Any, dict[str, Any]]] = []
        self.finalized = False

    def add(self, geometry: Any, attributes: dict[str, Any]) -> None:
        self.added.append((geometry, dict(attributes)))

    def finalize(self) -> None:
        if self.fail:
            raise WriteError("disk full", path="memory")
        self.finalized = True


class FakeResponse:
    def __init__(self, content: bytes, status_code: int = 200) -> None:
        self.content = content
        self.status_code = status_code

    def raise_for_status(self) -> None:
        import requests

        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeTileSession:
    """Stand-in for a requests session serving solid-color PNG tiles.

    The tile at (x, y) is filled with red = x % 256 and green = y % 256.
    Tracks the URLs requested and the peak number of concurrent requests.
    """

    def __init__(self, tile_size: int = 256, status_code: int = 200, delay: float = 0.0) -> None:
        self.tile_size = tile_size
        self.status_code = status_code
        self.delay = delay
        self.urls: list[str] = []
        self.active = 0
        self.peak = 0
        self.closed = False
        self._lock = threading.Lock()

    def get(self, url: str, timeout: float | None = None) -> FakeResponse:
        from PIL import Image

        with self._lock:
            self.urls.append(url)
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            z, x, y = (int(part) for part in url.removesuffix(".png").split("/")[-3:])
            image = Image.new("RGB", (self.tile_size, self.tile_size), (x % 256, y % 256, z % 256))
            buffer = BytesIO()
            image.save(buffer, format="PNG")
            return FakeResponse(buffer.getvalue(), self.status_code)
        finally:
            with self._lock:
                self.active -= 1

    def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def write_geotiff(
    path: Path,
    width: int = 512,
    height: int = 512,
    count: int = 3,
    crs: str | None = UTM_CRS,
    dtype: str = "uint8",
) -> Path:
    """Write a GeoTIFF whose band b at pixel (row, col) holds (col + row + b) % 256."""
    transform = from_bounds(UTM_WEST, UTM_NORTH - height, UTM_WEST + width, UTM_NORTH, width, height)
    rows, cols = np.mgrid[0:height, 0:width]
    data = np.stack([(cols + rows + b) % 256 for b in range(count)]).astype(dtype)

    profile: dict[str, Any] = {
        "driver": "GTiff",
        "height": height,
        "width": width,
        "count": count,
        "dtype": dtype,
        "transform": transform,
    }
    if crs is not None:
        profile["crs"] = CRS.from_user_input(crs)

    with rasterio.open(path, "w", **profile) as dst:
        dst.write(data)
    return path


@pytest.fixture
def synthetic_geotiff(tmp_path: Path) -> Path:
    """A 512x512 3-band uint8 GeoTIFF in EPSG:32617 at 1 m/pixel."""
    return write_geotiff(tmp_path / "synthetic.tif")


@pytest.fixture
def geotiff_no_crs(tmp_path: Path) -> Path:
    """A 64x64 GeoTIFF without a spatial reference."""
    return write_geotiff(tmp_path / "no_crs.tif", width=64, height=64, crs=None)


@pytest.fixture
def affine_source() -> AffineSource:
    return AffineSource()


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def tile_session() -> FakeTileSession:
    return FakeTileSession()


# Factories for tests that need non-default helpers


@pytest.fixture
def make_source() -> type[AffineSource]:
    return AffineSource


@pytest.fixture
def make_client() -> type[ScriptedClient]:
    return ScriptedClient


@pytest.fixture
def make_sink() -> type[RecordingSink]:
    return RecordingSink


@pytest.fixture
def make_tile_session() -> type[FakeTileSession]:
    return FakeTileSession
