"""Image sources: local rasters via rasterio and tiled web map services.

Both sources expose the same operations: the pixel extent of the image,
its spatial reference, a fixed pixel-to-CRS transform, and ``fetch`` which
returns the pixel block of one window resampled to the model's window
size. Callers never need to know which variant they hold, except to ask
for ``max_concurrency`` when sizing a worker pool.
"""

from __future__ import annotations

import logging
import math
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any

import numpy as np
import requests
from numpy.typing import NDArray
from pyproj import CRS
from rasterio.transform import Affine
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from openspacenet._typing import GeoBBox, GeoPoint, PixelBlock, PixelPoint, Size
from openspacenet.crs import (
    WGS84,
    PixelTransform,
    affine_pixel_transform,
    geo_to_pixel,
    get_transformer,
    region_to_pixel_window,
    validate_bbox,
    validate_crs,
)
from openspacenet.exceptions import ConfigurationError, MissingCRSError, SourceAccessError
from openspacenet.tiling import PixelRegion, Window

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RasterExtent:
    """Pixel size of an image and its bounds in the image CRS."""

    width: int
    height: int
    bounds: tuple[float, float, float, float]  # (left, bottom, right, top)

    @property
    def size(self) -> Size:
        return (self.width, self.height)


def model_size(window: Window) -> Size:
    """Size of the block handed to the model for a window."""
    return (max(1, int(round(window.width / window.scale))), max(1, int(round(window.height / window.scale))))


class ImageSource(ABC):
    """Capability shared by all image sources.

    Sources are opened once; the transform is fixed from then on. They
    are context managers, closing any handles on exit.
    """

    #: Upper bound on concurrent fetches, or None when only the caller's
    #: thread budget applies.
    max_concurrency: int | None = None

    def __enter__(self) -> ImageSource:
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @abstractmethod
    def open(self) -> None:
        """Open the source and read its metadata. Calling it twice is harmless."""

    def close(self) -> None:
        """Release any handles held by the source."""

    @abstractmethod
    def extent(self) -> RasterExtent: ...

    @abstractmethod
    def spatial_reference(self) -> CRS: ...

    @abstractmethod
    def transform(self, pixel: PixelPoint) -> GeoPoint:
        """Map a (col, row) pixel position to (x, y) in the image CRS."""

    @abstractmethod
    def inverse_transform(self, point: GeoPoint) -> PixelPoint:
        """Map (x, y) in the image CRS to a (col, row) pixel position."""

    @abstractmethod
    def fetch(self, window: Window) -> PixelBlock:
        """Read the pixels of a window as an array of shape (bands, height, width).

        The block is resampled to ``window.width / window.scale`` by
        ``window.height / window.scale`` pixels.
        """

    def region_of_interest(self, bbox: GeoBBox | None) -> PixelRegion | None:
        """Pixel region of a WGS84 bounding box, or None for the whole image."""
        if bbox is None:
            return None
        return region_to_pixel_window(bbox, self.spatial_reference(), self.inverse_transform)


# ---------------------------------------------------------------------------
# Local rasters
# ---------------------------------------------------------------------------


def resolve_raster_source(source: str | Path) -> str:
    """Resolve a raster source to a rasterio-openable path/URI.

    Accepts local file paths, HTTP/HTTPS URLs to COGs, and S3 URIs.
    Rasterio uses GDAL's VSICURL for HTTP and VSIS3 for S3.

    Raises:
        SourceAccessError: If a local path doesn't exist.
    """
    source_str = str(source)

    if source_str.startswith(("http://", "https://", "s3://")):
        return source_str

    path = Path(source_str)
    if not path.exists():
        raise SourceAccessError(f"Raster file not found: {source_str}", source=source_str)
    return str(path)


def read_window(
    dataset: Any,
    window: Window,
    out_size: Size,
    bands: list[int] | None = None,
) -> NDArray:
    """Read a window from an open rasterio dataset, resampled to ``out_size``.

    Reads are boundless: pixels beyond the image edge are filled with the
    dataset's nodata value, or 0 when it has none.

    Args:
        dataset: Open rasterio dataset.
        window: Window in native pixels.
        out_size: (width, height) of the returned block.
        bands: 1-indexed band indices to read. None reads all.

    Returns:
        Array of shape (bands, out_height, out_width).
    """
    from rasterio.enums import Resampling
    from rasterio.windows import Window as RasterioWindow

    indexes = bands if bands is not None else list(range(1, dataset.count + 1))
    out_w, out_h = out_size

    return dataset.read(
        indexes=indexes,
        window=RasterioWindow(window.x, window.y, window.width, window.height),
        out_shape=(len(indexes), out_h, out_w),
        boundless=True,
        fill_value=dataset.nodata if dataset.nodata is not None else 0,
        resampling=Resampling.bilinear,
    )


class LocalImageSource(ImageSource):
    """A raster readable by rasterio: a local file, COG URL or S3 URI.

    Each worker thread reads through its own dataset handle, because
    rasterio dataset objects must not be shared between threads.

    Args:
        path: Raster location.
        bands: 1-indexed band indices handed to the model. All bands if None.
    """

    def __init__(self, path: str | Path, bands: list[int] | None = None) -> None:
        self.path = str(path)
        self.bands = list(bands) if bands is not None else None
        self._uri: str | None = None
        self._extent: RasterExtent | None = None
        self._crs: CRS | None = None
        self._affine: Affine | None = None
        self._to_geo: PixelTransform | None = None
        self._local = threading.local()
        self._handles: list[Any] = []
        self._handles_lock = threading.Lock()

    def open(self) -> None:
        if self._extent is not None:
            return

        import rasterio
        from rasterio.errors import RasterioIOError

        uri = resolve_raster_source(self.path)
        try:
            with rasterio.open(uri) as src:
                if src.count == 0:
                    raise SourceAccessError(f"Raster has 0 bands: {self.path}", source=self.path)
                if self.bands is not None and max(self.bands) > src.count:
                    raise SourceAccessError(
                        f"Band index {max(self.bands)} exceeds available band count ({src.count}).",
                        source=self.path,
                    )
                if src.crs is None:
                    raise MissingCRSError(f"Raster has no spatial reference: {self.path}", source=self.path)

                crs = validate_crs(CRS.from_user_input(src.crs))
                self._affine = src.transform
                self._to_geo = affine_pixel_transform(src.transform)
                self._extent = RasterExtent(src.width, src.height, tuple(src.bounds))
                self._crs = crs
        except RasterioIOError as exc:
            raise SourceAccessError(f"Cannot open raster '{self.path}': {exc}", source=self.path) from exc

        self._uri = uri
        logger.debug("Opened %s (%dx%d, %s)", self.path, self._extent.width, self._extent.height, self._crs.to_string())

    def close(self) -> None:
        with self._handles_lock:
            for handle in self._handles:
                handle.close()
            self._handles.clear()
        self._local = threading.local()

    def _require_open(self) -> None:
        if self._extent is None:
            raise SourceAccessError("Image source is not open. Call open() first.", source=self.path)

    def _dataset(self) -> Any:
        dataset = getattr(self._local, "dataset", None)
        if dataset is None:
            import rasterio

            dataset = rasterio.open(self._uri)
            self._local.dataset = dataset
            with self._handles_lock:
                self._handles.append(dataset)
        return dataset

    def extent(self) -> RasterExtent:
        self._require_open()
        return self._extent

    def spatial_reference(self) -> CRS:
        self._require_open()
        return self._crs

    def transform(self, pixel: PixelPoint) -> GeoPoint:
        self._require_open()
        return self._to_geo(pixel)

    def inverse_transform(self, point: GeoPoint) -> PixelPoint:
        return geo_to_pixel(point, self._affine)

    def fetch(self, window: Window) -> PixelBlock:
        self._require_open()
        return read_window(self._dataset(), window, model_size(window), bands=self.bands)


# ---------------------------------------------------------------------------
# Tiled web map services
# ---------------------------------------------------------------------------

# Half the circumference of the WGS84 sphere used by Web Mercator, in meters
WEB_MERCATOR_ORIGIN = 20037508.342789244

WEB_MERCATOR = "EPSG:3857"

RETRY_STATUSES = (429, 500, 502, 503, 504)


def build_session(max_downloads: int, retries: int = 3, backoff_factor: float = 0.5) -> requests.Session:
    """A requests session with connection pooling and retry on transient failures."""
    retry = Retry(
        total=retries,
        backoff_factor=backoff_factor,
        status_forcelist=RETRY_STATUSES,
        allowed_methods=("GET",),
    )
    adapter = HTTPAdapter(pool_connections=max_downloads, pool_maxsize=max_downloads, max_retries=retry)
    session = requests.Session()
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


class WebTiledImageSource(ImageSource):
    """A slippy-map (XYZ) tile service seen as one image covering a bbox.

    The image is the tile-aligned block of tiles at ``zoom`` that encloses
    the bounding box, in Web Mercator. Pixel (0, 0) is the top-left corner
    of its first tile.

    Args:
        url_template: Tile URL with ``{z}``, ``{x}`` and ``{y}`` placeholders.
        bbox: (west, south, east, north) in WGS84.
        zoom: Tile zoom level.
        max_downloads: Maximum number of concurrent tile downloads.
        tile_size: Tile edge length in pixels.
        session: Preconfigured requests session, e.g. carrying auth headers.
        timeout: Per-request timeout in seconds.
        cache_tiles: Number of decoded tiles kept in memory.
    """

    def __init__(
        self,
        url_template: str,
        bbox: GeoBBox,
        zoom: int = 18,
        max_downloads: int = 10,
        tile_size: int = 256,
        session: requests.Session | None = None,
        timeout: float = 30.0,
        cache_tiles: int = 256,
    ) -> None:
        for placeholder in ("{z}", "{x}", "{y}"):
            if placeholder not in url_template:
                raise ConfigurationError(
                    f"Tile URL template must contain {placeholder}: {url_template}", field="url_template"
                )
        if max_downloads < 1:
            raise ConfigurationError(f"max_downloads must be at least 1, got {max_downloads}", field="max_downloads")
        if not 0 <= zoom <= 30:
            raise ConfigurationError(f"zoom must be in [0, 30], got {zoom}", field="zoom")

        self.url_template = url_template
        self.bbox = validate_bbox(bbox)
        self.zoom = int(zoom)
        self.tile_size = int(tile_size)
        self.max_concurrency = int(max_downloads)
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._semaphore = threading.BoundedSemaphore(self.max_concurrency)
        self._cache: OrderedDict[tuple[int, int], NDArray] = OrderedDict()
        self._cache_size = cache_tiles
        self._cache_lock = threading.Lock()
        self._in_flight: dict[tuple[int, int], Future] = {}
        self._origin: tuple[int, int] | None = None
        self._extent: RasterExtent | None = None
        self._affine: Affine | None = None
        self._to_geo: PixelTransform | None = None

    @property
    def resolution(self) -> float:
        """Ground size of one pixel in Web Mercator meters at this zoom."""
        return 2 * WEB_MERCATOR_ORIGIN / (self.tile_size * 2**self.zoom)

    def open(self) -> None:
        if self._extent is not None:
            return

        west, south, east, north = self.bbox
        to_mercator = get_transformer(WGS84, WEB_MERCATOR)
        min_x, min_y, max_x, max_y = to_mercator.transform_bounds(west, south, east, north)

        res = self.resolution
        ts = self.tile_size
        tx0 = int(math.floor((min_x + WEB_MERCATOR_ORIGIN) / res / ts))
        ty0 = int(math.floor((WEB_MERCATOR_ORIGIN - max_y) / res / ts))
        tx1 = int(math.ceil((max_x + WEB_MERCATOR_ORIGIN) / res / ts))
        ty1 = int(math.ceil((WEB_MERCATOR_ORIGIN - min_y) / res / ts))
        tx1 = max(tx1, tx0 + 1)
        ty1 = max(ty1, ty0 + 1)

        self._origin = (tx0 * ts, ty0 * ts)
        left = self._origin[0] * res - WEB_MERCATOR_ORIGIN
        top = WEB_MERCATOR_ORIGIN - self._origin[1] * res
        width = (tx1 - tx0) * ts
        height = (ty1 - ty0) * ts

        self._affine = Affine(res, 0.0, left, 0.0, -res, top)
        self._to_geo = affine_pixel_transform(self._affine)
        self._extent = RasterExtent(width, height, (left, top - height * res, left + width * res, top))

        if self._session is None:
            self._session = build_session(self.max_concurrency)

        logger.debug(
            "Tile source at zoom %d: %dx%d tiles from (%d, %d)", self.zoom, tx1 - tx0, ty1 - ty0, tx0, ty0
        )

    def close(self) -> None:
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None
        with self._cache_lock:
            self._cache.clear()

    def _require_open(self) -> None:
        if self._extent is None:
            raise SourceAccessError("Image source is not open. Call open() first.", source=self.url_template)

    def extent(self) -> RasterExtent:
        self._require_open()
        return self._extent

    def spatial_reference(self) -> CRS:
        return CRS.from_user_input(WEB_MERCATOR)

    def transform(self, pixel: PixelPoint) -> GeoPoint:
        self._require_open()
        return self._to_geo(pixel)

    def inverse_transform(self, point: GeoPoint) -> PixelPoint:
        return geo_to_pixel(point, self._affine)

    def _download(self, tx: int, ty: int) -> NDArray:
        from PIL import Image

        url = self.url_template.format(z=self.zoom, x=tx, y=ty)
        with self._semaphore:
            response = self._session.get(url, timeout=self.timeout)
        response.raise_for_status()

        image = Image.open(BytesIO(response.content)).convert("RGB")
        if image.size != (self.tile_size, self.tile_size):
            image = image.resize((self.tile_size, self.tile_size))
        return np.transpose(np.asarray(image, dtype=np.uint8), (2, 0, 1))

    def _tile(self, tx: int, ty: int) -> NDArray:
        """Decoded tile as (3, tile_size, tile_size), from cache when possible.

        Concurrent requests for a tile that is already downloading wait for
        that download instead of starting another one.
        """
        key = (tx, ty)
        with self._cache_lock:
            if key in self._cache:
                self._cache.move_to_end(key)
                return self._cache[key]
            pending = self._in_flight.get(key)
            if pending is None:
                pending = self._in_flight[key] = Future()
                owner = True
            else:
                owner = False

        if not owner:
            return pending.result()

        try:
            tile = self._download(tx, ty)
        except BaseException as exc:
            with self._cache_lock:
                del self._in_flight[key]
            pending.set_exception(exc)
            raise

        with self._cache_lock:
            self._cache[key] = tile
            self._cache.move_to_end(key)
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)
            del self._in_flight[key]
        pending.set_result(tile)
        return tile

    def fetch(self, window: Window) -> PixelBlock:
        from PIL import Image

        self._require_open()
        ts = self.tile_size
        n_tiles = 2**self.zoom

        gx0 = self._origin[0] + window.x
        gy0 = self._origin[1] + window.y
        gx1 = gx0 + window.width
        gy1 = gy0 + window.height

        tx0, ty0 = gx0 // ts, gy0 // ts
        tx1, ty1 = (gx1 - 1) // ts, (gy1 - 1) // ts

        canvas = np.zeros((3, (ty1 - ty0 + 1) * ts, (tx1 - tx0 + 1) * ts), dtype=np.uint8)
        for ty in range(ty0, ty1 + 1):
            for tx in range(tx0, tx1 + 1):
                if not (0 <= tx < n_tiles and 0 <= ty < n_tiles):
                    continue
                row = (ty - ty0) * ts
                col = (tx - tx0) * ts
                canvas[:, row : row + ts, col : col + ts] = self._tile(tx, ty)

        ox = gx0 - tx0 * ts
        oy = gy0 - ty0 * ts
        block = canvas[:, oy : oy + window.height, ox : ox + window.width]

        out_size = model_size(window)
        if out_size != (window.width, window.height):
            resized = Image.fromarray(np.ascontiguousarray(np.transpose(block, (1, 2, 0)))).resize(
                out_size, resample=Image.Resampling.BILINEAR
            )
            block = np.transpose(np.asarray(resized, dtype=np.uint8), (2, 0, 1))

        return block
