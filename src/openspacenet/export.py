"""Feature sinks writing GeoJSON, GeoPackage, and Shapefile outputs.

This module collects the features handed over at the end of a run into
a GeoDataFrame and serializes it to standard geospatial vector formats.
"""

from __future__ import annotations

import threading
import warnings
from pathlib import Path
from typing import Any

import geopandas as gpd
import pandas as pd
from pyproj import CRS

from openspacenet.exceptions import ConfigurationError, WriteError

DEFAULT_LAYER = "osndetects"

# Output format name -> OGR driver
FORMATS: dict[str, str] = {
    "shp": "ESRI Shapefile",
    "geojson": "GeoJSON",
    "gpkg": "GPKG",
}

# ---------------------------------------------------------------------------
# GeoDataFrame Construction
# ---------------------------------------------------------------------------


def build_geodataframe(
    geometries: list[Any],
    attributes: list[dict[str, Any]],
    crs: CRS | None,
) -> gpd.GeoDataFrame:
    """Assemble geometries and attribute dicts into a GeoDataFrame.

    Args:
        geometries: Shapely geometries in the image CRS.
        attributes: One attribute dict per geometry.
        crs: pyproj CRS for the output GeoDataFrame.

    Returns:
        GeoDataFrame with a geometry column plus one column per attribute.
        An empty input still yields ``label`` and ``confidence`` columns.
    """
    if len(geometries) == 0:
        return gpd.GeoDataFrame(
            {
                "label": pd.Series([], dtype="str"),
                "confidence": pd.Series([], dtype="float64"),
            },
            geometry=gpd.GeoSeries([], crs=crs),
        )

    frame = pd.DataFrame.from_records(attributes)
    return gpd.GeoDataFrame(frame, geometry=list(geometries), crs=crs)


# ---------------------------------------------------------------------------
# Export Formats
# ---------------------------------------------------------------------------


def export_gpkg(
    gdf: gpd.GeoDataFrame,
    path: str,
    layer: str = DEFAULT_LAYER,
) -> None:
    """Export GeoDataFrame to GeoPackage format.

    Raises:
        WriteError: If export fails.
    """
    try:
        gdf.to_file(str(path), driver="GPKG", layer=layer)
    except Exception as exc:
        raise WriteError(f"Failed to export GeoPackage: {exc}", path=str(path)) from exc


def export_geojson(
    gdf: gpd.GeoDataFrame,
    path: str,
    coordinate_precision: int = 6,
) -> None:
    """Export GeoDataFrame to GeoJSON format.

    GeoJSON requires WGS84 (EPSG:4326) coordinates. If the input CRS
    is different, it will be reprojected automatically.

    Raises:
        WriteError: If export fails.
    """
    try:
        output_gdf = gdf

        if gdf.crs is not None:
            target = CRS.from_epsg(4326)
            if not gdf.crs.equals(target):
                warnings.warn(
                    f"Reprojecting from {gdf.crs} to EPSG:4326 for GeoJSON export.",
                    RuntimeWarning,
                    stacklevel=2,
                )
                output_gdf = gdf.to_crs(target)

        output_gdf.to_file(
            str(path),
            driver="GeoJSON",
            coordinate_precision=coordinate_precision,
        )
    except Exception as exc:
        raise WriteError(f"Failed to export GeoJSON: {exc}", path=str(path)) from exc


def export_shp(
    gdf: gpd.GeoDataFrame,
    path: str,
) -> None:
    """Export GeoDataFrame to Shapefile format.

    Note: Shapefiles have legacy limitations:
    - Field names truncated to 10 characters
    - 2GB file size limit
    - No null value support

    Raises:
        WriteError: If export fails.
    """
    try:
        gdf.to_file(str(path), driver="ESRI Shapefile")
    except Exception as exc:
        raise WriteError(f"Failed to export Shapefile: {exc}", path=str(path)) from exc


def resolve_layer_name(output_format: str, path: str | Path, layer: str | None) -> str:
    """Layer name for an output.

    Shapefiles always use the file stem; a requested layer name is ignored
    with a warning. Other formats use the requested name or ``osndetects``.
    """
    if output_format == "shp":
        if layer:
            warnings.warn("output layer name is ignored for Shapefile output.", RuntimeWarning, stacklevel=3)
        return Path(path).stem
    return layer or DEFAULT_LAYER


class GeoDataFrameSink:
    """Feature sink that writes a vector file once the run finalizes.

    Args:
        path: Output file path.
        output_format: One of "shp", "geojson", "gpkg".
        layer: Layer name (GeoPackage); ignored for Shapefile.
        crs: Spatial reference of the added geometries.

    Example::

        sink = GeoDataFrameSink("detections.gpkg", output_format="gpkg", crs=source.spatial_reference())
        sink.add(Point(1, 2), {"label": "ship", "confidence": 0.97})
        sink.finalize()
    """

    def __init__(
        self,
        path: str | Path,
        output_format: str = "shp",
        layer: str | None = None,
        crs: CRS | None = None,
    ) -> None:
        output_format = output_format.lower()
        if output_format not in FORMATS:
            valid = ", ".join(sorted(FORMATS))
            raise ConfigurationError(f"Invalid output format: '{output_format}'. Valid formats: {valid}", field="format")

        self.path = str(path)
        self.output_format = output_format
        self.layer = resolve_layer_name(output_format, path, layer)
        self.crs = crs
        self._geometries: list[Any] = []
        self._attributes: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self.written = False

    def __len__(self) -> int:
        return len(self._geometries)

    def add(self, geometry: Any, attributes: dict[str, Any]) -> None:
        with self._lock:
            self._geometries.append(geometry)
            self._attributes.append(dict(attributes))

    def to_geodataframe(self) -> gpd.GeoDataFrame:
        return build_geodataframe(self._geometries, self._attributes, self.crs)

    def finalize(self) -> None:
        """Write every added feature to ``path``.

        Raises:
            WriteError: If the file cannot be written.
        """
        gdf = self.to_geodataframe()

        if self.output_format == "shp":
            warnings.warn(
                "Shapefile format has legacy limitations: 10-char field names, 2GB size limit. "
                "Consider GeoPackage instead.",
                RuntimeWarning,
                stacklevel=2,
            )
            export_shp(gdf, self.path)
        elif self.output_format == "geojson":
            export_geojson(gdf, self.path)
        else:
            export_gpkg(gdf, self.path, layer=self.layer)

        self.written = True
