"""Run configuration, validated once at the boundary.

A RunConfig is built the same way whether its values come from the
command line, a configuration file, environment variables, or a GUI:
through the constructor or ``RunConfig.from_mapping``. Invalid values
raise ConfigurationError before anything is opened or dispatched.
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from openspacenet._typing import GeoBBox, GeometryType, Size
from openspacenet.crs import validate_bbox
from openspacenet.exceptions import ConfigurationError
from openspacenet.features import validate_geometry_type
from openspacenet.tiling import normalize_size, validate_overlap

MODES: tuple[str, ...] = ("detect", "landcover")

ENV_PREFIX = "OSN_"

# Section name used when reading sectionless configuration files
_CONFIG_SECTION = "openspacenet"


@dataclass
class RunConfig:
    """Everything the orchestrator needs to know about a run.

    Attributes:
        bbox: Region of interest (west, south, east, north) in WGS84. The
            whole image when None.
        window_size: Base window (width, height). The inference client's
            native window size when None.
        step_size: Sliding step (x, y). log2 of the window's largest
            dimension when None.
        pyramid: Also scan at progressively coarser scales.
        confidence: Minimum confidence in [0, 1] for a prediction to be kept.
        nms: Run non-maximum suppression over the results.
        overlap: NMS overlap (IoU) threshold in (0, 1].
        concurrent: Dispatch windows to a worker pool instead of serially.
        max_utilization: Accelerator budget in percent, 5 to 100.
        max_downloads: Maximum concurrent tile downloads for web sources.
        geometry_type: "point" (window center) or "polygon" (footprint).
        producer_info: Attach user name, app and version to every feature.
        mode: "detect", or "landcover" for a non-overlapping classification grid.
    """

    bbox: GeoBBox | None = None
    window_size: Size | None = None
    step_size: Size | None = None
    pyramid: bool = False
    confidence: float = 0.95
    nms: bool = False
    overlap: float = 0.30
    concurrent: bool = True
    max_utilization: float = 95.0
    max_downloads: int = 10
    geometry_type: GeometryType = "polygon"
    producer_info: bool = False
    mode: str = "detect"

    def __post_init__(self) -> None:
        if self.bbox is not None:
            self.bbox = validate_bbox(tuple(self.bbox))
        if self.window_size is not None:
            self.window_size = normalize_size(self.window_size, "window_size")
        if self.step_size is not None:
            self.step_size = normalize_size(self.step_size, "step_size")

        if not 0.0 <= self.confidence <= 1.0:
            raise ConfigurationError(f"confidence must be in [0, 1], got {self.confidence}", field="confidence")
        self.overlap = validate_overlap(self.overlap)

        if not 5.0 <= self.max_utilization <= 100.0:
            raise ConfigurationError(
                f"max_utilization must be between 5 and 100 percent, got {self.max_utilization}",
                field="max_utilization",
            )
        if self.max_downloads < 1:
            raise ConfigurationError(
                f"max_downloads must be at least 1, got {self.max_downloads}", field="max_downloads"
            )

        self.geometry_type = validate_geometry_type(self.geometry_type)

        self.mode = self.mode.lower()
        if self.mode not in MODES:
            raise ConfigurationError(f"Invalid mode: '{self.mode}'. Valid modes: {', '.join(MODES)}", field="mode")

        if self.mode == "landcover":
            # Landcover classifies a non-overlapping grid at native scale
            if self.step_size is not None and self.window_size is not None and self.step_size != self.window_size:
                raise ConfigurationError("landcover mode uses step size equal to window size", field="step_size")
            self.pyramid = False
            self.nms = False

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> RunConfig:
        """Build a config from a flat mapping, ignoring None values and unknown keys.

        Keys may use dashes or underscores (``window-size`` or ``window_size``).
        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in values.items():
            name = key.replace("-", "_")
            if name in known and value is not None:
                kwargs[name] = value
        return cls(**kwargs)

    def resolved_window_size(self, client: Any) -> Size:
        """The configured window size, or the inference client's native one."""
        if self.window_size is not None:
            return self.window_size
        native = getattr(client, "window_size", None)
        if native is None:
            raise ConfigurationError(
                "No window size configured and the inference client does not report one.",
                field="window_size",
            )
        return normalize_size(native, "window_size")

    def resolved_step_size(self, window_size: Size) -> Size | None:
        """Step size for the plan; landcover always steps by a full window."""
        if self.mode == "landcover":
            if self.step_size is not None and self.step_size != window_size:
                raise ConfigurationError(
                    f"landcover mode uses step size equal to window size {window_size[0]}x{window_size[1]}",
                    field="step_size",
                )
            return window_size
        return self.step_size


# ---------------------------------------------------------------------------
# Configuration files and environment
# ---------------------------------------------------------------------------


def load_config_files(paths: Iterable[str | Path]) -> dict[str, str]:
    """Read ``key = value`` configuration files; later files override earlier ones.

    Keys are the long option names of the command line (``window-size``,
    ``confidence``, ...). Lines starting with ``#`` or ``;`` are comments.
    A bare key enables a flag.

    Raises:
        ConfigurationError: If a file cannot be read or parsed.
    """
    values: dict[str, str] = {}
    for path in paths:
        parser = configparser.ConfigParser(allow_no_value=True, interpolation=None)
        try:
            text = Path(path).read_text(encoding="utf-8")
            parser.read_string(f"[{_CONFIG_SECTION}]\n{text}", source=str(path))
        except (OSError, configparser.Error) as exc:
            raise ConfigurationError(f"Cannot read configuration file {path}: {exc}", path=str(path)) from exc

        for key, value in parser.items(_CONFIG_SECTION):
            values[key.strip().replace("_", "-")] = "" if value is None else value.strip()
    return values


def environment_options(environ: Mapping[str, str] | None = None, prefix: str = ENV_PREFIX) -> dict[str, str]:
    """Options given as ``OSN_*`` environment variables, keyed by option name.

    ``OSN_WINDOW_SIZE=256`` becomes ``{"window-size": "256"}``.
    """
    environ = os.environ if environ is None else environ
    return {
        key[len(prefix) :].lower().replace("_", "-"): value
        for key, value in environ.items()
        if key.startswith(prefix) and len(key) > len(prefix)
    }


def parse_size(text: str | Sequence[str] | Sequence[int] | int) -> Size:
    """Parse "256", "256 128", or a one/two element sequence into a size."""
    if isinstance(text, str):
        parts = text.replace(",", " ").split()
    elif isinstance(text, int):
        parts = [text]
    else:
        parts = list(text)
    try:
        dims = [int(p) for p in parts]
    except ValueError as exc:
        raise ConfigurationError(f"Invalid size: {text!r}") from exc
    return normalize_size(dims, "size")
