"""Command-line front-end: ``openspacenet detect|landcover|help [options]``.

Options can also come from configuration files (``--config``) and from
``OSN_*`` environment variables. Precedence, lowest first: configuration
files in the order given, environment variables, command-line options.

Usage:
    openspacenet detect --image scene.tif --output ships.shp \\
        --confidence 90 --nms 30 --window-size 256 --step-size 64
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Mapping
from typing import Any

from openspacenet._adapter import RFDETRClient
from openspacenet.config import RunConfig, environment_options, load_config_files, parse_size
from openspacenet.core import Orchestrator
from openspacenet.exceptions import ConfigurationError, OpenSpaceNetError
from openspacenet.export import FORMATS, GeoDataFrameSink
from openspacenet.io import ImageSource, LocalImageSource, WebTiledImageSource
from openspacenet.log import TRACE, LoggingContext, parse_level

ACTIONS = ("detect", "landcover", "help")

DEFAULT_NMS_PERCENT = 30.0

# Options that cannot be set from configuration files or the environment
_COMMAND_LINE_ONLY = {"config", "help"}


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser.

    Every option defaults to "not given" so that values coming from
    configuration files and the environment can be layered underneath.
    """
    parser = argparse.ArgumentParser(
        prog="openspacenet",
        description="Run a detection model over a geospatial image using a sliding window.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        argument_default=argparse.SUPPRESS,
    )
    parser.add_argument(
        "action",
        nargs="?",
        choices=ACTIONS,
        default=None,
        help="detect (default), landcover, or help",
    )

    inputs = parser.add_argument_group("input")
    inputs.add_argument("--image", type=str, help="Local raster, COG URL or S3 URI")
    inputs.add_argument(
        "--tile-url",
        type=str,
        help="Tile service URL template with {z}, {x} and {y} placeholders",
    )
    inputs.add_argument("--zoom", type=int, help="Tile zoom level (default: 18)")
    inputs.add_argument(
        "--num-downloads",
        type=int,
        help="Maximum number of concurrent tile downloads (default: 10)",
    )
    inputs.add_argument(
        "--bbox",
        type=float,
        nargs=4,
        metavar=("WEST", "SOUTH", "EAST", "NORTH"),
        help="Region of interest in WGS84 degrees; required for tile services",
    )

    outputs = parser.add_argument_group("output")
    outputs.add_argument("--format", choices=sorted(FORMATS), help="Output format (default: shp)")
    outputs.add_argument("--output", type=str, help="Output file path")
    outputs.add_argument(
        "--output-layer",
        type=str,
        help="Layer name (default: osndetects); ignored for Shapefile output",
    )
    outputs.add_argument("--type", choices=("polygon", "point"), help="Output geometry type (default: polygon)")
    outputs.add_argument(
        "--producer-info",
        action="store_true",
        help="Add user name, application name and version to every feature",
    )

    processing = parser.add_argument_group("processing")
    processing.add_argument("--cpu", action="store_true", help="Run inference on the CPU")
    processing.add_argument(
        "--max-utilization",
        type=float,
        help="Accelerator budget in percent, 5 to 100 (default: 95)",
    )
    processing.add_argument("--serial", action="store_true", help="Process one window at a time")
    processing.add_argument("--no-progress", action="store_true", help="Hide the progress bar")

    detection = parser.add_argument_group("detection")
    detection.add_argument("--model", type=str, help="Path to custom model weights")
    detection.add_argument(
        "--model-size",
        choices=sorted(RFDETRClient.VARIANTS),
        help="Model variant (default: medium)",
    )
    detection.add_argument(
        "--window-size",
        type=int,
        nargs="+",
        metavar="SIZE",
        help="Window size, one or two values (default: the model's input size)",
    )
    detection.add_argument(
        "--step-size",
        type=int,
        nargs="+",
        metavar="SIZE",
        help="Sliding step, one or two values (default: log2 of the window size)",
    )
    detection.add_argument(
        "--confidence",
        type=float,
        help="Minimum confidence in percent (default: 95)",
    )
    detection.add_argument("--pyramid", action="store_true", help="Also scan at coarser scales")
    detection.add_argument(
        "--nms",
        type=float,
        nargs="?",
        const=DEFAULT_NMS_PERCENT,
        metavar="PERCENT",
        help=f"Non-maximum suppression with the given overlap percent (default: {DEFAULT_NMS_PERCENT:g})",
    )

    logging_group = parser.add_argument_group("logging")
    logging_group.add_argument(
        "--log",
        nargs="+",
        metavar="[LEVEL] PATH",
        help="Write a log file; LEVEL is trace, debug, info, warning, error or fatal (default: debug)",
    )
    logging_group.add_argument("--quiet", action="store_true", help="Suppress console output")
    logging_group.add_argument("--debug", action="store_true", help="Print debug messages")
    logging_group.add_argument("--trace", action="store_true", help="Print per-window trace messages")
    logging_group.add_argument(
        "--config",
        type=str,
        nargs="+",
        metavar="PATH",
        help="Configuration files of 'option = value' lines; later files take precedence",
    )
    return parser


# ---------------------------------------------------------------------------
# Option layering
# ---------------------------------------------------------------------------


def _option_names(parser: argparse.ArgumentParser) -> dict[str, argparse.Action]:
    names = {}
    for action in parser._actions:
        for option in action.option_strings:
            if option.startswith("--"):
                names[option[2:]] = action
    return names


def _splits(action: argparse.Action) -> bool:
    return action.nargs == "+" or (isinstance(action.nargs, int) and action.nargs > 1)


def _tokens(
    values: Mapping[str, str],
    parser: argparse.ArgumentParser,
    origin: str,
    ignore_unknown: bool = False,
) -> list[str]:
    """Turn ``{"window-size": "256 128"}`` into ``["--window-size", "256", "128"]``.

    Only multi-value options are split on whitespace and commas; any other
    value, such as a path with spaces, stays a single token. Unknown names
    raise ConfigurationError unless ``ignore_unknown`` is set.
    """
    known = _option_names(parser)
    tokens: list[str] = []
    for name, value in values.items():
        if name == "action":
            tokens.append(value)
            continue
        if name in _COMMAND_LINE_ONLY:
            raise ConfigurationError(f"Option '{name}' is only accepted on the command line", field=name)
        if name not in known:
            if ignore_unknown:
                continue
            raise ConfigurationError(f"Unknown option '{name}' in {origin}", field=name)

        action = known[name]
        if action.nargs == 0:
            if value.lower() in ("", "1", "true", "yes", "on"):
                tokens.append(f"--{name}")
            elif value.lower() not in ("0", "false", "no", "off"):
                raise ConfigurationError(f"Invalid value for flag '{name}' in {origin}: {value!r}", field=name)
            continue

        if _splits(action):
            tokens.append(f"--{name}")
            tokens.extend(value.replace(",", " ").split())
        elif value == "" and action.nargs == "?":
            tokens.append(f"--{name}")
        else:
            tokens.append(f"--{name}={value}")
    return tokens


def _parse_tokens(parser: argparse.ArgumentParser, tokens: list[str], origin: str) -> dict[str, Any]:
    if not tokens:
        return {}
    namespace, unknown = parser.parse_known_args(tokens)
    if unknown:
        raise ConfigurationError(f"Cannot parse options from {origin}: {' '.join(unknown)}")
    return {key: value for key, value in vars(namespace).items() if value is not None}


def resolve_options(
    argv: list[str] | None = None,
    environ: Mapping[str, str] | None = None,
    parser: argparse.ArgumentParser | None = None,
) -> dict[str, Any]:
    """Merge configuration files, environment and command line into one dict.

    Args:
        argv: Argument list (defaults to sys.argv[1:]).
        environ: Environment mapping (defaults to os.environ).
        parser: Parser to use; ``build_parser()`` if None.

    Returns:
        Option name (with underscores) to value, for every option given
        anywhere.
    """
    parser = parser or build_parser()
    cli = vars(parser.parse_args(argv))

    merged: dict[str, Any] = {}
    if cli.get("config"):
        file_values = load_config_files(cli["config"])
        merged.update(_parse_tokens(parser, _tokens(file_values, parser, "configuration files"), "configuration files"))

    env = environment_options(environ)
    env_tokens = _tokens(env, parser, "the environment", ignore_unknown=True)
    merged.update(_parse_tokens(parser, env_tokens, "the environment"))

    merged.update({key: value for key, value in cli.items() if value is not None})
    return merged


# ---------------------------------------------------------------------------
# Building the run
# ---------------------------------------------------------------------------


def config_from_options(options: Mapping[str, Any]) -> RunConfig:
    """Translate merged command-line options into a validated RunConfig."""
    values: dict[str, Any] = {
        "bbox": tuple(options["bbox"]) if "bbox" in options else None,
        "window_size": parse_size(options["window_size"]) if "window_size" in options else None,
        "step_size": parse_size(options["step_size"]) if "step_size" in options else None,
        "pyramid": options.get("pyramid"),
        "concurrent": not options.get("serial", False),
        "max_utilization": options.get("max_utilization"),
        "max_downloads": options.get("num_downloads"),
        "geometry_type": options.get("type"),
        "producer_info": options.get("producer_info"),
        "mode": options.get("action") or "detect",
    }
    if "confidence" in options:
        values["confidence"] = options["confidence"] / 100.0
    if options.get("nms") is not None:
        values["nms"] = True
        values["overlap"] = options["nms"] / 100.0
    return RunConfig.from_mapping(values)


def logging_context_from_options(options: Mapping[str, Any]) -> LoggingContext:
    """Console and file logging as requested by --quiet/--debug/--trace/--log."""
    if options.get("trace"):
        console_level = TRACE
    elif options.get("debug"):
        console_level = logging.DEBUG
    else:
        console_level = logging.INFO

    log_file = None
    file_level = logging.DEBUG
    log_args = options.get("log")
    if log_args:
        if len(log_args) == 1:
            log_file = log_args[0]
        elif len(log_args) == 2:
            file_level = parse_level(log_args[0])
            log_file = log_args[1]
        else:
            raise ConfigurationError("--log takes an optional level and a path", field="log")

    return LoggingContext(
        console_level=console_level,
        quiet=bool(options.get("quiet")),
        log_file=log_file,
        file_level=file_level,
    )


def source_from_options(options: Mapping[str, Any], config: RunConfig) -> ImageSource:
    """The image source selected by --image or --tile-url."""
    image = options.get("image")
    tile_url = options.get("tile_url")

    if image and tile_url:
        raise ConfigurationError("Use either --image or --tile-url, not both.", field="image")
    if image:
        return LocalImageSource(image)
    if tile_url:
        if config.bbox is None:
            raise ConfigurationError("--bbox is required when reading from a tile service.", field="bbox")
        return WebTiledImageSource(
            tile_url,
            config.bbox,
            zoom=options.get("zoom", 18),
            max_downloads=config.max_downloads,
        )
    raise ConfigurationError("No input image. Use --image or --tile-url.", field="image")


def client_from_options(options: Mapping[str, Any]) -> RFDETRClient:
    return RFDETRClient(
        model_size=options.get("model_size", "medium"),
        device="cpu" if options.get("cpu") else None,
        pretrain_weights=options.get("model"),
    )


def run_from_options(options: Mapping[str, Any], log: LoggingContext) -> int:
    """Execute a detect or landcover run. Returns the number of features written."""
    config = config_from_options(options)

    output = options.get("output")
    if not output:
        raise ConfigurationError("No output path. Use --output.", field="output")

    source = source_from_options(options, config)
    client = client_from_options(options)

    with source:
        sink = GeoDataFrameSink(
            output,
            output_format=options.get("format", "shp"),
            layer=options.get("output_layer"),
            crs=source.spatial_reference(),
        )
        orchestrator = Orchestrator(
            config,
            source,
            client,
            sink,
            log=log,
            show_progress=not (options.get("no_progress") or options.get("quiet")),
        )
        collection = orchestrator.run()

    return len(collection)


def main(argv: list[str] | None = None, environ: Mapping[str, str] | None = None) -> int:
    """Console entry point. Returns the process exit code."""
    parser = build_parser()

    try:
        options = resolve_options(argv, environ, parser)
        if options.get("action") == "help":
            parser.print_help()
            return 0
        log = logging_context_from_options(options)
        log.open()
    except OpenSpaceNetError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    try:
        count = run_from_options(options, log)
        log.logger.info("%d features written to %s", count, options["output"])
    except OpenSpaceNetError as exc:
        log.logger.error("%s", exc)
        log.logger.debug("Run failed", exc_info=exc)
        return 1
    finally:
        log.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
