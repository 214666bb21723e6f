"""Tests for the command-line front-end."""

from __future__ import annotations

import logging

import pytest

from openspacenet import cli
from openspacenet.exceptions import ConfigurationError
from openspacenet.io import LocalImageSource, WebTiledImageSource
from openspacenet.log import TRACE


class TestParser:
    """Test argument parsing."""

    def test_only_given_options_present(self):
        args = vars(cli.build_parser().parse_args(["detect", "--image", "a.tif"]))
        assert args == {"action": "detect", "image": "a.tif"}

    def test_action_optional(self):
        args = vars(cli.build_parser().parse_args(["--image", "a.tif"]))
        assert args["action"] is None

    def test_sizes_take_one_or_two_values(self):
        args = cli.build_parser().parse_args(["--window-size", "256", "128", "--step-size", "32"])
        assert args.window_size == [256, 128]
        assert args.step_size == [32]

    def test_nms_default_percent(self):
        assert cli.build_parser().parse_args(["--nms"]).nms == 30.0
        assert cli.build_parser().parse_args(["--nms", "45"]).nms == 45.0

    def test_bbox_negative_values(self):
        args = cli.build_parser().parse_args(["--bbox", "-81.1", "36.0", "-80.9", "36.2"])
        assert args.bbox == [-81.1, 36.0, -80.9, 36.2]

    def test_invalid_action(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["segment"])


class TestResolveOptions:
    """Test precedence of files, environment and command line."""

    def test_precedence(self, tmp_path):
        first = tmp_path / "a.cfg"
        second = tmp_path / "b.cfg"
        first.write_text("confidence = 50\nformat = gpkg\nzoom = 15\n")
        second.write_text("confidence = 60\nnum-downloads = 4\n")

        options = cli.resolve_options(
            ["--config", str(first), str(second), "--zoom", "17"],
            environ={"OSN_NUM_DOWNLOADS": "8"},
        )

        assert options["confidence"] == 60.0
        assert options["format"] == "gpkg"
        assert options["num_downloads"] == 8
        assert options["zoom"] == 17

    def test_flags_from_file(self, tmp_path):
        path = tmp_path / "run.cfg"
        path.write_text("pyramid\nproducer-info = true\nserial = false\nnms\n")

        options = cli.resolve_options(["--config", str(path)], environ={})
        assert options["pyramid"] is True
        assert options["producer_info"] is True
        assert "serial" not in options
        assert options["nms"] == 30.0

    def test_multi_value_options_from_environment(self):
        options = cli.resolve_options([], environ={"OSN_WINDOW_SIZE": "256 128", "OSN_BBOX": "-1,-1,1,1"})
        assert options["window_size"] == [256, 128]
        assert options["bbox"] == [-1.0, -1.0, 1.0, 1.0]

    def test_action_from_environment(self):
        assert cli.resolve_options([], environ={"OSN_ACTION": "landcover"})["action"] == "landcover"
        assert cli.resolve_options(["detect"], environ={"OSN_ACTION": "landcover"})["action"] == "detect"

    def test_unknown_option_in_file(self, tmp_path):
        path = tmp_path / "run.cfg"
        path.write_text("colour = red\n")
        with pytest.raises(ConfigurationError):
            cli.resolve_options(["--config", str(path)], environ={})

    def test_config_not_allowed_in_environment(self):
        with pytest.raises(ConfigurationError):
            cli.resolve_options([], environ={"OSN_CONFIG": "other.cfg"})

    def test_invalid_flag_value(self):
        with pytest.raises(ConfigurationError):
            cli.resolve_options([], environ={"OSN_PYRAMID": "maybe"})

    def test_paths_with_spaces_and_commas_kept_whole(self, tmp_path):
        path = tmp_path / "run.cfg"
        path.write_text("output = /data/my results/ships.shp\n")

        options = cli.resolve_options(
            ["detect", "--config", str(path)],
            environ={"OSN_IMAGE": "/data/scene,v2.tif", "OSN_TILE_URL": "https://t.example.com/{z}/{x}/{y}.png?a=1,2"},
        )

        assert options["action"] == "detect"
        assert options["output"] == "/data/my results/ships.shp"
        assert options["image"] == "/data/scene,v2.tif"
        assert options["tile_url"] == "https://t.example.com/{z}/{x}/{y}.png?a=1,2"

    def test_value_starting_with_dash(self):
        options = cli.resolve_options([], environ={"OSN_OUTPUT_LAYER": "-ships"})
        assert options["output_layer"] == "-ships"

    def test_nms_percent_from_environment(self):
        assert cli.resolve_options([], environ={"OSN_NMS": "45"})["nms"] == 45.0

    def test_unrelated_environment_variables_ignored(self):
        options = cli.resolve_options(["detect"], environ={"OSN_HOME": "/opt/osn", "OSN_ZOOM": "16"})
        assert options == {"action": "detect", "zoom": 16}


class TestConfigFromOptions:
    """Test translation of options into a RunConfig."""

    def test_defaults(self):
        config = cli.config_from_options({})
        assert config.confidence == 0.95
        assert config.nms is False
        assert config.concurrent is True
        assert config.mode == "detect"

    def test_percentages_become_fractions(self):
        config = cli.config_from_options({"confidence": 90.0, "nms": 45.0})
        assert config.confidence == pytest.approx(0.9)
        assert config.nms is True
        assert config.overlap == pytest.approx(0.45)

    def test_mapped_options(self):
        config = cli.config_from_options(
            {
                "window_size": [256, 128],
                "step_size": [16],
                "serial": True,
                "type": "point",
                "num_downloads": 3,
                "max_utilization": 50.0,
                "producer_info": True,
                "pyramid": True,
                "bbox": [-1.0, -1.0, 1.0, 1.0],
            }
        )
        assert config.window_size == (256, 128)
        assert config.step_size == (16, 16)
        assert config.concurrent is False
        assert config.geometry_type == "point"
        assert config.max_downloads == 3
        assert config.max_utilization == 50.0
        assert config.producer_info is True
        assert config.pyramid is True
        assert config.bbox == (-1.0, -1.0, 1.0, 1.0)

    def test_landcover_action(self):
        assert cli.config_from_options({"action": "landcover"}).mode == "landcover"

    def test_invalid_confidence(self):
        with pytest.raises(ConfigurationError):
            cli.config_from_options({"confidence": 150.0})


class TestLoggingOptions:
    """Test logging context construction."""

    def test_default_console_level(self):
        assert cli.logging_context_from_options({}).console_level == logging.INFO

    def test_debug_and_trace(self):
        assert cli.logging_context_from_options({"debug": True}).console_level == logging.DEBUG
        assert cli.logging_context_from_options({"trace": True, "debug": True}).console_level == TRACE

    def test_log_path_only(self, tmp_path):
        context = cli.logging_context_from_options({"log": [str(tmp_path / "run.log")]})
        assert context.log_file == tmp_path / "run.log"
        assert context.file_level == logging.DEBUG

    def test_log_level_and_path(self, tmp_path):
        context = cli.logging_context_from_options({"log": ["warning", str(tmp_path / "run.log")], "quiet": True})
        assert context.file_level == logging.WARNING
        assert context.quiet is True

    def test_log_bad_arity(self):
        with pytest.raises(ConfigurationError):
            cli.logging_context_from_options({"log": ["info", "a.log", "b.log"]})


class TestSourceFromOptions:
    """Test image source selection."""

    def test_local_image(self):
        source = cli.source_from_options({"image": "scene.tif"}, cli.config_from_options({}))
        assert isinstance(source, LocalImageSource)

    def test_tile_service(self):
        options = {"tile_url": "https://t.example.com/{z}/{x}/{y}.png", "bbox": [-1, -1, 1, 1], "zoom": 12}
        source = cli.source_from_options(options, cli.config_from_options(options))

        assert isinstance(source, WebTiledImageSource)
        assert source.zoom == 12
        assert source.max_concurrency == 10

    def test_tile_service_needs_bbox(self):
        options = {"tile_url": "https://t.example.com/{z}/{x}/{y}.png"}
        with pytest.raises(ConfigurationError):
            cli.source_from_options(options, cli.config_from_options(options))

    def test_both_inputs(self):
        options = {"image": "a.tif", "tile_url": "https://t.example.com/{z}/{x}/{y}.png"}
        with pytest.raises(ConfigurationError):
            cli.source_from_options(options, cli.config_from_options({}))

    def test_no_input(self):
        with pytest.raises(ConfigurationError):
            cli.source_from_options({}, cli.config_from_options({}))


class TestMain:
    """Test the console entry point."""

    def test_help(self, capsys):
        assert cli.main(["help"], environ={}) == 0
        assert "usage: openspacenet" in capsys.readouterr().out

    def test_missing_input_fails(self, capsys, tmp_path):
        code = cli.main(["detect", "--output", str(tmp_path / "out.shp"), "--no-progress"], environ={})
        assert code == 1
        assert "No input image" in capsys.readouterr().err

    def test_missing_output_fails(self, capsys):
        assert cli.main(["detect", "--image", "scene.tif"], environ={}) == 1
        assert "No output path" in capsys.readouterr().err

    def test_bad_environment_fails_before_logging(self, capsys):
        assert cli.main(["detect"], environ={"OSN_PYRAMID": "maybe"}) == 1
        assert "ERROR: Invalid value for flag 'pyramid'" in capsys.readouterr().err

    def test_missing_image_file(self, capsys, tmp_path):
        code = cli.main(
            ["--image", str(tmp_path / "nope.tif"), "--output", str(tmp_path / "out.shp"), "--cpu"],
            environ={},
        )
        assert code == 1
        assert "Raster file not found" in capsys.readouterr().err

    @pytest.mark.integration
    def test_detect_writes_geojson(self, synthetic_geotiff, tmp_path, monkeypatch, make_client):
        import geopandas as gpd

        created = {}

        def fake_client(**kwargs):
            created.update(kwargs)
            return make_client(lambda x, y: [("field", 0.99)], window_size=(128, 128))

        fake_client.VARIANTS = cli.RFDETRClient.VARIANTS
        monkeypatch.setattr(cli, "RFDETRClient", fake_client)
        output = tmp_path / "fields.geojson"

        code = cli.main(
            [
                "detect",
                "--image",
                str(synthetic_geotiff),
                "--output",
                str(output),
                "--format",
                "geojson",
                "--step-size",
                "128",
                "--cpu",
                "--serial",
                "--quiet",
            ],
            environ={},
        )

        assert code == 0
        assert created["device"] == "cpu"
        gdf = gpd.read_file(output)
        assert len(gdf) == 16
        assert set(gdf["label"]) == {"field"}
        assert gdf.crs.to_epsg() == 4326

    @pytest.mark.integration
    def test_log_file_written(self, synthetic_geotiff, tmp_path, monkeypatch, make_client):
        fake_client = lambda **kwargs: make_client(lambda x, y: [("field", 0.99)], window_size=(256, 256))  # noqa: E731
        fake_client.VARIANTS = cli.RFDETRClient.VARIANTS
        monkeypatch.setattr(cli, "RFDETRClient", fake_client)
        log_path = tmp_path / "run.log"

        code = cli.main(
            [
                "--image",
                str(synthetic_geotiff),
                "--output",
                str(tmp_path / "out.gpkg"),
                "--format",
                "gpkg",
                "--step-size",
                "256",
                "--log",
                "debug",
                str(log_path),
                "--quiet",
            ],
            environ={},
        )

        assert code == 0
        text = log_path.read_text()
        assert "Window size: 256x256" in text
        assert "4 features written" in text
