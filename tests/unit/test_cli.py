"""Tests for the command line entry point."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from iap_license.__main__ import build_parser, main

CONFIG_PATH = str(Path(__file__).resolve().parents[2] / "config" / "license.yaml")


class TestParser:
    def test_defaults(self, monkeypatch):
        for name in ("CONFIG_PATH", "HOST", "PORT", "LOG_LEVEL", "LOG_FORMAT", "RELOAD"):
            monkeypatch.delenv(name, raising=False)

        args = build_parser().parse_args([])

        assert args.config == "config/license.yaml"
        assert args.port == 8080
        assert args.log_level == "INFO"
        assert args.log_format == "json"
        assert args.reload is False

    def test_environment_defaults(self, monkeypatch):
        monkeypatch.setenv("PORT", "9090")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        args = build_parser().parse_args([])

        assert args.port == 9090
        assert args.log_level == "DEBUG"


class TestMain:
    @pytest.fixture(autouse=True)
    def isolated_environ(self, monkeypatch):
        monkeypatch.setattr(os, "environ", os.environ.copy())

    def test_check_config_does_not_start_server(self):
        with patch("iap_license.__main__.uvicorn.run") as run:
            main(["--config", CONFIG_PATH, "--check-config"])
        run.assert_not_called()

    def test_invalid_config_exits(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(tmp_path / "missing.yaml")])
        assert exc_info.value.code == 2

    def test_starts_app_factory(self):
        with patch("iap_license.__main__.uvicorn.run") as run:
            main(["--config", CONFIG_PATH, "--port", "9000", "--log-format", "console"])

        assert run.call_args.args == ("iap_license.main:create_app",)
        assert run.call_args.kwargs["factory"] is True
        assert run.call_args.kwargs["port"] == 9000
        assert run.call_args.kwargs["access_log"] is False
        assert os.environ["CONFIG_PATH"] == CONFIG_PATH
        assert os.environ["LOG_FORMAT"] == "console"
