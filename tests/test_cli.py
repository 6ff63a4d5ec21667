"""
Tests for the command line entry point.

Tests cover:
- Flag to settings mapping
- Listen address parsing
- Exit codes for --version, fatal preconditions and successful runs
"""

import argparse

import pytest

from mdmbridge import __version__
from mdmbridge.cli import build_parser, main, parse_listen, settings_from_args
from mdmbridge.config import Settings


@pytest.fixture(autouse=True)
def no_logging_setup(monkeypatch):
    """Keep pytest's log capture in place."""
    monkeypatch.setattr("mdmbridge.cli.setup_logging", lambda *args, **kwargs: None)


class TestParseListen:
    def test_port_only(self):
        assert parse_listen(":9001") == ("0.0.0.0", 9001)

    def test_host_and_port(self):
        assert parse_listen("127.0.0.1:8080") == ("127.0.0.1", 8080)

    @pytest.mark.parametrize("value", ["9001", "host:port"])
    def test_invalid(self, value):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_listen(value)


class TestSettingsFromArgs:
    def test_migrate_flags(self):
        args = build_parser().parse_args([
            "migrate",
            "--db", "/tmp/micromdm.db",
            "--url", "https://nano.example.com/migration",
            "--key", "k",
            "--udids", "A,B",
            "--days", "30",
            "--track-path", "/tmp/track.db",
        ])

        settings = settings_from_args(args, Settings())

        assert settings.SOURCE_DB_PATH == "/tmp/micromdm.db"
        assert settings.REMOTE_URL == "https://nano.example.com/migration"
        assert settings.REMOTE_API_KEY == "k"
        assert settings.MIGRATE_UDIDS == "A,B"
        assert settings.MIGRATE_DAYS == 30
        assert settings.TRACK_PATH == "/tmp/track.db"
        assert settings.can_send is True

    def test_unset_flags_keep_base(self):
        base = Settings(SOURCE_DB_PATH="/from/env.db", MIGRATE_DAYS=7)
        args = build_parser().parse_args(["migrate"])

        settings = settings_from_args(args, base)

        assert settings.SOURCE_DB_PATH == "/from/env.db"
        assert settings.MIGRATE_DAYS == 7
        assert settings.TRACK_PATH is None

    def test_serve_flags(self):
        args = build_parser().parse_args([
            "serve",
            "--listen", ":9100",
            "--api-key", "micro",
            "--nano-api-key", "nano",
            "--nano-url", "https://nano.example.com/v1/enqueue",
        ])

        settings = settings_from_args(args, Settings())

        assert settings.LISTEN_HOST == "0.0.0.0"
        assert settings.LISTEN_PORT == 9100
        assert settings.PROXY_API_KEY == "micro"
        assert settings.REMOTE_API_KEY == "nano"
        assert settings.COMMAND_URL == "https://nano.example.com/v1/enqueue"


class TestMain:
    def test_version(self, capsys):
        assert main(["--version"]) == 0
        assert capsys.readouterr().out.strip() == __version__

    def test_missing_source_store_exits_1(self, tmp_path):
        assert main(["migrate", "--db", str(tmp_path / "missing.db")]) == 1

    def test_dry_run_exits_0(self, d1_source_db):
        assert main(["migrate", "--db", d1_source_db]) == 0

    def test_serve_without_keys_exits_1(self):
        assert main(["serve", "--api-key", "micro"]) == 1
