# Tests for the wallavault command line (__main__.py)
# Created: 2026-10-15

import json
import logging
import re
from unittest.mock import AsyncMock, patch

import pytest

from wallavault.__main__ import COMMANDS, build_parser, main
from wallavault.client.session import ConnectionReport

CONFIGURE_ARGS = [
    "configure",
    "--server-url",
    "https://wallabag.example.com",
    "--client-id",
    "1_abcdefghij",
    "--client-secret",
    "s3cr3t-client-secret",
    "--username",
    "reader",
    "--password",
    "correct horse",
]


@pytest.fixture(autouse=True)
def config_dir(tmp_path, monkeypatch):
    """Point the CLI at a throwaway config dir and restore root logging."""
    monkeypatch.setenv("WALLAVAULT_CONFIG_DIR", str(tmp_path))
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield tmp_path
    root.handlers[:] = handlers
    root.setLevel(level)


class _FakeClient:
    def __init__(self, report):
        self.report = report
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True

    async def test_connection(self):
        return self.report


class TestParser:
    def test_every_command_has_a_subparser(self):
        parser = build_parser()
        for name in COMMANDS:
            extra = ["https://a.example"] if name == "save" else []
            assert parser.parse_args([name, *extra]).command == name

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_save_options(self):
        args = build_parser().parse_args(
            ["save", "https://a.example", "--title", "A", "--tags", "x,y"]
        )
        assert args.url == "https://a.example"
        assert args.title == "A"
        assert args.tags == "x,y"


class TestCommands:
    def test_status_empty(self, capsys):
        assert main(["status"]) == 0
        out = capsys.readouterr().out
        assert "(none stored)" in out
        assert "AES-GCM-256" in out

    def test_configure_then_status_masks_secrets(self, capsys, config_dir):
        assert main(CONFIGURE_ARGS) == 0
        assert "Configuration saved" in capsys.readouterr().out

        assert main(["status"]) == 0
        out = capsys.readouterr().out
        assert "https://wallabag.example.com" in out
        assert "correct horse" not in out
        assert "s3cr3t-client-secret" not in out

        # Secrets never land on disk in the clear
        on_disk = (config_dir / "local.json").read_text()
        assert "correct horse" not in on_disk
        assert "s3cr3t-client-secret" not in on_disk

    def test_configure_rejects_plain_http(self, capsys):
        args = list(CONFIGURE_ARGS)
        args[2] = "http://wallabag.example.com"
        assert main(args) == 1
        assert "error:" in capsys.readouterr().err

    def test_configure_permissive_http(self, capsys, config_dir):
        args = list(CONFIGURE_ARGS)
        args[2] = "http://wallabag.example.com"
        assert main([*args, "--permissive-http"]) == 0
        assert "warning:" in capsys.readouterr().out
        saved = json.loads((config_dir / "settings.json").read_text())
        assert saved["transport_policy"] == "permissive"

    def test_save_not_configured(self, capsys):
        assert main(["save", "https://a.example"]) == 1
        assert "not_configured" in capsys.readouterr().err

    def test_test_without_server_url(self, capsys):
        assert main(["test"]) == 1
        assert "config_error" in capsys.readouterr().err

    def test_test_reports_result(self, capsys):
        main(CONFIGURE_ARGS)
        capsys.readouterr()

        ok = _FakeClient(ConnectionReport(True, "ok", "Connected to wallabag.example.com"))
        with patch("wallavault.__main__.create_client", AsyncMock(return_value=ok)):
            assert main(["test"]) == 0
        assert "Connected" in capsys.readouterr().out
        assert ok.closed

        bad = _FakeClient(ConnectionReport(False, "unreachable", "connection refused"))
        with patch("wallavault.__main__.create_client", AsyncMock(return_value=bad)):
            assert main(["test"]) == 1
        assert "Connection failed (unreachable)" in capsys.readouterr().err

    def test_migrate_nothing_to_do(self, capsys):
        assert main(["migrate"]) == 0
        assert "Nothing to migrate" in capsys.readouterr().out

    def test_reset_requires_force(self, capsys):
        main(CONFIGURE_ARGS)
        assert main(["reset"]) == 1
        assert main(["reset", "--force"]) == 0
        capsys.readouterr()

        main(["status"])
        assert "(none stored)" in capsys.readouterr().out

    def test_rotate_key_keeps_credentials_readable(self, capsys):
        main(CONFIGURE_ARGS)
        assert main(["rotate-key"]) == 0
        capsys.readouterr()

        main(["status"])
        out = capsys.readouterr().out
        assert "reader" in out
        assert re.search(r"configured\s+True", out)
