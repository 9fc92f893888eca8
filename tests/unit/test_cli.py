"""Tests for the mcp-bridge command line."""

import json

import pytest

from mcp_bridge import cli


class TestParser:
    def test_call_command(self):
        args = cli.build_parser().parse_args(
            ["--config", "servers.json", "call", "twitter", "post_tweet", "--args", '{"text": "hi"}']
        )

        assert args.config == "servers.json"
        assert args.command == "call"
        assert (args.server, args.tool, args.args) == ("twitter", "post_tweet", '{"text": "hi"}')

    def test_serve_defaults(self):
        args = cli.build_parser().parse_args(["serve"])

        assert args.host == "localhost"
        assert args.port == 5859
        assert args.debug is False

    def test_tools_server_filter(self):
        args = cli.build_parser().parse_args(["-d", "tools", "-s", "twitter"])

        assert args.debug is True
        assert args.server == "twitter"


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 2
    assert "usage: mcp-bridge" in capsys.readouterr().out


def test_missing_config_is_reported(tmp_path, monkeypatch, capsys, restore_bridge_logger):
    monkeypatch.chdir(tmp_path)

    code = cli.main(["tools"])

    assert code == 1
    assert "mcp.config.json" in capsys.readouterr().err


def test_bad_call_arguments(tmp_path, capsys, restore_bridge_logger):
    config = tmp_path / "mcp.config.json"
    config.write_text(json.dumps({"mcpServers": {"twitter": {"command": "node", "args": ["x.js"]}}}))

    code = cli.main(["--config", str(config), "call", "twitter", "post_tweet", "--args", "{oops"])

    assert code == 2
    assert "not valid JSON" in capsys.readouterr().err


@pytest.mark.parametrize("raw", ["[1, 2]", '"text"'])
def test_call_arguments_must_be_an_object(tmp_path, capsys, restore_bridge_logger, raw):
    config = tmp_path / "mcp.config.json"
    config.write_text(json.dumps({"mcpServers": {}}))

    code = cli.main(["--config", str(config), "call", "twitter", "post_tweet", "--args", raw])

    assert code == 2
    assert "must be a JSON object" in capsys.readouterr().err
