"""
Tests for the CLI parser and the offline commands.
"""

from unittest.mock import MagicMock, patch

import pytest

from chatrelay import cli


@pytest.mark.parametrize("argv,func", [
    (["dial"], cli.cmd_dial),
    (["serve", "--port", "9000"], cli.cmd_dial),
    (["count", "hello"], cli.cmd_count),
    (["tokens", "hello"], cli.cmd_count),
    (["stop", "sess-1"], cli.cmd_stop),
    (["cancel", "sess-1"], cli.cmd_stop),
])
def test_aliases(argv, func):
    args = cli.build_parser().parse_args(argv)
    assert args.func is func


def test_count_prints_tokens(capsys):
    accountant = MagicMock()
    accountant.count.return_value = 3
    with patch("chatrelay.tokens.TokenAccountant", return_value=accountant):
        cli.main(["count", "a", "b", "c", "--model", "gpt-4"])
    accountant.count.assert_called_once_with("a b c", "gpt-4")
    assert "3 tokens" in capsys.readouterr().out


def test_stop_calls_endpoint(capsys):
    resp = MagicMock(status_code=200)
    with patch("httpx.get", return_value=resp) as get:
        cli.main(["stop", "sess-1", "--url", "http://relay:8000"])
    get.assert_called_once_with(
        "http://relay:8000/api/chat/stop", params={"session_id": "sess-1"}, timeout=5,
    )
    assert "sess-1" in capsys.readouterr().out
