"""Tests for the command-line entry point."""

import json

import pytest

from pnode_monitor.__main__ import build_parser, main
from pnode_monitor.config import Settings, clear_settings_cache


@pytest.fixture(autouse=True)
def _fresh_settings():
    clear_settings_cache()
    yield
    clear_settings_cache()


def test_parser_requires_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_peers_arguments() -> None:
    args = build_parser().parse_args(["peers", "--limit", "10", "--seed", "http://seed-a.test:6000"])
    assert args.limit == 10
    assert args.offset == 0
    assert args.seed == "http://seed-a.test:6000"


def test_status_on_empty_store(settings: Settings, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["init-db"]) == 0
    capsys.readouterr()

    assert main(["status"]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["is_running"] is False
    assert status["last_run_started_at"] is None


def test_peers_and_snapshot_on_empty_store(settings: Settings, capsys: pytest.CaptureFixture[str]) -> None:
    main(["init-db"])
    capsys.readouterr()

    assert main(["peers"]) == 0
    page = json.loads(capsys.readouterr().out)
    assert page["total"] == 0
    assert page["pnodes"] == []

    assert main(["snapshot"]) == 0
    assert json.loads(capsys.readouterr().out) == {"snapshot": None}


def test_unknown_peer_exits_nonzero(settings: Settings) -> None:
    main(["init-db"])
    assert main(["peer", "PubUnknown"]) == 1
