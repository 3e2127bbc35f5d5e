"""
tests/test_cli.py

Tests for the command line entry point's offline subcommands.
"""

import json

import pytest
from unittest.mock import Mock

from baseflip.cli import build_elimination_bot, main


ADDR = "0x" + "ab" * 20


@pytest.fixture
def config(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"streak_db": str(tmp_path / "streaks.json")}))
    return str(path)


def test_streak_record_and_show(config, capsys):
    main(["--config", config, "streak", "record", "--address", ADDR, "--round", "1", "--win"])
    recorded = json.loads(capsys.readouterr().out)
    assert recorded["currentStreak"] == 1

    main(["--config", config, "streak", "show", "--address", ADDR])
    shown = json.loads(capsys.readouterr().out)
    assert shown["lastRoundId"] == 1


def test_streak_protect(config, capsys):
    main(["--config", config, "streak", "record", "--address", ADDR, "--round", "1", "--win"])
    main(["--config", config, "streak", "record", "--address", ADDR, "--round", "2"])
    capsys.readouterr()

    main(["--config", config, "streak", "protect", "--address", ADDR, "--round", "2"])
    assert json.loads(capsys.readouterr().out) == {"success": True}


def test_round_required_for_record(config):
    with pytest.raises(SystemExit):
        main(["--config", config, "streak", "record", "--address", ADDR])


def test_sync_events_requires_db(config):
    with pytest.raises(ValueError):
        main(["--config", config, "sync-events"])


class TestBuildEliminationBot:
    base = {"cashout_or_die_address": "0x" + "12" * 20, "private_key": "0x" + "01" * 32}

    def test_min_players_from_config(self):
        ctl = build_elimination_bot(dict(self.base, min_players=3, poll_interval=2), Mock())
        assert ctl.bot.min_players == 3
        assert ctl.interval == 2.0

    @pytest.mark.parametrize("min_players", [0, -1])
    def test_min_players_must_be_positive(self, min_players):
        with pytest.raises(ValueError):
            build_elimination_bot(dict(self.base, min_players=min_players), Mock())
