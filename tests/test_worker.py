"""Worker CLI one-shot commands."""
import json

import pytest

from trademaster import worker
from trademaster.runtime import build_runtime


@pytest.fixture
def cli(monkeypatch, redis_client):
    monkeypatch.setattr(worker, "setup_logging", lambda level: None)
    monkeypatch.setattr(worker, "build_runtime", lambda cfg: build_runtime(cfg, redis_client=redis_client))
    return worker.main


def test_sweep_command_runs_once_and_prints_result(cli, capsys, make_user, make_trade):
    make_trade(make_user().id)

    assert cli(["sweep", "trade_analysis"]) == 0

    out = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert out["sweep"] == "trade_analysis"
    assert out["found"] == 1
    assert out["queued"] == 1


def test_stats_command_prints_queue_counters(cli, capsys, make_user, make_trade):
    make_trade(make_user().id)
    cli(["sweep", "trade_analysis"])
    capsys.readouterr()

    assert cli(["stats"]) == 0

    out = json.loads(capsys.readouterr().out)
    assert out["counts"]["waiting"] == 1
    assert out["paused"] is False
    assert out["workers"] == {}


def test_unknown_sweep_name_is_a_usage_error(cli):
    with pytest.raises(SystemExit) as exc:
        cli(["sweep", "nope"])
    assert exc.value.code == 2
