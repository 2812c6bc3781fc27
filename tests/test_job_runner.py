import json

from obtrader.config import MARKETS, BotConfig
from obtrader.errors import DataUnavailable
from obtrader.execution import SimulatedExchange
from obtrader.jobs import JobOutcome, run_job
from obtrader.notify import LogNotifier
from obtrader.services import Services
from obtrader.storage import FileStore


def _services(tmp_path) -> Services:
    return Services(
        config=BotConfig(data_dir=tmp_path),
        store=FileStore(tmp_path),
        exchange=SimulatedExchange(MARKETS),
        candles=None,
        notifier=LogNotifier(),
    )


def _ok(services):
    return JobOutcome(job="demo", success=True, action="done")


def test_outcome_is_journaled(tmp_path):
    outcome = run_job("demo", _services(tmp_path), _ok)
    assert outcome.action == "done"
    lines = (tmp_path / "job_runs.jsonl").read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[-1])["action"] == "done"


def test_bot_errors_become_failed_outcomes(tmp_path):
    def _fails(services):
        raise DataUnavailable("no candles", details={"timeframe": "4h"})

    outcome = run_job("demo", _services(tmp_path), _fails)
    assert outcome.success is False
    assert outcome.reason == "DataUnavailable"
    assert outcome.details == {"timeframe": "4h"}


def test_unwritable_journal_still_returns_outcome(tmp_path):
    (tmp_path / "job_runs.jsonl").mkdir()
    outcome = run_job("demo", _services(tmp_path), _ok)
    assert outcome.success is True
    assert outcome.action == "done"
