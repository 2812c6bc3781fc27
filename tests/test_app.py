from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from app.main import app, set_services
from obtrader.config import MARKETS, BotConfig
from obtrader.execution import SimulatedExchange
from obtrader.models import ObType
from obtrader.notify import LogNotifier
from obtrader.services import Services
from obtrader.storage import FileStore, OrderBlockRecord

NOW = datetime(2024, 1, 3, 12, 0, tzinfo=timezone.utc)


def _client(tmp_path) -> TestClient:
    set_services(
        Services(
            config=BotConfig(data_dir=tmp_path),
            store=FileStore(tmp_path),
            exchange=SimulatedExchange(MARKETS),
            candles=None,
            notifier=LogNotifier(),
            clock=lambda: NOW,
            sleep=lambda seconds: None,
        )
    )
    return TestClient(app)


def test_unknown_job_is_404(tmp_path):
    client = _client(tmp_path)
    assert client.post("/jobs/nope").status_code == 404
    set_services(None)


def test_monitor_job_via_api(tmp_path):
    client = _client(tmp_path)
    response = client.post("/jobs/monitor")
    assert response.status_code == 200
    body = response.json()
    assert body["accepted"] is True
    assert body["reason"] == "no_positions"
    assert (tmp_path / "job_runs.jsonl").exists()
    set_services(None)


def test_status_and_order_block_listing(tmp_path):
    client = _client(tmp_path)
    store = FileStore(tmp_path)
    store.create(
        OrderBlockRecord(
            symbol="BTCUSDT",
            timeframe="4h",
            type=ObType.BULLISH,
            top=60500.0,
            bottom=60000.0,
            confirmation_time=NOW - timedelta(minutes=5),
            created_at=NOW,
        )
    )

    status = client.get("/status").json()
    assert status["symbol"] == "BTCUSDT"
    assert status["pending_order_blocks"] == 1
    assert status["open_positions"] == []

    listing = client.get("/order-blocks", params={"timeframe": "1d"}).json()
    assert listing["order_blocks"] == []
    listing = client.get("/order-blocks", params={"active": "true"}).json()
    assert listing["order_blocks"][0]["bottom"] == 60000.0
    assert client.get("/positions").json() == {"positions": []}
    set_services(None)
