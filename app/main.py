from typing import Optional

from fastapi import FastAPI, HTTPException

from app.config import LOG_LEVEL
from obtrader.jobs import JOBS, run_job
from obtrader.logging_utils import configure_logging
from obtrader.models import PositionStatus
from obtrader.services import Services, build_services
from obtrader.storage import OrderBlockRecord, PositionRecord

app = FastAPI(title="ob-trader")

_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


def set_services(services: Optional[Services]) -> None:
    global _services
    _services = services


@app.on_event("startup")
def _startup() -> None:
    services = get_services()
    services.store.ensure_dir()
    configure_logging(services.config.data_dir, LOG_LEVEL)


def _response(accepted: bool, reason: str, **extra: object) -> dict[str, object]:
    payload: dict[str, object] = {"ok": True, "accepted": accepted, "reason": reason}
    payload.update(extra)
    return payload


@app.post("/jobs/{name}")
def trigger_job(name: str) -> dict[str, object]:
    job = JOBS.get(name)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Unknown job {name}")
    outcome = run_job(name, get_services(), job)
    return _response(outcome.success, outcome.action, outcome=outcome.to_dict())


@app.get("/status")
def status() -> dict[str, object]:
    services = get_services()
    config = services.config
    protection = services.store.load_protection_state()
    open_positions = services.store.query(
        PositionRecord, where={"symbol": config.symbol, "status": PositionStatus.OPEN}
    )
    active_obs = services.store.query(
        OrderBlockRecord, where={"symbol": config.symbol, "is_active": True, "is_processed": False}
    )
    return {
        "symbol": config.symbol,
        "entry_timeframe": config.entry_timeframe,
        "exchange_mode": config.exchange_mode.value,
        "protection": protection.model_dump(mode="json"),
        "open_positions": [p.model_dump(mode="json") for p in open_positions],
        "pending_order_blocks": len(active_obs),
    }


@app.get("/positions")
def positions(status: Optional[PositionStatus] = None, limit: int = 50) -> dict[str, object]:
    where = {"status": status} if status else None
    rows = get_services().store.query(
        PositionRecord, where=where, order_by="open_time", descending=True, limit=limit
    )
    return {"positions": [p.model_dump(mode="json") for p in rows]}


@app.get("/order-blocks")
def order_blocks(active: Optional[bool] = None, timeframe: Optional[str] = None, limit: int = 50) -> dict[str, object]:
    where: dict[str, object] = {}
    if active is not None:
        where["is_active"] = active
    if timeframe:
        where["timeframe"] = timeframe
    rows = get_services().store.query(
        OrderBlockRecord, where=where, order_by="confirmation_time", descending=True, limit=limit
    )
    return {"order_blocks": [ob.model_dump(mode="json") for ob in rows]}
