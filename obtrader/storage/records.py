from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from obtrader.models import (
    Confidence,
    ObType,
    PositionStatus,
    ProcessedReason,
    Side,
    TradeEventType,
)


class OrderBlockRecord(BaseModel):
    id: str = ""
    symbol: str
    timeframe: str
    type: ObType
    top: float
    bottom: float
    confirmation_time: datetime
    ob_candle_time: Optional[datetime] = None
    created_at: datetime
    breakout_price: Optional[float] = None
    confirmation_close: Optional[float] = None
    confidence: Confidence = Confidence.LOW
    volume: float = 0.0
    is_active: bool = True
    is_broken: bool = False
    is_processed: bool = False
    processed_reason: Optional[ProcessedReason] = None
    processed_at: Optional[datetime] = None
    processed_price: Optional[float] = None
    broken_at: Optional[datetime] = None
    broken_price: Optional[float] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def mark_processed(self, reason: ProcessedReason, price: Optional[float], now: datetime) -> bool:
        if self.is_processed:
            return False
        self.is_processed = True
        self.processed_reason = reason
        self.processed_at = now
        self.processed_price = price
        return True

    def mark_broken(self, price: float, now: datetime) -> bool:
        if self.is_broken:
            return False
        self.is_active = False
        self.is_broken = True
        self.broken_at = now
        self.broken_price = price
        return True


class Addition(BaseModel):
    price: float
    size: float
    fee: float = 0.0
    executed_at: datetime
    order_strategy: str
    related_ob: str
    stop_loss_order_id: Optional[str] = None


class PositionRecord(BaseModel):
    id: str = ""
    symbol: str
    side: Side
    status: PositionStatus = PositionStatus.PENDING
    entry_price: float
    avg_entry_price: float
    size: float
    stop_loss: float
    stop_loss_order_id: Optional[str] = None
    order_id: Optional[str] = None
    liquidation_price: float = 0.0
    leverage: int
    margin: float = 0.0
    planned_risk: float = 0.0
    addition_count: int = 0
    additions: list[Addition] = Field(default_factory=list)
    related_ob: str
    ob_confidence: Confidence = Confidence.LOW
    last_ob_bottom: float
    last_ob_top: float
    breakout_price: Optional[float] = None
    order_strategy: str = "market"
    limit_price: Optional[float] = None
    open_time: datetime
    executed_at: Optional[datetime] = None
    exit_time: Optional[datetime] = None
    exit_price: Optional[float] = None
    exit_reason: Optional[str] = None
    pnl: Optional[float] = None
    entry_fee: float = 0.0
    exit_fee: float = 0.0
    last_checked: Optional[datetime] = None
    last_price: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    last_stop_update: Optional[datetime] = None
    failure_reason: Optional[str] = None
    cancel_reason: Optional[str] = None

    @property
    def position_value(self) -> float:
        return self.avg_entry_price * self.size

    def pnl_at(self, price: float) -> float:
        return (price - self.avg_entry_price) * self.size * self.side.sign


class TradeLogEntry(BaseModel):
    id: str = ""
    timestamp: datetime
    event_type: TradeEventType
    symbol: str
    side: Side
    price: float
    size: float
    fee: float = 0.0
    position_id: str
    avg_entry_price: Optional[float] = None
    total_size: Optional[float] = None
    pnl: Optional[float] = None
    pnl_percent: Optional[float] = None
    exit_reason: Optional[str] = None
    ob_id: Optional[str] = None
    ob_type: Optional[ObType] = None
    ob_confidence: Optional[Confidence] = None
    order_strategy: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class AtrRecord(BaseModel):
    id: str = ""
    symbol: str
    timeframe: str
    value: float
    period: int
    candle_close: float
    timestamp: datetime
    calculated_at: datetime


class ProtectionState(BaseModel):
    account_peak: Optional[float] = None
    cooldown_until: Optional[datetime] = None
    cooldown_reason: Optional[str] = None
    triggered_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
