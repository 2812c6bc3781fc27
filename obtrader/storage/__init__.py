"""Persistence for order blocks, positions and trade logs."""

from .file_store import FileStore, LockHeld
from .records import (
    Addition,
    AtrRecord,
    OrderBlockRecord,
    PositionRecord,
    ProtectionState,
    TradeLogEntry,
)

__all__ = [
    "Addition",
    "AtrRecord",
    "FileStore",
    "LockHeld",
    "OrderBlockRecord",
    "PositionRecord",
    "ProtectionState",
    "TradeLogEntry",
]
