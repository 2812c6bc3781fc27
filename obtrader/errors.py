"""Exception hierarchy for the trading bot.

Business skips (no signal, deviation too large, limit not filled) are job
outcomes, not exceptions. Protection blocks are verdicts. The classes here
cover validation failures, infrastructure faults and the post-fill
persistence failure that needs manual reconciliation.
"""
from __future__ import annotations

from typing import Any


class BotError(Exception):
    """Base class for bot errors."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ConfigError(BotError):
    pass


class ValidationError(BotError):
    pass


class InvalidStopDistance(ValidationError):
    pass


class InsufficientMargin(BotError):
    pass


class DataUnavailable(BotError):
    pass


class TransientError(BotError):
    """Retryable infrastructure fault (timeout, rate limit, 5xx)."""


class ExchangeError(BotError):
    pass


class PostFillPersistenceError(BotError):
    """An order filled on the exchange but its state could not be recorded."""
