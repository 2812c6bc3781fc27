"""File-backed document store.

Each collection is an append-only JSONL file. Updates append a new version
of the record and the latest line per id wins on load, so a partially
written line never corrupts earlier state. The protection singleton is a
JSON file replaced atomically.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
import time
from typing import Any, Callable, Iterable, Iterator, TypeVar
from uuid import uuid4

from pydantic import BaseModel

from .records import AtrRecord, OrderBlockRecord, PositionRecord, ProtectionState, TradeLogEntry

logger = logging.getLogger(__name__)

Record = TypeVar("Record", bound=BaseModel)

COLLECTIONS: dict[type[BaseModel], str] = {
    OrderBlockRecord: "order_blocks",
    PositionRecord: "positions",
    TradeLogEntry: "trade_logs",
    AtrRecord: "market_data",
}

PROTECTION_STATE_FILE = "protection_state.json"
LOCK_STALE_SECONDS = 600.0


class LockHeld(RuntimeError):
    """Raised when an exclusive lock is already owned by another run."""


def _read_jsonl(path: Path) -> Iterable[dict[str, Any]]:
    if not path.exists():
        return []
    entries: list[dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping malformed line in %s", path.name)
                continue
    return entries


def _sort_key(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.timestamp()
    return value


class FileStore:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def ensure_dir(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, model: type[BaseModel]) -> Path:
        try:
            name = COLLECTIONS[model]
        except KeyError as exc:
            raise TypeError(f"No collection for {model.__name__}") from exc
        return self.root / f"{name}.jsonl"

    def _append(self, record: BaseModel) -> None:
        self.ensure_dir()
        with self._path(type(record)).open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record.model_dump(mode="json"), ensure_ascii=False))
            handle.write("\n")

    def create(self, record: Record) -> Record:
        if not record.id:
            record.id = uuid4().hex
        self._append(record)
        return record

    def update(self, record: Record) -> Record:
        if not record.id:
            raise ValueError(f"Cannot update {type(record).__name__} without id")
        self._append(record)
        return record

    def load(self, model: type[Record]) -> list[Record]:
        latest: dict[str, Record] = {}
        for entry in _read_jsonl(self._path(model)):
            try:
                record = model.model_validate(entry)
            except ValueError:
                logger.warning("Skipping invalid %s entry", model.__name__)
                continue
            latest.pop(record.id, None)
            latest[record.id] = record
        return list(latest.values())

    def get(self, model: type[Record], record_id: str) -> Record | None:
        for record in self.load(model):
            if record.id == record_id:
                return record
        return None

    def query(
        self,
        model: type[Record],
        *,
        where: dict[str, Any] | None = None,
        predicate: Callable[[Record], bool] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Record]:
        rows = self.load(model)
        if where:
            rows = [r for r in rows if all(getattr(r, k) == v for k, v in where.items())]
        if predicate is not None:
            rows = [r for r in rows if predicate(r)]
        if order_by is not None:
            present = [r for r in rows if getattr(r, order_by) is not None]
            missing = [r for r in rows if getattr(r, order_by) is None]
            present.sort(key=lambda r: _sort_key(getattr(r, order_by)), reverse=descending)
            rows = present + missing
        if limit is not None:
            rows = rows[:limit]
        return rows

    def load_protection_state(self) -> ProtectionState:
        path = self.root / PROTECTION_STATE_FILE
        if not path.exists():
            return ProtectionState()
        data = json.loads(path.read_text(encoding="utf-8"))
        return ProtectionState.model_validate(data)

    def save_protection_state(self, state: ProtectionState) -> None:
        self.ensure_dir()
        path = self.root / PROTECTION_STATE_FILE
        temp_path = path.with_suffix(".tmp")
        temp_path.write_text(
            json.dumps(state.model_dump(mode="json"), ensure_ascii=False),
            encoding="utf-8",
        )
        temp_path.replace(path)

    @contextmanager
    def exclusive_lock(self, name: str, stale_after: float = LOCK_STALE_SECONDS) -> Iterator[None]:
        """Hold a named lock for the duration of the block.

        The lock file is created with O_EXCL, so only one run can own it.
        Locks older than stale_after seconds are reclaimed.
        """
        self.ensure_dir()
        path = self.root / f"{name}.lock"
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            age = time.time() - path.stat().st_mtime
            if age < stale_after:
                raise LockHeld(f"Lock {name} is held") from None
            logger.warning("Reclaiming stale lock %s (age %.0fs)", name, age)
            path.unlink(missing_ok=True)
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                raise LockHeld(f"Lock {name} is held") from None
        try:
            os.write(fd, datetime.now(timezone.utc).isoformat().encode("utf-8"))
            os.close(fd)
            yield
        finally:
            path.unlink(missing_ok=True)
