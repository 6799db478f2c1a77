"""Replay feed: JSON-lines fixtures of status snapshots and trades."""

import gzip
import json
import lzma
from pathlib import Path
from typing import Any, IO, Iterator, Union
from pydantic import ValidationError
from .models import StatusSnapshot, TradeRecord


def _open_text(path: Path) -> IO[str]:
    if path.suffix == ".xz":
        return lzma.open(path, "rt", encoding="utf-8")
    if path.suffix == ".gz":
        return gzip.open(path, "rt", encoding="utf-8")
    return open(path, "r", encoding="utf-8")


def read_lines(path: Union[str, Path]) -> Iterator[Any]:
    """Yield one decoded JSON value per non-blank line, in file order."""
    path = Path(path)
    with _open_text(path) as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{lineno}: invalid JSON: {e}") from e


def parse_snapshot(value: Any) -> StatusSnapshot:
    if isinstance(value, dict):
        return StatusSnapshot.model_validate(value)
    if isinstance(value, list):
        return StatusSnapshot.from_raw(value)
    raise ValueError(f"Unsupported status record: {value!r}")


def parse_trade(value: Any) -> TradeRecord:
    if isinstance(value, dict):
        return TradeRecord.model_validate(value)
    if isinstance(value, list):
        return TradeRecord.from_raw(value)
    raise ValueError(f"Unsupported trade record: {value!r}")


def _read(path: Union[str, Path], parse) -> Iterator[Any]:
    for index, value in enumerate(read_lines(path), start=1):
        try:
            yield parse(value)
        except ValidationError as e:
            raise ValueError(f"{path}: record {index}: {e}") from e


def read_snapshots(path: Union[str, Path]) -> Iterator[StatusSnapshot]:
    """Status snapshots in arrival order."""
    return _read(path, parse_snapshot)


def read_trades(path: Union[str, Path]) -> Iterator[TradeRecord]:
    """Trade fills in arrival order."""
    return _read(path, parse_trade)
