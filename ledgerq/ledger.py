"""Ledger sinks that record trades and funding payments."""

import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Callable, List, Optional
from .models import (
    FundingEvent,
    LedgerRow,
    LedgerSheet,
    RowType,
    SheetStatus,
    TradeRecord,
    utcnow,
)
from .storage import Storage

logger = logging.getLogger(__name__)

PRECISION = 8


class TransientSinkError(Exception):
    """A recoverable sink failure; the caller is expected to retry."""


def from_millis(mts: int) -> datetime:
    return datetime.fromtimestamp(mts / 1000.0, tz=timezone.utc)


class LedgerBook:
    """In-memory ledger split into sheets.

    A sheet collects rows while a position is open. When a trade brings the
    position back to zero the sheet is marked done and a new one is opened
    with a ``Start`` row.
    """

    def __init__(self, sheets: Optional[List[LedgerSheet]] = None, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self.sheets: List[LedgerSheet] = list(sheets or [])
        if not self.sheets or self.sheets[-1].status == SheetStatus.DONE:
            self._open_sheet()
        elif self._flat_after_trading(self.sheets[-1]):
            self._roll_sheet()

    @property
    def current(self) -> LedgerSheet:
        return self.sheets[-1]

    @property
    def position_size(self) -> float:
        return self.current.position_size

    async def apply_trade(self, trade: TradeRecord) -> LedgerRow:
        """Append a Buy/Sell row and update the open position."""
        existing = self._find_trade(trade.id)
        if existing is not None:
            logger.debug("Trade %s already recorded, skipping", trade.id)
            self._save()
            return existing

        notional = trade.exec_amount * trade.exec_price
        fee_rate = abs(trade.fee / notional) if notional else 0.0
        # Rows carry the fill amount negated, as does the running position.
        size = -trade.exec_amount
        row = LedgerRow(
            id=trade.id,
            date=from_millis(trade.mts),
            type=RowType.BUY if trade.exec_amount > 0 else RowType.SELL,
            size=size,
            exec_price=trade.exec_price,
            fee_rate=fee_rate,
        )
        sheet = self.current
        sheet.rows.append(row)
        sheet.position_size = round(sheet.position_size + size, PRECISION)
        logger.info(
            "%s - amount=%s, price=%s, fee=%s", row.type.value, size, trade.exec_price, fee_rate
        )

        if sheet.position_size == 0:
            self._roll_sheet()
        self._save()
        return row

    async def apply_funding(self, event: FundingEvent) -> Optional[LedgerRow]:
        """Append a Funding row; nothing is recorded while flat or at a zero rate."""
        position = self.position_size
        if position == 0 or not event.funding_rate:
            logger.debug(
                "Funding at %d skipped (position=%s, rate=%s)",
                event.status_ts, position, event.funding_rate,
            )
            return None

        date = from_millis(event.status_ts)
        for row in self.current.rows:
            if row.type == RowType.FUNDING and row.date == date:
                self._save()
                return row

        amount = round(position * event.mark_price * event.funding_rate, PRECISION)
        row = LedgerRow(date=date, type=RowType.FUNDING, funding_amount=amount)
        self.current.rows.append(row)
        logger.info(
            "Funding - [ts=%d nextTs=%d] %s",
            event.status_ts, event.next_period_end_ts, amount,
        )
        self._save()
        return row

    def _find_trade(self, trade_id: int) -> Optional[LedgerRow]:
        for sheet in reversed(self.sheets):
            for row in sheet.rows:
                if row.id == trade_id and row.type in (RowType.BUY, RowType.SELL):
                    return row
        return None

    @staticmethod
    def _flat_after_trading(sheet: LedgerSheet) -> bool:
        traded = any(row.type in (RowType.BUY, RowType.SELL) for row in sheet.rows)
        return traded and sheet.position_size == 0

    def _open_sheet(self) -> LedgerSheet:
        now = self._clock()
        title = now.strftime("%Y-%m-%dT%H:%M:%S")
        taken = {sheet.title for sheet in self.sheets}
        suffix = 1
        while title in taken:
            suffix += 1
            title = f"{now.strftime('%Y-%m-%dT%H:%M:%S')} ({suffix})"
        sheet = LedgerSheet(title=title, rows=[LedgerRow(date=now, type=RowType.START)])
        self.sheets.append(sheet)
        return sheet

    def _roll_sheet(self) -> None:
        finished = self.current
        finished.status = SheetStatus.DONE
        sheet = self._open_sheet()
        logger.info(
            "Sheet %s done; working on sheet %s, positionSize = %s",
            finished.title, sheet.title, sheet.position_size,
        )

    def _save(self) -> None:
        pass


class FileLedger(LedgerBook):
    """Ledger book persisted to ``ledger.json`` after every change."""

    def __init__(self, storage: Storage, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        super().__init__(storage.get_sheets(), clock=clock)
        self._save()

    def _save(self) -> None:
        self.storage.save_sheets(self.sheets)


class FlakySink:
    """Wraps a sink and fails a share of calls with :class:`TransientSinkError`."""

    def __init__(self, inner, fail_rate: float = 0.2, rng: Optional[random.Random] = None, latency: float = 0.0):
        if not 0.0 <= fail_rate < 1.0:
            raise ValueError(f"fail_rate must be in [0, 1), got {fail_rate}")
        self.inner = inner
        self.fail_rate = fail_rate
        self.latency = latency
        self._rng = rng or random.Random()
        self.calls = 0
        self.failures = 0

    async def _maybe_fail(self, what: str) -> None:
        self.calls += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        if self._rng.random() < self.fail_rate:
            self.failures += 1
            raise TransientSinkError(f"{what}: sink temporarily unavailable")

    async def apply_trade(self, trade: TradeRecord) -> LedgerRow:
        await self._maybe_fail(f"trade {trade.id}")
        return await self.inner.apply_trade(trade)

    async def apply_funding(self, event: FundingEvent) -> Optional[LedgerRow]:
        await self._maybe_fail(f"funding {event.status_ts}")
        return await self.inner.apply_funding(event)
