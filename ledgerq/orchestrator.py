"""Wire exchange events through the coalescer and scheduler into a ledger sink."""

import asyncio
import heapq
import logging
from typing import Any, Dict, Iterable, List, Optional
from .coalescer import CoalescerRegistry, SnapshotLike
from .models import Config, FundingEvent, StatusSnapshot, TradeRecord
from .queue import RetryScheduler, with_timeout

logger = logging.getLogger(__name__)

DEFAULT_STATUS_KEY = "deriv:tBTCF0:USTF0"


class Orchestrator:
    """Turns trade fills and status ticks into retried ledger writes.

    ``sink`` is any object with async ``apply_trade(trade)`` and
    ``apply_funding(event)`` methods.
    """

    def __init__(
        self,
        sink,
        scheduler: Optional[RetryScheduler] = None,
        config: Optional[Config] = None,
        status_key: str = DEFAULT_STATUS_KEY,
    ):
        self.sink = sink
        self.config = config or Config()
        self.retry_config = self.config.retry_config()
        self.scheduler = scheduler or RetryScheduler(
            concurrency=self.config.concurrency, config=self.retry_config
        )
        self.status_key = status_key
        self.registry = CoalescerRegistry(self._on_funding)
        self.failures: List[BaseException] = []

    def on_trade(self, trade: TradeRecord) -> "asyncio.Future[Any]":
        """Submit a ledger write for one trade fill."""

        async def apply(attempt: int):
            if attempt > 1:
                logger.debug("addTrade %s :: attempt %d", trade.id, attempt)
            return await self.sink.apply_trade(trade)

        return self._submit(apply, f"trade-{trade.id}", "onTrade")

    def on_status(self, snapshot: SnapshotLike, status_key: Optional[str] = None) -> Optional[FundingEvent]:
        """Feed one status tick; a funding boundary becomes a ledger write."""
        return self.registry.handle(status_key or self.status_key, snapshot)

    def on_reconnect(self) -> None:
        """Re-arm every coalescer after the feed reconnects."""
        logger.info("Feed reconnected; resetting funding baselines")
        self.registry.reset_all()

    def _on_funding(self, event: FundingEvent) -> None:
        async def apply(attempt: int):
            if attempt > 1:
                logger.debug("addFunding %d :: attempt %d", event.status_ts, attempt)
            return await self.sink.apply_funding(event)

        self._submit(
            apply,
            f"funding-{event.status_key}-{event.next_period_end_ts}",
            "onStatus",
        )

    def _submit(self, fn, name: str, label: str) -> "asyncio.Future[Any]":
        # Duplicate names happen when a task is replayed while still live.
        if self.scheduler.attempts(name) is not None:
            name = None
        future = self.scheduler.submit(
            with_timeout(fn, self.config.attempt_timeout),
            config=self.retry_config,
            name=name,
        )
        future.add_done_callback(lambda f: self._observe(f, label))
        return future

    def _observe(self, future: "asyncio.Future[Any]", label: str) -> None:
        if future.cancelled():
            logger.warning("%s :: task cancelled before it was applied", label)
            return
        error = future.exception()
        if error is not None:
            self.failures.append(error)
            logger.error("%s :: all retries failed: %s", label, error)

    async def run_replay(
        self,
        statuses: Iterable[StatusSnapshot],
        trades: Iterable[TradeRecord] = (),
    ) -> Dict[str, int]:
        """Drive a recorded feed through the pipeline in timestamp order."""
        events = heapq.merge(
            ((trade.mts, 0, trade) for trade in trades),
            ((status.event_ts, 1, status) for status in statuses),
            key=lambda item: (item[0], item[1]),
        )
        for _, _, record in events:
            if isinstance(record, TradeRecord):
                self.on_trade(record)
            else:
                self.on_status(record)
            # Let admitted attempts make progress between feed records.
            await asyncio.sleep(0)

        await self.scheduler.shutdown()
        return self.scheduler.stats()
