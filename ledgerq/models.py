"""Data models for tasks, feed records, ledger rows and configuration."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Sequence
from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskState(str, Enum):
    """Task lifecycle states."""
    PENDING = "pending"
    PROCESSING = "processing"
    WAITING = "waiting"  # parked in backoff
    COMPLETED = "completed"
    DEAD = "dead"
    CANCELLED = "cancelled"


class TaskRecord(BaseModel):
    """Bookkeeping for one submitted task."""
    id: str
    state: TaskState = TaskState.PENDING
    attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    error_message: Optional[str] = None


class RetryConfig(BaseModel):
    """Retry and backoff settings. Delays are in milliseconds."""
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(5, ge=1)
    min_delay: float = Field(500, ge=0)
    max_delay: float = Field(5000, ge=0)
    factor: float = Field(2.0, gt=0)
    jitter: bool = True

    @model_validator(mode="after")
    def _check_delays(self) -> "RetryConfig":
        if self.min_delay > self.max_delay:
            raise ValueError(
                f"min_delay ({self.min_delay}) must not exceed max_delay ({self.max_delay})"
            )
        return self


class Config(BaseModel):
    """System configuration."""
    concurrency: int = Field(1, ge=1)
    max_attempts: int = Field(5, ge=1)
    min_delay: float = Field(500, ge=0)  # milliseconds
    max_delay: float = Field(5000, ge=0)  # milliseconds
    factor: float = Field(2.0, gt=0)
    jitter: bool = True
    attempt_timeout: float = Field(30.0, ge=0)  # seconds, 0 disables

    model_config = ConfigDict(validate_assignment=True)

    @model_validator(mode="after")
    def _check_delays(self) -> "Config":
        if self.min_delay > self.max_delay:
            raise ValueError(
                f"min_delay ({self.min_delay}) must not exceed max_delay ({self.max_delay})"
            )
        return self

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_attempts,
            min_delay=self.min_delay,
            max_delay=self.max_delay,
            factor=self.factor,
            jitter=self.jitter,
        )


class StatusSnapshot(BaseModel):
    """One derivative status tick as delivered by the exchange feed."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    event_ts: int = Field(alias="eventTs")
    period_end_ts: int = Field(alias="periodEndTs")
    funding_rate: float = Field(0.0, alias="fundingRate")
    mark_price: float = Field(0.0, alias="markPrice")

    @classmethod
    def from_raw(cls, status: Sequence[Any]) -> "StatusSnapshot":
        """Decode a raw derivative status array.

        Positions: 0 timestamp, 7 next funding timestamp, 11 current
        funding, 14 mark price.
        """
        if len(status) < 15:
            raise ValueError(f"status array too short ({len(status)} fields)")
        return cls(
            event_ts=status[0],
            period_end_ts=status[7],
            funding_rate=status[11] or 0.0,
            mark_price=status[14] or 0.0,
        )


class FundingEvent(BaseModel):
    """A funding period boundary crossed for one status key."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    status_key: str = Field("", alias="statusKey")
    status_ts: int = Field(alias="statusTs")
    previous_period_end_ts: int = Field(alias="previousPeriodEndTs")
    next_period_end_ts: int = Field(alias="nextPeriodEndTs")
    mark_price: float = Field(alias="markPrice")
    funding_rate: float = Field(alias="fundingRate")


class TradeRecord(BaseModel):
    """An executed trade fill on the account."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: int
    symbol: str = ""
    mts: int
    order_id: Optional[int] = Field(None, alias="orderId")
    exec_amount: float = Field(alias="execAmount")
    exec_price: float = Field(alias="execPrice")
    order_type: Optional[str] = Field(None, alias="orderType")
    order_price: Optional[float] = Field(None, alias="orderPrice")
    maker: bool = False
    fee: float = 0.0
    fee_currency: Optional[str] = Field(None, alias="feeCurrency")
    client_order_id: Optional[int] = Field(None, alias="clientOrderId")

    @classmethod
    def from_raw(cls, data: Sequence[Any]) -> "TradeRecord":
        """Decode a raw trade update array (id, symbol, mts, order id, ...)."""
        if len(data) < 11:
            raise ValueError(f"trade array too short ({len(data)} fields)")
        return cls(
            id=data[0],
            symbol=data[1],
            mts=data[2],
            order_id=data[3],
            exec_amount=data[4],
            exec_price=data[5],
            order_type=data[6],
            order_price=data[7],
            maker=data[8] == 1,
            fee=data[9],
            fee_currency=data[10],
            client_order_id=data[11] if len(data) > 11 else None,
        )


class RowType(str, Enum):
    START = "Start"
    BUY = "Buy"
    SELL = "Sell"
    FUNDING = "Funding"


class LedgerRow(BaseModel):
    """One bookkeeping row."""
    id: Optional[int] = None
    date: datetime
    type: RowType
    size: float = 0.0
    exec_price: float = 0.0
    funding_amount: float = 0.0
    fee_rate: float = 0.0


class SheetStatus(str, Enum):
    IN_PROGRESS = "IN PROGRESS"
    DONE = "DONE"


class LedgerSheet(BaseModel):
    """A run of rows between two flat positions."""
    title: str
    status: SheetStatus = SheetStatus.IN_PROGRESS
    position_size: float = 0.0
    rows: List[LedgerRow] = Field(default_factory=list)
