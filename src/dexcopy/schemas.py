from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar


class StreamType(str, Enum):
    DEX_TRADES = "dex_trades"
    DEX_ORDERS = "dex_orders"
    DEX_POOLS = "dex_pools"
    TRANSACTIONS = "transactions"
    TRANSFERS = "transfers"
    BALANCES = "balances"


class EventKind(str, Enum):
    TRADE = "trade"
    ORDER = "order"
    POOL = "pool"
    TRANSFER = "transfer"
    BALANCE_UPDATE = "balance_update"
    TRANSACTION = "transaction"
    UNKNOWN = "unknown"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DecodedEvent:
    kind: ClassVar[EventKind] = EventKind.UNKNOWN

    block_slot: int = 0
    received_ts: datetime = field(default_factory=_utc_now)
    tx_signature: bytes | None = None
    tx_index: int | None = None


@dataclass(frozen=True)
class UnknownEvent(DecodedEvent):
    kind: ClassVar[EventKind] = EventKind.UNKNOWN


@dataclass(frozen=True)
class TradeEvent(DecodedEvent):
    kind: ClassVar[EventKind] = EventKind.TRADE

    market: bytes | None = None
    buy_mint: bytes | None = None
    buy_amount: int | None = None
    sell_mint: bytes | None = None
    sell_amount: int | None = None
    signer: bytes | None = None


@dataclass(frozen=True)
class OrderEvent(DecodedEvent):
    kind: ClassVar[EventKind] = EventKind.ORDER

    market: bytes | None = None
    account: bytes | None = None
    buy_side: bool | None = None
    amount: int | None = None


@dataclass(frozen=True)
class PoolEvent(DecodedEvent):
    kind: ClassVar[EventKind] = EventKind.POOL

    market: bytes | None = None
    base_mint: bytes | None = None
    quote_mint: bytes | None = None
    base_change: int | None = None
    quote_change: int | None = None


@dataclass(frozen=True)
class TransferEvent(DecodedEvent):
    kind: ClassVar[EventKind] = EventKind.TRANSFER

    sender: bytes | None = None
    receiver: bytes | None = None
    mint: bytes | None = None
    amount: int | None = None


@dataclass(frozen=True)
class BalanceUpdateEvent(DecodedEvent):
    kind: ClassVar[EventKind] = EventKind.BALANCE_UPDATE

    account: bytes | None = None
    mint: bytes | None = None
    pre_balance: int | None = None
    post_balance: int | None = None


@dataclass(frozen=True)
class TransactionEvent(DecodedEvent):
    kind: ClassVar[EventKind] = EventKind.TRANSACTION

    signer: bytes | None = None
    success: bool | None = None
    fee: int | None = None


@dataclass(frozen=True)
class TradeIntent:
    input_mint: str
    output_mint: str
    pool_address: str | None
    buy_amount_raw: int
    amount_in_raw: int
    block_slot: int = 0
    created_ts: datetime = field(default_factory=_utc_now)


@dataclass(frozen=True)
class IntentRejection:
    reason: str
    field_name: str = ""


class ExecutionStage(str, Enum):
    CREATED = "created"
    QUOTED = "quoted"
    ROUTED = "routed"
    BUILT = "built"
    SIGNED = "signed"
    BROADCAST = "broadcast"
    DONE = "done"
    FAILED = "failed"


class ConfirmationState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED_ON_CHAIN = "failed_on_chain"
    ABANDONED_AFTER_TIMEOUT = "abandoned_after_timeout"


@dataclass
class ExecutionAttempt:
    intent: TradeIntent
    stage: ExecutionStage = ExecutionStage.CREATED
    quote: dict[str, Any] | None = None
    route_override: str | None = None
    tx_format: str = ""
    signed_tx: bytes | None = None
    signature: str | None = None
    broadcast_attempts: int = 0
    confirmation_state: ConfirmationState = ConfirmationState.PENDING
    started_ts: datetime = field(default_factory=_utc_now)
    finished_ts: datetime | None = None

    @property
    def terminal(self) -> bool:
        return self.stage in {ExecutionStage.DONE, ExecutionStage.FAILED}


@dataclass(frozen=True)
class SignatureStatus:
    err: Any = None
    confirmation_status: str | None = None
