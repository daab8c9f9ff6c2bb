from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from dexcopy.errors import DecodeError
from dexcopy.schemas import (
    BalanceUpdateEvent,
    DecodedEvent,
    OrderEvent,
    PoolEvent,
    TradeEvent,
    TransactionEvent,
    TransferEvent,
    UnknownEvent,
)


class EventClassifier:
    """Projects one raw stream message onto exactly one DecodedEvent variant.

    The upstream message already tags its payload; this only picks the populated
    branch and pulls out the fields later stages read. Arrival time is always
    the consumer's clock.
    """

    def classify(self, raw: Mapping[str, Any], received_ts: datetime | None = None) -> DecodedEvent:
        if not isinstance(raw, Mapping):
            raise DecodeError(f"expected a mapping, got {type(raw).__name__}")
        common = {
            "block_slot": _as_int(_dig(raw, "Block", "Slot")) or 0,
            "received_ts": received_ts or datetime.now(timezone.utc),
            "tx_signature": _as_bytes(_dig(raw, "Transaction", "Signature")),
            "tx_index": _as_int(_dig(raw, "Transaction", "Index")),
        }

        trade = _branch(raw, "Trade")
        if trade is not None:
            return TradeEvent(
                **common,
                market=_as_bytes(_dig(trade, "Market", "MarketAddress")),
                buy_mint=_as_bytes(_dig(trade, "Buy", "Currency", "MintAddress")),
                buy_amount=_as_int(_dig(trade, "Buy", "Amount")),
                sell_mint=_as_bytes(_dig(trade, "Sell", "Currency", "MintAddress")),
                sell_amount=_as_int(_dig(trade, "Sell", "Amount")),
                signer=_as_bytes(_dig(raw, "Transaction", "Signer")),
            )

        order = _branch(raw, "Order")
        if order is not None:
            return OrderEvent(
                **common,
                market=_as_bytes(_dig(order, "Market", "MarketAddress")),
                account=_as_bytes(_dig(order, "Order", "Account")),
                buy_side=_as_bool(_dig(order, "Order", "BuySide")),
                amount=_as_int(_dig(order, "Order", "LimitAmount")),
            )

        pool = _branch(raw, "PoolEvent")
        if pool is not None:
            return PoolEvent(
                **common,
                market=_as_bytes(_dig(pool, "Market", "MarketAddress")),
                base_mint=_as_bytes(_dig(pool, "Market", "BaseCurrency", "MintAddress")),
                quote_mint=_as_bytes(_dig(pool, "Market", "QuoteCurrency", "MintAddress")),
                base_change=_as_int(_dig(pool, "BaseCurrency", "ChangeAmount")),
                quote_change=_as_int(_dig(pool, "QuoteCurrency", "ChangeAmount")),
            )

        transfer = _branch(raw, "Transfer")
        if transfer is not None:
            return TransferEvent(
                **common,
                sender=_as_bytes(_dig(transfer, "Sender", "Address")),
                receiver=_as_bytes(_dig(transfer, "Receiver", "Address")),
                mint=_as_bytes(_dig(transfer, "Currency", "MintAddress")),
                amount=_as_int(_dig(transfer, "Amount")),
            )

        balance = _branch(raw, "BalanceUpdate")
        if balance is not None:
            return BalanceUpdateEvent(
                **common,
                account=_as_bytes(_dig(balance, "BalanceUpdate", "Account", "Address")),
                mint=_as_bytes(_dig(balance, "Currency", "MintAddress")),
                pre_balance=_as_int(_dig(balance, "BalanceUpdate", "PreBalance")),
                post_balance=_as_int(_dig(balance, "BalanceUpdate", "PostBalance")),
            )

        tx = _branch(raw, "Transaction")
        if tx is not None:
            return TransactionEvent(
                **common,
                signer=_as_bytes(tx.get("Signer")),
                success=_as_bool(_dig(tx, "Status", "Success")),
                fee=_as_int(tx.get("Fee")),
            )

        return UnknownEvent(**common)


def _branch(raw: Mapping[str, Any], key: str) -> Mapping[str, Any] | None:
    value = raw.get(key)
    if isinstance(value, Mapping) and value:
        return value
    return None


def _dig(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, Mapping):
            return None
        obj = obj.get(key)
    return obj


def _as_bytes(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    # Non-bytes address fields are passed through so the codec can flag them invalid.
    return value


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any) -> bool | None:
    if value is None:
        return None
    return bool(value)
