from __future__ import annotations

import unittest
from datetime import datetime, timezone

from dexcopy.errors import DecodeError
from dexcopy.schemas import (
    BalanceUpdateEvent,
    EventKind,
    PoolEvent,
    TradeEvent,
    TransactionEvent,
    UnknownEvent,
)
from dexcopy.watcher.classifier import EventClassifier

MARKET = b"\x01" * 32
MINT_A = b"\x02" * 32
MINT_B = b"\x03" * 32
SIG = b"\x09" * 64


def trade_message() -> dict:
    return {
        "Block": {"Slot": 250_000_001},
        "Transaction": {"Signature": SIG, "Index": 4, "Signer": b"\x04" * 32},
        "Trade": {
            "Market": {"MarketAddress": MARKET},
            "Buy": {"Amount": 100_000_000_000, "Currency": {"MintAddress": MINT_A}},
            "Sell": {"Amount": 5_000, "Currency": {"MintAddress": MINT_B}},
        },
    }


class EventClassifierTests(unittest.TestCase):
    def setUp(self) -> None:
        self.classifier = EventClassifier()

    def test_trade_branch(self) -> None:
        event = self.classifier.classify(trade_message())
        self.assertIsInstance(event, TradeEvent)
        assert isinstance(event, TradeEvent)
        self.assertIs(event.kind, EventKind.TRADE)
        self.assertEqual(event.block_slot, 250_000_001)
        self.assertEqual(event.tx_signature, SIG)
        self.assertEqual(event.market, MARKET)
        self.assertEqual(event.buy_mint, MINT_A)
        self.assertEqual(event.buy_amount, 100_000_000_000)
        self.assertEqual(event.sell_mint, MINT_B)

    def test_trade_wins_over_transaction_header(self) -> None:
        # Every message carries a Transaction header; only the payload branch decides.
        self.assertIs(self.classifier.classify(trade_message()).kind, EventKind.TRADE)

    def test_transaction_only_message(self) -> None:
        raw = {"Transaction": {"Signature": SIG, "Fee": 5000, "Status": {"Success": True}}}
        event = self.classifier.classify(raw)
        self.assertIsInstance(event, TransactionEvent)
        assert isinstance(event, TransactionEvent)
        self.assertEqual(event.fee, 5000)
        self.assertTrue(event.success)

    def test_pool_and_balance_branches(self) -> None:
        pool = self.classifier.classify(
            {"PoolEvent": {"Market": {"MarketAddress": MARKET}, "BaseCurrency": {"ChangeAmount": -7}}}
        )
        self.assertIsInstance(pool, PoolEvent)
        balance = self.classifier.classify(
            {"BalanceUpdate": {"BalanceUpdate": {"PreBalance": 1, "PostBalance": 2}}}
        )
        self.assertIsInstance(balance, BalanceUpdateEvent)

    def test_empty_message_is_unknown_not_error(self) -> None:
        event = self.classifier.classify({})
        self.assertIsInstance(event, UnknownEvent)
        self.assertEqual(event.block_slot, 0)

    def test_received_ts_is_consumer_clock(self) -> None:
        ts = datetime(2026, 1, 1, tzinfo=timezone.utc)
        self.assertEqual(self.classifier.classify(trade_message(), received_ts=ts).received_ts, ts)

    def test_non_mapping_raises_decode_error(self) -> None:
        with self.assertRaises(DecodeError):
            self.classifier.classify(b"\x00\x01")  # type: ignore[arg-type]


if __name__ == "__main__":
    unittest.main()
