from __future__ import annotations

import unittest

from dexcopy.config import StrategyConfig
from dexcopy.decision_engine.intents import build_trade_intent
from dexcopy.decision_engine.strategy import (
    AllOf,
    MintListStrategy,
    ThresholdStrategy,
    build_strategy,
    safe_approve,
)
from dexcopy.schemas import IntentRejection, TradeEvent, TradeIntent
from dexcopy.watcher.address_codec import AddressCodec

MARKET = b"\x01" * 32
MINT_A = b"\x02" * 32
MINT_B = b"\x03" * 32


def _trade(**overrides: object) -> TradeEvent:
    fields: dict = {
        "block_slot": 7,
        "market": MARKET,
        "buy_mint": MINT_A,
        "buy_amount": 100_000_000_000,
        "sell_mint": MINT_B,
        "sell_amount": 1,
    }
    fields.update(overrides)
    return TradeEvent(**fields)


def _intent(buy_amount_raw: int = 100_000_000_000) -> TradeIntent:
    return TradeIntent(
        input_mint="MintA",
        output_mint="MintB",
        pool_address=None,
        buy_amount_raw=buy_amount_raw,
        amount_in_raw=buy_amount_raw // 100,
    )


class _SpyStrategy:
    def __init__(self) -> None:
        self.calls: list[TradeIntent] = []

    def approve(self, intent: TradeIntent) -> bool:
        self.calls.append(intent)
        return True


class _ExplodingStrategy:
    def approve(self, intent: TradeIntent) -> bool:
        raise RuntimeError("boom")


class ThresholdTests(unittest.TestCase):
    def test_threshold_above_buy_rejects(self) -> None:
        self.assertFalse(ThresholdStrategy(150_000_000_000).approve(_intent()))

    def test_threshold_below_buy_approves(self) -> None:
        self.assertTrue(ThresholdStrategy(50_000_000_000).approve(_intent()))

    def test_threshold_equal_approves(self) -> None:
        self.assertTrue(ThresholdStrategy(100_000_000_000).approve(_intent()))


class CompositeStrategyTests(unittest.TestCase):
    def test_denied_mint_rejects(self) -> None:
        strategy = MintListStrategy(denied_mints=frozenset({"MintB"}))
        self.assertFalse(strategy.approve(_intent()))

    def test_allow_list_requires_match(self) -> None:
        self.assertFalse(MintListStrategy(allowed_mints=frozenset({"Other"})).approve(_intent()))
        self.assertTrue(MintListStrategy(allowed_mints=frozenset({"MintA"})).approve(_intent()))

    def test_build_strategy_composes(self) -> None:
        strategy = build_strategy(StrategyConfig(min_buy_amount_raw=1, denied_mints=("MintA",)))
        self.assertIsInstance(strategy, AllOf)
        self.assertFalse(strategy.approve(_intent()))
        self.assertIsInstance(build_strategy(StrategyConfig()), ThresholdStrategy)

    def test_raising_strategy_rejects(self) -> None:
        with self.assertLogs("dexcopy.strategy", level="WARNING"):
            self.assertFalse(safe_approve(_ExplodingStrategy(), _intent()))


class TradeIntentTests(unittest.TestCase):
    def setUp(self) -> None:
        self.codec = AddressCodec()

    def test_intent_sized_and_resolved(self) -> None:
        intent = build_trade_intent(_trade(), self.codec, size_multiplier=0.01)
        self.assertIsInstance(intent, TradeIntent)
        assert isinstance(intent, TradeIntent)
        self.assertEqual(intent.amount_in_raw, 1_000_000_000)
        self.assertEqual(intent.buy_amount_raw, 100_000_000_000)
        self.assertEqual(intent.input_mint, self.codec.resolve(MINT_A))
        self.assertEqual(intent.pool_address, self.codec.resolve(MARKET))
        self.assertEqual(intent.block_slot, 7)

    def test_missing_pool_means_best_route(self) -> None:
        intent = build_trade_intent(_trade(market=None), self.codec, size_multiplier=0.01)
        assert isinstance(intent, TradeIntent)
        self.assertIsNone(intent.pool_address)

    def test_invalid_address_blocks_intent(self) -> None:
        result = build_trade_intent(_trade(market=b"\x01" * 5), self.codec, size_multiplier=0.01)
        self.assertEqual(result, IntentRejection("invalid_address", "pool_address"))

    def test_missing_mint_blocks_intent(self) -> None:
        result = build_trade_intent(_trade(buy_mint=None), self.codec, size_multiplier=0.01)
        self.assertEqual(result, IntentRejection("missing_mint", "input_mint"))

    def test_amount_rounding_to_zero_is_rejected(self) -> None:
        result = build_trade_intent(_trade(buy_amount=99), self.codec, size_multiplier=0.01)
        self.assertEqual(result, IntentRejection("zero_amount", "buy_amount"))

    def test_rejected_intent_never_reaches_strategy(self) -> None:
        spy = _SpyStrategy()
        for trade in (_trade(buy_mint=b"bad"), _trade(sell_mint=None), _trade()):
            intent = build_trade_intent(trade, self.codec, size_multiplier=0.01)
            if isinstance(intent, IntentRejection):
                continue
            safe_approve(spy, intent)
        self.assertEqual(len(spy.calls), 1)


if __name__ == "__main__":
    unittest.main()
