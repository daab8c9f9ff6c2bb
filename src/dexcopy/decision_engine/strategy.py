from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from dexcopy.config import StrategyConfig
from dexcopy.schemas import TradeIntent


class StrategyEvaluator(Protocol):
    """Pure approve/reject decision. No I/O, no blocking, no exceptions."""

    def approve(self, intent: TradeIntent) -> bool: ...


@dataclass(frozen=True)
class ThresholdStrategy:
    min_buy_amount_raw: int

    def approve(self, intent: TradeIntent) -> bool:
        return intent.buy_amount_raw >= self.min_buy_amount_raw


@dataclass(frozen=True)
class MintListStrategy:
    allowed_mints: frozenset[str] = frozenset()
    denied_mints: frozenset[str] = frozenset()

    def approve(self, intent: TradeIntent) -> bool:
        mints = {intent.input_mint, intent.output_mint}
        if mints & self.denied_mints:
            return False
        if self.allowed_mints and not mints & self.allowed_mints:
            return False
        return True


@dataclass(frozen=True)
class AllOf:
    strategies: tuple[StrategyEvaluator, ...]

    def approve(self, intent: TradeIntent) -> bool:
        return all(strategy.approve(intent) for strategy in self.strategies)


def build_strategy(cfg: StrategyConfig) -> StrategyEvaluator:
    parts: list[StrategyEvaluator] = [ThresholdStrategy(cfg.min_buy_amount_raw)]
    if cfg.allowed_mints or cfg.denied_mints:
        parts.append(
            MintListStrategy(
                allowed_mints=frozenset(cfg.allowed_mints),
                denied_mints=frozenset(cfg.denied_mints),
            )
        )
    if len(parts) == 1:
        return parts[0]
    return AllOf(tuple(parts))


def safe_approve(strategy: StrategyEvaluator, intent: TradeIntent) -> bool:
    # A substituted policy that raises rejects the trade instead of stopping the stream.
    try:
        return bool(strategy.approve(intent))
    except Exception as exc:
        logging.getLogger("dexcopy.strategy").warning(
            "strategy_error strategy=%s error=%s",
            type(strategy).__name__,
            exc,
        )
        return False
