from __future__ import annotations

import logging
from dataclasses import dataclass

from dexcopy.schemas import TradeIntent


@dataclass(frozen=True)
class DryRunResult:
    correlation_id: str
    amount_in_raw: int


class DryRunExecutor:
    def __init__(self) -> None:
        self._log = logging.getLogger(self.__class__.__name__)

    async def execute(self, intent: TradeIntent, *, correlation_id: str) -> DryRunResult:
        self._log.info(
            "dry_run_intent",
            extra={
                "extra_fields": {
                    "correlation_id": correlation_id,
                    "input_mint": intent.input_mint,
                    "output_mint": intent.output_mint,
                    "pool_address": intent.pool_address,
                    "buy_amount_raw": intent.buy_amount_raw,
                    "amount_in_raw": intent.amount_in_raw,
                    "block_slot": intent.block_slot,
                }
            },
        )
        return DryRunResult(correlation_id=correlation_id, amount_in_raw=intent.amount_in_raw)
