from __future__ import annotations

from decimal import ROUND_DOWN, Decimal

from dexcopy.schemas import IntentRejection, TradeEvent, TradeIntent
from dexcopy.watcher.address_codec import AddressCodec, AddressStatus


def build_trade_intent(
    trade: TradeEvent,
    codec: AddressCodec,
    *,
    size_multiplier: float,
) -> TradeIntent | IntentRejection:
    """Resolve a trade's addresses and size the copy.

    Mints are required; the pool only pins the route, so an absent pool just
    means "best route". Any field that fails to decode blocks the intent.
    """
    resolved = {
        "input_mint": codec.resolve(trade.buy_mint),
        "output_mint": codec.resolve(trade.sell_mint),
        "pool_address": codec.resolve(trade.market),
    }
    for name, value in resolved.items():
        if value is AddressStatus.INVALID:
            return IntentRejection("invalid_address", name)
    for name in ("input_mint", "output_mint"):
        if resolved[name] is AddressStatus.UNDEFINED:
            return IntentRejection("missing_mint", name)

    buy_amount = trade.buy_amount or 0
    amount_in = int(
        (Decimal(buy_amount) * Decimal(str(size_multiplier))).to_integral_value(rounding=ROUND_DOWN)
    )
    if amount_in <= 0:
        return IntentRejection("zero_amount", "buy_amount")

    pool = resolved["pool_address"]
    return TradeIntent(
        input_mint=str(resolved["input_mint"]),
        output_mint=str(resolved["output_mint"]),
        pool_address=None if pool is AddressStatus.UNDEFINED else str(pool),
        buy_amount_raw=buy_amount,
        amount_in_raw=amount_in,
        block_slot=trade.block_slot,
    )
