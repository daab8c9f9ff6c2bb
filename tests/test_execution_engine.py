from __future__ import annotations

import asyncio
import unittest
from typing import Any

from dexcopy.config import ExecutionConfig
from dexcopy.errors import BroadcastError, BuildError, FailedOnChain, NoRoute, QuoteError
from dexcopy.executor.engine import NATIVE_SOL_MINT, WRAPPED_SOL_MINT, ExecutionEngine
from dexcopy.schemas import ConfirmationState, ExecutionStage, SignatureStatus, TradeIntent
from dexcopy.telemetry.metrics import TelemetryAggregator

from fakes import FakeLedger, FakeQuotes, FakeSigner, quote_with_routes as _quote


def _intent(**overrides: Any) -> TradeIntent:
    fields: dict[str, Any] = {
        "input_mint": "MintA",
        "output_mint": "MintB",
        "pool_address": None,
        "buy_amount_raw": 100_000,
        "amount_in_raw": 1_000,
    }
    fields.update(overrides)
    return TradeIntent(**fields)


def _engine(
    quotes: FakeQuotes,
    ledger: FakeLedger,
    signer: FakeSigner | None = None,
    telemetry: TelemetryAggregator | None = None,
    **cfg: Any,
) -> ExecutionEngine:
    return ExecutionEngine(
        ExecutionConfig(**cfg),
        quotes=quotes,
        ledger=ledger,
        signer=signer or FakeSigner(),
        telemetry=telemetry,
        retry_backoff_s=0,
    )


class ExecutionEngineTests(unittest.TestCase):
    def test_happy_path_confirms(self) -> None:
        telemetry = TelemetryAggregator()
        engine = _engine(FakeQuotes(_quote("Pool1")), FakeLedger(), telemetry=telemetry)
        signature = asyncio.run(engine.execute(_intent()))
        self.assertEqual(signature, "Sig111")
        snap = telemetry.snapshot()
        self.assertEqual(snap.stage("execution.ok"), 1)
        self.assertEqual(snap.stage("confirm.ok"), 1)

    def test_empty_route_plan_is_no_route_and_nothing_is_built(self) -> None:
        quotes = FakeQuotes({"outAmount": "10", "routePlan": []})
        signer = FakeSigner()
        ledger = FakeLedger()
        engine = _engine(quotes, ledger, signer)
        with self.assertRaises(NoRoute) as ctx:
            asyncio.run(engine.execute(_intent()))
        self.assertEqual(quotes.swap_calls, [])
        self.assertEqual(signer.signed, [])
        self.assertEqual(ledger.send_calls, 0)
        attempt = ctx.exception.attempt
        assert attempt is not None
        self.assertIs(attempt.stage, ExecutionStage.FAILED)
        self.assertTrue(attempt.terminal)

    def test_quote_transport_error_is_quote_error(self) -> None:
        engine = _engine(FakeQuotes(OSError("down")), FakeLedger())
        with self.assertRaises(QuoteError):
            asyncio.run(engine.execute(_intent()))

    def test_native_mint_quoted_as_wrapped_sol(self) -> None:
        quotes = FakeQuotes(_quote("Pool1"))
        asyncio.run(_engine(quotes, FakeLedger()).execute(_intent(input_mint=NATIVE_SOL_MINT)))
        self.assertEqual(quotes.quote_calls[0]["input_mint"], WRAPPED_SOL_MINT)
        self.assertEqual(quotes.quote_calls[0]["amount"], 1_000)

    def test_matching_pool_pins_route(self) -> None:
        quotes = FakeQuotes(_quote("Other", "Pool1"))
        asyncio.run(_engine(quotes, FakeLedger()).execute(_intent(pool_address="Pool1")))
        sent_quote = quotes.swap_calls[0]["quote"]
        self.assertEqual([leg["swapInfo"]["ammKey"] for leg in sent_quote["routePlan"]], ["Pool1"])

    def test_unknown_pool_uses_best_route(self) -> None:
        quotes = FakeQuotes(_quote("Other", "Another"))
        asyncio.run(_engine(quotes, FakeLedger()).execute(_intent(pool_address="Pool1")))
        self.assertEqual(len(quotes.swap_calls[0]["quote"]["routePlan"]), 2)

    def test_legacy_flag_forwarded_to_build(self) -> None:
        quotes = FakeQuotes(_quote("Pool1"))
        asyncio.run(_engine(quotes, FakeLedger(), legacy_transaction=False).execute(_intent()))
        self.assertFalse(quotes.swap_calls[0]["as_legacy_transaction"])
        self.assertEqual(quotes.swap_calls[0]["user_public_key"], "Wallet111")

    def test_bad_swap_blob_is_build_error(self) -> None:
        quotes = FakeQuotes(_quote("Pool1"))
        quotes.swap_blob = "%%not-base64%%"
        with self.assertRaises(BuildError):
            asyncio.run(_engine(quotes, FakeLedger()).execute(_intent()))

    def test_broadcast_retries_until_success(self) -> None:
        ledger = FakeLedger(send_failures=2)
        signature = asyncio.run(_engine(FakeQuotes(_quote("P")), ledger).execute(_intent()))
        self.assertEqual(signature, "Sig111")
        self.assertEqual(ledger.send_calls, 3)

    def test_broadcast_gives_up_after_attempts(self) -> None:
        ledger = FakeLedger(send_failures=3)
        with self.assertRaises(BroadcastError) as ctx:
            asyncio.run(_engine(FakeQuotes(_quote("P")), ledger).execute(_intent()))
        self.assertEqual(ledger.send_calls, 3)
        attempt = ctx.exception.attempt
        assert attempt is not None
        self.assertEqual(attempt.broadcast_attempts, 3)

    def test_on_chain_error_fails_attempt(self) -> None:
        ledger = FakeLedger(confirm=SignatureStatus(err={"InstructionError": [0, "Custom"]}))
        with self.assertRaises(FailedOnChain) as ctx:
            asyncio.run(_engine(FakeQuotes(_quote("P")), ledger).execute(_intent()))
        self.assertEqual(ctx.exception.on_chain_error, {"InstructionError": [0, "Custom"]})

    def test_timeout_with_clean_status_returns_signature(self) -> None:
        ledger = FakeLedger(confirm_delay_s=1.0, status=SignatureStatus())
        engine = _engine(FakeQuotes(_quote("P")), ledger, confirm_timeout_s=0.05)
        with self.assertLogs("ExecutionEngine", level="WARNING"):
            signature = asyncio.run(engine.execute(_intent()))
        self.assertEqual(signature, "Sig111")
        self.assertEqual(ledger.status_calls, 1)

    def test_timeout_with_error_status_fails(self) -> None:
        ledger = FakeLedger(confirm_delay_s=1.0, status=SignatureStatus(err="BlockhashNotFound"))
        engine = _engine(FakeQuotes(_quote("P")), ledger, confirm_timeout_s=0.05)
        with self.assertRaises(FailedOnChain) as ctx:
            asyncio.run(engine.execute(_intent()))
        attempt = ctx.exception.attempt
        assert attempt is not None
        self.assertIs(attempt.confirmation_state, ConfirmationState.FAILED_ON_CHAIN)

    def test_config_update_applies_to_next_attempt(self) -> None:
        quotes = FakeQuotes(_quote("P"))
        engine = _engine(quotes, FakeLedger())
        engine.update_config(ExecutionConfig(slippage_bps=250))
        asyncio.run(engine.execute(_intent()))
        self.assertEqual(quotes.quote_calls[0]["slippage_bps"], 250)

    def test_quote_url_change_rebuilds_quote_client(self) -> None:
        built: dict[str, FakeQuotes] = {}

        def factory(base_url: str) -> FakeQuotes:
            built[base_url] = FakeQuotes(_quote("P"))
            return built[base_url]

        old_quotes = FakeQuotes(_quote("P"))
        engine = ExecutionEngine(
            ExecutionConfig(quote_api_url="https://old.example/v6"),
            quotes=old_quotes,
            ledger=FakeLedger(),
            signer=FakeSigner(),
            quotes_factory=factory,
            retry_backoff_s=0,
        )
        engine.update_config(ExecutionConfig(quote_api_url="https://new.example/v6"))
        asyncio.run(engine.execute(_intent()))
        self.assertEqual(list(built), ["https://new.example/v6"])
        self.assertEqual(len(built["https://new.example/v6"].quote_calls), 1)
        self.assertEqual(old_quotes.quote_calls, [])

    def test_rpc_url_change_warns_restart_required(self) -> None:
        engine = _engine(FakeQuotes(_quote("P")), FakeLedger())
        with self.assertLogs("ExecutionEngine", level="WARNING") as logs:
            engine.update_config(ExecutionConfig(rpc_url="https://rpc.other.example"))
        self.assertIn("reload_restart_required field=execution.rpc_url", logs.output[0])


if __name__ == "__main__":
    unittest.main()
