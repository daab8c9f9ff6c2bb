from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from datetime import datetime, timezone
from collections.abc import Callable
from typing import Any, Protocol

from dexcopy.config import ExecutionConfig
from dexcopy.errors import (
    BroadcastError,
    BuildError,
    ConfirmationTimeout,
    ExecutionError,
    FailedOnChain,
    NoRoute,
    QuoteError,
    SignError,
)
from dexcopy.executor.signer import SignedTransaction
from dexcopy.schemas import (
    ConfirmationState,
    ExecutionAttempt,
    ExecutionStage,
    SignatureStatus,
    TradeIntent,
)
from dexcopy.telemetry.metrics import TelemetryAggregator

NATIVE_SOL_MINT = "11111111111111111111111111111111"
WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"


class QuoteClient(Protocol):
    def quote(
        self,
        *,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        only_direct_routes: bool = False,
    ) -> dict[str, Any]: ...

    def swap_transaction(
        self,
        *,
        quote: dict[str, Any],
        user_public_key: str,
        wrap_and_unwrap_sol: bool = True,
        as_legacy_transaction: bool = False,
    ) -> str: ...


class LedgerClient(Protocol):
    async def send_raw_transaction(
        self, raw: bytes, *, skip_preflight: bool, max_retries: int
    ) -> str: ...

    async def confirm_transaction(self, signature: str, commitment: str) -> SignatureStatus: ...

    async def get_signature_status(self, signature: str) -> SignatureStatus | None: ...


class Signer(Protocol):
    @property
    def public_key(self) -> str: ...

    def sign(self, raw: bytes) -> SignedTransaction: ...


class ExecutionEngine:
    """Quote -> route -> build -> sign -> broadcast -> confirm for one trade intent.

    Quote, route and build failures end the attempt. Broadcast is retried up to
    ``broadcast_attempts`` times. A confirmation timeout falls back to a single
    status lookup: an on-chain error fails the attempt, anything else returns
    the signature with a warning. No state is shared between attempts.
    """

    def __init__(
        self,
        cfg: ExecutionConfig,
        *,
        quotes: QuoteClient,
        ledger: LedgerClient,
        signer: Signer,
        telemetry: TelemetryAggregator | None = None,
        quotes_factory: Callable[[str], QuoteClient] | None = None,
        retry_backoff_s: float = 0.25,
    ) -> None:
        self._cfg = cfg
        self._quotes = quotes
        self._quotes_factory = quotes_factory
        self._rpc_url = cfg.rpc_url
        self._ledger = ledger
        self._signer = signer
        self._telemetry = telemetry
        self._retry_backoff_s = retry_backoff_s
        self._log = logging.getLogger(self.__class__.__name__)

    def update_config(self, cfg: ExecutionConfig) -> None:
        # Attempts already running keep the config they started with.
        if cfg.quote_api_url != self._cfg.quote_api_url and self._quotes_factory is not None:
            self._quotes = self._quotes_factory(cfg.quote_api_url)
            self._log.info("quote_client_rebuilt base_url=%s", cfg.quote_api_url)
        if cfg.rpc_url != self._rpc_url:
            # The RPC client is shared by attempts in flight; it is only replaced on restart.
            self._log.warning(
                "reload_restart_required field=execution.rpc_url active=%s requested=%s",
                self._rpc_url,
                cfg.rpc_url,
            )
        self._cfg = cfg

    async def execute(self, intent: TradeIntent) -> str:
        cfg = self._cfg
        attempt = ExecutionAttempt(intent=intent)
        try:
            signature = await self._run(attempt, cfg)
        except ExecutionError as exc:
            exc.attempt = attempt
            attempt.stage = ExecutionStage.FAILED
            attempt.finished_ts = datetime.now(timezone.utc)
            self._stage("execution", "failed")
            self._stage("failure", exc.reason)
            raise
        attempt.stage = ExecutionStage.DONE
        attempt.finished_ts = datetime.now(timezone.utc)
        self._stage("execution", "ok")
        if self._telemetry is not None:
            elapsed = (attempt.finished_ts - intent.created_ts).total_seconds() * 1000
            self._telemetry.record_execution_latency(elapsed)
        return signature

    async def _run(self, attempt: ExecutionAttempt, cfg: ExecutionConfig) -> str:
        intent = attempt.intent
        quotes = self._quotes
        quote = await self._quote(quotes, intent, cfg)
        attempt.quote = quote
        attempt.stage = ExecutionStage.QUOTED

        quote, attempt.route_override = self._select_route(quote, intent.pool_address)
        attempt.quote = quote
        attempt.stage = ExecutionStage.ROUTED

        raw = await self._build(quotes, quote, cfg)
        attempt.stage = ExecutionStage.BUILT

        try:
            signed = self._signer.sign(raw)
        except SignError:
            self._stage("sign", "error")
            raise
        attempt.tx_format = signed.tx_format
        attempt.signed_tx = signed.raw
        attempt.signature = signed.signature
        attempt.stage = ExecutionStage.SIGNED

        signature = await self._broadcast(attempt, signed.raw, cfg)
        attempt.signature = signature
        attempt.stage = ExecutionStage.BROADCAST
        self._log.info(
            "tx_broadcast signature=%s tx_format=%s attempts=%s",
            signature,
            attempt.tx_format,
            attempt.broadcast_attempts,
        )

        await self._confirm(attempt, signature, cfg)
        return signature

    async def _quote(
        self, quotes: QuoteClient, intent: TradeIntent, cfg: ExecutionConfig
    ) -> dict[str, Any]:
        input_mint = to_quotable_mint(intent.input_mint)
        output_mint = to_quotable_mint(intent.output_mint)
        self._log.info(
            "quote_request input_mint=%s output_mint=%s amount=%s slippage_bps=%s",
            input_mint,
            output_mint,
            intent.amount_in_raw,
            cfg.slippage_bps,
        )
        try:
            quote = await asyncio.to_thread(
                quotes.quote,
                input_mint=input_mint,
                output_mint=output_mint,
                amount=intent.amount_in_raw,
                slippage_bps=cfg.slippage_bps,
                only_direct_routes=cfg.only_direct_routes,
            )
        except NoRoute:
            self._stage("quote", "no_route")
            raise
        except QuoteError:
            self._stage("quote", "error")
            raise
        except Exception as exc:
            self._stage("quote", "error")
            raise QuoteError(f"quote request failed: {exc}") from exc
        if not isinstance(quote, dict) or not quote.get("outAmount") or not quote.get("routePlan"):
            self._stage("quote", "no_route")
            raise NoRoute(f"no route for {input_mint}->{output_mint}")
        self._stage("quote", "ok")
        return quote

    def _select_route(
        self, quote: dict[str, Any], pool_address: str | None
    ) -> tuple[dict[str, Any], str | None]:
        if not pool_address:
            return quote, None
        for leg in quote.get("routePlan") or []:
            swap_info = leg.get("swapInfo") if isinstance(leg, dict) else None
            if isinstance(swap_info, dict) and swap_info.get("ammKey") == pool_address:
                self._log.info("route_pinned pool=%s", pool_address)
                self._stage("route", "pinned")
                return {**quote, "routePlan": [leg]}, pool_address
        self._log.warning("route_pool_not_found pool=%s using=best_route", pool_address)
        self._stage("route", "best")
        return quote, None

    async def _build(
        self, quotes: QuoteClient, quote: dict[str, Any], cfg: ExecutionConfig
    ) -> bytes:
        try:
            blob = await asyncio.to_thread(
                quotes.swap_transaction,
                quote=quote,
                user_public_key=self._signer.public_key,
                wrap_and_unwrap_sol=True,
                as_legacy_transaction=cfg.legacy_transaction,
            )
        except BuildError:
            self._stage("build", "error")
            raise
        except Exception as exc:
            self._stage("build", "error")
            raise BuildError(f"swap build failed: {exc}") from exc
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError, TypeError) as exc:
            self._stage("build", "error")
            raise BuildError("swap transaction is not valid base64") from exc
        if not raw:
            self._stage("build", "error")
            raise BuildError("swap transaction is empty")
        self._stage("build", "ok")
        return raw

    async def _broadcast(
        self, attempt: ExecutionAttempt, signed_tx: bytes, cfg: ExecutionConfig
    ) -> str:
        last_error: Exception | None = None
        for n in range(1, cfg.broadcast_attempts + 1):
            attempt.broadcast_attempts = n
            try:
                signature = await self._ledger.send_raw_transaction(
                    signed_tx,
                    skip_preflight=True,
                    max_retries=cfg.rpc_max_retries,
                )
                self._stage("broadcast", "ok")
                return signature
            except Exception as exc:
                last_error = exc
                self._log.warning(
                    "broadcast_retry signature=%s attempt=%s/%s error=%s",
                    attempt.signature,
                    n,
                    cfg.broadcast_attempts,
                    exc,
                )
                self._stage("broadcast", "retry")
                if n < cfg.broadcast_attempts:
                    await asyncio.sleep(self._retry_backoff_s * n)
        self._stage("broadcast", "error")
        raise BroadcastError(
            f"broadcast failed after {cfg.broadcast_attempts} attempts: {last_error}"
        )

    async def _confirm(
        self, attempt: ExecutionAttempt, signature: str, cfg: ExecutionConfig
    ) -> None:
        try:
            status = await asyncio.wait_for(
                self._ledger.confirm_transaction(signature, cfg.commitment),
                timeout=cfg.confirm_timeout_s,
            )
        except (asyncio.TimeoutError, ConfirmationTimeout) as exc:
            self._log.warning("confirm_timeout signature=%s error=%s", signature, exc or "timeout")
            self._stage("confirm", "timeout")
            await self._manual_check(attempt, signature)
            return
        except Exception as exc:
            self._log.warning("confirm_error signature=%s error=%s", signature, exc)
            self._stage("confirm", "error")
            await self._manual_check(attempt, signature)
            return

        if status.err is not None:
            attempt.confirmation_state = ConfirmationState.FAILED_ON_CHAIN
            self._stage("confirm", "failed_on_chain")
            raise FailedOnChain(
                f"transaction {signature} failed: {status.err}",
                on_chain_error=status.err,
            )
        attempt.confirmation_state = ConfirmationState.CONFIRMED
        self._stage("confirm", "ok")
        self._log.info("tx_confirmed signature=%s", signature)

    async def _manual_check(self, attempt: ExecutionAttempt, signature: str) -> None:
        try:
            status = await self._ledger.get_signature_status(signature)
        except Exception as exc:
            self._log.warning("manual_status_error signature=%s error=%s", signature, exc)
            status = None
        if status is not None and status.err is not None:
            attempt.confirmation_state = ConfirmationState.FAILED_ON_CHAIN
            self._stage("confirm", "failed_on_chain")
            raise FailedOnChain(
                f"transaction {signature} failed: {status.err}",
                on_chain_error=status.err,
            )
        attempt.confirmation_state = ConfirmationState.ABANDONED_AFTER_TIMEOUT
        self._log.warning("manual_check_no_error signature=%s outcome=likely_succeeded", signature)

    def _stage(self, stage: str, outcome: str) -> None:
        if self._telemetry is not None:
            self._telemetry.record_stage(stage, outcome)


def to_quotable_mint(mint: str) -> str:
    return WRAPPED_SOL_MINT if mint == NATIVE_SOL_MINT else mint

