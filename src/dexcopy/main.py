from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from collections.abc import Callable, Mapping
from typing import Any
from uuid import uuid4

from dexcopy.config import AppConfig, ConfigStore, load_secrets
from dexcopy.decision_engine.intents import build_trade_intent
from dexcopy.decision_engine.strategy import StrategyEvaluator, build_strategy, safe_approve
from dexcopy.errors import (
    ConfigError,
    ConnectionFault,
    DecodeError,
    ExecutionError,
    SecretsError,
    StreamEnd,
)
from dexcopy.executor.dry_run import DryRunExecutor
from dexcopy.executor.engine import ExecutionEngine
from dexcopy.executor.jupiter_client import JupiterClient
from dexcopy.executor.ledger_client import SolanaLedgerClient
from dexcopy.executor.signer import TransactionSigner, load_keypair
from dexcopy.schemas import IntentRejection, TradeEvent, TradeIntent
from dexcopy.telemetry.exporter import ExportConfig, TelemetryExporter
from dexcopy.telemetry.logging import setup_logging
from dexcopy.telemetry.metrics import TelemetryAggregator
from dexcopy.telemetry.redaction import redact_secret
from dexcopy.watcher.address_codec import SIGNATURE_LENGTH, AddressCodec, display
from dexcopy.watcher.classifier import EventClassifier
from dexcopy.watcher.config_watcher import ConfigFileWatcher, Debouncer, ReloadGuard
from dexcopy.watcher.corecast import CoreCastTransport
from dexcopy.watcher.stream_session import StreamSession, StreamTransport

RECONNECT_BASE_S = 1.0
RECONNECT_MAX_S = 30.0

TransportFactory = Callable[[AppConfig], StreamTransport]


class CopyTradePipeline:
    """Stream -> classify -> intent -> strategy -> execution, with live reload.

    Stream consumption is sequential. Every approved intent becomes its own
    task in ``_inflight``; reloads and reconnects only replace the stream
    session, so attempts already running are left alone.
    """

    def __init__(
        self,
        store: ConfigStore,
        *,
        transport_factory: TransportFactory,
        telemetry: TelemetryAggregator,
        engine: ExecutionEngine | None = None,
        dry_run: DryRunExecutor | None = None,
        codec: AddressCodec | None = None,
        classifier: EventClassifier | None = None,
        reconnect_base_s: float = RECONNECT_BASE_S,
        reconnect_max_s: float = RECONNECT_MAX_S,
    ) -> None:
        cfg = store.current
        self._store = store
        self._transport_factory = transport_factory
        self._transport = transport_factory(cfg)
        self._telemetry = telemetry
        self._engine = engine
        self._dry_run = dry_run or DryRunExecutor()
        self._codec = codec or AddressCodec()
        self._signature_codec = AddressCodec(expected_length=SIGNATURE_LENGTH)
        self._classifier = classifier or EventClassifier()
        self._strategy: StrategyEvaluator = build_strategy(cfg.strategy)
        self._reconnect_base_s = reconnect_base_s
        self._reconnect_max_s = reconnect_max_s

        self._session: StreamSession | None = None
        self._inflight: set[asyncio.Task[None]] = set()
        self._guard = ReloadGuard()
        self._debouncer = Debouncer(cfg.reload.debounce_ms / 1000, self._reload_from_watch)
        self._watcher = ConfigFileWatcher(
            store.path,
            self._debouncer.notify,
            poll_interval_s=cfg.reload.poll_interval_s,
        )
        self._stop_event = asyncio.Event()
        self._wake = asyncio.Event()
        self._log = logging.getLogger(self.__class__.__name__)

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    @property
    def session(self) -> StreamSession | None:
        return self._session

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        tasks = [
            asyncio.create_task(self.stream_forever(), name="stream"),
            asyncio.create_task(self._flush_forever(), name="telemetry-flush"),
            asyncio.create_task(self._watcher.run_forever(), name="config-watch"),
        ]
        tasks[0].add_done_callback(self._on_stream_done)
        try:
            await self._stop_event.wait()
        finally:
            await self._shutdown(tasks)

    def _on_stream_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled() or task.exception() is None:
            return
        self._log.error("stream_crashed error=%r", task.exception())
        self.stop()

    def stop(self) -> None:
        if self._stop_event.is_set():
            return
        self._log.info("pipeline_stopping inflight=%s", len(self._inflight))
        self._stop_event.set()
        self._wake.set()
        self._watcher.stop()
        self._stop_session()

    async def stream_forever(self) -> None:
        backoff = self._reconnect_base_s
        while not self._stop_event.is_set():
            self._wake.clear()
            cfg = self._store.current
            session = StreamSession(self._transport)
            self._session = session
            delay = 0.0
            try:
                await session.start(cfg)
                backoff = self._reconnect_base_s
                async for raw in session.messages():
                    self.handle_message(raw)
            except StreamEnd:
                self._telemetry.record_stage("stream", "end")
                self._log.info("stream_ended reconnect_in_s=%s", self._reconnect_base_s)
                delay = self._reconnect_base_s
            except ConnectionFault as exc:
                self._telemetry.record_stage("stream", "fault")
                self._log.warning(
                    "stream_fault code=%s error=%s reconnect_in_s=%s", exc.code, exc, backoff
                )
                delay = backoff
                backoff = min(backoff * 2, self._reconnect_max_s)
            except Exception as exc:
                self._telemetry.record_stage("stream", "error")
                self._log.exception("stream_error error=%r reconnect_in_s=%s", exc, backoff)
                delay = backoff
                backoff = min(backoff * 2, self._reconnect_max_s)
            finally:
                session.stop()
            if delay and not self._stop_event.is_set():
                await self._sleep(delay)

    def handle_message(self, raw: Mapping[str, Any]) -> None:
        try:
            event = self._classifier.classify(raw)
        except DecodeError as exc:
            self._telemetry.record_stage("classify", "decode_error")
            self._log.warning("message_decode_error error=%s", exc)
            return
        self._telemetry.record(event.kind.value)
        if self._log.isEnabledFor(logging.DEBUG):
            self._log.debug(
                "stream_message kind=%s slot=%s signature=%s",
                event.kind.value,
                event.block_slot,
                display(self._signature_codec.resolve(event.tx_signature)),
            )
        if isinstance(event, TradeEvent):
            self._on_trade(event)

    def _on_trade(self, trade: TradeEvent) -> None:
        cfg = self._store.current
        intent = build_trade_intent(trade, self._codec, size_multiplier=cfg.execution.size_multiplier)
        if isinstance(intent, IntentRejection):
            self._telemetry.record_stage("intent", "rejected")
            self._log.debug(
                "intent_rejected reason=%s field=%s slot=%s",
                intent.reason,
                intent.field_name,
                trade.block_slot,
            )
            return
        if not safe_approve(self._strategy, intent):
            self._telemetry.record_stage("strategy", "rejected")
            return
        self._telemetry.record_stage("strategy", "approved")
        self._dispatch(intent, cfg)

    def _dispatch(self, intent: TradeIntent, cfg: AppConfig) -> None:
        cap = cfg.execution.max_inflight
        if cap and len(self._inflight) >= cap:
            self._telemetry.record_stage("execution", "dropped")
            self._log.warning(
                "execution_dropped reason=max_inflight inflight=%s cap=%s", len(self._inflight), cap
            )
            return
        correlation_id = str(uuid4())
        if self._engine is None or cfg.execution.dry_run:
            task = asyncio.create_task(self._execute_dry_run(intent, correlation_id))
        else:
            task = asyncio.create_task(self._execute_live(self._engine, intent, correlation_id))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _execute_dry_run(self, intent: TradeIntent, correlation_id: str) -> None:
        await self._dry_run.execute(intent, correlation_id=correlation_id)
        self._telemetry.record_stage("dry_run", "sent")

    async def _execute_live(
        self, engine: ExecutionEngine, intent: TradeIntent, correlation_id: str
    ) -> None:
        try:
            signature = await engine.execute(intent)
        except ExecutionError as exc:
            attempt = exc.attempt
            self._log.warning(
                "execution_failed",
                extra={
                    "extra_fields": {
                        "correlation_id": correlation_id,
                        "reason": exc.reason,
                        "stage": attempt.stage.value if attempt else None,
                        "signature": attempt.signature if attempt else None,
                        "error": str(exc),
                    }
                },
            )
            return
        except Exception:
            self._telemetry.record_stage("execution", "crashed")
            self._log.exception("execution_crashed correlation_id=%s", correlation_id)
            return
        self._log.info(
            "execution_done",
            extra={
                "extra_fields": {
                    "correlation_id": correlation_id,
                    "signature": signature,
                    "input_mint": intent.input_mint,
                    "output_mint": intent.output_mint,
                    "amount_in_raw": intent.amount_in_raw,
                }
            },
        )

    async def reload_and_restart(self) -> bool:
        """Apply the config file's current content. Returns False when dropped as a duplicate."""
        return await self._guard.run(self._reload)

    async def _reload_from_watch(self) -> None:
        await self.reload_and_restart()

    async def _reload(self) -> None:
        try:
            cfg, diff = await asyncio.to_thread(self._store.prepare)
        except ConfigError as exc:
            self._telemetry.record_stage("reload", "rejected")
            self._log.warning("reload_rejected error=%s keeping=previous_config", exc)
            return

        transport: StreamTransport | None = None
        if diff.rebuild_connection:
            try:
                transport = self._transport_factory(cfg)
            except (AttributeError, ImportError, KeyError, OSError, ValueError) as exc:
                self._telemetry.record_stage("reload", "rejected")
                self._log.warning(
                    "reload_rejected stage=transport error=%r keeping=previous_config", exc
                )
                return

        self._store.commit(cfg)
        self._strategy = build_strategy(cfg.strategy)
        if self._engine is not None:
            self._engine.update_config(cfg.execution)

        if transport is not None:
            old = self._transport
            self._transport = transport
            self._stop_session()
            await self._close_transport(old)
        elif diff.patch_filters:
            self._stop_session()
        self._wake.set()
        self._telemetry.record_stage("reload", "ok")
        self._log.info(
            "reload_applied rebuild_connection=%s patch_filters=%s stream_type=%s",
            diff.rebuild_connection,
            diff.patch_filters,
            cfg.stream.type.value,
        )

    def _stop_session(self) -> None:
        if self._session is not None:
            self._session.stop()

    async def _sleep(self, delay_s: float) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay_s)
        except asyncio.TimeoutError:
            pass

    async def _flush_forever(self) -> None:
        while not self._stop_event.is_set():
            interval = self._store.current.telemetry.flush_interval_s
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                self._telemetry.flush()

    async def _shutdown(self, tasks: list[asyncio.Task[Any]]) -> None:
        self.stop()
        self._debouncer.cancel()
        grace = self._store.current.reload.shutdown_grace_s

        _, pending = await asyncio.wait(tasks, timeout=grace)
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._inflight:
            self._log.info("shutdown_waiting inflight=%s grace_s=%s", len(self._inflight), grace)
            _, unfinished = await asyncio.wait(set(self._inflight), timeout=grace)
            for task in unfinished:
                task.cancel()
            if unfinished:
                self._log.warning("shutdown_abandoned inflight=%s", len(unfinished))
                await asyncio.gather(*unfinished, return_exceptions=True)

        await self._close_transport(self._transport)
        self._telemetry.flush(final=True)
        self._log.info("pipeline_stopped")

    async def _close_transport(self, transport: StreamTransport) -> None:
        try:
            await transport.close()
        except Exception as exc:
            self._log.warning("transport_close_error error=%s", exc)


def _corecast_transport(cfg: AppConfig) -> StreamTransport:
    transport = CoreCastTransport(cfg.server, cfg.stream)
    # Fail at startup, not on first connect, when the generated module is missing.
    transport.message_classes(cfg.stream.type)
    return transport


async def _serve(cfg: AppConfig, store: ConfigStore, signer: TransactionSigner | None) -> int:
    log = logging.getLogger("dexcopy.main")
    telemetry = TelemetryAggregator(exporter=TelemetryExporter(ExportConfig(out_dir=cfg.telemetry.out_dir)))
    ledger: SolanaLedgerClient | None = None
    engine: ExecutionEngine | None = None
    if signer is not None:
        ledger = SolanaLedgerClient(cfg.execution.rpc_url)
        engine = ExecutionEngine(
            cfg.execution,
            quotes=JupiterClient(cfg.execution.quote_api_url),
            quotes_factory=JupiterClient,
            ledger=ledger,
            signer=signer,
            telemetry=telemetry,
        )
    try:
        pipeline = CopyTradePipeline(
            store,
            transport_factory=_corecast_transport,
            telemetry=telemetry,
            engine=engine,
        )
    except (AttributeError, ImportError, KeyError, OSError, ValueError) as exc:
        log.error("startup_failed stage=transport error=%s", exc)
        return 1

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, pipeline.stop)
    try:
        await pipeline.run()
    finally:
        if ledger is not None:
            await ledger.close()
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Copy Solana DEX trades seen on a CoreCast stream")
    parser.add_argument(
        "--config",
        default=os.getenv("DEXCOPY_CONFIG", "config.yaml"),
        help="Path to the YAML config file (watched for changes)",
    )
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    args = parser.parse_args(argv)

    setup_logging(getattr(logging, str(args.log_level).upper(), logging.INFO))
    log = logging.getLogger("dexcopy.main")
    store = ConfigStore(args.config)
    try:
        cfg = store.initialize()
    except ConfigError as exc:
        log.error("startup_failed stage=config path=%s error=%s", args.config, exc)
        raise SystemExit(1) from exc

    signer: TransactionSigner | None = None
    try:
        secrets = load_secrets(required=not cfg.execution.dry_run)
        if not cfg.execution.dry_run:
            signer = TransactionSigner(load_keypair(secrets.private_key))
    except SecretsError as exc:
        log.error("startup_failed stage=secrets error=%s", exc)
        raise SystemExit(1) from exc

    log.info(
        "dexcopy_boot",
        extra={
            "extra_fields": {
                "correlation_id": str(uuid4()),
                "server": cfg.server.address,
                "authorization": redact_secret(cfg.server.authorization),
                "stream_type": cfg.stream.type.value,
                "dry_run": cfg.execution.dry_run,
                "wallet": signer.public_key if signer else None,
            }
        },
    )
    code = asyncio.run(_serve(cfg, store, signer))
    if code:
        raise SystemExit(code)


if __name__ == "__main__":
    main()
