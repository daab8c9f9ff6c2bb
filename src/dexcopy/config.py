from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from dexcopy.errors import ConfigError, SecretsError
from dexcopy.schemas import StreamType

STREAM_TYPE_ALIASES = {
    "trades": StreamType.DEX_TRADES,
    "orders": StreamType.DEX_ORDERS,
    "pools": StreamType.DEX_POOLS,
}

COMMITMENT_LEVELS = {"processed", "confirmed", "finalized"}


@dataclass(frozen=True)
class ConnectionTuning:
    keepalive_time_ms: int = 30_000
    keepalive_timeout_ms: int = 10_000
    max_receive_message_bytes: int = 64 * 1024 * 1024
    idle_timeout_ms: int = 0
    extra_options: tuple[tuple[str, Any], ...] = ()

    def channel_options(self) -> list[tuple[str, Any]]:
        options: list[tuple[str, Any]] = [
            ("grpc.keepalive_time_ms", self.keepalive_time_ms),
            ("grpc.keepalive_timeout_ms", self.keepalive_timeout_ms),
            ("grpc.keepalive_permit_without_calls", 1),
            ("grpc.max_receive_message_length", self.max_receive_message_bytes),
        ]
        if self.idle_timeout_ms > 0:
            options.append(("grpc.client_idle_timeout_ms", self.idle_timeout_ms))
        options.extend(self.extra_options)
        return options


@dataclass(frozen=True)
class ServerConfig:
    address: str = ""
    authorization: str = ""
    insecure: bool = False
    tuning: ConnectionTuning = field(default_factory=ConnectionTuning)


@dataclass(frozen=True)
class StreamConfig:
    type: StreamType = StreamType.DEX_TRADES
    proto_module: str = "corecast.corecast_pb2"
    service_name: str = "solana_corecast.CoreCast"


@dataclass(frozen=True)
class FilterSet:
    traders: tuple[str, ...] = ()
    programs: tuple[str, ...] = ()
    pools: tuple[str, ...] = ()
    signers: tuple[str, ...] = ()


@dataclass(frozen=True)
class StrategyConfig:
    min_buy_amount_raw: int = 0
    allowed_mints: tuple[str, ...] = ()
    denied_mints: tuple[str, ...] = ()


@dataclass(frozen=True)
class ExecutionConfig:
    dry_run: bool = True
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    quote_api_url: str = "https://quote-api.jup.ag/v6"
    slippage_bps: int = 100
    size_multiplier: float = 0.01
    only_direct_routes: bool = False
    legacy_transaction: bool = True
    broadcast_attempts: int = 3
    rpc_max_retries: int = 3
    confirm_timeout_s: float = 60.0
    commitment: str = "confirmed"
    max_inflight: int = 0


@dataclass(frozen=True)
class TelemetryConfig:
    flush_interval_s: float = 30.0
    out_dir: str = "runs/telemetry"


@dataclass(frozen=True)
class ReloadConfig:
    debounce_ms: int = 300
    poll_interval_s: float = 0.25
    shutdown_grace_s: float = 10.0


@dataclass(frozen=True)
class AppConfig:
    server: ServerConfig
    stream: StreamConfig
    filters: FilterSet
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    reload: ReloadConfig = field(default_factory=ReloadConfig)


@dataclass(frozen=True)
class Secrets:
    private_key: str = ""


@dataclass(frozen=True)
class ConfigDiff:
    rebuild_connection: bool
    patch_filters: bool

    @property
    def resubscribe(self) -> bool:
        return self.rebuild_connection or self.patch_filters


def load_config(path: str | Path) -> AppConfig:
    try:
        with open(path, encoding="utf-8") as fp:
            doc = yaml.safe_load(fp)
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"config file {path} is not valid YAML: {exc}") from exc
    return parse_config(doc)


def parse_config(doc: Any) -> AppConfig:
    if not isinstance(doc, dict):
        raise ConfigError("config document must be a mapping")
    server = _section(doc, "server", required=True)
    stream = _section(doc, "stream", required=True)
    filters = _section(doc, "filters")
    strategy = _section(doc, "strategy")
    execution = _section(doc, "execution")
    telemetry = _section(doc, "telemetry")
    reload_ = _section(doc, "reload")
    options = server.get("options") or {}
    if not isinstance(options, dict):
        raise ConfigError("server.options must be a mapping")

    try:
        cfg = AppConfig(
            server=ServerConfig(
                address=str(server.get("address") or "").strip(),
                authorization=str(server.get("authorization") or ""),
                insecure=_as_bool(server.get("insecure"), False),
                tuning=ConnectionTuning(
                    keepalive_time_ms=int(
                        options.get("keepalive_time_ms", ConnectionTuning.keepalive_time_ms)
                    ),
                    keepalive_timeout_ms=int(
                        options.get("keepalive_timeout_ms", ConnectionTuning.keepalive_timeout_ms)
                    ),
                    max_receive_message_bytes=int(
                        options.get(
                            "max_receive_message_bytes",
                            ConnectionTuning.max_receive_message_bytes,
                        )
                    ),
                    idle_timeout_ms=int(
                        options.get("idle_timeout_ms", ConnectionTuning.idle_timeout_ms)
                    ),
                    extra_options=tuple(sorted((options.get("extra") or {}).items())),
                ),
            ),
            stream=StreamConfig(
                type=_stream_type(stream.get("type")),
                proto_module=str(stream.get("proto_module") or StreamConfig.proto_module),
                service_name=str(stream.get("service") or StreamConfig.service_name),
            ),
            filters=FilterSet(
                traders=_addresses(filters, "traders"),
                programs=_addresses(filters, "programs"),
                pools=_addresses(filters, "pool", "pools"),
                signers=_addresses(filters, "signers"),
            ),
            strategy=StrategyConfig(
                min_buy_amount_raw=int(
                    strategy.get("min_buy_amount_raw", StrategyConfig.min_buy_amount_raw)
                ),
                allowed_mints=_addresses(strategy, "allowed_mints"),
                denied_mints=_addresses(strategy, "denied_mints"),
            ),
            execution=ExecutionConfig(
                dry_run=_as_bool(execution.get("dry_run"), ExecutionConfig.dry_run),
                rpc_url=str(execution.get("rpc_url") or ExecutionConfig.rpc_url),
                quote_api_url=str(
                    execution.get("quote_api_url") or ExecutionConfig.quote_api_url
                ).rstrip("/"),
                slippage_bps=int(execution.get("slippage_bps", ExecutionConfig.slippage_bps)),
                size_multiplier=float(
                    execution.get("size_multiplier", ExecutionConfig.size_multiplier)
                ),
                only_direct_routes=_as_bool(
                    execution.get("only_direct_routes"),
                    ExecutionConfig.only_direct_routes,
                ),
                legacy_transaction=_as_bool(
                    execution.get("legacy_transaction"),
                    ExecutionConfig.legacy_transaction,
                ),
                broadcast_attempts=int(
                    execution.get("broadcast_attempts", ExecutionConfig.broadcast_attempts)
                ),
                rpc_max_retries=int(
                    execution.get("rpc_max_retries", ExecutionConfig.rpc_max_retries)
                ),
                confirm_timeout_s=float(
                    execution.get("confirm_timeout_s", ExecutionConfig.confirm_timeout_s)
                ),
                commitment=str(execution.get("commitment") or ExecutionConfig.commitment),
                max_inflight=int(execution.get("max_inflight", ExecutionConfig.max_inflight)),
            ),
            telemetry=TelemetryConfig(
                flush_interval_s=float(
                    telemetry.get("flush_interval_s", TelemetryConfig.flush_interval_s)
                ),
                out_dir=str(telemetry.get("out_dir") or TelemetryConfig.out_dir),
            ),
            reload=ReloadConfig(
                debounce_ms=int(reload_.get("debounce_ms", ReloadConfig.debounce_ms)),
                poll_interval_s=float(
                    reload_.get("poll_interval_s", ReloadConfig.poll_interval_s)
                ),
                shutdown_grace_s=float(
                    reload_.get("shutdown_grace_s", ReloadConfig.shutdown_grace_s)
                ),
            ),
        )
    except ConfigError:
        raise
    except (AttributeError, TypeError, ValueError) as exc:
        raise ConfigError(f"invalid config value: {exc}") from exc
    validate_config(cfg)
    return cfg


def validate_config(cfg: AppConfig) -> None:
    if not cfg.server.address:
        raise ConfigError("server.address is required")
    if cfg.server.tuning.keepalive_time_ms <= 0:
        raise ConfigError("server.options.keepalive_time_ms must be > 0")
    if cfg.server.tuning.max_receive_message_bytes <= 0:
        raise ConfigError("server.options.max_receive_message_bytes must be > 0")
    if cfg.strategy.min_buy_amount_raw < 0:
        raise ConfigError("strategy.min_buy_amount_raw must be >= 0")
    if not 0 < cfg.execution.slippage_bps <= 10_000:
        raise ConfigError("execution.slippage_bps must be in (0, 10000]")
    if cfg.execution.size_multiplier <= 0:
        raise ConfigError("execution.size_multiplier must be > 0")
    if cfg.execution.broadcast_attempts < 1:
        raise ConfigError("execution.broadcast_attempts must be >= 1")
    if cfg.execution.rpc_max_retries < 0:
        raise ConfigError("execution.rpc_max_retries must be >= 0")
    if cfg.execution.confirm_timeout_s <= 0:
        raise ConfigError("execution.confirm_timeout_s must be > 0")
    if cfg.execution.commitment not in COMMITMENT_LEVELS:
        raise ConfigError("execution.commitment must be processed|confirmed|finalized")
    if cfg.execution.max_inflight < 0:
        raise ConfigError("execution.max_inflight must be >= 0")
    if cfg.telemetry.flush_interval_s <= 0:
        raise ConfigError("telemetry.flush_interval_s must be > 0")
    if cfg.reload.debounce_ms <= 0:
        raise ConfigError("reload.debounce_ms must be > 0")
    if cfg.reload.poll_interval_s <= 0:
        raise ConfigError("reload.poll_interval_s must be > 0")
    if cfg.reload.shutdown_grace_s < 0:
        raise ConfigError("reload.shutdown_grace_s must be >= 0")


def load_secrets(*, required: bool) -> Secrets:
    """Read the signing key once from the environment (or a .env file)."""
    load_dotenv()
    private_key = os.getenv("SOLANA_PRIVATE_KEY", "").strip()
    if required and not private_key:
        raise SecretsError("Missing SOLANA_PRIVATE_KEY in live mode")
    return Secrets(private_key=private_key)


def build_subscription_request(filters: FilterSet) -> dict[str, dict[str, list[str]]]:
    """Each non-empty filter dimension becomes an address allow-list; empty ones are omitted."""
    request: dict[str, dict[str, list[str]]] = {}
    if filters.programs:
        request["program"] = {"addresses": list(filters.programs)}
    if filters.pools:
        request["pool"] = {"addresses": list(filters.pools)}
    if filters.traders:
        request["trader"] = {"addresses": list(filters.traders)}
    if filters.signers:
        request["signer"] = {"addresses": list(filters.signers)}
    return request


def diff_configs(old: AppConfig, new: AppConfig) -> ConfigDiff:
    # Channel options and the generated message module are bound at transport creation.
    rebuild = (
        old.server != new.server
        or old.stream.proto_module != new.stream.proto_module
        or old.stream.service_name != new.stream.service_name
    )
    patch = old.filters != new.filters or old.stream.type != new.stream.type
    return ConfigDiff(rebuild_connection=rebuild, patch_filters=patch)


class ConfigStore:
    """Holds the active configuration. Only complete, validated configs are ever swapped in."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._current: AppConfig | None = None
        self._lock = threading.Lock()
        self._log = logging.getLogger(self.__class__.__name__)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def current(self) -> AppConfig:
        with self._lock:
            if self._current is None:
                raise ConfigError("no configuration loaded")
            return self._current

    def load(self) -> AppConfig:
        return load_config(self._path)

    def initialize(self) -> AppConfig:
        cfg = self.load()
        with self._lock:
            self._current = cfg
        self._log.info("config_loaded path=%s stream_type=%s", self._path, cfg.stream.type.value)
        return cfg

    def prepare(self) -> tuple[AppConfig, ConfigDiff]:
        """Load and diff the file against the active config without switching to it."""
        new = self.load()
        with self._lock:
            old = self._current
        if old is None:
            return new, ConfigDiff(rebuild_connection=True, patch_filters=True)
        return new, diff_configs(old, new)

    def commit(self, cfg: AppConfig) -> None:
        with self._lock:
            self._current = cfg

    def reload(self) -> tuple[AppConfig, ConfigDiff]:
        new, diff = self.prepare()
        self.commit(new)
        self._log.info(
            "config_reloaded rebuild_connection=%s patch_filters=%s",
            diff.rebuild_connection,
            diff.patch_filters,
        )
        return new, diff

    @staticmethod
    def diff(old: AppConfig, new: AppConfig) -> ConfigDiff:
        return diff_configs(old, new)


def _section(doc: dict[str, Any], key: str, *, required: bool = False) -> dict[str, Any]:
    value = doc.get(key)
    if value is None:
        if required:
            raise ConfigError(f"missing required section: {key}")
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"section {key} must be a mapping")
    return value


def _addresses(section: dict[str, Any], *keys: str) -> tuple[str, ...]:
    for key in keys:
        raw = section.get(key)
        if raw is None:
            continue
        if isinstance(raw, str):
            raw = [raw]
        if not isinstance(raw, (list, tuple)):
            raise ConfigError(f"{key} must be a list of addresses")
        out: list[str] = []
        for item in raw:
            value = str(item).strip()
            if value and value not in out:
                out.append(value)
        return tuple(out)
    return ()


def _stream_type(raw: Any) -> StreamType:
    if raw is None:
        raise ConfigError("stream.type is required")
    value = str(raw).strip().lower()
    if value in STREAM_TYPE_ALIASES:
        return STREAM_TYPE_ALIASES[value]
    try:
        return StreamType(value)
    except ValueError as exc:
        raise ConfigError(f"Unsupported stream type: {raw}") from exc


def _as_bool(raw: Any, default: bool) -> bool:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    return str(raw).lower() in {"1", "true", "yes", "on"}
