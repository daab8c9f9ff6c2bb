from __future__ import annotations

import asyncio
import importlib
import logging
from collections.abc import AsyncIterator
from typing import Any

import grpc
from google.protobuf import json_format, message_factory
from google.protobuf.descriptor import FieldDescriptor
from google.protobuf.message import Message

from dexcopy.config import ServerConfig, StreamConfig
from dexcopy.errors import ConnectionFault
from dexcopy.schemas import StreamType

METHOD_NAMES = {
    StreamType.DEX_TRADES: "DexTrades",
    StreamType.DEX_ORDERS: "DexOrders",
    StreamType.DEX_POOLS: "DexPools",
    StreamType.TRANSACTIONS: "Transactions",
    StreamType.TRANSFERS: "Transfers",
    StreamType.BALANCES: "Balances",
}


class CoreCastSubscription:
    def __init__(self, call: Any) -> None:
        self._call = call
        self._cancelled = False
        self._skipped = 0
        self._log = logging.getLogger(self.__class__.__name__)

    @property
    def skipped(self) -> int:
        return self._skipped

    async def wait_ready(self) -> None:
        try:
            await self._call.initial_metadata()
        except grpc.aio.AioRpcError as exc:
            raise _fault(exc) from exc

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[dict[str, Any]]:
        try:
            async for message in self._call:
                try:
                    plain = message_to_plain(message)
                except (AttributeError, KeyError, TypeError, ValueError) as exc:
                    self._skipped += 1
                    self._log.warning(
                        "message_convert_error type=%s skipped=%s error=%r",
                        type(message).__name__,
                        self._skipped,
                        exc,
                    )
                    continue
                yield plain
        except grpc.aio.AioRpcError as exc:
            if self._cancelled and exc.code() == grpc.StatusCode.CANCELLED:
                return
            raise _fault(exc) from exc
        except asyncio.CancelledError:
            if self._cancelled:
                return
            raise

    def cancel(self) -> None:
        self._cancelled = True
        self._call.cancel()


class CoreCastTransport:
    """gRPC server-streaming client for the CoreCast service.

    Message classes come from a protobuf module generated from the upstream
    schema (``stream.proto_module``); they are looked up through the service
    descriptor so only the module name has to be configured.
    """

    def __init__(
        self,
        server: ServerConfig,
        stream: StreamConfig,
        *,
        channel: Any = None,
    ) -> None:
        self._server = server
        self._stream = stream
        self._channel = channel if channel is not None else _create_channel(server)
        self._metadata: tuple[tuple[str, str], ...] = (
            (("authorization", server.authorization),) if server.authorization else ()
        )
        self._classes: dict[StreamType, tuple[type[Message], type[Message]]] = {}
        self._log = logging.getLogger(self.__class__.__name__)

    def open(self, stream_type: StreamType, request: dict[str, Any]) -> CoreCastSubscription:
        request_cls, response_cls = self.message_classes(stream_type)
        path = f"/{self._stream.service_name}/{METHOD_NAMES[stream_type]}"
        method = self._channel.unary_stream(
            path,
            request_serializer=request_cls.SerializeToString,
            response_deserializer=response_cls.FromString,
        )
        message = json_format.ParseDict(request, request_cls())
        call = method(message, metadata=self._metadata)
        return CoreCastSubscription(call)

    async def close(self) -> None:
        await self._channel.close()
        self._log.info("corecast_channel_closed server=%s", self._server.address)

    def message_classes(self, stream_type: StreamType) -> tuple[type[Message], type[Message]]:
        cached = self._classes.get(stream_type)
        if cached is not None:
            return cached
        module = importlib.import_module(self._stream.proto_module)
        service_short_name = self._stream.service_name.rsplit(".", 1)[-1]
        service = module.DESCRIPTOR.services_by_name[service_short_name]
        method = service.methods_by_name[METHOD_NAMES[stream_type]]
        classes = (
            message_factory.GetMessageClass(method.input_type),
            message_factory.GetMessageClass(method.output_type),
        )
        self._classes[stream_type] = classes
        return classes


def _create_channel(server: ServerConfig) -> Any:
    options = server.tuning.channel_options()
    if server.insecure:
        return grpc.aio.insecure_channel(server.address, options=options)
    return grpc.aio.secure_channel(
        server.address,
        grpc.ssl_channel_credentials(),
        options=options,
    )


def _fault(exc: grpc.aio.AioRpcError) -> ConnectionFault:
    code = exc.code()
    return ConnectionFault(exc.details() or str(exc), code=code.name if code else "")


def message_to_plain(message: Message) -> dict[str, Any]:
    """Convert a protobuf message to nested dicts, keeping bytes fields as raw bytes."""
    out: dict[str, Any] = {}
    for field, value in message.ListFields():
        out[field.name] = _plain_value(field, value)
    return out


def _plain_value(field: FieldDescriptor, value: Any) -> Any:
    if field.type != FieldDescriptor.TYPE_MESSAGE:
        if _is_repeated(field):
            return list(value)
        return value
    if field.message_type.GetOptions().map_entry:
        value_field = field.message_type.fields_by_name["value"]
        if value_field.type == FieldDescriptor.TYPE_MESSAGE:
            return {key: message_to_plain(item) for key, item in value.items()}
        return dict(value)
    if _is_repeated(field):
        return [message_to_plain(item) for item in value]
    return message_to_plain(value)


def _is_repeated(field: FieldDescriptor) -> bool:
    # protobuf 7 dropped FieldDescriptor.label; older releases lack is_repeated.
    is_repeated = getattr(field, "is_repeated", None)
    if is_repeated is not None:
        return bool(is_repeated)
    return field.label == FieldDescriptor.LABEL_REPEATED
