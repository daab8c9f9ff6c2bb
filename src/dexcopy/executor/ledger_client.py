from __future__ import annotations

import logging
from typing import Any

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.types import TxOpts
from solders.signature import Signature

from dexcopy.schemas import SignatureStatus


class SolanaLedgerClient:
    def __init__(self, rpc_url: str, *, client: AsyncClient | None = None) -> None:
        self._rpc_url = rpc_url
        self._client = client
        self._log = logging.getLogger(self.__class__.__name__)

    def _get_client(self) -> AsyncClient:
        if self._client is None:
            self._client = AsyncClient(self._rpc_url)
        return self._client

    async def send_raw_transaction(
        self,
        raw: bytes,
        *,
        skip_preflight: bool,
        max_retries: int,
    ) -> str:
        resp = await self._get_client().send_raw_transaction(
            raw,
            opts=TxOpts(skip_preflight=skip_preflight, max_retries=max_retries),
        )
        return str(resp.value)

    async def confirm_transaction(self, signature: str, commitment: str) -> SignatureStatus:
        resp = await self._get_client().confirm_transaction(
            Signature.from_string(signature),
            commitment=Commitment(commitment),
        )
        return _status(resp.value[0] if resp.value else None)

    async def get_signature_status(self, signature: str) -> SignatureStatus | None:
        resp = await self._get_client().get_signature_statuses([Signature.from_string(signature)])
        if not resp.value or resp.value[0] is None:
            return None
        return _status(resp.value[0])

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


def _status(raw: Any) -> SignatureStatus:
    if raw is None:
        return SignatureStatus()
    confirmation = getattr(raw, "confirmation_status", None)
    return SignatureStatus(
        err=getattr(raw, "err", None),
        confirmation_status=str(confirmation) if confirmation is not None else None,
    )
