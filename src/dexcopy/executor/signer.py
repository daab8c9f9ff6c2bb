from __future__ import annotations

from dataclasses import dataclass

import base58
from solders.keypair import Keypair
from solders.transaction import Transaction, VersionedTransaction

from dexcopy.errors import SecretsError, SignError

TX_FORMAT_LEGACY = "legacy"
TX_FORMAT_V0 = "v0"

_SIGNATURE_BYTES = 64
_VERSION_PREFIX_MASK = 0x80


@dataclass(frozen=True)
class SignedTransaction:
    raw: bytes
    signature: str
    tx_format: str


def load_keypair(private_key_b58: str) -> Keypair:
    try:
        key_bytes = base58.b58decode(private_key_b58.strip())
    except ValueError as exc:
        raise SecretsError("SOLANA_PRIVATE_KEY is not valid base58") from exc
    if len(key_bytes) != 64:
        raise SecretsError(f"SOLANA_PRIVATE_KEY decoded to {len(key_bytes)} bytes, expected 64")
    try:
        return Keypair.from_bytes(key_bytes)
    except ValueError as exc:
        raise SecretsError("SOLANA_PRIVATE_KEY is not a valid ed25519 keypair") from exc


def detect_tx_format(raw: bytes) -> str:
    """Tell a versioned (v0) transaction from a legacy one by its message header.

    The wire layout is a compact-u16 signature count, the signatures, then the
    message. A versioned message starts with a byte whose top bit is set; a
    legacy message starts with its required-signature count, which never has it.
    """
    count, offset = _decode_compact_u16(raw)
    header_at = offset + count * _SIGNATURE_BYTES
    if header_at >= len(raw):
        raise SignError(f"transaction blob too short ({len(raw)} bytes)")
    return TX_FORMAT_V0 if raw[header_at] & _VERSION_PREFIX_MASK else TX_FORMAT_LEGACY


class TransactionSigner:
    def __init__(self, keypair: Keypair) -> None:
        self._keypair = keypair

    @property
    def public_key(self) -> str:
        return str(self._keypair.pubkey())

    def sign(self, raw: bytes) -> SignedTransaction:
        tx_format = detect_tx_format(raw)
        try:
            if tx_format == TX_FORMAT_V0:
                unsigned = VersionedTransaction.from_bytes(raw)
                signed = VersionedTransaction(unsigned.message, [self._keypair])
                return SignedTransaction(bytes(signed), str(signed.signatures[0]), tx_format)
            legacy = Transaction.from_bytes(raw)
            legacy.sign([self._keypair], legacy.message.recent_blockhash)
            return SignedTransaction(bytes(legacy), str(legacy.signatures[0]), tx_format)
        except Exception as exc:
            raise SignError(f"failed to sign {tx_format} transaction: {exc}") from exc


def _decode_compact_u16(raw: bytes) -> tuple[int, int]:
    value = 0
    for index in range(3):
        if index >= len(raw):
            raise SignError("transaction blob truncated in signature count")
        byte = raw[index]
        value |= (byte & 0x7F) << (7 * index)
        if not byte & 0x80:
            return value, index + 1
    raise SignError("invalid compact-u16 signature count")
