from __future__ import annotations

import threading
from enum import Enum

import base58

MAX_CACHE_SIZE = 10_000
ACCOUNT_KEY_LENGTH = 32
SIGNATURE_LENGTH = 64


class AddressStatus(str, Enum):
    UNDEFINED = "undefined"
    INVALID = "invalid_address"


class AddressCodec:
    """Raw account bytes -> base58 display form, with a bounded advisory cache.

    The cache only saves encoding work: ``max_size=0`` disables it and every
    returned value stays the same. When full, the oldest-inserted entry is
    dropped before a new one is stored.
    """

    def __init__(
        self,
        *,
        expected_length: int | None = ACCOUNT_KEY_LENGTH,
        max_size: int = MAX_CACHE_SIZE,
    ) -> None:
        self._expected_length = expected_length
        self._max_size = max_size
        self._cache: dict[bytes, str] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def resolve(self, raw: bytes | bytearray | memoryview | None) -> str | AddressStatus:
        if raw is None:
            return AddressStatus.UNDEFINED
        if not isinstance(raw, (bytes, bytearray, memoryview)):
            return AddressStatus.INVALID
        key = bytes(raw)
        if not key:
            return AddressStatus.UNDEFINED

        if self._max_size > 0:
            with self._lock:
                cached = self._cache.get(key)
                if cached is not None:
                    self.hits += 1
                    return cached

        if self._expected_length is not None and len(key) != self._expected_length:
            return AddressStatus.INVALID
        try:
            address = base58.b58encode(key).decode("ascii")
        except (TypeError, ValueError):
            return AddressStatus.INVALID

        if self._max_size > 0:
            with self._lock:
                self.misses += 1
                if key not in self._cache and len(self._cache) >= self._max_size:
                    del self._cache[next(iter(self._cache))]
                self._cache[key] = address
        return address

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


def is_resolved(value: str | AddressStatus) -> bool:
    return not isinstance(value, AddressStatus)


def display(value: str | AddressStatus) -> str:
    return value.value if isinstance(value, AddressStatus) else value
