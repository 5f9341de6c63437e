"""NonceStore — per-signer replay-protection counters.

The store is owned by a single ``Authorizer``; nothing else mutates it.
Counters start at 0, only ever move up by one, and can be snapshotted
so a failed invocation can put them back exactly as they were.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from web3 import Web3


def _key(address: str) -> str:
    return Web3.to_checksum_address(address)


class NonceStore:
    """Address → unsigned counter, default 0."""

    def __init__(self) -> None:
        self._nonces: dict[str, int] = {}

    def get(self, address: str) -> int:
        """Return the current nonce for *address* (0 if never seen)."""
        return self._nonces.get(_key(address), 0)

    def increment(self, address: str) -> int:
        """Bump the nonce for *address* and return the new value."""
        key = _key(address)
        value = self._nonces.get(key, 0) + 1
        self._nonces[key] = value
        return value

    # ── Rollback support ─────────────────────────────────────────

    def snapshot(self) -> Mapping[str, int]:
        return MappingProxyType(dict(self._nonces))

    def restore(self, snapshot: Mapping[str, int]) -> None:
        self._nonces = dict(snapshot)

    def __len__(self) -> int:
        return len(self._nonces)

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and _key(address) in self._nonces
