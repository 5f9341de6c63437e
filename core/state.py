"""ActionState — the state forwarded actions are allowed to touch.

Holds the contract's ether-style ledger and the per-signer message slots
used by the built-in actions.  The nonce map is deliberately not part of
this object: it belongs to the ``Authorizer`` alone.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from web3 import Web3

from core.errors import CallExecutionError


@dataclass(frozen=True)
class StateSnapshot:
    """Point-in-time copy used to undo a failed invocation."""

    balances: dict[str, int]
    messages: dict[str, str]


@dataclass
class ActionState:
    """Mutable state behind the authorizer's actions.

    ``contract_address`` is the key under which value received by the
    authorizer itself is booked.
    """

    contract_address: str
    balances: dict[str, int] = field(default_factory=dict)
    messages: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.contract_address = Web3.to_checksum_address(self.contract_address)

    # ── Ledger ───────────────────────────────────────────────────

    def balance_of(self, address: str) -> int:
        return self.balances.get(Web3.to_checksum_address(address), 0)

    def credit(self, address: str, amount: int) -> None:
        if amount < 0:
            raise ValueError(f"amount must be non-negative, got {amount}")
        key = Web3.to_checksum_address(address)
        self.balances[key] = self.balances.get(key, 0) + amount

    def move(self, sender: str, recipient: str, amount: int) -> None:
        """Move *amount* wei between two ledger entries."""
        if amount < 0:
            raise ValueError(f"amount must be non-negative, got {amount}")
        available = self.balance_of(sender)
        if available < amount:
            raise CallExecutionError(
                f"Insufficient balance: {available} < {amount}",
            )
        src = Web3.to_checksum_address(sender)
        self.balances[src] = available - amount
        self.credit(recipient, amount)

    # ── Rollback support ─────────────────────────────────────────

    def snapshot(self) -> StateSnapshot:
        return StateSnapshot(balances=dict(self.balances), messages=dict(self.messages))

    def restore(self, snapshot: StateSnapshot) -> None:
        self.balances = dict(snapshot.balances)
        self.messages = dict(snapshot.messages)
