"""Action dispatch table for forwarded calls.

An encoded call is ``selector ‖ abi.encode(args)``.  Instead of forwarding
the raw bytes through a low-level self-call with the signer glued to the
end, the authorizer resolves the selector here and invokes a registered
handler with the signer passed as a typed field of ``CallContext``.

Each handler owns its capability check: the authorizer only proves *who*
signed, the handler decides whether that signer may do the thing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterator

import structlog
from eth_abi.exceptions import DecodingError
from web3 import Web3

from core.errors import CallExecutionError, UnauthorizedActionError
from core.state import ActionState
from web3_infra.call_codec import (
    SELECTOR_SIZE,
    canonical_signature,
    decode_args,
    function_selector,
)

logger = structlog.get_logger("core.actions")

Handler = Callable[..., Any]


@dataclass(frozen=True)
class CallContext:
    """Execution context handed to every action handler."""

    signer: str
    relayer: str
    value: int
    owner: str
    state: ActionState


@dataclass(frozen=True)
class Action:
    """A named, typed entry in the dispatch table."""

    name: str
    arg_types: tuple[str, ...]
    handler: Handler

    @property
    def signature(self) -> str:
        return canonical_signature(self.name, self.arg_types)

    @property
    def selector(self) -> bytes:
        return function_selector(self.signature)


class ActionRegistry:
    """Selector → ``Action`` lookup.

    Usage::

        registry = ActionRegistry()

        @registry.action("setMessage", "string")
        def set_message(ctx: CallContext, message: str) -> None:
            ctx.state.messages[ctx.signer] = message
    """

    def __init__(self) -> None:
        self._actions: dict[bytes, Action] = {}

    def register(self, action: Action) -> Action:
        selector = action.selector
        if selector in self._actions:
            existing = self._actions[selector]
            raise ValueError(
                f"Selector 0x{selector.hex()} already registered for {existing.signature}"
            )
        self._actions[selector] = action
        logger.debug(
            "actions.registered",
            signature=action.signature,
            selector=f"0x{selector.hex()}",
        )
        return action

    def action(self, name: str, *arg_types: str) -> Callable[[Handler], Handler]:
        """Decorator form of ``register``."""

        def _decorator(fn: Handler) -> Handler:
            self.register(Action(name=name, arg_types=tuple(arg_types), handler=fn))
            return fn

        return _decorator

    def resolve(self, encoded_call: bytes) -> tuple[Action, tuple[Any, ...]]:
        """Find the action for *encoded_call* and decode its arguments.

        Raises
        ------
        CallExecutionError
            Unknown selector, truncated call, or undecodable arguments.
        """
        if len(encoded_call) < SELECTOR_SIZE:
            raise CallExecutionError(
                f"Encoded call too short: {len(encoded_call)} bytes",
            )
        selector = encoded_call[:SELECTOR_SIZE]
        action = self._actions.get(selector)
        if action is None:
            raise CallExecutionError(
                f"No action registered for selector 0x{selector.hex()}",
                selector=f"0x{selector.hex()}",
            )
        try:
            args = decode_args(action.arg_types, encoded_call[SELECTOR_SIZE:])
        except DecodingError as exc:
            raise CallExecutionError(
                f"Cannot decode arguments for {action.signature}: {exc}",
                selector=f"0x{selector.hex()}",
            ) from exc
        return action, args

    @property
    def selectors(self) -> list[str]:
        return [f"0x{s.hex()}" for s in self._actions]

    def __iter__(self) -> Iterator[Action]:
        return iter(self._actions.values())

    def __len__(self) -> int:
        return len(self._actions)


# ── Built-in actions ─────────────────────────────────────────────────


def transfer(ctx: CallContext, to: str, amount: int) -> None:
    """Pay *amount* wei out of the contract balance.  Owner only."""
    if Web3.to_checksum_address(ctx.signer) != Web3.to_checksum_address(ctx.owner):
        raise UnauthorizedActionError(
            f"{ctx.signer} is not allowed to transfer; owner only",
            signer=ctx.signer,
        )
    ctx.state.move(ctx.state.contract_address, to, amount)
    logger.info(
        "actions.transfer",
        signer=ctx.signer,
        to=Web3.to_checksum_address(to),
        amount=amount,
    )


def set_message(ctx: CallContext, message: str) -> None:
    # Any signer, but only into its own slot
    ctx.state.messages[Web3.to_checksum_address(ctx.signer)] = message


def default_registry() -> ActionRegistry:
    """Fresh registry holding the built-in actions."""
    registry = ActionRegistry()
    registry.register(Action("transfer", ("address", "uint256"), transfer))
    registry.register(Action("setMessage", ("string",), set_message))
    return registry
