"""Authorizer — verifies signed meta-transactions and forwards them once.

Flow of one ``authorize`` call, all under a single lock:

1. read the signer's nonce (0 if unseen)
2. digest = keccak(signer ‖ encoded_call ‖ nonce)
3. recover the signer from the ``personal_sign``-prefixed digest
4. mismatch → ``InvalidSignatureError``, nothing touched
5. bump the nonce *before* running the action
6. resolve + run the action with the signer as a typed argument;
   any failure restores nonce, ledger and messages, then raises
   ``CallExecutionError`` (or its ``UnauthorizedActionError`` subclass)
7. record and publish the audit event

Replays fail at step 4: the stored nonce has moved on, so the digest the
old signature covers is no longer the one being checked.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from web3 import Web3

from config.settings import settings
from core.actions import ActionRegistry, CallContext, default_registry
from core.errors import CallExecutionError, InvalidSignatureError
from core.event_bus import TOPIC_EXECUTED, TOPIC_REJECTED, EventBus
from core.nonce_store import NonceStore
from core.state import ActionState
from models import AuthorizationEvent, MetaTxRequest
from web3_infra.call_codec import SELECTOR_SIZE, compute_digest, recover_signer, to_bytes

logger = structlog.get_logger("core.authorizer")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Booking address for value held by an in-process authorizer
LOCAL_AUTHORIZER_ADDRESS = "0x000000000000000000000000000000000000a11C"


class Authorizer:
    """In-process meta-transaction authorizer.

    Parameters
    ----------
    owner:
        Identity allowed to run privileged actions (``transfer``).
        Defaults to ``settings.OWNER_ADDRESS``.
    address:
        Ledger key for value received by the authorizer.  Defaults to
        ``settings.AUTHORIZER_ADDRESS`` or a fixed local address.
    registry:
        Action dispatch table.  Defaults to the built-in actions.
    event_bus:
        Optional bus; executed and rejected requests are published to it.

    Usage::

        authorizer = Authorizer(owner="0xOwner...")
        nonce = authorizer.get_nonce(signer)
        ...  # sign compute_digest(signer, call, nonce) off-chain
        await authorizer.authorize(signer, call, signature, relayer=me)
    """

    def __init__(
        self,
        owner: str | None = None,
        address: str | None = None,
        registry: ActionRegistry | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        owner = owner or settings.OWNER_ADDRESS
        if not owner:
            raise ValueError("Authorizer owner is required (pass owner or set OWNER_ADDRESS)")
        self._owner = Web3.to_checksum_address(owner)
        self._nonces = NonceStore()
        self._state = ActionState(
            contract_address=address or settings.AUTHORIZER_ADDRESS or LOCAL_AUTHORIZER_ADDRESS,
        )
        self._registry = registry or default_registry()
        self._bus = event_bus
        self._lock = asyncio.Lock()
        self._audit_log: list[AuthorizationEvent] = []

    # ── Read-only views ──────────────────────────────────────────

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def address(self) -> str:
        return self._state.contract_address

    @property
    def registry(self) -> ActionRegistry:
        return self._registry

    @property
    def audit_log(self) -> list[AuthorizationEvent]:
        """Executed requests in commit order (copy)."""
        return list(self._audit_log)

    def get_nonce(self, address: str) -> int:
        """Current nonce for *address*; the next digest must embed it."""
        return self._nonces.get(address)

    def balance_of(self, address: str) -> int:
        return self._state.balance_of(address)

    def message_of(self, address: str) -> str | None:
        return self._state.messages.get(Web3.to_checksum_address(address))

    # ── Entry points ─────────────────────────────────────────────

    async def authorize(
        self,
        signer: str,
        encoded_call: bytes | str,
        signature: bytes | str,
        *,
        relayer: str = ZERO_ADDRESS,
        value: int = 0,
    ) -> bool:
        """Verify *signature* and run *encoded_call* on behalf of *signer*.

        Parameters
        ----------
        signer:
            Address that claims to have signed the request.
        encoded_call:
            ``selector ‖ abi.encode(args)`` of a registered action.
        signature:
            65-byte ``r ‖ s ‖ v`` over the prefixed authorization digest.
        relayer:
            Identity submitting the request; recorded in the audit event.
        value:
            Wei received alongside the call, credited to the authorizer.

        Returns
        -------
        bool
            ``True`` once the action has committed.

        Raises
        ------
        InvalidSignatureError
            Signature does not recover to *signer*.  No state changed.
        CallExecutionError
            The forwarded action failed.  All state was rolled back.
        UnauthorizedActionError
            The action's capability check rejected *signer*.
        """
        if value < 0:
            raise ValueError(f"value must be non-negative, got {value}")
        signer = Web3.to_checksum_address(signer)
        relayer = Web3.to_checksum_address(relayer)
        call = to_bytes(encoded_call)

        async with self._lock:
            nonce = self._nonces.get(signer)
            digest = compute_digest(signer, call, nonce)
            await self._verify(signer, call, digest, signature, nonce, relayer)

            nonce_snapshot = self._nonces.snapshot()
            state_snapshot = self._state.snapshot()
            self._nonces.increment(signer)
            try:
                self._state.credit(self._state.contract_address, value)
                action_sig = self._forward(signer, relayer, call, value)
            except Exception as exc:
                self._nonces.restore(nonce_snapshot)
                self._state.restore(state_snapshot)
                logger.warning(
                    "authorizer.call_failed",
                    signer=signer,
                    relayer=relayer,
                    nonce=nonce,
                    error=str(exc),
                )
                await self._publish_rejection(signer, relayer, call, nonce, str(exc))
                if isinstance(exc, CallExecutionError):
                    if exc.signer is None:
                        exc.signer = signer
                    raise
                raise CallExecutionError(
                    f"Forwarded call failed: {exc}",
                    signer=signer,
                    selector=f"0x{call[:SELECTOR_SIZE].hex()}",
                ) from exc

            event = AuthorizationEvent(
                sequence=len(self._audit_log),
                signer=signer,
                relayer=relayer,
                encoded_call=call,
                nonce=nonce,
                value=value,
                action=action_sig,
            )
            self._audit_log.append(event)

        logger.info(
            "authorizer.executed",
            signer=signer,
            relayer=relayer,
            nonce=nonce,
            action=action_sig,
            value=value,
        )
        if self._bus is not None:
            await self._bus.publish(TOPIC_EXECUTED, event.to_payload())
        return True

    async def authorize_request(
        self,
        request: MetaTxRequest,
        *,
        relayer: str = ZERO_ADDRESS,
        value: int = 0,
    ) -> bool:
        """``authorize`` for a validated ``MetaTxRequest``."""
        return await self.authorize(
            request.signer,
            request.encoded_call,
            request.signature,
            relayer=relayer,
            value=value,
        )

    # ── Internals ────────────────────────────────────────────────

    async def _verify(
        self,
        signer: str,
        call: bytes,
        digest: bytes,
        signature: bytes | str,
        nonce: int,
        relayer: str,
    ) -> None:
        try:
            recovered: str | None = recover_signer(digest, signature)
        except ValueError as exc:
            recovered = None
            reason = str(exc)
        else:
            reason = f"recovered {recovered}"

        if recovered is not None and recovered == signer:
            return

        logger.warning(
            "authorizer.invalid_signature",
            signer=signer,
            recovered=recovered,
            nonce=nonce,
            relayer=relayer,
        )
        await self._publish_rejection(signer, relayer, call, nonce, reason)
        raise InvalidSignatureError(
            f"Signature does not match signer {signer} at nonce {nonce} ({reason})",
            signer=signer,
            recovered=recovered,
        )

    def _forward(self, signer: str, relayer: str, call: bytes, value: int) -> str:
        action, args = self._registry.resolve(call)
        ctx = CallContext(
            signer=signer,
            relayer=relayer,
            value=value,
            owner=self._owner,
            state=self._state,
        )
        action.handler(ctx, *args)
        return action.signature

    async def _publish_rejection(
        self,
        signer: str,
        relayer: str,
        call: bytes,
        nonce: int,
        reason: str,
    ) -> None:
        if self._bus is None:
            return
        payload: dict[str, Any] = {
            "signer": signer,
            "relayer": relayer,
            "nonce": nonce,
            "reason": reason,
            "encoded_call": "0x" + call.hex(),
        }
        await self._bus.publish(TOPIC_REJECTED, payload)
