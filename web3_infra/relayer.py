"""Relayer — submits signed meta-transactions to a deployed authorizer.

The relayer holds a funded account, wraps a ``MetaTxRequest`` into an
``executeMetaTransaction`` transaction, pays the gas and reports the
resulting transaction hash.  It also exposes ``getNonce`` so a
``RequestSigner`` can build the next digest against on-chain state.

Retries belong to ``RPCManager`` and cover reads, building and receipt
lookups only: a signed transaction is broadcast once.  A revert is
surfaced as ``RelayTransactionError``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog
from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import TimeExhausted
from web3.types import TxReceipt

from config.settings import settings
from models import MetaTxRequest
from web3_infra.rpc_manager import RPCError

logger = structlog.get_logger("web3_infra.relayer")

GWEI = Decimal("1000000000")

# ── ABI fragments of the deployed authorizer ─────────────────────────

AUTHORIZER_ABI = [
    {
        "name": "executeMetaTransaction",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "userAddress", "type": "address"},
            {"name": "functionSignature", "type": "bytes"},
            {"name": "signature", "type": "bytes"},
        ],
        "outputs": [{"name": "", "type": "bytes"}],
    },
    {
        "name": "getNonce",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "user", "type": "address"}],
        "outputs": [{"name": "nonce", "type": "uint256"}],
    },
    {
        "name": "MetaTransactionExecuted",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "userAddress", "type": "address", "indexed": False},
            {"name": "relayerAddress", "type": "address", "indexed": False},
            {"name": "functionSignature", "type": "bytes", "indexed": False},
        ],
    },
]


class TxStatus(str, Enum):
    """Transaction submission status."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REVERTED = "REVERTED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class RelayTxResult:
    """Result of relaying one meta-transaction."""

    tx_hash: str
    status: TxStatus
    gas_used: int
    gas_price_gwei: Decimal
    block_number: int
    error: str | None = None


@dataclass
class RelayerConfig:
    """Configuration for the relayer."""

    authorizer_address: str = ""
    chain_id: int = 11155111
    gas_limit_execute: int = 250_000
    max_gas_price_gwei: Decimal = Decimal("100")
    gas_price_multiplier: Decimal = Decimal("1.2")  # 20% buffer over node quote
    tx_confirmation_timeout_s: float = 120.0

    @classmethod
    def from_settings(cls) -> RelayerConfig:
        return cls(
            authorizer_address=settings.AUTHORIZER_ADDRESS,
            chain_id=settings.CHAIN_ID,
            gas_limit_execute=settings.GAS_LIMIT_EXECUTE,
            max_gas_price_gwei=settings.MAX_GAS_PRICE_GWEI,
            gas_price_multiplier=settings.GAS_PRICE_MULTIPLIER,
            tx_confirmation_timeout_s=settings.TX_CONFIRMATION_TIMEOUT_SECONDS,
        )


class Relayer:
    """Gas-paying submitter for signed meta-transactions.

    Usage::

        async with RPCManager(settings.rpc_endpoints) as rpc:
            relayer = Relayer(rpc, private_key=settings.RELAYER_PRIVATE_KEY)
            nonce = await relayer.get_nonce(user)
            result = await relayer.submit(request)
            print(result.tx_hash, result.status)
    """

    def __init__(
        self,
        rpc_manager: Any,  # RPCManager; Any keeps test doubles simple
        private_key: str,
        config: RelayerConfig | None = None,
    ) -> None:
        self._rpc = rpc_manager
        self._private_key = private_key
        self._address = Account.from_key(private_key).address
        self._config = config or RelayerConfig.from_settings()
        if not self._config.authorizer_address:
            raise ValueError("RelayerConfig.authorizer_address is required")

    @property
    def address(self) -> str:
        """Relayer account (pays gas, appears as relayerAddress)."""
        return self._address

    @property
    def config(self) -> RelayerConfig:
        return self._config

    # ── Public API ───────────────────────────────────────────────

    async def get_nonce(self, address: str) -> int:
        """Read ``getNonce(address)`` from the deployed authorizer."""

        async def _call(w3: AsyncWeb3) -> int:
            return await self._contract(w3).functions.getNonce(
                AsyncWeb3.to_checksum_address(address)
            ).call()

        return int(await self._rpc.execute(_call))

    async def get_gas_price_gwei(self) -> Decimal:
        async def _get_price(w3: AsyncWeb3) -> int:
            return await w3.eth.gas_price

        return Decimal(str(await self._rpc.execute(_get_price))) / GWEI

    async def submit(self, request: MetaTxRequest, value: int = 0) -> RelayTxResult:
        """Relay *request*, optionally forwarding *value* wei.

        Only building and signing go through ``RPCManager.execute``.  The
        signed transaction is broadcast exactly once; after that only the
        receipt lookup for that hash fails over.

        Returns
        -------
        RelayTxResult
            ``CONFIRMED`` on success.  ``FAILED`` (with ``tx_hash`` set) if
            the receipt could not be obtained; the transaction may still
            be mined.

        Raises
        ------
        GasAbortError
            If the current gas price exceeds the configured maximum.
        RelayTransactionError
            If the broadcast was refused or the transaction reverted.
        """
        logger.info(
            "relayer.submit",
            signer=request.signer,
            relayer=self._address,
            selector=f"0x{request.encoded_call[:4].hex()}",
            value=value,
        )
        gas_price_gwei = await self.get_gas_price_gwei()
        self._check_gas_price(gas_price_gwei)

        async def _build_and_sign(w3: AsyncWeb3) -> tuple[dict[str, Any], bytes]:
            tx = await self._contract(w3).functions.executeMetaTransaction(
                AsyncWeb3.to_checksum_address(request.signer),
                request.encoded_call,
                request.signature,
            ).build_transaction(
                await self._base_tx_params(w3, gas_price_gwei, value)
            )
            signed = w3.eth.account.sign_transaction(tx, self._private_key)
            return tx, bytes(signed.raw_transaction)

        tx, raw_tx = await self._rpc.execute(_build_and_sign)
        tx_hash_hex = await self._broadcast(raw_tx)

        result = await self._await_receipt(tx, tx_hash_hex)
        if result.status == TxStatus.REVERTED:
            raise RelayTransactionError(
                "Meta-transaction reverted on-chain",
                tx_hash=result.tx_hash,
                result=result,
            )
        return result

    # ── Internals ────────────────────────────────────────────────

    def _contract(self, w3: AsyncWeb3) -> Any:
        return w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(self._config.authorizer_address),
            abi=AUTHORIZER_ABI,
        )

    def _check_gas_price(self, gas_price_gwei: Decimal) -> None:
        if gas_price_gwei > self._config.max_gas_price_gwei:
            raise GasAbortError(
                f"Gas price {gas_price_gwei} Gwei exceeds maximum "
                f"{self._config.max_gas_price_gwei} Gwei"
            )
        logger.debug(
            "relayer.gas_check_ok",
            gas_price_gwei=str(gas_price_gwei),
            max_gwei=str(self._config.max_gas_price_gwei),
        )

    async def _base_tx_params(
        self,
        w3: AsyncWeb3,
        gas_price_gwei: Decimal,
        value: int,
    ) -> dict[str, Any]:
        nonce = await w3.eth.get_transaction_count(self._address, "pending")
        adjusted = int(gas_price_gwei * GWEI * self._config.gas_price_multiplier)
        return {
            "from": self._address,
            "nonce": nonce,
            "gas": self._config.gas_limit_execute,
            "gasPrice": adjusted,
            "value": value,
            "chainId": self._config.chain_id,
        }

    async def _broadcast(self, raw_tx: bytes) -> str:
        # The hash is keccak(raw), so it is known even if the node errors
        tx_hash_hex = Web3.to_hex(Web3.keccak(raw_tx))

        async def _send(w3: AsyncWeb3) -> Any:
            return await w3.eth.send_raw_transaction(raw_tx)

        try:
            await self._rpc.execute_once(_send)
        except RPCError as exc:
            logger.error(
                "relayer.broadcast_failed",
                tx_hash=tx_hash_hex,
                error=str(exc.last_error or exc),
            )
            raise RelayTransactionError(
                f"Broadcast failed: {exc.last_error or exc}",
                tx_hash=tx_hash_hex,
            ) from exc

        logger.info("relayer.tx_sent", tx_hash=tx_hash_hex)
        return tx_hash_hex

    async def _await_receipt(self, tx: dict[str, Any], tx_hash_hex: str) -> RelayTxResult:
        timeout_s = self._config.tx_confirmation_timeout_s

        async def _wait(w3: AsyncWeb3) -> TxReceipt | None:
            try:
                return await asyncio.wait_for(
                    w3.eth.wait_for_transaction_receipt(tx_hash_hex, timeout=timeout_s),
                    timeout=timeout_s + 10,
                )
            except (asyncio.TimeoutError, TimeExhausted):
                # Not mined in time; another endpoint would not know better
                return None

        try:
            receipt = await self._rpc.execute(_wait)
        except RPCError as exc:
            logger.error(
                "relayer.receipt_unavailable",
                tx_hash=tx_hash_hex,
                error=str(exc.last_error or exc),
            )
            return self._failed(tx_hash_hex, f"Receipt lookup failed: {exc.last_error or exc}")

        if receipt is None:
            logger.error("relayer.tx_timeout", tx_hash=tx_hash_hex, timeout_s=timeout_s)
            return self._failed(
                tx_hash_hex, f"Transaction confirmation timeout after {timeout_s}s"
            )

        gas_used = receipt.get("gasUsed", 0)
        effective = receipt.get("effectiveGasPrice", tx.get("gasPrice", 0))
        reverted = receipt.get("status", 0) != 1
        result = RelayTxResult(
            tx_hash=tx_hash_hex,
            status=TxStatus.REVERTED if reverted else TxStatus.CONFIRMED,
            gas_used=gas_used,
            gas_price_gwei=Decimal(str(effective)) / GWEI,
            block_number=receipt.get("blockNumber", 0),
            error="Transaction reverted" if reverted else None,
        )

        if reverted:
            logger.error("relayer.tx_reverted", tx_hash=tx_hash_hex, gas_used=gas_used)
        else:
            logger.info(
                "relayer.tx_confirmed",
                tx_hash=tx_hash_hex,
                gas_used=gas_used,
                block=result.block_number,
            )
        return result

    @staticmethod
    def _failed(tx_hash_hex: str, error: str) -> RelayTxResult:
        return RelayTxResult(
            tx_hash=tx_hash_hex,
            status=TxStatus.FAILED,
            gas_used=0,
            gas_price_gwei=Decimal("0"),
            block_number=0,
            error=error,
        )


# ── Exceptions ───────────────────────────────────────────────────────


class GasAbortError(Exception):
    """Raised when gas price exceeds configured maximum."""


class RelayTransactionError(Exception):
    """Raised when a relayed meta-transaction is refused by the node or reverts."""

    def __init__(
        self,
        message: str,
        tx_hash: str | None = None,
        result: RelayTxResult | None = None,
    ) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash
        self.result = result
