"""RequestSigner — off-loop signing of meta-transaction requests.

Signing is CPU-bound (secp256k1 math), so it is offloaded to a
``ProcessPoolExecutor`` to avoid blocking the asyncio event loop.

The digest is built by ``call_codec.compute_digest``, the same function
the ``Authorizer`` verifies with, so the two sides cannot drift.
"""

from __future__ import annotations

import asyncio
import inspect
from concurrent.futures import ProcessPoolExecutor
from typing import Any, Awaitable, Callable, Sequence, Union

import structlog
from eth_account import Account

from models import MetaTxRequest, SignedRequest
from web3_infra.call_codec import compute_digest, encode_call, sign_digest

logger = structlog.get_logger("web3_infra.request_signer")

NonceSource = Callable[[str], Union[int, Awaitable[int]]]


# ── Module-level signing function (must be picklable for multiprocessing) ──


def _sign_request_sync(
    signer: str,
    encoded_call: bytes,
    nonce: int,
    private_key: str,
) -> tuple[bytes, bytes]:
    """Synchronous signing executed in a worker process.

    Returns ``(digest, signature)``.
    """
    digest = compute_digest(signer, encoded_call, nonce)
    return digest, sign_digest(digest, private_key)


# ── Async signer class ──────────────────────────────────────────────


class RequestSigner:
    """Async-safe request builder backed by a process pool.

    Parameters
    ----------
    private_key:
        Hex-encoded private key of the signing user.
    max_workers:
        Number of processes in the signing pool.  Defaults to 2.
    """

    def __init__(self, private_key: str, max_workers: int = 2) -> None:
        self._private_key = private_key
        self._address: str = Account.from_key(private_key).address
        self._max_workers = max_workers
        self._pool: ProcessPoolExecutor | None = None

    @property
    def address(self) -> str:
        """Checksummed address of the signing key."""
        return self._address

    # ── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        """Start the process pool.  Idempotent."""
        if self._pool is None:
            self._pool = ProcessPoolExecutor(max_workers=self._max_workers)
            logger.info(
                "request_signer.started",
                address=self._address,
                max_workers=self._max_workers,
            )

    def shutdown(self, wait: bool = True) -> None:
        """Shutdown the process pool."""
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None
            logger.info("request_signer.shutdown")

    # ── Signing ──────────────────────────────────────────────────

    async def sign(self, encoded_call: bytes, nonce: int) -> SignedRequest:
        """Sign an already-encoded call at *nonce*.

        Raises
        ------
        RuntimeError
            If the signer has not been started.
        ValueError
            If *nonce* is negative.
        """
        if self._pool is None:
            raise RuntimeError(
                "RequestSigner not started — call start() first"
            )
        if nonce < 0:
            raise ValueError(f"nonce must be non-negative, got {nonce}")

        loop = asyncio.get_running_loop()
        digest, signature = await loop.run_in_executor(
            self._pool,
            _sign_request_sync,
            self._address,
            encoded_call,
            nonce,
            self._private_key,
        )

        logger.debug(
            "request_signer.signed",
            signer=self._address,
            nonce=nonce,
            digest=f"0x{digest.hex()}",
        )
        return SignedRequest(
            request=MetaTxRequest(
                signer=self._address,
                encoded_call=encoded_call,
                signature=signature,
            ),
            digest=digest,
            nonce=nonce,
        )

    async def build(
        self,
        signature_text: str,
        args: Sequence[Any],
        nonce_source: NonceSource,
    ) -> SignedRequest:
        """Fetch the nonce, encode the call and sign it.

        Parameters
        ----------
        signature_text:
            Canonical function signature, e.g. ``"transfer(address,uint256)"``.
        args:
            Positional arguments matching the signature's types.
        nonce_source:
            ``Authorizer.get_nonce`` or ``Relayer.get_nonce``; sync or async.
        """
        encoded_call = encode_call(signature_text, args)
        nonce = nonce_source(self._address)
        if inspect.isawaitable(nonce):
            nonce = await nonce
        signed = await self.sign(encoded_call, int(nonce))
        return signed.model_copy(update={"signature_text": signature_text})

    # ── Context manager ──────────────────────────────────────────

    async def __aenter__(self) -> RequestSigner:
        self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.shutdown(wait=True)
