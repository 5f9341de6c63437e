"""Call encoding, authorization digest and signature recovery.

Both sides of the wire use this module: the off-chain ``RequestSigner``
and the ``Authorizer`` that verifies.  The digest layout must stay
bit-for-bit identical to the Solidity expression::

    keccak256(abi.encodePacked(signer, functionSignature, nonce))

signed with the ``personal_sign`` prefix
(``"\\x19Ethereum Signed Message:\\n32" ‖ digest``).  Reordering the packed
fields invalidates every signature already issued.
"""

from __future__ import annotations

from typing import Any, Sequence

from eth_abi import decode, encode
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

SELECTOR_SIZE = 4
SIGNATURE_SIZE = 65

# Packed field order of the authorization digest
DIGEST_LAYOUT = ("address", "bytes", "uint256")


def to_bytes(value: bytes | str) -> bytes:
    """Accept raw bytes or a (``0x``-prefixed) hex string."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = value[2:] if value.startswith(("0x", "0X")) else value
    return bytes.fromhex(text)


def canonical_signature(name: str, arg_types: Sequence[str]) -> str:
    """Return ``name(type1,type2)`` as used for selector hashing."""
    return f"{name}({','.join(arg_types)})"


def function_selector(signature_text: str) -> bytes:
    """First four bytes of ``keccak256(signature_text)``."""
    return bytes(Web3.keccak(text=signature_text)[:SELECTOR_SIZE])


def parse_signature_text(signature_text: str) -> tuple[str, tuple[str, ...]]:
    """Split ``transfer(address,uint256)`` into its name and arg types."""
    name, sep, rest = signature_text.partition("(")
    if not sep or not rest.endswith(")") or not name:
        raise ValueError(f"Malformed function signature: {signature_text!r}")
    inner = rest[:-1].strip()
    arg_types = tuple(t.strip() for t in inner.split(",")) if inner else ()
    return name.strip(), arg_types


def encode_call(signature_text: str, args: Sequence[Any]) -> bytes:
    """ABI-encode a call: ``selector ‖ abi.encode(args)``."""
    _, arg_types = parse_signature_text(signature_text)
    if len(arg_types) != len(args):
        raise ValueError(
            f"{signature_text} expects {len(arg_types)} args, got {len(args)}"
        )
    return function_selector(signature_text) + encode(list(arg_types), list(args))


def decode_args(arg_types: Sequence[str], payload: bytes) -> tuple[Any, ...]:
    """Decode the ABI-encoded argument tail of a call."""
    if not arg_types:
        return ()
    return tuple(decode(list(arg_types), payload))


def compute_digest(signer: str, encoded_call: bytes | str, nonce: int) -> bytes:
    """Authorization digest over ``signer ‖ encoded_call ‖ nonce``."""
    if nonce < 0:
        raise ValueError(f"nonce must be non-negative, got {nonce}")
    return bytes(
        Web3.solidity_keccak(
            list(DIGEST_LAYOUT),
            [Web3.to_checksum_address(signer), to_bytes(encoded_call), nonce],
        )
    )


def sign_digest(digest: bytes, private_key: str) -> bytes:
    """Sign *digest* with the ``personal_sign`` prefix; returns r ‖ s ‖ v."""
    signed = Account.sign_message(encode_defunct(primitive=digest), private_key=private_key)
    return bytes(signed.signature)


def recover_signer(digest: bytes, signature: bytes | str) -> str:
    """Recover the checksummed address that signed *digest*.

    Raises
    ------
    ValueError
        If the signature is not 65 bytes or cannot be recovered.
    """
    raw = to_bytes(signature)
    if len(raw) != SIGNATURE_SIZE:
        raise ValueError(f"signature must be {SIGNATURE_SIZE} bytes, got {len(raw)}")
    try:
        return Account.recover_message(encode_defunct(primitive=digest), signature=raw)
    except Exception as exc:
        raise ValueError(f"unrecoverable signature: {exc}") from exc
