"""Tests for web3_infra/call_codec.py — encoding, digest layout, recovery."""

from __future__ import annotations

import pytest
from eth_abi import encode
from eth_account import Account
from web3 import Web3

from web3_infra.call_codec import (
    canonical_signature,
    compute_digest,
    decode_args,
    encode_call,
    function_selector,
    parse_signature_text,
    recover_signer,
    sign_digest,
    to_bytes,
)

KEY_A = "0x" + "11" * 32
KEY_B = "0x" + "22" * 32
ADDR_A = Account.from_key(KEY_A).address
ADDR_B = Account.from_key(KEY_B).address


class TestSelectors:

    def test_erc20_transfer_selector(self) -> None:
        # Well-known selector of transfer(address,uint256)
        assert function_selector("transfer(address,uint256)").hex() == "a9059cbb"

    def test_canonical_signature(self) -> None:
        assert canonical_signature("setMessage", ("string",)) == "setMessage(string)"
        assert canonical_signature("ping", ()) == "ping()"

    def test_parse_signature_text(self) -> None:
        assert parse_signature_text("transfer(address, uint256)") == (
            "transfer",
            ("address", "uint256"),
        )
        assert parse_signature_text("ping()") == ("ping", ())

    @pytest.mark.parametrize("bad", ["transfer", "(uint256)", "transfer(uint256"])
    def test_parse_rejects_malformed(self, bad: str) -> None:
        with pytest.raises(ValueError, match="Malformed"):
            parse_signature_text(bad)


class TestEncodeCall:

    def test_layout_is_selector_plus_abi(self) -> None:
        call = encode_call("transfer(address,uint256)", [ADDR_B, 1000])
        assert call[:4] == function_selector("transfer(address,uint256)")
        assert call[4:] == encode(["address", "uint256"], [ADDR_B, 1000])

    def test_decode_args(self) -> None:
        call = encode_call("setMessage(string)", ["hello"])
        assert decode_args(("string",), call[4:]) == ("hello",)

    def test_decode_no_args(self) -> None:
        assert decode_args((), b"") == ()

    def test_arg_count_mismatch(self) -> None:
        with pytest.raises(ValueError, match="expects 2 args"):
            encode_call("transfer(address,uint256)", [ADDR_B])


class TestDigest:

    def test_matches_packed_layout(self) -> None:
        call = encode_call("setMessage(string)", ["hi"])
        expected = Web3.keccak(
            bytes.fromhex(ADDR_A[2:]) + call + (7).to_bytes(32, "big")
        )
        assert compute_digest(ADDR_A, call, 7) == bytes(expected)

    def test_matches_solidity_keccak(self) -> None:
        call = b"\xde\xad\xbe\xef"
        expected = Web3.solidity_keccak(["address", "bytes", "uint256"], [ADDR_A, call, 3])
        assert compute_digest(ADDR_A, call, 3) == bytes(expected)

    def test_field_order_matters(self) -> None:
        call = b"\x01\x02\x03\x04"
        reordered = Web3.solidity_keccak(["bytes", "address", "uint256"], [call, ADDR_A, 0])
        assert compute_digest(ADDR_A, call, 0) != bytes(reordered)

    def test_nonce_changes_digest(self) -> None:
        call = b"\x01\x02\x03\x04"
        assert compute_digest(ADDR_A, call, 0) != compute_digest(ADDR_A, call, 1)

    def test_address_case_insensitive(self) -> None:
        call = b"\x01\x02\x03\x04"
        assert compute_digest(ADDR_A.lower(), call, 0) == compute_digest(ADDR_A, call, 0)

    def test_hex_call_accepted(self) -> None:
        assert compute_digest(ADDR_A, "0x01020304", 0) == compute_digest(ADDR_A, b"\x01\x02\x03\x04", 0)

    def test_negative_nonce_rejected(self) -> None:
        with pytest.raises(ValueError, match="non-negative"):
            compute_digest(ADDR_A, b"", -1)


class TestRecovery:

    def test_sign_and_recover(self) -> None:
        digest = compute_digest(ADDR_A, b"\x00\x00\x00\x01", 0)
        sig = sign_digest(digest, KEY_A)
        assert len(sig) == 65
        assert recover_signer(digest, sig) == ADDR_A

    def test_recover_hex_signature(self) -> None:
        digest = compute_digest(ADDR_A, b"\x00\x00\x00\x01", 0)
        sig = sign_digest(digest, KEY_A)
        assert recover_signer(digest, "0x" + sig.hex()) == ADDR_A

    def test_other_key_recovers_other_address(self) -> None:
        digest = compute_digest(ADDR_A, b"\x00\x00\x00\x01", 0)
        sig = sign_digest(digest, KEY_B)
        assert recover_signer(digest, sig) == ADDR_B

    def test_uses_personal_sign_prefix(self) -> None:
        # Signing the raw digest without the prefix must not recover the signer
        digest = compute_digest(ADDR_A, b"\x00\x00\x00\x01", 0)
        raw = Account.unsafe_sign_hash(digest, KEY_A).signature
        assert recover_signer(digest, bytes(raw)) != ADDR_A

    def test_wrong_length_rejected(self) -> None:
        with pytest.raises(ValueError, match="65 bytes"):
            recover_signer(b"\x00" * 32, b"\x01" * 64)


class TestToBytes:

    def test_variants(self) -> None:
        assert to_bytes(b"\x01") == b"\x01"
        assert to_bytes(bytearray(b"\x02")) == b"\x02"
        assert to_bytes("0x0a0b") == b"\x0a\x0b"
        assert to_bytes("0a0b") == b"\x0a\x0b"
