"""Tests for the create_signature / submit_transaction CLI helpers."""

from __future__ import annotations

import json
from decimal import Decimal

import pytest
from eth_account import Account

from config.settings import Settings
from core.authorizer import Authorizer
from scripts.create_signature import build_parser, create_signature, parse_call_args
from scripts.submit_transaction import format_result, load_request
from web3_infra.relayer import RelayTxResult, TxStatus

USER_KEY = "0x" + "61" * 32
USER = Account.from_key(USER_KEY).address


class TestCreateSignature:

    def test_parse_call_args(self) -> None:
        assert parse_call_args('["0xabc", 5]') == ["0xabc", 5]
        with pytest.raises(ValueError, match="JSON array"):
            parse_call_args('{"a": 1}')

    def test_nonce_source_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--function", "ping()"])

    def test_nonce_options_exclusive(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--function", "ping()", "--nonce", "0", "--from-chain"])

    @pytest.mark.asyncio
    async def test_signed_request_accepted_by_authorizer(self, tmp_path) -> None:
        args = build_parser().parse_args([
            "--function", "setMessage(string)",
            "--args", '["from cli"]',
            "--nonce", "0",
            "--private-key", USER_KEY,
        ])
        signed = await create_signature(args)
        assert signed.request.signer == USER

        path = tmp_path / "request.json"
        path.write_text(signed.to_json())
        request = load_request(path)

        authorizer = Authorizer(owner=USER)
        assert await authorizer.authorize_request(request)
        assert authorizer.message_of(USER) == "from cli"


class TestSubmitTransaction:

    def test_load_bare_request(self, tmp_path) -> None:
        path = tmp_path / "bare.json"
        path.write_text(json.dumps({
            "signer": USER,
            "encoded_call": "0x01020304",
            "signature": "0x" + "11" * 65,
        }))
        request = load_request(path)
        assert request.encoded_call == b"\x01\x02\x03\x04"

    def test_format_result(self) -> None:
        result = RelayTxResult(
            tx_hash="0xabc",
            status=TxStatus.CONFIRMED,
            gas_used=21_000,
            gas_price_gwei=Decimal("1.5"),
            block_number=7,
        )
        data = json.loads(format_result(result))
        assert data["status"] == "CONFIRMED"
        assert data["gas_price_gwei"] == "1.5"
        assert data["error"] is None


class TestSettings:

    def test_rpc_endpoints_split(self) -> None:
        s = Settings(RPC_URLS="http://a:8545, http://b:8545,")
        assert s.rpc_endpoints == ["http://a:8545", "http://b:8545"]

    def test_defaults(self) -> None:
        s = Settings()
        assert s.APP_NAME == "metatx-relay"
        assert s.MAX_GAS_PRICE_GWEI == Decimal("100")
