#!/usr/bin/env python3
"""Relay a signed meta-transaction to the deployed authorizer.

Reads the JSON produced by ``create_signature.py`` (a full signed request
or a bare ``{signer, encoded_call, signature}`` object), submits it with
the relayer key and prints the transaction hash.

Usage:
    python scripts/submit_transaction.py --request request.json
    python scripts/submit_transaction.py --request request.json --value 1000
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

# Add project root
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.settings import settings
from core.logger import get_logger
from models import MetaTxRequest
from web3_infra import (
    GasAbortError,
    RelayTransactionError,
    Relayer,
    RelayTxResult,
    RPCManager,
    RPCError,
    RPCManagerConfig,
)

log = get_logger("scripts.submit_transaction")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Submit a signed meta-transaction")
    parser.add_argument("--request", required=True, help="Path to the signed request JSON")
    parser.add_argument("--value", type=int, default=0, help="Wei to send along")
    return parser


def load_request(path: str | Path) -> MetaTxRequest:
    """Accept either a SignedRequest dump or a bare MetaTxRequest."""
    data: dict[str, Any] = json.loads(Path(path).read_text())
    if "request" in data:
        data = data["request"]
    return MetaTxRequest.model_validate(data)


def format_result(result: RelayTxResult) -> str:
    return json.dumps(
        {
            "tx_hash": result.tx_hash,
            "status": result.status.value,
            "gas_used": result.gas_used,
            "gas_price_gwei": str(result.gas_price_gwei),
            "block_number": result.block_number,
            "error": result.error,
        },
        indent=2,
    )


async def submit_transaction(args: argparse.Namespace) -> RelayTxResult:
    if not settings.RELAYER_PRIVATE_KEY:
        raise SystemExit("ERROR: RELAYER_PRIVATE_KEY not set")
    request = load_request(args.request)

    config = RPCManagerConfig(expected_chain_id=settings.CHAIN_ID, health_check_interval_s=0)
    async with RPCManager(settings.rpc_endpoints, config) as rpc:
        relayer = Relayer(rpc, private_key=settings.RELAYER_PRIVATE_KEY)
        return await relayer.submit(request, value=args.value)


def main() -> None:
    args = build_parser().parse_args()
    try:
        result = asyncio.run(submit_transaction(args))
    except (GasAbortError, RelayTransactionError, RPCError) as exc:
        log.error("submit_transaction.failed", error=str(exc))
        print(f"❌ {exc}")
        sys.exit(1)
    print(format_result(result))


if __name__ == "__main__":
    main()
