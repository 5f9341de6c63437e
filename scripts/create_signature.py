#!/usr/bin/env python3
"""Create a signed meta-transaction request.

Encodes the call, fetches (or takes) the signer's nonce, computes the
authorization digest and signs it.  The signed request is printed as JSON
and can be handed to ``submit_transaction.py``.

Usage:
    python scripts/create_signature.py --function "setMessage(string)" \\
        --args '["hello"]' --nonce 0
    python scripts/create_signature.py --function "transfer(address,uint256)" \\
        --args '["0xRecipient...", 1000]' --from-chain --out request.json
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
from models import SignedRequest
from web3_infra import Relayer, RequestSigner, RPCManager, RPCManagerConfig

log = get_logger("scripts.create_signature")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sign a meta-transaction request")
    parser.add_argument("--function", required=True,
                        help='Canonical signature, e.g. "transfer(address,uint256)"')
    parser.add_argument("--args", default="[]", help="JSON array of call arguments")
    nonce = parser.add_mutually_exclusive_group(required=True)
    nonce.add_argument("--nonce", type=int, help="Nonce to sign against")
    nonce.add_argument("--from-chain", action="store_true",
                       help="Read the nonce from the deployed authorizer")
    parser.add_argument("--private-key", default=None,
                        help="Signer key (default: SIGNER_PRIVATE_KEY)")
    parser.add_argument("--out", default=None, help="Write the JSON here instead of stdout")
    return parser


def parse_call_args(raw: str) -> list[Any]:
    value = json.loads(raw)
    if not isinstance(value, list):
        raise ValueError("--args must be a JSON array")
    return value


async def _chain_nonce(address: str, private_key: str) -> int:
    config = RPCManagerConfig(expected_chain_id=settings.CHAIN_ID, health_check_interval_s=0)
    async with RPCManager(settings.rpc_endpoints, config) as rpc:
        # Only reads; any funded key works for the relayer slot
        relayer = Relayer(rpc, private_key=settings.RELAYER_PRIVATE_KEY or private_key)
        return await relayer.get_nonce(address)


async def create_signature(args: argparse.Namespace) -> SignedRequest:
    private_key = args.private_key or settings.SIGNER_PRIVATE_KEY
    if not private_key:
        raise SystemExit("ERROR: no signer key (use --private-key or SIGNER_PRIVATE_KEY)")
    call_args = parse_call_args(args.args)

    async with RequestSigner(private_key, max_workers=1) as signer:
        if args.from_chain:
            nonce = await _chain_nonce(signer.address, private_key)
        else:
            nonce = args.nonce
        signed = await signer.build(args.function, call_args, lambda _addr: nonce)

    log.info(
        "create_signature.done",
        signer=signed.request.signer,
        nonce=signed.nonce,
        function=args.function,
    )
    return signed


def main() -> None:
    args = build_parser().parse_args()
    signed = asyncio.run(create_signature(args))
    output = signed.to_json()
    if args.out:
        Path(args.out).write_text(output + "\n")
        print(f"Signed request written to {args.out}")
    else:
        print(output)


if __name__ == "__main__":
    main()
