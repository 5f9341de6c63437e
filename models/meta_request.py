"""MetaTxRequest — pedido de autorização assinado off-chain."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_serializer, field_validator
from web3 import Web3

SIGNATURE_LENGTH = 65


def _hex_to_bytes(v: Any) -> Any:
    if isinstance(v, str):
        text = v[2:] if v.startswith(("0x", "0X")) else v
        try:
            return bytes.fromhex(text)
        except ValueError as exc:
            raise ValueError(f"invalid hex string: {exc}") from exc
    return v


class MetaTxRequest(BaseModel):
    """Triplo (signer, encoded_call, signature) entregue ao relayer."""

    signer: str = Field(..., description="Endereço que assinou o pedido")
    encoded_call: bytes = Field(..., description="selector ‖ abi.encode(args)")
    signature: bytes = Field(..., description="r ‖ s ‖ v (65 bytes)")

    @field_validator("signer")
    @classmethod
    def checksum_signer(cls, v: str) -> str:
        """Normaliza para checksum; rejeita endereços inválidos."""
        if not Web3.is_address(v):
            raise ValueError(f"invalid address: {v!r}")
        return Web3.to_checksum_address(v)

    @field_validator("encoded_call", "signature", mode="before")
    @classmethod
    def accept_hex(cls, v: Any) -> Any:
        return _hex_to_bytes(v)

    @field_validator("signature")
    @classmethod
    def signature_length(cls, v: bytes) -> bytes:
        if len(v) != SIGNATURE_LENGTH:
            raise ValueError(f"signature must be {SIGNATURE_LENGTH} bytes, got {len(v)}")
        return v

    @field_serializer("encoded_call", "signature")
    def _bytes_as_hex(self, v: bytes) -> str:
        return "0x" + v.hex()

    def to_json(self) -> str:
        """JSON compacto (bytes em hex) para o relayer."""
        return self.model_dump_json()


class SignedRequest(BaseModel):
    """Saída do RequestSigner: pedido + digest + nonce usado."""

    request: MetaTxRequest
    digest: bytes
    nonce: int = Field(..., ge=0)
    signature_text: str | None = Field(default=None, description="Ex.: transfer(address,uint256)")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("digest", mode="before")
    @classmethod
    def accept_hex(cls, v: Any) -> Any:
        return _hex_to_bytes(v)

    @field_serializer("digest")
    def _digest_as_hex(self, v: bytes) -> str:
        return "0x" + v.hex()

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)
