"""AuthorizationEvent — registro de auditoria de uma meta-transação executada."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_serializer


class AuthorizationEvent(BaseModel):
    """Equivalente ao evento MetaTransactionExecuted do contrato."""

    sequence: int = Field(..., ge=0, description="Ordem de commit no autorizador")
    signer: str
    relayer: str
    encoded_call: bytes
    nonce: int = Field(..., ge=0, description="Nonce consumido (pré-incremento)")
    value: int = Field(default=0, ge=0, description="Valor recebido em wei")
    action: str = Field(..., description="Assinatura canônica da ação executada")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_serializer("encoded_call")
    def _call_as_hex(self, v: bytes) -> str:
        return "0x" + v.hex()

    def to_payload(self) -> dict[str, Any]:
        """Dict serializável para o EventBus."""
        return self.model_dump(mode="json")
