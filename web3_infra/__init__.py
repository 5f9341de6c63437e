"""metatx-relay — web3_infra package.

Off-chain side of the meta-transaction flow:
- call_codec: call encoding, authorization digest, signature recovery
- RequestSigner: builds and signs requests off the event loop
- Relayer: submits signed requests to a deployed authorizer
- RPCManager: JSON-RPC endpoint pool with failover
"""

from .relayer import (
    GasAbortError,
    RelayTransactionError,
    Relayer,
    RelayerConfig,
    RelayTxResult,
    TxStatus,
)
from .request_signer import RequestSigner
from .rpc_manager import RPCError, RPCManager, RPCManagerConfig

__all__ = [
    "GasAbortError",
    "RPCError",
    "RPCManager",
    "RPCManagerConfig",
    "RelayTransactionError",
    "RelayTxResult",
    "Relayer",
    "RelayerConfig",
    "RequestSigner",
    "TxStatus",
]
