"""
Submission Module.

Encodes composed receipts for the on-chain verifier and drives the
transaction through signing, sending and confirmation.
"""

from zkcompose.core.submission.chain import ChainClient, JsonRpcClient, RpcError
from zkcompose.core.submission.pipeline import (
    DEFAULT_FUNCTION_SIGNATURE,
    SubmissionPipeline,
    TxResult,
    encode_calldata,
)
from zkcompose.core.submission.transaction import LegacyTransaction, rlp_encode

__all__ = [
    "ChainClient",
    "JsonRpcClient",
    "RpcError",
    "DEFAULT_FUNCTION_SIGNATURE",
    "SubmissionPipeline",
    "TxResult",
    "encode_calldata",
    "LegacyTransaction",
    "rlp_encode",
]
