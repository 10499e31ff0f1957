"""
Chain access over JSON-RPC.

A thin client for the handful of Ethereum JSON-RPC methods the submission
pipeline needs. RPC failures are classified into the submission taxonomy:

    "nonce too low", "already known",
    "replacement transaction underpriced"   -> NonceConflict
    "execution reverted", other RPC errors  -> TxRejected
    connection errors, timeouts, 5xx,
    null or malformed results              -> TxDropped
    unusable endpoint (bad URL, redirects)  -> TxRejected
"""

import itertools
from typing import Any, List, Optional, Protocol

import requests

from zkcompose.core.errors import ComposeError, NonceConflict, TxDropped, TxRejected
from zkcompose.crypto import SignerKey, bytes_to_hex
from zkcompose.utils.logger import get_logger

logger = get_logger("submission.chain")

NONCE_ERRORS = (
    "nonce too low",
    "already known",
    "replacement transaction underpriced",
    "nonce has already been used",
)


class RpcError(Exception):
    """A JSON-RPC error object returned by the node."""

    def __init__(self, code: int, message: str):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message


def classify_rpc_error(error: RpcError) -> ComposeError:
    message = error.message.lower()
    if any(marker in message for marker in NONCE_ERRORS):
        return NonceConflict(error.message)
    return TxRejected(error.message, detail=f"code {error.code}")


class RpcTransport(Protocol):
    def call(self, method: str, params: List[Any]) -> Any: ...


class JsonRpcClient:
    """JSON-RPC 2.0 over HTTP."""

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self._ids = itertools.count(1)

    def call(self, method: str, params: List[Any]) -> Any:
        """
        Invoke an RPC method.

        Raises:
            RpcError: the node answered with an error object
            TxDropped: the node could not be reached or answered garbage
            TxRejected: the endpoint is unusable (bad URL, 4xx)
        """
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TxDropped(f"RPC {method} unreachable", detail=str(e))
        except requests.RequestException as e:
            raise TxRejected(f"RPC {method} to {self.url} failed", detail=f"{type(e).__name__}: {e}")

        if response.status_code >= 500 or response.status_code == 429:
            raise TxDropped(f"RPC {method} returned {response.status_code}")
        if response.status_code != 200:
            raise TxRejected(f"RPC {method} returned {response.status_code}", detail=response.text[:200])

        try:
            body = response.json()
        except ValueError as e:
            raise TxDropped(f"RPC {method} returned invalid JSON", detail=str(e))

        if not isinstance(body, dict):
            raise TxDropped(f"RPC {method} returned a non-object response")
        if body.get("error"):
            error = body["error"]
            if not isinstance(error, dict):
                raise RpcError(-1, str(error))
            raise RpcError(error.get("code", -1), error.get("message", "unknown error"))
        return body.get("result")


def parse_quantity(value: Any, what: str) -> int:
    """
    Decode a hex QUANTITY from an RPC result.

    Raises:
        TxDropped: the node returned null or something that is not a quantity
    """
    if not isinstance(value, str) or not value.startswith("0x"):
        raise TxDropped(f"Node returned malformed {what}: {value!r}")
    try:
        return int(value, 16)
    except ValueError:
        raise TxDropped(f"Node returned malformed {what}: {value!r}")


class ChainClient:
    """Typed wrapper around the RPC methods used for submission."""

    def __init__(self, rpc: RpcTransport, signer: SignerKey, contract: str, chain_id: int):
        self.rpc = rpc
        self.signer = signer
        self.contract = contract
        self.chain_id = chain_id

    def _call(self, method: str, params: List[Any]) -> Any:
        try:
            return self.rpc.call(method, params)
        except RpcError as e:
            raise classify_rpc_error(e)

    def remote_chain_id(self) -> int:
        return parse_quantity(self._call("eth_chainId", []), "chain id")

    def check_chain_id(self) -> None:
        """
        Make sure the node serves the chain the signer is bound to.

        Raises:
            TxRejected: the node reports a different chain id
        """
        remote = self.remote_chain_id()
        if remote != self.chain_id:
            raise TxRejected(
                f"Node is on chain {remote}, expected chain {self.chain_id}",
                detail="refusing to sign for the wrong chain",
            )

    def pending_nonce(self) -> int:
        return parse_quantity(
            self._call("eth_getTransactionCount", [self.signer.address, "pending"]),
            "nonce",
        )

    def gas_price(self) -> int:
        return parse_quantity(self._call("eth_gasPrice", []), "gas price")

    def estimate_gas(self, data: bytes) -> int:
        """Estimate gas for a call; a revert means the verifier rejects the proof."""
        return parse_quantity(self._call("eth_estimateGas", [{
            "from": self.signer.address,
            "to": self.contract,
            "data": bytes_to_hex(data),
        }]), "gas estimate")

    def send_raw_transaction(self, raw: bytes) -> Optional[str]:
        result = self._call("eth_sendRawTransaction", [bytes_to_hex(raw)])
        if result is not None and not isinstance(result, str):
            raise TxDropped(f"Node returned malformed transaction hash: {result!r}")
        return result

    def transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        """Receipt of a mined transaction, None while it is pending."""
        result = self._call("eth_getTransactionReceipt", [tx_hash])
        if result is not None and not isinstance(result, dict):
            raise TxDropped(f"Node returned malformed receipt for {tx_hash}: {result!r}")
        return result

    def block_number(self) -> int:
        return parse_quantity(self._call("eth_blockNumber", []), "block number")
