"""
Shared fixtures and fakes for zkcompose tests.

- `registry`: the bundled dev guests
- `FakeNode`: scripted JSON-RPC endpoint standing in for an Ethereum node
"""

import time

import pytest

from zkcompose.core.registry import builtin_registry
from zkcompose.core.submission.chain import RpcError
from zkcompose.crypto import SignerKey, bytes_to_hex, hex_to_bytes, keccak256

# Well-known development key; its address is fixed
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TEST_ADDRESS = "0x2c7536e3605d9c16a7a3d7b1898e529396a65c23"
VERIFIER_ADDRESS = "0x" + "ab" * 20


class FakeNode:
    """
    In-memory JSON-RPC node.

    Mines every accepted transaction into the current block unless told to
    drop it. Errors queued in `send_errors` are raised by successive
    eth_sendRawTransaction calls. Methods in `null_methods` answer null.
    """

    def __init__(self, chain_id: int = 31337):
        self.chain_id = chain_id
        self.nonce = 0
        self.block = 100
        self.gas_price = 10**9
        self.revert_estimate = False
        self.revert_on_chain = False
        self.unmined = 0
        self.send_errors = []
        self.sent = []
        self.receipts = {}
        self.calls = []
        self.null_methods = set()
        self.send_delay = 0.0

    def call(self, method, params):
        self.calls.append(method)
        if method in self.null_methods:
            return None

        if method == "eth_chainId":
            return hex(self.chain_id)
        if method == "eth_getTransactionCount":
            return hex(self.nonce)
        if method == "eth_gasPrice":
            return hex(self.gas_price)
        if method == "eth_estimateGas":
            if self.revert_estimate:
                raise RpcError(3, "execution reverted: VerificationFailed()")
            return hex(210_000)
        if method == "eth_sendRawTransaction":
            if self.send_errors:
                raise self.send_errors.pop(0)
            if self.send_delay:
                time.sleep(self.send_delay)
            raw = hex_to_bytes(params[0])
            tx_hash = bytes_to_hex(keccak256(raw))
            self.sent.append(raw)
            if self.unmined:
                self.unmined -= 1
            else:
                self.nonce += 1
                self.receipts[tx_hash] = {
                    "status": "0x0" if self.revert_on_chain else "0x1",
                    "blockNumber": hex(self.block),
                    "gasUsed": hex(180_000),
                }
            return tx_hash
        if method == "eth_getTransactionReceipt":
            return self.receipts.get(params[0])
        if method == "eth_blockNumber":
            return hex(self.block)

        raise RpcError(-32601, f"method {method} not found")

    def send_count(self) -> int:
        return self.calls.count("eth_sendRawTransaction")


@pytest.fixture
def registry():
    """Registry of the bundled guests."""
    return builtin_registry()


@pytest.fixture
def signer():
    return SignerKey.from_hex(TEST_PRIVATE_KEY)


@pytest.fixture
def fake_node():
    return FakeNode()
