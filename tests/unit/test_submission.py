"""
Unit tests for the submission pipeline.

Tests cover:
1. Calldata layout
2. Confirmed submission against a fake node
3. Error classification (revert, nonce conflict, dropped)
4. Resubmission limits
5. Malformed node answers and chain id binding
6. Waiting on a transaction broadcast before a restart
"""

import pytest
import requests

from zkcompose.core import abi
from zkcompose.core.errors import NonceConflict, TxDropped, TxRejected
from zkcompose.core.receipt import Claim, Receipt
from zkcompose.core.submission import ChainClient, JsonRpcClient, RpcError, SubmissionPipeline, encode_calldata
from zkcompose.core.submission.chain import classify_rpc_error
from zkcompose.crypto import sha256

VERIFIER = "0x" + "ab" * 20


@pytest.fixture
def receipt():
    journal = abi.encode(["bool"], [True])
    return Receipt(journal=journal, seal=b"\x07" * 96, claim=Claim.for_journal(sha256(b"is-even"), journal))


@pytest.fixture
def chain(fake_node, signer):
    return ChainClient(fake_node, signer, VERIFIER, fake_node.chain_id)


def make_pipeline(chain, **kwargs):
    kwargs.setdefault("sleep", lambda _: None)
    return SubmissionPipeline(chain, **kwargs)


class TestCalldata:
    """Tests for the verifier call layout."""

    def test_layout(self, receipt):
        calldata = encode_calldata(receipt, "submit(bytes,bytes)")

        assert calldata[:4] == abi.function_selector("submit(bytes,bytes)")
        journal, seal = abi.decode(["bytes", "bytes"], calldata[4:])
        assert journal == receipt.journal
        assert seal == receipt.seal

    def test_seal_selector_prefix(self, receipt):
        calldata = encode_calldata(receipt, seal_selector=b"\xc1\x01\xb4\x2b")
        _, seal = abi.decode(["bytes", "bytes"], calldata[4:])
        assert seal == b"\xc1\x01\xb4\x2b" + receipt.seal

    def test_bad_selector_length(self, receipt):
        with pytest.raises(ValueError):
            encode_calldata(receipt, seal_selector=b"\x01")


class TestErrorClassification:
    """RPC errors map onto the submission taxonomy."""

    @pytest.mark.parametrize("message", [
        "nonce too low",
        "already known",
        "replacement transaction underpriced",
    ])
    def test_nonce_errors(self, message):
        assert isinstance(classify_rpc_error(RpcError(-32000, message)), NonceConflict)

    def test_revert_is_rejection(self):
        assert isinstance(classify_rpc_error(RpcError(3, "execution reverted")), TxRejected)


class TestSubmissionPipeline:
    """Tests for SubmissionPipeline.submit."""

    def test_confirmed(self, chain, fake_node, receipt):
        result = make_pipeline(chain).submit(receipt)

        assert result.success
        assert result.block_number == fake_node.block
        assert result.attempts == 1
        assert result.nonce == 0
        assert result.gas_used == 180_000
        assert fake_node.send_count() == 1

    def test_waits_for_confirmations(self, chain, fake_node, receipt):
        """Polls until the block depth reaches the required confirmations."""
        def advance(_):
            fake_node.block += 1

        pipeline = SubmissionPipeline(chain, confirmations=3, sleep=advance)

        result = pipeline.submit(receipt)

        assert result.confirmations == 3
        assert result.block_number == 100

    def test_estimate_revert_not_sent(self, chain, fake_node, receipt):
        """A reverting estimate means the verifier rejects the proof."""
        fake_node.revert_estimate = True

        with pytest.raises(TxRejected):
            make_pipeline(chain).submit(receipt)
        assert fake_node.send_count() == 0

    def test_on_chain_revert_not_retried(self, chain, fake_node, receipt):
        fake_node.revert_on_chain = True

        with pytest.raises(TxRejected):
            make_pipeline(chain).submit(receipt)
        assert fake_node.send_count() == 1

    def test_nonce_conflict_retried(self, chain, fake_node, receipt):
        fake_node.send_errors = [RpcError(-32000, "nonce too low")]

        result = make_pipeline(chain).submit(receipt)

        assert result.attempts == 2
        assert fake_node.send_count() == 2

    def test_dropped_transaction_resubmitted(self, chain, fake_node, receipt):
        """An unmined transaction is resent with the same payload."""
        fake_node.unmined = 1

        result = make_pipeline(chain, tx_timeout=0).submit(receipt)

        assert result.attempts == 2
        assert len(fake_node.sent) == 2

    def test_resubmissions_exhausted(self, chain, fake_node, receipt):
        fake_node.send_errors = [TxDropped("node unreachable")] * 5

        with pytest.raises(TxDropped):
            make_pipeline(chain, max_resubmits=2).submit(receipt)
        assert fake_node.send_count() == 3

    def test_wrong_chain_id_not_signed(self, signer, fake_node, receipt):
        """A node on another chain is refused before anything is estimated or sent."""
        chain = ChainClient(fake_node, signer, VERIFIER, chain_id=1)

        with pytest.raises(TxRejected):
            make_pipeline(chain).submit(receipt)
        assert fake_node.calls == ["eth_chainId"]

    def test_chain_id_checked_once(self, chain, fake_node, receipt):
        pipeline = make_pipeline(chain)
        pipeline.submit(receipt)
        pipeline.submit(receipt)

        assert fake_node.calls.count("eth_chainId") == 1

    def test_sent_hash_reported_before_confirmation(self, chain, fake_node, receipt):
        seen = []

        def on_sent(tx_hash, nonce):
            seen.append((tx_hash, nonce, fake_node.calls.count("eth_getTransactionReceipt")))

        result = make_pipeline(chain).submit(receipt, on_sent=on_sent)

        assert seen == [(result.tx_hash, 0, 0)]


# =============================================================================
# Restart During Submission
# =============================================================================


class TestPendingTransaction:
    """A transaction broadcast by an earlier process is awaited, not resent."""

    def test_pending_transaction_confirmed(self, chain, fake_node, receipt):
        tx_hash = "0x" + "5e" * 32
        fake_node.receipts[tx_hash] = {"status": "0x1", "blockNumber": hex(fake_node.block), "gasUsed": "0x10"}

        result = make_pipeline(chain).submit(receipt, pending=(tx_hash, 4))

        assert result.tx_hash == tx_hash
        assert result.nonce == 4
        assert fake_node.send_count() == 0

    def test_pending_transaction_reverted(self, chain, fake_node, receipt):
        tx_hash = "0x" + "5e" * 32
        fake_node.receipts[tx_hash] = {"status": "0x0", "blockNumber": hex(fake_node.block)}

        with pytest.raises(TxRejected):
            make_pipeline(chain).submit(receipt, pending=(tx_hash, 4))
        assert fake_node.send_count() == 0

    def test_lost_pending_transaction_sent_anew(self, chain, fake_node, receipt):
        result = make_pipeline(chain, tx_timeout=0).submit(receipt, pending=("0x" + "5e" * 32, 0))

        assert result.tx_hash != "0x" + "5e" * 32
        assert fake_node.send_count() == 1


# =============================================================================
# Malformed Node Answers
# =============================================================================


class TestChainClient:
    """Null or malformed RPC results become TxDropped."""

    def test_null_nonce(self, chain, fake_node):
        fake_node.null_methods.add("eth_getTransactionCount")
        with pytest.raises(TxDropped):
            chain.pending_nonce()

    def test_non_hex_quantity(self, signer):
        class Node:
            def call(self, method, params):
                return 12

        with pytest.raises(TxDropped):
            ChainClient(Node(), signer, VERIFIER, 1).gas_price()

    def test_malformed_receipt(self, signer):
        class Node:
            def call(self, method, params):
                return "mined"

        with pytest.raises(TxDropped):
            ChainClient(Node(), signer, VERIFIER, 1).transaction_receipt("0x00")

    def test_null_nonce_fails_submission(self, chain, fake_node, receipt):
        fake_node.null_methods.add("eth_getTransactionCount")

        with pytest.raises(TxDropped):
            make_pipeline(chain, max_resubmits=1).submit(receipt)
        assert fake_node.send_count() == 0


class TestJsonRpcClient:
    """Tests for the HTTP JSON-RPC transport."""

    class Response:
        def __init__(self, status_code, body):
            self.status_code = status_code
            self._body = body
            self.text = str(body)

        def json(self):
            return self._body

    class Session:
        def __init__(self, response):
            self.response = response
            self.payloads = []

        def post(self, url, json=None, timeout=None):
            self.payloads.append(json)
            return self.response

    def test_result(self):
        session = self.Session(self.Response(200, {"jsonrpc": "2.0", "id": 1, "result": "0x1"}))
        rpc = JsonRpcClient("http://node", session=session)

        assert rpc.call("eth_chainId", []) == "0x1"
        assert session.payloads[0]["method"] == "eth_chainId"

    def test_error_object(self):
        session = self.Session(self.Response(200, {"error": {"code": -32000, "message": "nonce too low"}}))
        with pytest.raises(RpcError):
            JsonRpcClient("http://node", session=session).call("eth_sendRawTransaction", ["0x"])

    def test_server_error_is_dropped(self):
        session = self.Session(self.Response(502, {}))
        with pytest.raises(TxDropped):
            JsonRpcClient("http://node", session=session).call("eth_blockNumber", [])

    def test_unusable_endpoint_is_rejection(self):
        class Session:
            def post(self, url, json=None, timeout=None):
                raise requests.TooManyRedirects("Exceeded 30 redirects.")

        with pytest.raises(TxRejected):
            JsonRpcClient("http://node", session=Session()).call("eth_chainId", [])

    def test_url_without_scheme_is_rejection(self):
        with pytest.raises(TxRejected):
            JsonRpcClient("localhost:8545").call("eth_chainId", [])

    def test_non_object_body_is_dropped(self):
        session = self.Session(self.Response(200, ["not", "an", "object"]))
        with pytest.raises(TxDropped):
            JsonRpcClient("http://node", session=session).call("eth_chainId", [])
